from .config import get_settings
import asyncio
import logging
import signal

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def startup_checks():
    """Log reachability of the cluster and gitea-service. Never fails startup."""
    from .services.orchestration import get_workspace_orchestrator

    try:
        health = await get_workspace_orchestrator().health_check()
        logger.info(f"Startup health: {health.status} ({health.details})")
    except Exception as e:
        logger.error(f"Startup health check failed: {e}", exc_info=True)
        logger.warning("Continuing without a healthy startup check")


async def directory_bootstrap_loop(stop_event: asyncio.Event):
    """Background task: seed OpenLDAP once its StatefulSet is ready."""
    from .services.orchestration import build_directory_reconciler
    from .services.orchestration.kubernetes import get_k8s_client

    reconciler = build_directory_reconciler(settings, get_k8s_client())
    state = await reconciler.run(stop_event)
    logger.info(f"Directory bootstrap loop finished in state {state.value}")


async def run():
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms (e.g. Windows)
            pass

    logger.info(f"Starting codeserver control plane ({settings.environment})")
    await startup_checks()

    bootstrap = asyncio.create_task(directory_bootstrap_loop(stop_event))

    await stop_event.wait()
    logger.info("Shutdown requested, stopping background tasks")

    try:
        await asyncio.wait_for(bootstrap, timeout=30)
    except asyncio.TimeoutError:
        bootstrap.cancel()
        logger.warning("Directory bootstrap did not stop in time, cancelled")


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
