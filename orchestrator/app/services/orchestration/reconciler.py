"""
Cluster Readiness Reconciler

Watch-until-ready, then converge once: polls a readiness probe at a fixed
interval and, once it passes and a settle delay has elapsed, runs a one-shot
convergence routine. Used to bootstrap OpenLDAP after its StatefulSet
reports a ready replica.

State (NOT_STARTED -> RUNNING -> DONE) lives in a ReconcilerContext guarded
by an asyncio.Lock. Across replicas a ConfigMap marker carries the same
state: creating it (create-or-409) is the claim, a Done marker with the same
fingerprint short-circuits, and a Running marker older than the lease may be
taken over. A failed run reverts to NOT_STARTED and is retried on the next
tick; the converge routine itself must be idempotent.
"""

import asyncio
import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .kubernetes import KubernetesClient

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    DONE = "Done"


class MarkerClaim(str, Enum):
    CLAIMED = "claimed"
    HELD = "held"  # Another replica is running the routine
    DONE = "done"


MARKER_STATE_FAILED = "Failed"


@dataclass
class ReconcilerContext:
    """Process-local reconciler state."""
    state: ReconcilerState = ReconcilerState.NOT_STARTED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    attempts: int = 0
    last_error: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_holder_identity() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class ClusterReadinessReconciler:
    """
    Runs `converge` exactly once after `probe` first reports ready.

    Args:
        name: Name used in logs
        probe: Async readiness check
        converge: Async one-shot routine (must be idempotent)
        k8s_client: Client used for the marker ConfigMap (None disables the marker)
        marker_name / marker_namespace: Marker ConfigMap location
        fingerprint: Content hash of the converge input; a Done marker with a
            different fingerprint is re-run
        poll_interval: Seconds between probe checks
        settle_delay: Seconds to wait after the probe first passes
        lease_seconds: Age after which a Running marker may be taken over
    """

    def __init__(
        self,
        name: str,
        probe: Callable[[], Awaitable[bool]],
        converge: Callable[[], Awaitable[None]],
        k8s_client: Optional[KubernetesClient] = None,
        marker_name: str = "",
        marker_namespace: str = "",
        fingerprint: str = "",
        poll_interval: float = 5.0,
        settle_delay: float = 10.0,
        lease_seconds: int = 600,
        holder: Optional[str] = None,
        context: Optional[ReconcilerContext] = None
    ):
        self.name = name
        self.probe = probe
        self.converge = converge
        self.k8s = k8s_client
        self.marker_name = marker_name
        self.marker_namespace = marker_namespace
        self.fingerprint = fingerprint
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.lease_seconds = lease_seconds
        self.holder = holder or default_holder_identity()
        self.context = context or ReconcilerContext()
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> ReconcilerState:
        return self.context.state

    @property
    def _marker_enabled(self) -> bool:
        return self.k8s is not None and bool(self.marker_name)

    # =========================================================================
    # MARKER
    # =========================================================================

    def _marker_body(self, state: str, started_at: str, resource_version: Optional[str] = None) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self.marker_name,
                namespace=self.marker_namespace,
                labels={"app": self.name, "managed-by": "cluster-readiness-reconciler"},
                resource_version=resource_version
            ),
            data={
                "state": state,
                "initDataHash": self.fingerprint,
                "holder": self.holder,
                "startedAt": started_at,
                "updatedAt": _now().isoformat(),
            }
        )

    def _lease_expired(self, data: dict) -> bool:
        stamp = data.get("updatedAt") or data.get("startedAt")
        if not stamp:
            return True
        try:
            updated = datetime.fromisoformat(stamp)
        except ValueError:
            return True
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return (_now() - updated).total_seconds() > self.lease_seconds

    async def _claim_marker(self) -> MarkerClaim:
        existing = await self.k8s.get_config_map(self.marker_name, self.marker_namespace)

        if existing is None:
            try:
                await self.k8s.create_config_map(
                    self._marker_body(ReconcilerState.RUNNING.value, _now().isoformat()),
                    self.marker_namespace
                )
                return MarkerClaim.CLAIMED
            except ApiException as e:
                if e.status == 409:
                    logger.info(f"[RECONCILER] {self.name}: marker created by another replica")
                    return MarkerClaim.HELD
                raise

        data = existing.data or {}
        state = data.get("state")

        if state == ReconcilerState.DONE.value and data.get("initDataHash", "") == self.fingerprint:
            return MarkerClaim.DONE

        if (state == ReconcilerState.RUNNING.value
                and data.get("holder") != self.holder
                and not self._lease_expired(data)):
            return MarkerClaim.HELD

        if state == ReconcilerState.RUNNING.value and data.get("holder") != self.holder:
            logger.warning(f"[RECONCILER] {self.name}: taking over stale marker held by {data.get('holder')}")

        try:
            await self.k8s.replace_config_map(
                self._marker_body(
                    ReconcilerState.RUNNING.value,
                    _now().isoformat(),
                    resource_version=existing.metadata.resource_version
                ),
                self.marker_namespace
            )
            return MarkerClaim.CLAIMED
        except ApiException as e:
            if e.status == 409:
                return MarkerClaim.HELD
            raise

    async def _write_marker(self, state: str) -> None:
        try:
            existing = await self.k8s.get_config_map(self.marker_name, self.marker_namespace)
            started_at = (existing.data or {}).get("startedAt", "") if existing else ""
            body = self._marker_body(
                state,
                started_at or _now().isoformat(),
                resource_version=existing.metadata.resource_version if existing else None
            )
            if existing is None:
                await self.k8s.create_config_map(body, self.marker_namespace)
            else:
                await self.k8s.replace_config_map(body, self.marker_namespace)
        except ApiException as e:
            logger.warning(f"[RECONCILER] {self.name}: failed to write marker state {state}: {e.reason}")

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _sleep(self, seconds: float) -> bool:
        """Sleep; return True if a stop was requested meanwhile."""
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def tick(self) -> ReconcilerState:
        """One reconcile pass. Returns the state after the pass."""
        ctx = self.context
        async with ctx.lock:
            if ctx.state != ReconcilerState.NOT_STARTED:
                return ctx.state

            if not await self.probe():
                logger.debug(f"[RECONCILER] {self.name}: not ready yet")
                return ctx.state

            if self._marker_enabled:
                claim = await self._claim_marker()
                if claim == MarkerClaim.DONE:
                    logger.info(f"[RECONCILER] {self.name}: already completed (marker {self.marker_name})")
                    ctx.state = ReconcilerState.DONE
                    return ctx.state
                if claim == MarkerClaim.HELD:
                    logger.info(f"[RECONCILER] {self.name}: running on another replica, waiting")
                    return ctx.state

            ctx.state = ReconcilerState.RUNNING
            ctx.attempts += 1
            logger.info(f"[RECONCILER] {self.name}: ready, settling for {self.settle_delay}s before converging")

            if await self._sleep(self.settle_delay):
                logger.info(f"[RECONCILER] {self.name}: stopped during settle delay")
                ctx.state = ReconcilerState.NOT_STARTED
                if self._marker_enabled:
                    await self._write_marker(MARKER_STATE_FAILED)
                return ctx.state

            try:
                await self.converge()
            except Exception as e:
                ctx.state = ReconcilerState.NOT_STARTED
                ctx.last_error = str(e)
                logger.error(f"[RECONCILER] {self.name}: convergence failed (attempt {ctx.attempts}): {e}")
                if self._marker_enabled:
                    await self._write_marker(MARKER_STATE_FAILED)
                return ctx.state

            ctx.state = ReconcilerState.DONE
            ctx.last_error = None
            if self._marker_enabled:
                await self._write_marker(ReconcilerState.DONE.value)
            logger.info(f"[RECONCILER] ✅ {self.name}: convergence completed")
            return ctx.state

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> ReconcilerState:
        """Tick at the poll interval until DONE or until stop_event is set."""
        self._stop_event = stop_event
        logger.info(f"[RECONCILER] {self.name}: started (poll every {self.poll_interval}s)")

        while stop_event is None or not stop_event.is_set():
            try:
                state = await self.tick()
            except ApiException as e:
                logger.warning(f"[RECONCILER] {self.name}: cluster read failed: {e.reason}")
                state = self.context.state
            except Exception as e:
                # Connection-level failures (API server unreachable) end up here
                logger.warning(f"[RECONCILER] {self.name}: tick failed, retrying: {e}")
                state = self.context.state

            if state == ReconcilerState.DONE:
                return state

            if await self._sleep(self.poll_interval):
                break

        logger.info(f"[RECONCILER] {self.name}: stopped")
        return self.context.state


# =============================================================================
# OpenLDAP bootstrap wiring
# =============================================================================

def statefulset_ready_probe(k8s_client: KubernetesClient, name: str, namespace: str) -> Callable[[], Awaitable[bool]]:
    """Probe passing once the StatefulSet has at least one ready replica."""
    async def probe() -> bool:
        ready = await k8s_client.get_statefulset_ready_replicas(name, namespace)
        logger.debug(f"[RECONCILER] StatefulSet {namespace}/{name} ready replicas: {ready}")
        return ready >= 1
    return probe


def build_directory_reconciler(settings, k8s_client: KubernetesClient) -> ClusterReadinessReconciler:
    """Reconciler that seeds OpenLDAP once its StatefulSet is ready."""
    from ..directory import (
        DirectoryBootstrapper,
        compute_init_data_hash,
        default_init_data,
        parse_init_data,
    )

    init_data = parse_init_data(settings.ldap_init_data) or default_init_data()
    bootstrapper = DirectoryBootstrapper.from_settings(settings)

    async def converge() -> None:
        await bootstrapper.wait_for_ready(timeout=settings.ldap_ready_timeout_seconds)
        await asyncio.to_thread(bootstrapper.initialize, init_data)

    return ClusterReadinessReconciler(
        name=settings.ldap_statefulset_name,
        probe=statefulset_ready_probe(k8s_client, settings.ldap_statefulset_name, settings.ldap_namespace),
        converge=converge,
        k8s_client=k8s_client,
        marker_name=settings.reconciler_marker_name,
        marker_namespace=settings.ldap_namespace,
        fingerprint=compute_init_data_hash(init_data),
        poll_interval=settings.reconciler_poll_interval_seconds,
        settle_delay=settings.reconciler_settle_delay_seconds,
        lease_seconds=settings.reconciler_lease_seconds,
    )
