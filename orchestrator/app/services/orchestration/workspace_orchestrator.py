"""
Workspace Orchestrator

Provision, start, stop, sync and delete flows for per-user code-server
workspaces, plus the read-side queries. The cluster is the only state store:
every status returned here is projected from a fresh pod/PVC read.

Failure policy:
- Repository access is checked before any cluster mutation
- Pod and Service creation failures are fatal (ProvisionFailed)
- Istio VirtualService/DestinationRule failures are logged and returned as warnings
- Readiness timeouts are warnings, never errors
- On delete, only a PVC deletion failure is fatal (TeardownPartialFailure)
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from ...schemas import (
    CallerIdentity,
    HealthStatus,
    InstanceStats,
    ProvisionResult,
    Repository,
    WorkspaceInstance,
    WorkspaceMetadata,
    WorkspaceStatus,
)
from ..gitea_client import GiteaServiceClient, RepositoryAccessError, get_gitea_client
from .errors import (
    AccessDenied,
    ConfigurationMissing,
    ProvisionFailed,
    TeardownPartialFailure,
    WorkspaceNotFound,
)
from .kubernetes import (
    KubernetesClient,
    ReadinessOutcome,
    WorkspaceSnapshot,
    create_codeserver_pod_manifest,
    create_destination_rule_manifest,
    create_namespace_manifest,
    create_pvc_manifest,
    create_service_manifest,
    create_virtual_service_manifest,
    format_bytes,
    generate_resource_names,
    get_k8s_client,
    get_user_selector,
    metadata_annotations,
    metadata_labels,
    project_status,
    read_workspace_metadata,
    redact_url,
)
from .kubernetes.helpers import ANNOTATION_USER_ID, LABEL_USER
from .locks import KeyedLock

logger = logging.getLogger(__name__)


class WorkspaceOrchestrator:
    """
    Lifecycle flows for one code-server workspace per user.

    Check-then-create sections (PVC, existing pod check, pod/service creation)
    run under a per-user lock so concurrent calls for the same user in this
    process cannot both decide to create a pod.
    """

    def __init__(
        self,
        k8s_client: Optional[KubernetesClient] = None,
        repo_access: Optional[GiteaServiceClient] = None,
        settings=None
    ):
        if settings is None:
            from ...config import get_settings
            settings = get_settings()

        self.settings = settings
        self.k8s = k8s_client or get_k8s_client()
        self.repo_access = repo_access or get_gitea_client()
        self.namespace = settings.k8s_workspace_namespace
        self._locks = KeyedLock()

    # =========================================================================
    # SNAPSHOTS AND PROJECTION
    # =========================================================================

    async def _read_snapshot(self, names: Dict[str, str]) -> WorkspaceSnapshot:
        pod, pvc = await asyncio.gather(
            self.k8s.get_pod(names["pod"], self.namespace),
            self.k8s.get_pvc(names["pvc"], self.namespace),
        )
        return WorkspaceSnapshot(pod=pod, pvc=pvc)

    def _to_instance(
        self,
        user_id: str,
        names: Dict[str, str],
        snapshot: WorkspaceSnapshot
    ) -> Optional[WorkspaceInstance]:
        projection = project_status(snapshot)
        if projection is None:
            return None
        status, error_message = projection

        pod_meta = snapshot.pod.metadata if snapshot.pod is not None else None
        pvc_meta = snapshot.pvc.metadata if snapshot.pvc is not None else None
        metadata = read_workspace_metadata(pod_meta) or read_workspace_metadata(pvc_meta)

        owner = user_id
        for meta in (pod_meta, pvc_meta):
            if meta is not None and meta.annotations and meta.annotations.get(ANNOTATION_USER_ID):
                owner = meta.annotations[ANNOTATION_USER_ID]
                break

        created_at = None
        if pod_meta is not None and pod_meta.creation_timestamp:
            created_at = pod_meta.creation_timestamp
        elif pvc_meta is not None:
            created_at = pvc_meta.creation_timestamp

        storage_used = None
        if snapshot.pvc is not None and snapshot.pvc.status and snapshot.pvc.status.capacity:
            storage_used = snapshot.pvc.status.capacity.get("storage")

        return WorkspaceInstance(
            id=names["user"],
            user_id=owner,
            repo_name=metadata.repo_name if metadata else "",
            repo_owner=metadata.repo_owner if metadata else "",
            branch=metadata.branch if metadata else "",
            url=self.settings.workspace_url(names["user"]),
            status=status,
            created_at=created_at,
            storage_used=storage_used,
            pod_name=names["pod"],
            pvc_name=names["pvc"],
            service_name=names["service"],
            error_message=error_message,
        )

    async def _current_instance(self, user_id: str, names: Dict[str, str]) -> WorkspaceInstance:
        snapshot = await self._read_snapshot(names)
        instance = self._to_instance(user_id, names, snapshot)
        if instance is None:
            raise WorkspaceNotFound(f"workspace for {user_id} disappeared")
        return instance

    # =========================================================================
    # SHARED STEPS
    # =========================================================================

    async def _resolve_access(self, caller: CallerIdentity, metadata: WorkspaceMetadata) -> str:
        """Validate repository access, then resolve the clone URL. No cluster calls."""
        try:
            has_access = await self.repo_access.validate_access(
                caller.user_id, metadata.repo_owner, metadata.repo_name, caller.token
            )
        except RepositoryAccessError as e:
            logger.error(f"[WORKSPACE] Failed to validate repo access for {metadata.full_name}: {e}")
            raise ProvisionFailed("failed to validate repository access") from e

        if not has_access:
            raise AccessDenied(f"repository access denied: {metadata.full_name}")

        try:
            clone_url = await self.repo_access.resolve_clone_url(
                caller.user_id, metadata.repo_owner, metadata.repo_name, caller.token
            )
        except RepositoryAccessError as e:
            logger.error(f"[WORKSPACE] Failed to get clone URL for {metadata.full_name}: {e}")
            raise ProvisionFailed("failed to get repository URL") from e

        logger.debug(f"[WORKSPACE] Clone URL for {metadata.full_name}: {redact_url(clone_url)}")
        return clone_url

    async def _live_pod(self, names: Dict[str, str]):
        """
        Return the user's pod if it exists and is not terminating.

        A terminating pod is waited out so a new one can take its name.
        """
        pod = await self.k8s.get_pod(names["pod"], self.namespace)
        if pod is None:
            return None
        if pod.metadata.deletion_timestamp is None:
            return pod

        logger.info(f"[WORKSPACE] Pod {names['pod']} is terminating, waiting for it to go away")
        gone = await self.k8s.wait_for_pod_deleted(
            names["pod"],
            self.namespace,
            timeout=self.settings.pod_deletion_timeout_seconds,
            poll_interval=self.settings.readiness_poll_interval_seconds
        )
        if not gone:
            raise ProvisionFailed(f"previous instance {names['pod']} is still terminating")
        return None

    async def _launch(
        self,
        caller: CallerIdentity,
        clone_url: str,
        metadata: WorkspaceMetadata,
        names: Dict[str, str]
    ) -> List[str]:
        """Create pod and service, then the Istio objects. Returns non-fatal warnings."""
        s = self.settings
        user_id = caller.user_id
        warnings: List[str] = []

        pod = create_codeserver_pod_manifest(
            namespace=self.namespace,
            user_id=user_id,
            clone_url=clone_url,
            metadata=metadata,
            managed_by=s.managed_by,
            image=s.codeserver_image,
            git_image=s.codeserver_git_image,
            cpu_request=s.codeserver_cpu_request,
            memory_request=s.codeserver_memory_request,
            cpu_limit=s.codeserver_cpu_limit,
            memory_limit=s.codeserver_memory_limit,
            user_email=caller.email or "",
        )
        try:
            await self.k8s.ensure_pod(pod, self.namespace)
        except ApiException as e:
            logger.error(f"[WORKSPACE] Failed to create pod {names['pod']}: {e.reason}")
            raise ProvisionFailed("failed to create instance") from e

        try:
            await self.k8s.ensure_service(
                create_service_manifest(self.namespace, user_id, s.managed_by),
                self.namespace
            )
        except ApiException as e:
            logger.error(f"[WORKSPACE] Failed to create service {names['service']}: {e.reason}")
            # Without its service the pod is unreachable; remove it so a retry starts clean
            try:
                await self.k8s.delete_pod(names["pod"], self.namespace)
            except ApiException as cleanup_error:
                logger.warning(f"[WORKSPACE] Failed to roll back pod {names['pod']}: {cleanup_error.reason}")
            raise ProvisionFailed("failed to create service") from e

        if not s.k8s_enable_istio:
            return warnings

        try:
            await self.k8s.ensure_virtual_service(
                create_virtual_service_manifest(
                    self.namespace,
                    user_id,
                    s.managed_by,
                    host=s.workspace_host(names["user"]),
                    gateway=s.istio_gateway
                ),
                self.namespace
            )
        except Exception as e:
            logger.warning(f"[WORKSPACE] Failed to create VirtualService {names['virtual_service']}: {e}")
            warnings.append(f"VirtualService not created: {e}")

        try:
            await self.k8s.ensure_destination_rule(
                create_destination_rule_manifest(self.namespace, user_id, s.managed_by),
                self.namespace
            )
        except Exception as e:
            logger.warning(f"[WORKSPACE] Failed to create DestinationRule {names['destination_rule']}: {e}")
            warnings.append(f"DestinationRule not created: {e}")

        return warnings

    async def _wait_ready(self, names: Dict[str, str], cancel_event: Optional[asyncio.Event]) -> List[str]:
        result = await self.k8s.wait_for_pod_ready(
            names["pod"],
            self.namespace,
            timeout=self.settings.codeserver_timeout_seconds,
            poll_interval=self.settings.readiness_poll_interval_seconds,
            cancel_event=cancel_event
        )
        if result.outcome == ReadinessOutcome.READY:
            return []
        if result.outcome == ReadinessOutcome.FAILED:
            logger.warning(f"[WORKSPACE] Pod {names['pod']} failed to start: {result.message}")
            return [f"instance failed to start: {result.message}"]
        if result.cancelled:
            logger.warning(f"[WORKSPACE] Readiness wait for {names['pod']} cancelled")
            return ["readiness wait cancelled before the instance became ready"]
        logger.warning(f"[WORKSPACE] Pod {names['pod']} not ready within timeout")
        return [f"instance not ready within {self.settings.codeserver_timeout_seconds}s"]

    # =========================================================================
    # LIFECYCLE FLOWS
    # =========================================================================

    async def provision(
        self,
        caller: CallerIdentity,
        repo_owner: str,
        repo_name: str,
        branch: str = "",
        cancel_event: Optional[asyncio.Event] = None
    ) -> ProvisionResult:
        """
        Provision a workspace for the caller, or return the one already running.

        Args:
            caller: Authenticated caller (identity + bearer token)
            repo_owner: Repository owner
            repo_name: Repository name
            branch: Branch to check out (empty: repository default)
            cancel_event: Set to abort the readiness wait early

        Returns:
            ProvisionResult with is_new=False when a live pod already existed

        Raises:
            AccessDenied: Repository service refused access (nothing was created)
            ProvisionFailed: Storage, pod or service could not be created
        """
        user_id = caller.user_id
        names = generate_resource_names(user_id, self.namespace)
        metadata = WorkspaceMetadata(repo_owner=repo_owner, repo_name=repo_name, branch=branch or "")
        s = self.settings

        logger.info(f"[WORKSPACE] Provisioning code-server for {user_id}: {metadata.full_name} branch={branch or '<default>'}")

        clone_url = await self._resolve_access(caller, metadata)

        try:
            await self.k8s.ensure_namespace(
                create_namespace_manifest(self.namespace, s.managed_by, enable_istio=s.k8s_enable_istio)
            )
        except ApiException as e:
            logger.error(f"[WORKSPACE] Failed to ensure namespace {self.namespace}: {e.reason}")
            raise ProvisionFailed("failed to prepare environment") from e

        async with self._locks.hold(names["user"]):
            try:
                await self.k8s.ensure_pvc(
                    create_pvc_manifest(
                        self.namespace,
                        user_id,
                        s.managed_by,
                        storage_class=s.k8s_storage_class,
                        size=s.k8s_pvc_size,
                        access_mode=s.k8s_pvc_access_mode,
                        metadata=metadata
                    ),
                    self.namespace
                )
            except ApiException as e:
                logger.error(f"[WORKSPACE] Failed to create PVC {names['pvc']}: {e.reason}")
                raise ProvisionFailed("failed to create storage") from e

            existing = await self._live_pod(names)
            if existing is not None:
                logger.info(f"[WORKSPACE] Using existing instance {names['pod']} for {user_id}")
                return ProvisionResult(
                    instance=await self._current_instance(user_id, names),
                    message="Using existing instance",
                    is_new=False,
                )

            try:
                # The claim records what the workspace holds, so start works without new input
                await self.k8s.patch_pvc_metadata(
                    names["pvc"],
                    self.namespace,
                    labels=metadata_labels(metadata),
                    annotations=metadata_annotations(metadata)
                )
            except ApiException as e:
                logger.error(f"[WORKSPACE] Failed to record workspace metadata on {names['pvc']}: {e.reason}")
                raise ProvisionFailed("failed to record workspace metadata") from e

            warnings = await self._launch(caller, clone_url, metadata, names)

        warnings += await self._wait_ready(names, cancel_event)

        instance = await self._current_instance(user_id, names)
        logger.info(f"[WORKSPACE] ✅ Provisioned {names['pod']} for {user_id} (status {instance.status})")
        return ProvisionResult(
            instance=instance,
            message="Instance created successfully",
            is_new=True,
            warnings=warnings,
        )

    async def start(
        self,
        caller: CallerIdentity,
        cancel_event: Optional[asyncio.Event] = None
    ) -> WorkspaceInstance:
        """
        Start a stopped workspace from the metadata recorded on its PVC.

        Raises:
            WorkspaceNotFound: No PVC for this user
            ConfigurationMissing: PVC carries no repository metadata
            AccessDenied: Repository service refused access
            ProvisionFailed: Pod or service could not be created
        """
        user_id = caller.user_id
        names = generate_resource_names(user_id, self.namespace)

        pvc = await self.k8s.get_pvc(names["pvc"], self.namespace)
        if pvc is None:
            raise WorkspaceNotFound(f"no existing workspace found for {user_id}")

        metadata = read_workspace_metadata(pvc.metadata)
        if metadata is None:
            raise ConfigurationMissing(f"workspace metadata missing on {names['pvc']}")

        logger.info(f"[WORKSPACE] Starting code-server for {user_id}: {metadata.full_name}")

        clone_url = await self._resolve_access(caller, metadata)

        async with self._locks.hold(names["user"]):
            existing = await self._live_pod(names)
            if existing is not None:
                logger.info(f"[WORKSPACE] Instance {names['pod']} already running")
                return await self._current_instance(user_id, names)

            warnings = await self._launch(caller, clone_url, metadata, names)

        warnings += await self._wait_ready(names, cancel_event)
        for warning in warnings:
            logger.warning(f"[WORKSPACE] Start of {names['pod']}: {warning}")

        return await self._current_instance(user_id, names)

    async def stop(self, user_id: str) -> bool:
        """
        Stop a workspace: delete pod, service and VirtualService. The PVC stays.

        Only a pod deletion failure fails the call.
        """
        names = generate_resource_names(user_id, self.namespace)
        logger.info(f"[WORKSPACE] Stopping code-server for {user_id}")

        async with self._locks.hold(names["user"]):
            await self.k8s.delete_pod(names["pod"], self.namespace)

            try:
                await self.k8s.delete_service(names["service"], self.namespace)
            except ApiException as e:
                logger.warning(f"[WORKSPACE] Failed to delete service {names['service']}: {e.reason}")

            if self.settings.k8s_enable_istio:
                try:
                    await self.k8s.delete_virtual_service(names["virtual_service"], self.namespace)
                except ApiException as e:
                    logger.warning(f"[WORKSPACE] Failed to delete VirtualService {names['virtual_service']}: {e.reason}")

        return True

    async def delete(self, user_id: str) -> bool:
        """
        Delete a workspace and its data.

        Pod, service and Istio objects are removed best-effort; the PVC is
        removed last and its failure raises TeardownPartialFailure.
        """
        names = generate_resource_names(user_id, self.namespace)
        logger.info(f"[WORKSPACE] Deleting code-server workspace for {user_id}")

        steps: List[Tuple[str, str, object]] = [
            ("pod", names["pod"], self.k8s.delete_pod),
            ("service", names["service"], self.k8s.delete_service),
        ]
        if self.settings.k8s_enable_istio:
            steps += [
                ("virtualservice", names["virtual_service"], self.k8s.delete_virtual_service),
                ("destinationrule", names["destination_rule"], self.k8s.delete_destination_rule),
            ]

        removed: List[str] = []
        failed: List[str] = []

        async with self._locks.hold(names["user"]):
            for kind, name, delete in steps:
                try:
                    await delete(name, self.namespace)
                    removed.append(f"{kind}/{name}")
                except ApiException as e:
                    logger.warning(f"[WORKSPACE] Failed to delete {kind} {name}: {e.reason}")
                    failed.append(f"{kind}/{name}")

            try:
                await self.k8s.delete_pvc(names["pvc"], self.namespace)
            except ApiException as e:
                logger.error(f"[WORKSPACE] Failed to delete PVC {names['pvc']}: {e.reason}")
                raise TeardownPartialFailure(
                    f"storage for {user_id} could not be deleted",
                    removed=removed,
                    failed=failed + [f"pvc/{names['pvc']}"]
                ) from e

        logger.info(f"[WORKSPACE] ✅ Deleted workspace for {user_id}")
        return True

    async def sync(self, caller: CallerIdentity) -> bool:
        """
        Recreate the pod with a freshly resolved clone URL.

        Refreshes the embedded credential and pulls the latest commits via the
        init container rather than mutating the running pod.
        """
        user_id = caller.user_id
        names = generate_resource_names(user_id, self.namespace)

        pod = await self.k8s.get_pod(names["pod"], self.namespace)
        if pod is None:
            raise WorkspaceNotFound(f"instance not found for {user_id}")

        metadata = read_workspace_metadata(pod.metadata)
        if metadata is None:
            raise ConfigurationMissing(f"repository annotations missing on {names['pod']}")

        logger.info(f"[WORKSPACE] Syncing {metadata.full_name} for {user_id}")

        clone_url = await self._resolve_access(caller, metadata)

        async with self._locks.hold(names["user"]):
            await self.k8s.delete_pod(names["pod"], self.namespace)
            gone = await self.k8s.wait_for_pod_deleted(
                names["pod"],
                self.namespace,
                timeout=self.settings.pod_deletion_timeout_seconds,
                poll_interval=self.settings.readiness_poll_interval_seconds
            )
            if not gone:
                raise ProvisionFailed(f"pod {names['pod']} did not terminate in time")

            warnings = await self._launch(caller, clone_url, metadata, names)

        for warning in warnings:
            logger.warning(f"[WORKSPACE] Sync of {names['pod']}: {warning}")
        return True

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_instance(self, user_id: str) -> Optional[WorkspaceInstance]:
        names = generate_resource_names(user_id, self.namespace)
        snapshot = await self._read_snapshot(names)
        return self._to_instance(user_id, names, snapshot)

    async def get_status(self, user_id: str) -> Optional[WorkspaceStatus]:
        instance = await self.get_instance(user_id)
        return instance.status if instance else None

    async def get_logs(self, user_id: str, lines: int = 100) -> str:
        names = generate_resource_names(user_id, self.namespace)
        pod = await self.k8s.get_pod(names["pod"], self.namespace)
        if pod is None:
            raise WorkspaceNotFound(f"instance not found for {user_id}")
        return await self.k8s.get_pod_logs(names["pod"], self.namespace, tail_lines=lines)

    async def _list(self, user_id: Optional[str] = None) -> List[Tuple[WorkspaceSnapshot, str, Dict[str, str]]]:
        selector = get_user_selector(self.settings.managed_by, user_id)
        pods, pvcs = await asyncio.gather(
            self.k8s.list_pods(self.namespace, selector),
            self.k8s.list_pvcs(self.namespace, selector),
        )

        grouped: Dict[str, Dict[str, object]] = defaultdict(dict)
        for pod in pods:
            key = (pod.metadata.labels or {}).get(LABEL_USER)
            if key:
                grouped[key]["pod"] = pod
        for pvc in pvcs:
            key = (pvc.metadata.labels or {}).get(LABEL_USER)
            if key:
                grouped[key]["pvc"] = pvc

        result = []
        for key in sorted(grouped):
            entry = grouped[key]
            snapshot = WorkspaceSnapshot(pod=entry.get("pod"), pvc=entry.get("pvc"))
            raw_user = user_id or key
            for obj in (snapshot.pod, snapshot.pvc):
                if obj is not None and obj.metadata.annotations and obj.metadata.annotations.get(ANNOTATION_USER_ID):
                    raw_user = obj.metadata.annotations[ANNOTATION_USER_ID]
                    break
            result.append((snapshot, raw_user, generate_resource_names(raw_user, self.namespace)))
        return result

    async def list_mine(self, user_id: str) -> List[WorkspaceInstance]:
        """The caller's workspaces: a live pod, or a stopped one kept by its PVC."""
        instances = []
        for snapshot, raw_user, names in await self._list(user_id):
            instance = self._to_instance(raw_user, names, snapshot)
            if instance is not None:
                instances.append(instance)
        return instances

    async def list_all(self) -> List[WorkspaceInstance]:
        instances = []
        for snapshot, raw_user, names in await self._list():
            instance = self._to_instance(raw_user, names, snapshot)
            if instance is not None:
                instances.append(instance)
        return instances

    async def stats(self) -> InstanceStats:
        """Counts by status across all workspaces plus total provisioned storage."""
        entries = await self._list()
        stats = InstanceStats()
        total_bytes = 0

        for snapshot, raw_user, names in entries:
            if snapshot.pvc is not None and snapshot.pvc.status and snapshot.pvc.status.capacity:
                storage = snapshot.pvc.status.capacity.get("storage")
                if storage:
                    total_bytes += int(parse_quantity(storage))

            projection = project_status(snapshot)
            if projection is None:
                continue
            status = projection[0]
            stats.total_instances += 1
            if status == WorkspaceStatus.RUNNING:
                stats.running_instances += 1
            elif status == WorkspaceStatus.STOPPED:
                stats.stopped_instances += 1
            elif status in (WorkspaceStatus.PENDING, WorkspaceStatus.STARTING):
                stats.pending_instances += 1
            elif status == WorkspaceStatus.ERROR:
                stats.error_instances += 1

        stats.total_storage_used = format_bytes(total_bytes)
        return stats

    async def list_my_repositories(self, caller: CallerIdentity) -> List[Repository]:
        return await self.repo_access.list_my_repositories(caller.token)

    async def health_check(self) -> HealthStatus:
        kubernetes_ok, gitea_ok = await asyncio.gather(
            self.k8s.health_check(),
            self.repo_access.health_check(),
        )
        details = {
            "kubernetes": "ok" if kubernetes_ok else "unreachable",
            "gitea_service": "ok" if gitea_ok else "unreachable",
        }
        if kubernetes_ok and gitea_ok:
            status = "healthy"
        elif kubernetes_ok:
            status = "degraded"
        else:
            status = "unhealthy"
        return HealthStatus(status=status, kubernetes=kubernetes_ok, gitea_access=gitea_ok, details=details)


# Global instance - lazily initialized
_orchestrator_instance: Optional[WorkspaceOrchestrator] = None


def get_workspace_orchestrator() -> WorkspaceOrchestrator:
    """Get or create the global workspace orchestrator."""
    global _orchestrator_instance
    if _orchestrator_instance is None:
        _orchestrator_instance = WorkspaceOrchestrator()
    return _orchestrator_instance
