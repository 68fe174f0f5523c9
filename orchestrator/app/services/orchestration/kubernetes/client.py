"""
Kubernetes Client for Managing Code-Server Workspaces

This module provides the interface to the Kubernetes API used by the
workspace orchestrator and the cluster readiness reconciler:
- Idempotent ensure-present / ensure-absent primitives per resource kind
- Bounded readiness polling with cancellation
- Reads and label-selected listings for status projection
- StatefulSet readiness and bootstrap marker ConfigMaps for the reconciler
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from dataclasses import dataclass
from enum import Enum
import logging
import asyncio
from typing import Dict, Optional, Any, List

from .helpers import (
    ISTIO_GROUP,
    ISTIO_VERSION,
    VIRTUAL_SERVICE_PLURAL,
    DESTINATION_RULE_PLURAL,
)

logger = logging.getLogger(__name__)


class ReadinessOutcome(str, Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass
class ReadinessResult:
    """
    Outcome of a readiness wait. A timeout is a value, not an exception.

    `cancelled` is set when the wait was cut short by the caller's
    cancellation signal (reported as TIMEOUT).
    """
    outcome: ReadinessOutcome
    waited_seconds: float = 0.0
    cancelled: bool = False
    message: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome == ReadinessOutcome.READY


class KubernetesClient:
    """
    Manages Kubernetes resources for per-user code-server workspaces.

    Ensure primitives follow one contract: get, create if missing, patch
    mutable fields if present, treat 409 on create as success (re-fetch),
    treat 404 on delete as success. Any other API failure propagates as
    ApiException. No locking happens here.
    """

    def __init__(self):
        """Initialize Kubernetes client from the configured kubeconfig, in-cluster config, or default kubeconfig."""
        from ....config import get_settings

        self.settings = get_settings()

        if self.settings.kubeconfig:
            config.load_kube_config(config_file=self.settings.kubeconfig)
            logger.info(f"Loaded kubeconfig from {self.settings.kubeconfig}")
        else:
            try:
                # Try in-cluster config first (for production)
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes configuration")
            except config.ConfigException:
                try:
                    # Fall back to kubeconfig (for development)
                    config.load_kube_config()
                    logger.info("Loaded kubeconfig for development")
                except config.ConfigException as e:
                    logger.error(f"Failed to load Kubernetes config: {e}")
                    raise RuntimeError("Cannot load Kubernetes configuration") from e

        # Initialize API clients
        self.core_v1 = client.CoreV1Api()
        self.apps_v1 = client.AppsV1Api()
        self.custom_objects = client.CustomObjectsApi()
        self.version_api = client.VersionApi()

        self.namespace = self.settings.k8s_workspace_namespace

        logger.info(f"Kubernetes client initialized - Workspace namespace: {self.namespace}")

    # =========================================================================
    # NAMESPACE MANAGEMENT
    # =========================================================================

    async def ensure_namespace(self, namespace_manifest: client.V1Namespace) -> None:
        """Create a namespace if it doesn't exist."""
        namespace = namespace_manifest.metadata.name
        try:
            await asyncio.to_thread(
                self.core_v1.read_namespace,
                name=namespace
            )
            logger.debug(f"[K8S] Namespace {namespace} already exists")
        except ApiException as e:
            if e.status != 404:
                raise
            try:
                await asyncio.to_thread(
                    self.core_v1.create_namespace,
                    body=namespace_manifest
                )
                logger.info(f"[K8S] ✅ Created namespace: {namespace}")
            except ApiException as create_error:
                if create_error.status != 409:
                    raise
                logger.debug(f"[K8S] Namespace {namespace} created concurrently")

    # =========================================================================
    # PVC MANAGEMENT
    # =========================================================================

    async def get_pvc(self, name: str, namespace: str) -> Optional[client.V1PersistentVolumeClaim]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_persistent_volume_claim,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def ensure_pvc(
        self,
        pvc: client.V1PersistentVolumeClaim,
        namespace: str
    ) -> client.V1PersistentVolumeClaim:
        """
        Create a PVC if it doesn't exist.

        An existing claim is reused as-is: claims are never resized or
        recreated here, so user data is never at risk from an ensure call.
        """
        pvc_name = pvc.metadata.name
        existing = await self.get_pvc(pvc_name, namespace)
        if existing is not None:
            logger.info(f"[K8S] PVC {pvc_name} already exists in {namespace}, reusing")
            return existing

        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_persistent_volume_claim,
                namespace=namespace,
                body=pvc
            )
            logger.info(f"[K8S] ✅ Created PVC: {pvc_name} in {namespace}")
            return created
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] PVC {pvc_name} created concurrently, reusing")
                return await self.get_pvc(pvc_name, namespace)
            raise

    async def patch_pvc_metadata(
        self,
        name: str,
        namespace: str,
        labels: Dict[str, str],
        annotations: Dict[str, str]
    ) -> None:
        """Merge labels and annotations into an existing PVC (spec untouched)."""
        body = {"metadata": {"labels": labels, "annotations": annotations}}
        await asyncio.to_thread(
            self.core_v1.patch_namespaced_persistent_volume_claim,
            name=name,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] Updated PVC metadata: {name} in {namespace}")

    async def delete_pvc(self, name: str, namespace: str) -> None:
        """Delete a PVC."""
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_persistent_volume_claim,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted PVC: {name} in {namespace}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] PVC {name} already gone")

    async def list_pvcs(self, namespace: str, label_selector: str) -> List[client.V1PersistentVolumeClaim]:
        result = await asyncio.to_thread(
            self.core_v1.list_namespaced_persistent_volume_claim,
            namespace=namespace,
            label_selector=label_selector
        )
        return result.items

    # =========================================================================
    # POD MANAGEMENT
    # =========================================================================

    async def get_pod(self, name: str, namespace: str) -> Optional[client.V1Pod]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_pod,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def ensure_pod(self, pod: client.V1Pod, namespace: str) -> client.V1Pod:
        """
        Create a Pod if it doesn't exist.

        Pod specs are immutable, so an existing pod only gets its labels and
        annotations patched.
        """
        pod_name = pod.metadata.name
        existing = await self.get_pod(pod_name, namespace)
        if existing is not None:
            logger.info(f"[K8S] Pod {pod_name} exists in {namespace}, updating metadata...")
            return await asyncio.to_thread(
                self.core_v1.patch_namespaced_pod,
                name=pod_name,
                namespace=namespace,
                body={"metadata": {"labels": pod.metadata.labels, "annotations": pod.metadata.annotations}}
            )

        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_pod,
                namespace=namespace,
                body=pod
            )
            logger.info(f"[K8S] ✅ Created pod: {pod_name} in {namespace}")
            return created
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Pod {pod_name} created concurrently, re-reading")
                return await self.get_pod(pod_name, namespace)
            raise

    async def delete_pod(self, name: str, namespace: str) -> None:
        """Delete a Pod."""
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_pod,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted pod: {name} in {namespace}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] Pod {name} already gone")

    async def list_pods(self, namespace: str, label_selector: str) -> List[client.V1Pod]:
        result = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return result.items

    async def get_pod_logs(
        self,
        name: str,
        namespace: str,
        container: str = "code-server",
        tail_lines: int = 100
    ) -> str:
        """Fetch the tail of a container's log."""
        return await asyncio.to_thread(
            self.core_v1.read_namespaced_pod_log,
            name=name,
            namespace=namespace,
            container=container,
            tail_lines=tail_lines
        )

    def is_pod_ready(self, pod: client.V1Pod) -> bool:
        """Check if a pod is ready."""
        if not pod.status or not pod.status.conditions:
            return False

        for condition in pod.status.conditions:
            if condition.type == "Ready":
                return condition.status == "True"
        return False

    # =========================================================================
    # SERVICE MANAGEMENT
    # =========================================================================

    async def get_service(self, name: str, namespace: str) -> Optional[client.V1Service]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_service,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def ensure_service(self, service: client.V1Service, namespace: str) -> client.V1Service:
        """Create or update a Service."""
        service_name = service.metadata.name
        existing = await self.get_service(service_name, namespace)
        if existing is not None:
            logger.info(f"[K8S] Service {service_name} exists in {namespace}, updating...")
            return await asyncio.to_thread(
                self.core_v1.patch_namespaced_service,
                name=service_name,
                namespace=namespace,
                body=service
            )

        try:
            created = await asyncio.to_thread(
                self.core_v1.create_namespaced_service,
                namespace=namespace,
                body=service
            )
            logger.info(f"[K8S] ✅ Created service: {service_name} in {namespace}")
            return created
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Service {service_name} created concurrently, re-reading")
                return await self.get_service(service_name, namespace)
            raise

    async def delete_service(self, name: str, namespace: str) -> None:
        """Delete a Service."""
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_service,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted service: {name} in {namespace}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] Service {name} already gone")

    # =========================================================================
    # ISTIO (CUSTOM OBJECTS)
    # =========================================================================

    async def _get_custom_object(self, plural: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object,
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=namespace,
                plural=plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def _ensure_custom_object(self, plural: str, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        kind = body.get("kind", plural)
        name = body["metadata"]["name"]

        existing = await self._get_custom_object(plural, name, namespace)
        if existing is not None:
            logger.info(f"[K8S] {kind} {name} exists in {namespace}, updating...")
            return await asyncio.to_thread(
                self.custom_objects.patch_namespaced_custom_object,
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=namespace,
                plural=plural,
                name=name,
                body={"spec": body["spec"]}
            )

        try:
            created = await asyncio.to_thread(
                self.custom_objects.create_namespaced_custom_object,
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=namespace,
                plural=plural,
                body=body
            )
            logger.info(f"[K8S] ✅ Created {kind}: {name} in {namespace}")
            return created
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] {kind} {name} created concurrently, re-reading")
                return await self._get_custom_object(plural, name, namespace)
            raise

    async def _delete_custom_object(self, plural: str, name: str, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.custom_objects.delete_namespaced_custom_object,
                group=ISTIO_GROUP,
                version=ISTIO_VERSION,
                namespace=namespace,
                plural=plural,
                name=name
            )
            logger.info(f"[K8S] Deleted {plural}/{name} in {namespace}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] {plural}/{name} already gone")

    async def ensure_virtual_service(self, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        """Create or update an Istio VirtualService (hosts, routes, timeouts, retries)."""
        return await self._ensure_custom_object(VIRTUAL_SERVICE_PLURAL, body, namespace)

    async def delete_virtual_service(self, name: str, namespace: str) -> None:
        await self._delete_custom_object(VIRTUAL_SERVICE_PLURAL, name, namespace)

    async def ensure_destination_rule(self, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        """Create or update an Istio DestinationRule."""
        return await self._ensure_custom_object(DESTINATION_RULE_PLURAL, body, namespace)

    async def delete_destination_rule(self, name: str, namespace: str) -> None:
        await self._delete_custom_object(DESTINATION_RULE_PLURAL, name, namespace)

    # =========================================================================
    # READINESS
    # =========================================================================

    @staticmethod
    async def _sleep_or_cancel(seconds: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for `seconds`; return True if the cancel event fired first."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def wait_for_pod_ready(
        self,
        name: str,
        namespace: str,
        timeout: float,
        poll_interval: float = 2.0,
        cancel_event: Optional[asyncio.Event] = None
    ) -> ReadinessResult:
        """
        Poll a pod until its Ready condition holds.

        Never raises on timeout: returns TIMEOUT when the deadline elapses or
        the cancel event fires, FAILED as soon as the pod reaches phase Failed.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return ReadinessResult(ReadinessOutcome.TIMEOUT, loop.time() - start, cancelled=True)

            try:
                pod = await self.get_pod(name, namespace)
                if pod is not None:
                    if self.is_pod_ready(pod):
                        waited = loop.time() - start
                        logger.info(f"[K8S] Pod {name} is ready after {waited:.1f}s")
                        return ReadinessResult(ReadinessOutcome.READY, waited)
                    if pod.status and pod.status.phase == "Failed":
                        message = pod.status.message or pod.status.reason or "pod failed"
                        logger.warning(f"[K8S] Pod {name} failed while waiting for readiness: {message}")
                        return ReadinessResult(ReadinessOutcome.FAILED, loop.time() - start, message=message)
            except ApiException as e:
                logger.warning(f"[K8S] Error checking pod status: {e.reason}")
            except Exception as e:
                logger.warning(f"[K8S] Error reaching API server while waiting for pod {name}: {e}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"[K8S] Pod {name} did not become ready within {timeout}s")
                return ReadinessResult(ReadinessOutcome.TIMEOUT, loop.time() - start)

            if await self._sleep_or_cancel(min(poll_interval, remaining), cancel_event):
                logger.info(f"[K8S] Readiness wait for pod {name} cancelled")
                return ReadinessResult(ReadinessOutcome.TIMEOUT, loop.time() - start, cancelled=True)

    async def wait_for_pod_deleted(
        self,
        name: str,
        namespace: str,
        timeout: float,
        poll_interval: float = 2.0
    ) -> bool:
        """Poll until a pod is gone. Returns False if it still exists at the deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.get_pod(name, namespace) is None:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"[K8S] Pod {name} still present after {timeout}s")
                return False
            await asyncio.sleep(min(poll_interval, remaining))

    # =========================================================================
    # CLUSTER HEALTH
    # =========================================================================

    async def health_check(self) -> bool:
        """Return True if the API server answers a version request."""
        try:
            version = await asyncio.to_thread(self.version_api.get_code)
            logger.debug(f"[K8S] API server version: {version.git_version}")
            return True
        except Exception as e:
            logger.error(f"[K8S] Health check failed: {e}")
            return False

    # =========================================================================
    # RECONCILER SUPPORT
    # =========================================================================

    async def get_statefulset_ready_replicas(self, name: str, namespace: str) -> int:
        """Ready replica count of a StatefulSet, 0 if it does not exist yet."""
        try:
            statefulset = await asyncio.to_thread(
                self.apps_v1.read_namespaced_stateful_set,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return 0
            raise
        return (statefulset.status.ready_replicas or 0) if statefulset.status else 0

    async def get_config_map(self, name: str, namespace: str) -> Optional[client.V1ConfigMap]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_config_map,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_config_map(self, config_map: client.V1ConfigMap, namespace: str) -> client.V1ConfigMap:
        """Create a ConfigMap. A 409 is raised to the caller: creation is used as a claim."""
        created = await asyncio.to_thread(
            self.core_v1.create_namespaced_config_map,
            namespace=namespace,
            body=config_map
        )
        logger.info(f"[K8S] ✅ Created ConfigMap: {config_map.metadata.name} in {namespace}")
        return created

    async def replace_config_map(self, config_map: client.V1ConfigMap, namespace: str) -> client.V1ConfigMap:
        """
        Replace a ConfigMap.

        When metadata.resource_version is set the API server rejects the write
        with 409 if the object changed since it was read.
        """
        return await asyncio.to_thread(
            self.core_v1.replace_namespaced_config_map,
            name=config_map.metadata.name,
            namespace=namespace,
            body=config_map
        )


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
