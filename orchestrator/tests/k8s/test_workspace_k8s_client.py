"""
Unit tests for the Kubernetes client's ensure/absent primitives and waiters.

The API objects are mocked and asyncio.to_thread is replaced with a direct
call, so these tests exercise the 404/409 handling without a cluster.
"""

import asyncio
import pytest
from unittest.mock import Mock, patch

pytest.importorskip("kubernetes")

from kubernetes import client
from kubernetes.client.rest import ApiException

from app.services.orchestration.kubernetes.client import (
    KubernetesClient,
    ReadinessOutcome,
)
from app.services.orchestration.kubernetes.helpers import (
    create_pvc_manifest,
    create_service_manifest,
    create_virtual_service_manifest,
)

NAMESPACE = "codeserver-instances"


async def _run_inline(func, *args, **kwargs):
    return func(*args, **kwargs)


@pytest.fixture
def k8s():
    """KubernetesClient with mocked API objects."""
    with patch('app.services.orchestration.kubernetes.client.config'):
        k8s_client = KubernetesClient()
    k8s_client.core_v1 = Mock()
    k8s_client.apps_v1 = Mock()
    k8s_client.custom_objects = Mock()
    k8s_client.version_api = Mock()
    with patch('asyncio.to_thread', new=_run_inline):
        yield k8s_client


def make_pod(ready=False, phase="Running", message=None):
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name="code-server-alice"),
        status=client.V1PodStatus(
            phase=phase,
            message=message,
            conditions=[client.V1PodCondition(type="Ready", status="True" if ready else "False")]
        )
    )


@pytest.mark.unit
@pytest.mark.kubernetes
class TestEnsurePrimitives:

    @pytest.mark.asyncio
    async def test_ensure_pvc_creates_when_missing(self, k8s):
        pvc = create_pvc_manifest(NAMESPACE, "alice", "codeserver-service", "standard")
        k8s.core_v1.read_namespaced_persistent_volume_claim.side_effect = ApiException(status=404)
        k8s.core_v1.create_namespaced_persistent_volume_claim.return_value = pvc

        result = await k8s.ensure_pvc(pvc, NAMESPACE)

        assert result is pvc
        k8s.core_v1.create_namespaced_persistent_volume_claim.assert_called_once_with(
            namespace=NAMESPACE, body=pvc
        )

    @pytest.mark.asyncio
    async def test_ensure_pvc_reuses_existing(self, k8s):
        pvc = create_pvc_manifest(NAMESPACE, "alice", "codeserver-service", "standard")
        existing = Mock()
        k8s.core_v1.read_namespaced_persistent_volume_claim.return_value = existing

        result = await k8s.ensure_pvc(pvc, NAMESPACE)

        assert result is existing
        k8s.core_v1.create_namespaced_persistent_volume_claim.assert_not_called()
        k8s.core_v1.patch_namespaced_persistent_volume_claim.assert_not_called()

    @pytest.mark.asyncio
    async def test_ensure_pvc_conflict_refetches(self, k8s):
        pvc = create_pvc_manifest(NAMESPACE, "alice", "codeserver-service", "standard")
        existing = Mock()
        k8s.core_v1.read_namespaced_persistent_volume_claim.side_effect = [ApiException(status=404), existing]
        k8s.core_v1.create_namespaced_persistent_volume_claim.side_effect = ApiException(status=409)

        result = await k8s.ensure_pvc(pvc, NAMESPACE)

        assert result is existing

    @pytest.mark.asyncio
    async def test_ensure_service_patches_existing(self, k8s):
        svc = create_service_manifest(NAMESPACE, "alice", "codeserver-service")
        k8s.core_v1.read_namespaced_service.return_value = Mock()

        await k8s.ensure_service(svc, NAMESPACE)

        k8s.core_v1.patch_namespaced_service.assert_called_once()
        k8s.core_v1.create_namespaced_service.assert_not_called()

    @pytest.mark.asyncio
    async def test_ensure_service_surfaces_other_errors(self, k8s):
        svc = create_service_manifest(NAMESPACE, "alice", "codeserver-service")
        k8s.core_v1.read_namespaced_service.side_effect = ApiException(status=404)
        k8s.core_v1.create_namespaced_service.side_effect = ApiException(status=500)

        with pytest.raises(ApiException) as exc_info:
            await k8s.ensure_service(svc, NAMESPACE)

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_ensure_virtual_service_creates(self, k8s):
        body = create_virtual_service_manifest(NAMESPACE, "alice", "codeserver-service", "code-alice.example", "gw")
        k8s.custom_objects.get_namespaced_custom_object.side_effect = ApiException(status=404)
        k8s.custom_objects.create_namespaced_custom_object.return_value = body

        await k8s.ensure_virtual_service(body, NAMESPACE)

        kwargs = k8s.custom_objects.create_namespaced_custom_object.call_args.kwargs
        assert kwargs["group"] == "networking.istio.io"
        assert kwargs["version"] == "v1beta1"
        assert kwargs["plural"] == "virtualservices"
        assert kwargs["body"] is body

    @pytest.mark.asyncio
    async def test_ensure_virtual_service_patches_spec(self, k8s):
        body = create_virtual_service_manifest(NAMESPACE, "alice", "codeserver-service", "code-alice.example", "gw")
        k8s.custom_objects.get_namespaced_custom_object.return_value = {"metadata": {"name": "code-server-alice"}}

        await k8s.ensure_virtual_service(body, NAMESPACE)

        kwargs = k8s.custom_objects.patch_namespaced_custom_object.call_args.kwargs
        assert kwargs["name"] == "code-server-alice"
        assert kwargs["body"] == {"spec": body["spec"]}

    @pytest.mark.asyncio
    async def test_delete_ignores_not_found(self, k8s):
        k8s.core_v1.delete_namespaced_pod.side_effect = ApiException(status=404)
        k8s.core_v1.delete_namespaced_service.side_effect = ApiException(status=404)
        k8s.custom_objects.delete_namespaced_custom_object.side_effect = ApiException(status=404)

        await k8s.delete_pod("code-server-alice", NAMESPACE)
        await k8s.delete_service("code-server-alice", NAMESPACE)
        await k8s.delete_virtual_service("code-server-alice", NAMESPACE)
        await k8s.delete_destination_rule("code-server-alice", NAMESPACE)

    @pytest.mark.asyncio
    async def test_delete_pvc_surfaces_other_errors(self, k8s):
        k8s.core_v1.delete_namespaced_persistent_volume_claim.side_effect = ApiException(status=403)

        with pytest.raises(ApiException):
            await k8s.delete_pvc("workspace-alice", NAMESPACE)

    @pytest.mark.asyncio
    async def test_get_pod_returns_none_when_missing(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = ApiException(status=404)

        assert await k8s.get_pod("code-server-alice", NAMESPACE) is None

    @pytest.mark.asyncio
    async def test_ensure_namespace_creates_once(self, k8s):
        ns = client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE))
        k8s.core_v1.read_namespace.side_effect = ApiException(status=404)

        await k8s.ensure_namespace(ns)

        k8s.core_v1.create_namespace.assert_called_once_with(body=ns)


@pytest.mark.unit
@pytest.mark.kubernetes
class TestReadinessWaiter:

    @pytest.mark.asyncio
    async def test_returns_ready_when_condition_holds(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = [make_pod(ready=False), make_pod(ready=True)]

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01)

        assert result.outcome == ReadinessOutcome.READY
        assert result.ready is True

    @pytest.mark.asyncio
    async def test_returns_timeout_instead_of_raising(self, k8s):
        k8s.core_v1.read_namespaced_pod.return_value = make_pod(ready=False)

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=0.05, poll_interval=0.01)

        assert result.outcome == ReadinessOutcome.TIMEOUT
        assert result.cancelled is False

    @pytest.mark.asyncio
    async def test_failed_pod_returns_early(self, k8s):
        k8s.core_v1.read_namespaced_pod.return_value = make_pod(phase="Failed", message="Evicted")

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01)

        assert result.outcome == ReadinessOutcome.FAILED
        assert result.message == "Evicted"

    @pytest.mark.asyncio
    async def test_cancellation_returns_timeout(self, k8s):
        k8s.core_v1.read_namespaced_pod.return_value = make_pod(ready=False)
        cancel = asyncio.Event()
        cancel.set()

        result = await k8s.wait_for_pod_ready(
            "code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01, cancel_event=cancel
        )

        assert result.outcome == ReadinessOutcome.TIMEOUT
        assert result.cancelled is True

    @pytest.mark.asyncio
    async def test_connection_errors_end_in_timeout(self, k8s):
        from urllib3.exceptions import MaxRetryError

        k8s.core_v1.read_namespaced_pod.side_effect = MaxRetryError(None, "/api/v1/pods", reason="connection refused")

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=0.05, poll_interval=0.01)

        assert result.outcome == ReadinessOutcome.TIMEOUT
        assert result.cancelled is False

    @pytest.mark.asyncio
    async def test_connection_error_then_ready(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = [ConnectionResetError("reset by peer"), make_pod(ready=True)]

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01)

        assert result.ready is True

    @pytest.mark.asyncio
    async def test_missing_pod_keeps_polling(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = [ApiException(status=404), make_pod(ready=True)]

        result = await k8s.wait_for_pod_ready("code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01)

        assert result.ready is True

    @pytest.mark.asyncio
    async def test_wait_for_pod_deleted(self, k8s):
        k8s.core_v1.read_namespaced_pod.side_effect = [make_pod(), ApiException(status=404)]

        assert await k8s.wait_for_pod_deleted("code-server-alice", NAMESPACE, timeout=5, poll_interval=0.01) is True


@pytest.mark.unit
@pytest.mark.kubernetes
class TestClusterReads:

    @pytest.mark.asyncio
    async def test_statefulset_ready_replicas(self, k8s):
        k8s.apps_v1.read_namespaced_stateful_set.return_value = client.V1StatefulSet(
            status=client.V1StatefulSetStatus(replicas=1, ready_replicas=1)
        )

        assert await k8s.get_statefulset_ready_replicas("openldap", "dev-platform") == 1

    @pytest.mark.asyncio
    async def test_statefulset_missing_counts_as_zero(self, k8s):
        k8s.apps_v1.read_namespaced_stateful_set.side_effect = ApiException(status=404)

        assert await k8s.get_statefulset_ready_replicas("openldap", "dev-platform") == 0

    @pytest.mark.asyncio
    async def test_health_check(self, k8s):
        k8s.version_api.get_code.return_value = Mock(git_version="v1.29.0")
        assert await k8s.health_check() is True

        k8s.version_api.get_code.side_effect = Exception("connection refused")
        assert await k8s.health_check() is False
