"""
Unit tests for workspace status projection.

The projection is a pure function of a pod/PVC snapshot, so every row of the
status table is checked with hand-built Kubernetes objects.
"""

import pytest
from datetime import datetime, timezone

pytest.importorskip("kubernetes")

from kubernetes import client

from app.schemas import WorkspaceStatus
from app.services.orchestration.kubernetes.status import (
    WorkspaceSnapshot,
    project_pod,
    project_status,
)


def make_pod(phase="Running", ready=None, waiting_reason=None, waiting_message=None, deleting=False, message=None,
             init=False):
    conditions = None
    if ready is not None:
        conditions = [client.V1PodCondition(type="Ready", status="True" if ready else "False")]

    waiting_statuses = None
    if waiting_reason is not None:
        waiting_statuses = [
            client.V1ContainerStatus(
                name="git-clone" if init else "code-server",
                image="codercom/code-server:latest",
                image_id="",
                ready=False,
                restart_count=3,
                state=client.V1ContainerState(
                    waiting=client.V1ContainerStateWaiting(reason=waiting_reason, message=waiting_message)
                )
            )
        ]

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name="code-server-alice",
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None
        ),
        status=client.V1PodStatus(
            phase=phase,
            conditions=conditions,
            init_container_statuses=waiting_statuses if init else None,
            container_statuses=None if init else waiting_statuses,
            message=message
        )
    )


def make_pvc(with_repo=True):
    labels = {"app": "code-server", "user": "alice"}
    if with_repo:
        labels.update({"repo": "backend", "repo-owner": "acme"})
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name="workspace-alice", labels=labels)
    )


@pytest.mark.unit
class TestStatusProjection:

    def test_running_and_ready(self):
        status, error = project_pod(make_pod("Running", ready=True))

        assert status == WorkspaceStatus.RUNNING
        assert error is None

    def test_running_not_ready_is_starting(self):
        status, _ = project_pod(make_pod("Running", ready=False))
        assert status == WorkspaceStatus.STARTING

    def test_pending_is_pending(self):
        status, _ = project_pod(make_pod("Pending"))
        assert status == WorkspaceStatus.PENDING

    def test_pending_with_waiting_container_is_starting(self):
        status, _ = project_pod(make_pod("Pending", waiting_reason="PodInitializing"))
        assert status == WorkspaceStatus.STARTING

    def test_pending_on_init_containers_is_pending(self):
        status, error = project_pod(make_pod("Pending", waiting_reason="PodInitializing", init=True))

        assert status == WorkspaceStatus.PENDING
        assert error is None

    def test_init_container_pull_failure_is_error(self):
        status, error = project_pod(make_pod("Pending", waiting_reason="ErrImagePull", init=True))

        assert status == WorkspaceStatus.ERROR
        assert "ErrImagePull" in error

    def test_terminating_is_stopping(self):
        status, _ = project_pod(make_pod("Running", ready=True, deleting=True))
        assert status == WorkspaceStatus.STOPPING

    def test_crash_loop_is_error_with_reason(self):
        status, error = project_pod(
            make_pod("Running", ready=False, waiting_reason="CrashLoopBackOff", waiting_message="back-off 5m0s")
        )

        assert status == WorkspaceStatus.ERROR
        assert "CrashLoopBackOff" in error
        assert "back-off 5m0s" in error

    def test_image_pull_backoff_while_pending_is_error(self):
        status, error = project_pod(make_pod("Pending", waiting_reason="ImagePullBackOff"))

        assert status == WorkspaceStatus.ERROR
        assert "ImagePullBackOff" in error

    def test_failed_phase_uses_pod_message(self):
        status, error = project_pod(make_pod("Failed", message="OOMKilled"))

        assert status == WorkspaceStatus.ERROR
        assert error == "OOMKilled"

    def test_succeeded_is_stopped(self):
        status, _ = project_pod(make_pod("Succeeded"))
        assert status == WorkspaceStatus.STOPPED

    def test_no_pod_with_labeled_pvc_is_stopped(self):
        assert project_status(WorkspaceSnapshot(pod=None, pvc=make_pvc())) == (WorkspaceStatus.STOPPED, None)

    def test_no_pod_with_unlabeled_pvc_is_not_found(self):
        snapshot = WorkspaceSnapshot(pod=None, pvc=make_pvc(with_repo=False))

        assert project_status(snapshot) is None
        assert snapshot.exists is False

    def test_nothing_is_not_found(self):
        assert project_status(WorkspaceSnapshot(pod=None, pvc=None)) is None

    def test_pod_wins_over_pvc(self):
        snapshot = WorkspaceSnapshot(pod=make_pod("Running", ready=True), pvc=make_pvc())

        assert project_status(snapshot) == (WorkspaceStatus.RUNNING, None)
        assert snapshot.exists is True
