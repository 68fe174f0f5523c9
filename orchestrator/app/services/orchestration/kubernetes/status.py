"""
Workspace status projection.

A workspace's status is never stored: it is computed on every read from one
snapshot of the user's pod and PVC. `project_status` is a pure function of
that snapshot.
"""

from kubernetes import client
from dataclasses import dataclass
from typing import Optional, Tuple

from ....schemas import WorkspaceStatus
from .helpers import read_workspace_metadata

# Waiting reasons that mean the container will not come up on its own
ERROR_WAITING_REASONS = frozenset({
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "InvalidImageName",
    "CreateContainerConfigError",
    "CreateContainerError",
    "RunContainerError",
})


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """Pod and PVC of one user, read together."""
    pod: Optional[client.V1Pod]
    pvc: Optional[client.V1PersistentVolumeClaim]

    @property
    def exists(self) -> bool:
        return project_status(self) is not None


def _container_statuses(pod: client.V1Pod):
    status = pod.status
    if status is None:
        return []
    return list(status.init_container_statuses or []) + list(status.container_statuses or [])


def _failing_container_reason(pod: client.V1Pod) -> Optional[str]:
    for cs in _container_statuses(pod):
        waiting = cs.state.waiting if cs.state else None
        if waiting and waiting.reason in ERROR_WAITING_REASONS:
            detail = f": {waiting.message}" if waiting.message else ""
            return f"{cs.name} {waiting.reason}{detail}"
    return None


def _has_waiting_container(pod: client.V1Pod) -> bool:
    # Main containers only: a pod still running its init containers is PENDING
    statuses = pod.status.container_statuses if pod.status else None
    return any(cs.state and cs.state.waiting for cs in statuses or [])


def _is_ready(pod: client.V1Pod) -> bool:
    for condition in (pod.status.conditions or []) if pod.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def project_pod(pod: client.V1Pod) -> Tuple[WorkspaceStatus, Optional[str]]:
    """Map a live pod to (status, error message)."""
    if pod.metadata and pod.metadata.deletion_timestamp is not None:
        return WorkspaceStatus.STOPPING, None

    failure = _failing_container_reason(pod)
    if failure:
        return WorkspaceStatus.ERROR, failure

    phase = pod.status.phase if pod.status else None
    message = pod.status.message if pod.status else None

    if phase == "Pending":
        if _has_waiting_container(pod):
            return WorkspaceStatus.STARTING, None
        return WorkspaceStatus.PENDING, None
    if phase == "Running":
        if _is_ready(pod):
            return WorkspaceStatus.RUNNING, None
        return WorkspaceStatus.STARTING, None
    if phase == "Succeeded":
        return WorkspaceStatus.STOPPED, None
    if phase == "Failed":
        return WorkspaceStatus.ERROR, message or (pod.status.reason if pod.status else None) or "pod failed"
    if phase is None:
        # Accepted by the API server but not yet scheduled
        return WorkspaceStatus.PENDING, None
    return WorkspaceStatus.ERROR, message or f"unknown pod phase {phase}"


def project_status(snapshot: WorkspaceSnapshot) -> Optional[Tuple[WorkspaceStatus, Optional[str]]]:
    """
    Project a snapshot to (status, error message), or None for "not found".

    Without a pod the workspace is STOPPED only if the claim still records
    which repository it holds.
    """
    if snapshot.pod is not None:
        return project_pod(snapshot.pod)

    if snapshot.pvc is not None and read_workspace_metadata(snapshot.pvc.metadata) is not None:
        return WorkspaceStatus.STOPPED, None

    return None
