"""
Workspace orchestration errors.

Readiness timeouts are not errors: they come back as a ReadinessResult and end
up as warnings on ProvisionResult.
"""

from typing import List, Optional


class WorkspaceError(Exception):
    """Base exception for workspace lifecycle errors."""
    pass


class AccessDenied(WorkspaceError):
    """Raised when the repository service refuses access. No cluster state was touched."""
    pass


class ConfigurationMissing(WorkspaceError):
    """Raised when start/sync finds no repository metadata to work from."""
    pass


class ProvisionFailed(WorkspaceError):
    """Raised when the pod or its service could not be created."""
    pass


class WorkspaceNotFound(WorkspaceError):
    """Raised when an operation targets a user with no workspace."""
    pass


class TeardownPartialFailure(WorkspaceError):
    """
    Raised by delete when the storage claim could not be removed.

    The other resources may already be gone; `removed` lists them and
    `failed` names what is left behind.
    """

    def __init__(self, message: str, removed: Optional[List[str]] = None, failed: Optional[List[str]] = None):
        super().__init__(message)
        self.removed = removed or []
        self.failed = failed or []
