"""
Services Module

This module contains the backend services of the code-server control plane.

Key Submodules:
- orchestration: Workspace lifecycle on Kubernetes and the readiness reconciler
- gitea_client: Repository access checks and clone URLs via gitea-service
- directory: OpenLDAP seed data and bootstrap

Usage:
    from app.services.orchestration import get_workspace_orchestrator
"""

# Re-export orchestration module for convenience
from .orchestration import (
    get_workspace_orchestrator,
    WorkspaceOrchestrator,
    WorkspaceError,
)

__all__ = [
    # Orchestration
    "get_workspace_orchestrator",
    "WorkspaceOrchestrator",
    "WorkspaceError",
]
