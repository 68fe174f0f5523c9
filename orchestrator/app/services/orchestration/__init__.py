"""
Orchestration Module - Code-Server Workspace Lifecycle

This module manages one code-server workspace per user on Kubernetes, and
the one-shot cluster bootstrap that runs once OpenLDAP is ready.

Architecture:
- WorkspaceOrchestrator: provision/start/stop/sync/delete flows and queries
- kubernetes: API client, manifest helpers, status projection
- ClusterReadinessReconciler: watch-until-ready, then converge once
- errors: AccessDenied, ConfigurationMissing, ProvisionFailed, ...

Usage:
    from app.services.orchestration import get_workspace_orchestrator

    orchestrator = get_workspace_orchestrator()
    result = await orchestrator.provision(caller, "acme", "backend", branch="main")
"""

from .errors import (
    WorkspaceError,
    AccessDenied,
    ConfigurationMissing,
    ProvisionFailed,
    WorkspaceNotFound,
    TeardownPartialFailure,
)
from .locks import KeyedLock
from .workspace_orchestrator import WorkspaceOrchestrator, get_workspace_orchestrator
from .reconciler import (
    ClusterReadinessReconciler,
    ReconcilerContext,
    ReconcilerState,
    build_directory_reconciler,
    statefulset_ready_probe,
)

__all__ = [
    # Errors
    "WorkspaceError",
    "AccessDenied",
    "ConfigurationMissing",
    "ProvisionFailed",
    "WorkspaceNotFound",
    "TeardownPartialFailure",
    # Orchestrator
    "KeyedLock",
    "WorkspaceOrchestrator",
    "get_workspace_orchestrator",
    # Reconciler
    "ClusterReadinessReconciler",
    "ReconcilerContext",
    "ReconcilerState",
    "build_directory_reconciler",
    "statefulset_ready_probe",
]
