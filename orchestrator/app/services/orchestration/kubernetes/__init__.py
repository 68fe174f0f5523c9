"""
Kubernetes Orchestration Module - Code-Server Workspaces

This module contains all Kubernetes-specific orchestration code:
- KubernetesClient: Low-level Kubernetes API interactions (ensure/absent, readiness)
- helpers: Identity sanitization, naming, labels and manifest builders
- status: Status projection from a pod/PVC snapshot

Per-user resource set (all named from the sanitized identity):
1. Pod code-server-<user> (git clone + extension init containers)
2. Service code-server-<user>
3. PVC workspace-<user> (durable, survives stop)
4. Istio VirtualService and DestinationRule code-server-<user>

These are used internally by WorkspaceOrchestrator.
"""

from .client import KubernetesClient, ReadinessOutcome, ReadinessResult, get_k8s_client
from .helpers import (
    # Naming
    sanitize_user_id,
    generate_resource_names,
    get_standard_labels,
    get_user_selector,
    # Workspace metadata
    metadata_labels,
    metadata_annotations,
    read_workspace_metadata,
    # Manifests
    create_namespace_manifest,
    create_pvc_manifest,
    create_codeserver_pod_manifest,
    create_service_manifest,
    create_virtual_service_manifest,
    create_destination_rule_manifest,
    # Utilities
    format_bytes,
    redact_url,
)
from .status import WorkspaceSnapshot, project_status, project_pod

__all__ = [
    # Client
    "KubernetesClient",
    "ReadinessOutcome",
    "ReadinessResult",
    "get_k8s_client",
    # Naming
    "sanitize_user_id",
    "generate_resource_names",
    "get_standard_labels",
    "get_user_selector",
    # Workspace metadata
    "metadata_labels",
    "metadata_annotations",
    "read_workspace_metadata",
    # Manifests
    "create_namespace_manifest",
    "create_pvc_manifest",
    "create_codeserver_pod_manifest",
    "create_service_manifest",
    "create_virtual_service_manifest",
    "create_destination_rule_manifest",
    # Utilities
    "format_bytes",
    "redact_url",
    # Status
    "WorkspaceSnapshot",
    "project_status",
    "project_pod",
]
