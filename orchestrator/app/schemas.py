from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict


class WorkspaceStatus(str, Enum):
    """Externally visible lifecycle state of a workspace (always derived, never stored)."""

    PENDING = "PENDING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"

    def __str__(self) -> str:
        return self.value


class CallerIdentity(BaseModel):
    """Authenticated caller, as handed over by the upstream auth layer."""
    user_id: str
    token: str = ""
    email: Optional[str] = None

    @field_validator('user_id')
    @classmethod
    def validate_user_id(cls, v):
        if not v or not v.strip():
            raise ValueError('user_id cannot be empty')
        return v


class WorkspaceMetadata(BaseModel):
    """
    Repository coordinates a workspace was provisioned from.

    Persisted on the storage claim (and copied onto the pod) so that a stopped
    workspace can be restarted without any new input. Raw values live in
    annotations; sanitized copies live in labels for selection:

        labels:       repo, repo-owner, branch
        annotations:  codeserver.devplatform/repo-name
                      codeserver.devplatform/repo-owner
                      codeserver.devplatform/branch
    """
    repo_owner: str
    repo_name: str
    branch: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


class Repository(BaseModel):
    id: int
    owner: str
    name: str
    full_name: str
    clone_url: str
    ssh_url: str = ""
    html_url: str = ""
    private: bool = False
    default_branch: str = ""


class WorkspaceInstance(BaseModel):
    id: str
    user_id: str
    repo_name: str = ""
    repo_owner: str = ""
    branch: str = ""
    url: str
    status: WorkspaceStatus
    created_at: Optional[datetime] = None
    storage_used: Optional[str] = None
    pod_name: str
    pvc_name: str
    service_name: str
    error_message: Optional[str] = None


class ProvisionResult(BaseModel):
    instance: WorkspaceInstance
    message: str
    is_new: bool
    # Non-fatal problems (readiness timeout, mesh objects not created, ...)
    warnings: List[str] = Field(default_factory=list)


class InstanceStats(BaseModel):
    total_instances: int = 0
    running_instances: int = 0
    stopped_instances: int = 0
    pending_instances: int = 0
    error_instances: int = 0
    total_storage_used: str = "0 B"


class HealthStatus(BaseModel):
    status: str
    kubernetes: bool
    gitea_access: bool
    details: Dict[str, str] = Field(default_factory=dict)
