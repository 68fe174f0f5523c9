from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # "development" or "production"
    environment: str = "development"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    # ==========================================================================
    # Kubernetes Connection
    # ==========================================================================
    # Path to a kubeconfig file. Empty means in-cluster config first,
    # then the default kubeconfig location.
    kubeconfig: str = ""

    # Label value written on every object this controller creates
    managed_by: str = "codeserver-service"

    # ==========================================================================
    # Workspace Settings
    # ==========================================================================
    k8s_workspace_namespace: str = "codeserver-instances"
    k8s_storage_class: str = "standard"
    k8s_pvc_size: str = "10Gi"  # Per-user workspace claim size
    k8s_pvc_access_mode: str = "ReadWriteOnce"

    codeserver_image: str = "codercom/code-server:latest"
    codeserver_git_image: str = "alpine/git:latest"
    codeserver_cpu_request: str = "500m"
    codeserver_memory_request: str = "1Gi"
    codeserver_cpu_limit: str = "2"
    codeserver_memory_limit: str = "4Gi"

    # How long provision/start wait for the pod to become ready
    codeserver_timeout_seconds: int = 300
    readiness_poll_interval_seconds: float = 2.0
    # How long provision/start/sync wait for a terminating pod to disappear
    pod_deletion_timeout_seconds: int = 60

    # ==========================================================================
    # Service Mesh (Istio)
    # ==========================================================================
    # When False, VirtualService/DestinationRule management is skipped entirely
    k8s_enable_istio: bool = True
    istio_gateway: str = "codeserver-gateway"

    # ==========================================================================
    # Domain Settings
    # ==========================================================================
    # Workspaces are exposed as code-<user>.<base_domain>
    base_domain: str = "devplatform.local"
    use_https: bool = True

    def workspace_host(self, sanitized_user: str) -> str:
        """Hostname for a user's workspace (user must already be sanitized)."""
        # First label is capped at the 63-character DNS label limit
        label = f"code-{sanitized_user}"[:63].rstrip("-")
        return f"{label}.{self.base_domain}"

    def workspace_url(self, sanitized_user: str) -> str:
        """Full URL for a user's workspace."""
        protocol = "https" if self.use_https else "http"
        return f"{protocol}://{self.workspace_host(sanitized_user)}"

    # ==========================================================================
    # Git Service
    # ==========================================================================
    # Service token embedded into clone URLs of private repositories
    gitea_token: str = ""
    # GraphQL endpoint base of the git-hosting service (access validation)
    gitea_service_url: str = ""
    gitea_request_timeout_seconds: float = 30.0

    # ==========================================================================
    # Directory (LDAP) Bootstrap
    # ==========================================================================
    ldap_namespace: str = "dev-platform"
    ldap_statefulset_name: str = "openldap"
    ldap_url: str = "ldap://openldap-internal.dev-platform.svc.cluster.local:389"
    ldap_base_dn: str = "dc=devplatform,dc=local"
    ldap_admin_dn: str = "cn=admin,dc=devplatform,dc=local"
    ldap_admin_password: str = "admin123"
    ldap_config_password: str = "config123"
    ldap_ready_timeout_seconds: float = 120.0
    ldap_connect_timeout_seconds: float = 30.0

    # JSON seed document; empty uses the built-in default seed
    ldap_init_data: str = ""

    # ==========================================================================
    # Cluster Readiness Reconciler
    # ==========================================================================
    reconciler_poll_interval_seconds: float = 5.0
    reconciler_settle_delay_seconds: float = 10.0
    # ConfigMap (in ldap_namespace) recording the one-shot bootstrap state
    reconciler_marker_name: str = "openldap-bootstrap"
    # A "Running" marker older than this may be taken over by another replica
    reconciler_lease_seconds: int = 600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names

@lru_cache()
def get_settings():
    return Settings()
