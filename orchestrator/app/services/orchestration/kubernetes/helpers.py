"""
Kubernetes Helpers for Code-Server Workspaces

This module contains the pure building blocks used by the workspace orchestrator:
- Identity sanitization (user identity -> DNS-label-safe name fragment)
- Deterministic resource naming and standard labels
- Workspace metadata <-> label/annotation mapping
- Manifest builders for every object in a user's resource set:
  Pod, Service, PVC, Namespace, Istio VirtualService and DestinationRule

Nothing here talks to the API server.
"""

from kubernetes import client
from typing import Dict, Optional, Any
from urllib.parse import urlsplit, urlunsplit
import logging

from ....schemas import WorkspaceMetadata

logger = logging.getLogger(__name__)

# Kubernetes DNS label limit (RFC 1123)
MAX_NAME_LENGTH = 63
CODESERVER_PREFIX = "code-server-"
PVC_PREFIX = "workspace-"

APP_LABEL = "code-server"

ANNOTATION_PREFIX = "codeserver.devplatform"
ANNOTATION_USER_ID = f"{ANNOTATION_PREFIX}/user-id"
ANNOTATION_REPO_NAME = f"{ANNOTATION_PREFIX}/repo-name"
ANNOTATION_REPO_OWNER = f"{ANNOTATION_PREFIX}/repo-owner"
ANNOTATION_BRANCH = f"{ANNOTATION_PREFIX}/branch"

LABEL_USER = "user"
LABEL_REPO = "repo"
LABEL_REPO_OWNER = "repo-owner"
LABEL_BRANCH = "branch"

ISTIO_GROUP = "networking.istio.io"
ISTIO_VERSION = "v1beta1"
VIRTUAL_SERVICE_PLURAL = "virtualservices"
DESTINATION_RULE_PLURAL = "destinationrules"

CODESERVER_PORT = 8080
SERVICE_PORT = 80
WORKSPACE_MOUNT = "/home/coder/workspace"
USERDATA_DIR = f"{WORKSPACE_MOUNT}/.userdata"


# =============================================================================
# Identity Sanitization
# =============================================================================

def sanitize_user_id(raw: str) -> str:
    """
    Turn an arbitrary identity string into a DNS-label-safe name fragment.

    ASCII letters are lowercased, digits and '-' are kept, '.', '_' and '@'
    become '-', everything else is dropped. Leading and trailing dashes are
    stripped and the result is truncated to 63 characters (with any dash left
    dangling by the truncation stripped as well).

    Pure and total: never raises, same input always yields the same output.
    Distinct identities may collide (e.g. "a.b" and "a_b" both give "a-b");
    collisions are not detected here.
    """
    result = []
    for c in raw or "":
        if "a" <= c <= "z" or "0" <= c <= "9" or c == "-":
            result.append(c)
        elif "A" <= c <= "Z":
            result.append(c.lower())
        elif c in "._@":
            result.append("-")

    sanitized = "".join(result).strip("-")
    return sanitized[:MAX_NAME_LENGTH].rstrip("-")


# =============================================================================
# Resource Naming
# =============================================================================

def prefixed_name(prefix: str, user_id: str) -> str:
    """
    Object name made of a fixed prefix and the sanitized identity.

    The identity fragment is cut so the whole name stays a valid DNS label.
    """
    fragment = sanitize_user_id(user_id)[:MAX_NAME_LENGTH - len(prefix)].rstrip("-")
    return f"{prefix}{fragment}"


def get_pod_name(user_id: str) -> str:
    return prefixed_name(CODESERVER_PREFIX, user_id)


def get_service_name(user_id: str) -> str:
    return prefixed_name(CODESERVER_PREFIX, user_id)


def get_pvc_name(user_id: str) -> str:
    return prefixed_name(PVC_PREFIX, user_id)


def get_virtual_service_name(user_id: str) -> str:
    return prefixed_name(CODESERVER_PREFIX, user_id)


def get_destination_rule_name(user_id: str) -> str:
    return prefixed_name(CODESERVER_PREFIX, user_id)


def generate_resource_names(user_id: str, namespace: str) -> Dict[str, str]:
    """
    Generate the names of every object in a user's resource set.

    Returns:
        Dictionary with namespace, pod, service, pvc, virtual_service,
        destination_rule and the sanitized user fragment
    """
    return {
        "namespace": namespace,
        "user": sanitize_user_id(user_id),
        "pod": get_pod_name(user_id),
        "service": get_service_name(user_id),
        "pvc": get_pvc_name(user_id),
        "virtual_service": get_virtual_service_name(user_id),
        "destination_rule": get_destination_rule_name(user_id),
    }


def get_service_fqdn(user_id: str, namespace: str) -> str:
    return f"{get_service_name(user_id)}.{namespace}.svc.cluster.local"


# =============================================================================
# Labels and Workspace Metadata
# =============================================================================

def get_standard_labels(user_id: str, managed_by: str) -> Dict[str, str]:
    """
    Labels carried by every object of a user's resource set.

    Used for reverse lookup: "app=code-server,user=<sanitized>" selects
    everything belonging to one user.
    """
    return {
        "app": APP_LABEL,
        LABEL_USER: sanitize_user_id(user_id),
        "managed-by": managed_by,
    }


def get_user_selector(managed_by: str, user_id: Optional[str] = None) -> str:
    """Label selector for all managed workspaces, or one user's workspace."""
    selector = f"app={APP_LABEL},managed-by={managed_by}"
    if user_id:
        selector = f"app={APP_LABEL},{LABEL_USER}={sanitize_user_id(user_id)},managed-by={managed_by}"
    return selector


def metadata_labels(metadata: WorkspaceMetadata) -> Dict[str, str]:
    """Sanitized, selectable copy of the workspace metadata."""
    labels = {
        LABEL_REPO: sanitize_user_id(metadata.repo_name),
        LABEL_REPO_OWNER: sanitize_user_id(metadata.repo_owner),
    }
    if metadata.branch:
        labels[LABEL_BRANCH] = sanitize_user_id(metadata.branch)
    return labels


def metadata_annotations(metadata: WorkspaceMetadata) -> Dict[str, str]:
    """Raw (unsanitized) workspace metadata."""
    return {
        ANNOTATION_REPO_NAME: metadata.repo_name,
        ANNOTATION_REPO_OWNER: metadata.repo_owner,
        ANNOTATION_BRANCH: metadata.branch,
    }


def read_workspace_metadata(obj_metadata: Optional[client.V1ObjectMeta]) -> Optional[WorkspaceMetadata]:
    """
    Rebuild WorkspaceMetadata from an object's annotations, falling back to labels.

    Returns None when repo name or repo owner cannot be found.
    """
    if obj_metadata is None:
        return None

    annotations = obj_metadata.annotations or {}
    labels = obj_metadata.labels or {}

    repo_name = annotations.get(ANNOTATION_REPO_NAME) or labels.get(LABEL_REPO) or ""
    repo_owner = annotations.get(ANNOTATION_REPO_OWNER) or labels.get(LABEL_REPO_OWNER) or ""
    branch = annotations.get(ANNOTATION_BRANCH) or labels.get(LABEL_BRANCH) or ""

    if not repo_name or not repo_owner:
        return None

    return WorkspaceMetadata(repo_owner=repo_owner, repo_name=repo_name, branch=branch)


def redact_url(url: str) -> str:
    """Strip user-info (embedded credentials) from a URL before logging it."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable-url>"
    if not parts.username and not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def format_bytes(num_bytes: int) -> str:
    """Human readable byte count (1024 based): "512 B", "1.5 KB", "10.0 GB"."""
    unit = 1024
    if num_bytes < unit:
        return f"{num_bytes} B"
    div, exp = unit, 0
    n = num_bytes // unit
    while n >= unit and exp < 3:
        div *= unit
        exp += 1
        n //= unit
    return f"{num_bytes / div:.1f} {['KB', 'MB', 'GB', 'TB'][exp]}"


# =============================================================================
# Namespace Manifest
# =============================================================================

def create_namespace_manifest(namespace: str, managed_by: str, enable_istio: bool = True) -> client.V1Namespace:
    labels = {
        "app": "codeserver-instances",
        "managed-by": managed_by,
    }
    if enable_istio:
        labels["istio-injection"] = "enabled"

    return client.V1Namespace(
        metadata=client.V1ObjectMeta(name=namespace, labels=labels)
    )


# =============================================================================
# PVC Manifest
# =============================================================================

def create_pvc_manifest(
    namespace: str,
    user_id: str,
    managed_by: str,
    storage_class: str,
    size: str = "10Gi",
    access_mode: str = "ReadWriteOnce",
    metadata: Optional[WorkspaceMetadata] = None
) -> client.V1PersistentVolumeClaim:
    """
    Create the PVC manifest for a user's workspace.

    The claim outlives the pod: it is the durable record of which repository
    the workspace holds, so the workspace metadata is attached here.

    Args:
        namespace: Kubernetes namespace
        user_id: Raw user identity
        managed_by: Controller name for the managed-by label
        storage_class: StorageClass to use
        size: Storage size (default: 10Gi)
        access_mode: Access mode (default: ReadWriteOnce)
        metadata: Repository coordinates to record on the claim

    Returns:
        V1PersistentVolumeClaim manifest
    """
    labels = get_standard_labels(user_id, managed_by)
    annotations = {ANNOTATION_USER_ID: user_id}
    if metadata is not None:
        labels.update(metadata_labels(metadata))
        annotations.update(metadata_annotations(metadata))

    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=get_pvc_name(user_id),
            namespace=namespace,
            labels=labels,
            annotations=annotations
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class or None,
            access_modes=[access_mode],
            resources=client.V1ResourceRequirements(
                requests={"storage": size}
            )
        )
    )


# =============================================================================
# Code-Server Pod
# =============================================================================

def generate_git_clone_script() -> str:
    """
    Generate the init-container script that prepares the workspace.

    All inputs come from environment variables (GIT_REPO_URL, REPO_NAME,
    BRANCH, USER_ID, USER_EMAIL) so that the clone URL credential never
    appears in the pod spec's command line. The script:
    - writes a persistent gitconfig and credential store into the claim
    - clones the repository, or fetches/pulls if it is already present
    - resets the origin remote to the credential-free URL
    """
    return f'''#!/bin/sh
set -e
WORKSPACE_DIR="{WORKSPACE_MOUNT}"
REPO_DIR="${{WORKSPACE_DIR}}/${{REPO_NAME}}"
USER_DATA_DIR="{USERDATA_DIR}"

echo "[SETUP] Preparing workspace for ${{REPO_NAME}}"
mkdir -p "${{USER_DATA_DIR}}/.git-credentials" "${{USER_DATA_DIR}}/.bash_history_dir"
touch "${{USER_DATA_DIR}}/.bash_history_dir/.bash_history"

GITCONFIG_FILE="${{USER_DATA_DIR}}/.gitconfig"
cat > "${{GITCONFIG_FILE}}" << GITCFG
[user]
    email = ${{USER_EMAIL:-user@devplatform.local}}
    name = ${{USER_ID:-coder}}
[init]
    defaultBranch = main
[safe]
    directory = ${{REPO_DIR}}
[credential]
    helper = store --file=${{USER_DATA_DIR}}/.git-credentials/credentials
[pull]
    rebase = false
[push]
    default = current
GITCFG
export GIT_CONFIG_GLOBAL="${{GITCONFIG_FILE}}"

# Credentials embedded in the URL go to the credential store, not the remote
if echo "${{GIT_REPO_URL}}" | grep -q "@"; then
    CRED_HOST=$(echo "${{GIT_REPO_URL}}" | sed -E 's|https?://[^@]+@([^/]+)/.*|\\1|')
    CRED_PROTO=$(echo "${{GIT_REPO_URL}}" | sed -E 's|(https?)://.*|\\1|')
    CRED_AUTH=$(echo "${{GIT_REPO_URL}}" | sed -E 's|https?://([^@]+)@.*|\\1|')
    echo "${{CRED_PROTO}}://${{CRED_AUTH}}@${{CRED_HOST}}" > "${{USER_DATA_DIR}}/.git-credentials/credentials"
    chmod 600 "${{USER_DATA_DIR}}/.git-credentials/credentials"
fi

if [ ! -d "${{REPO_DIR}}/.git" ]; then
    echo "[SETUP] Cloning repository"
    if [ -n "${{BRANCH}}" ]; then
        git clone --branch "${{BRANCH}}" "${{GIT_REPO_URL}}" "${{REPO_DIR}}"
    else
        git clone "${{GIT_REPO_URL}}" "${{REPO_DIR}}"
    fi
    cd "${{REPO_DIR}}"
    CLEAN_URL=$(echo "${{GIT_REPO_URL}}" | sed -E 's|(https?://)([^@]+@)?(.*)|\\1\\3|')
    git remote set-url origin "${{CLEAN_URL}}" || true
else
    echo "[SETUP] Repository exists, pulling latest changes"
    cd "${{REPO_DIR}}"
    git fetch --all
    if [ -n "${{BRANCH}}" ]; then
        git checkout "${{BRANCH}}" 2>/dev/null || git checkout -b "${{BRANCH}}" "origin/${{BRANCH}}" 2>/dev/null || echo "[SETUP] Branch checkout failed, staying on current branch"
    fi
    git pull || echo "[SETUP] Pull failed, continuing with existing code"
fi

chown -R 1000:1000 "${{WORKSPACE_DIR}}" || true
chmod 700 "${{USER_DATA_DIR}}/.git-credentials" || true
echo "[SETUP] Workspace ready"
'''


def generate_extensions_script(extensions: Optional[list] = None) -> str:
    """Generate the init-container script installing VS Code extensions into the claim."""
    extensions = extensions or DEFAULT_EXTENSIONS
    return f'''#!/bin/sh
EXTENSIONS_DIR="{USERDATA_DIR}/.vscode-extensions"
mkdir -p "${{EXTENSIONS_DIR}}" "{USERDATA_DIR}/.vscode-server"

for ext in {" ".join(extensions)}; do
    if ls "${{EXTENSIONS_DIR}}" 2>/dev/null | grep -qi "^${{ext}}-"; then
        echo "[EXT] $ext already installed"
    else
        code-server --extensions-dir "${{EXTENSIONS_DIR}}" --install-extension "$ext" || echo "[EXT] Failed to install $ext, continuing"
    fi
done
'''


DEFAULT_EXTENSIONS = [
    "ms-python.python",
    "golang.go",
    "esbenp.prettier-vscode",
    "dbaeumer.vscode-eslint",
    "eamodio.gitlens",
    "redhat.vscode-yaml",
    "ms-azuretools.vscode-docker",
]


def create_codeserver_pod_manifest(
    namespace: str,
    user_id: str,
    clone_url: str,
    metadata: WorkspaceMetadata,
    managed_by: str,
    image: str,
    git_image: str,
    cpu_request: str = "500m",
    memory_request: str = "1Gi",
    cpu_limit: str = "2",
    memory_limit: str = "4Gi",
    user_email: str = ""
) -> client.V1Pod:
    """
    Create the code-server pod manifest for a user.

    Two init containers prepare the claim (git clone/pull, then extension
    install) before the code-server container starts. The readiness probe on
    "/" is what the status projection reads as RUNNING vs STARTING.

    Args:
        namespace: Kubernetes namespace
        user_id: Raw user identity
        clone_url: Clone URL, possibly with an embedded short-lived credential
        metadata: Repository coordinates (carried as labels and annotations)
        managed_by: Controller name for the managed-by label
        image: code-server image
        git_image: Image used for the clone init container
        user_email: Committer email for the workspace git config
            (default: <sanitized user_id>@devplatform.local)

    Returns:
        V1Pod manifest
    """
    labels = get_standard_labels(user_id, managed_by)
    labels.update(metadata_labels(metadata))

    annotations = {
        ANNOTATION_USER_ID: user_id,
        **metadata_annotations(metadata),
        # Istio sidecar must be up before code-server opens websockets
        "sidecar.istio.io/inject": "true",
        "proxy.istio.io/config": '{"holdApplicationUntilProxyStarts": true}',
    }

    repo_dir = f"{WORKSPACE_MOUNT}/{metadata.repo_name}"
    workspace_mount = client.V1VolumeMount(name="workspace", mount_path=WORKSPACE_MOUNT)

    git_clone = client.V1Container(
        name="git-clone",
        image=git_image,
        command=["/bin/sh", "-c"],
        args=[generate_git_clone_script()],
        env=[
            client.V1EnvVar(name="GIT_REPO_URL", value=clone_url),
            client.V1EnvVar(name="REPO_NAME", value=metadata.repo_name),
            client.V1EnvVar(name="BRANCH", value=metadata.branch),
            client.V1EnvVar(name="USER_ID", value=user_id),
            client.V1EnvVar(name="USER_EMAIL", value=user_email or f"{sanitize_user_id(user_id)}@devplatform.local"),
        ],
        volume_mounts=[workspace_mount],
        security_context=client.V1SecurityContext(run_as_user=0, run_as_group=0)
    )

    install_extensions = client.V1Container(
        name="install-extensions",
        image=image,
        command=["/bin/sh", "-c"],
        args=[generate_extensions_script()],
        volume_mounts=[
            workspace_mount,
            client.V1VolumeMount(name="coder-config", mount_path="/home/coder/.config"),
            client.V1VolumeMount(name="coder-local", mount_path="/home/coder/.local"),
        ],
        security_context=client.V1SecurityContext(run_as_user=1000, run_as_group=1000)
    )

    http_probe = client.V1HTTPGetAction(path="/", port=CODESERVER_PORT)

    codeserver = client.V1Container(
        name="code-server",
        image=image,
        args=[
            "--bind-addr", f"0.0.0.0:{CODESERVER_PORT}",
            "--auth", "none",  # Auth is enforced at the mesh gateway
            "--disable-telemetry",
            "--extensions-dir", f"{USERDATA_DIR}/.vscode-extensions",
            "--user-data-dir", f"{USERDATA_DIR}/.vscode-server",
            repo_dir,
        ],
        tty=True,
        stdin=True,
        ports=[client.V1ContainerPort(name="http", container_port=CODESERVER_PORT, protocol="TCP")],
        env=[
            client.V1EnvVar(name="PASSWORD", value=""),
            client.V1EnvVar(name="REPO_NAME", value=metadata.repo_name),
            client.V1EnvVar(name="USER_ID", value=user_id),
            client.V1EnvVar(name="SHELL", value="/bin/bash"),
            client.V1EnvVar(name="TERM", value="xterm-256color"),
            client.V1EnvVar(name="HOME", value="/home/coder"),
            client.V1EnvVar(name="LANG", value="en_US.UTF-8"),
            client.V1EnvVar(name="HISTFILE", value=f"{USERDATA_DIR}/.bash_history_dir/.bash_history"),
            client.V1EnvVar(name="GIT_CONFIG_GLOBAL", value=f"{USERDATA_DIR}/.gitconfig"),
        ],
        volume_mounts=[
            workspace_mount,
            client.V1VolumeMount(name="tmp", mount_path="/tmp"),
            client.V1VolumeMount(name="coder-config", mount_path="/home/coder/.config"),
            client.V1VolumeMount(name="coder-local", mount_path="/home/coder/.local"),
        ],
        resources=client.V1ResourceRequirements(
            requests={"cpu": cpu_request, "memory": memory_request},
            limits={"cpu": cpu_limit, "memory": memory_limit}
        ),
        readiness_probe=client.V1Probe(
            http_get=http_probe,
            initial_delay_seconds=10,
            period_seconds=5,
            timeout_seconds=3,
            success_threshold=1,
            failure_threshold=3
        ),
        liveness_probe=client.V1Probe(
            http_get=http_probe,
            initial_delay_seconds=30,
            period_seconds=30,
            timeout_seconds=5,
            success_threshold=1,
            failure_threshold=3
        ),
        security_context=client.V1SecurityContext(
            run_as_user=1000,
            run_as_group=1000,
            allow_privilege_escalation=False
        )
    )

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=get_pod_name(user_id),
            namespace=namespace,
            labels=labels,
            annotations=annotations
        ),
        spec=client.V1PodSpec(
            init_containers=[git_clone, install_extensions],
            containers=[codeserver],
            volumes=[
                client.V1Volume(
                    name="workspace",
                    persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                        claim_name=get_pvc_name(user_id)
                    )
                ),
                client.V1Volume(name="tmp", empty_dir=client.V1EmptyDirVolumeSource()),
                client.V1Volume(name="coder-config", empty_dir=client.V1EmptyDirVolumeSource()),
                client.V1Volume(name="coder-local", empty_dir=client.V1EmptyDirVolumeSource()),
            ],
            security_context=client.V1PodSecurityContext(fs_group=1000),
            restart_policy="Always"
        )
    )


# =============================================================================
# Service Manifest
# =============================================================================

def create_service_manifest(namespace: str, user_id: str, managed_by: str) -> client.V1Service:
    """ClusterIP Service fronting the user's code-server pod (80 -> 8080)."""
    labels = get_standard_labels(user_id, managed_by)

    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=get_service_name(user_id),
            namespace=namespace,
            labels=labels,
            annotations={ANNOTATION_USER_ID: user_id}
        ),
        spec=client.V1ServiceSpec(
            selector={
                "app": APP_LABEL,
                LABEL_USER: sanitize_user_id(user_id)
            },
            ports=[
                client.V1ServicePort(
                    name="http",
                    port=SERVICE_PORT,
                    target_port=CODESERVER_PORT,
                    protocol="TCP"
                )
            ],
            type="ClusterIP"
        )
    )


# =============================================================================
# Istio Manifests
# =============================================================================

def create_virtual_service_manifest(
    namespace: str,
    user_id: str,
    managed_by: str,
    host: str,
    gateway: str
) -> Dict[str, Any]:
    """
    Create the Istio VirtualService routing the user's hostname to their Service.

    Two routes: websocket upgrades (120s timeout, 3 retries) and plain HTTP
    (60s timeout). The mutable part of the spec (hosts, timeouts, retries) is
    what ensure-present patches on an existing object.
    """
    destination = {
        "destination": {
            "host": get_service_fqdn(user_id, namespace),
            "port": {"number": SERVICE_PORT}
        }
    }

    return {
        "apiVersion": f"{ISTIO_GROUP}/{ISTIO_VERSION}",
        "kind": "VirtualService",
        "metadata": {
            "name": get_virtual_service_name(user_id),
            "namespace": namespace,
            "labels": get_standard_labels(user_id, managed_by),
            "annotations": {ANNOTATION_USER_ID: user_id},
        },
        "spec": {
            "hosts": [host],
            "gateways": [gateway],
            "http": [
                {
                    "name": "websocket",
                    "match": [{"headers": {"upgrade": {"exact": "websocket"}}}],
                    "route": [destination],
                    "timeout": "120s",
                    "retries": {"attempts": 3},
                },
                {
                    "name": "http",
                    "route": [destination],
                    "timeout": "60s",
                },
            ],
        },
    }


def create_destination_rule_manifest(namespace: str, user_id: str, managed_by: str) -> Dict[str, Any]:
    """Istio DestinationRule with connection pooling suited to long-lived websockets."""
    return {
        "apiVersion": f"{ISTIO_GROUP}/{ISTIO_VERSION}",
        "kind": "DestinationRule",
        "metadata": {
            "name": get_destination_rule_name(user_id),
            "namespace": namespace,
            "labels": get_standard_labels(user_id, managed_by),
        },
        "spec": {
            "host": get_service_fqdn(user_id, namespace),
            "trafficPolicy": {
                "connectionPool": {
                    "tcp": {"maxConnections": 100},
                    "http": {
                        "h2UpgradePolicy": "UPGRADE",
                        "maxRequestsPerConnection": 0,  # Unlimited
                    },
                }
            },
        },
    }
