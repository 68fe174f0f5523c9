"""
Gitea service client for repository access checks and clone URLs.

Talks to the platform's gitea-service over its GraphQL API, forwarding the
caller's bearer token so access is evaluated as that user.
"""
import httpx
import logging
from typing import Optional, List, Dict, Any
from urllib.parse import urlsplit, urlunsplit, quote

from ..schemas import Repository

logger = logging.getLogger(__name__)


REPOSITORY_FIELDS = """
    id
    name
    fullName
    owner {
        login
    }
    cloneUrl
    sshUrl
    htmlUrl
    private
    defaultBranch
"""

GET_REPOSITORY_QUERY = f"""query GetRepository($owner: String!, $name: String!) {{
    getRepository(owner: $owner, name: $name) {{{REPOSITORY_FIELDS}}}
}}"""

MY_REPOSITORIES_QUERY = f"""query {{
    myRepositories {{{REPOSITORY_FIELDS}}}
}}"""


class RepositoryAccessError(Exception):
    """Raised when gitea-service cannot be reached or answers with an unexpected status."""
    pass


class RepositoryNotAccessible(Exception):
    """Raised when gitea-service answered but the repository is missing or refused."""
    pass


def _to_repository(data: Dict[str, Any]) -> Repository:
    owner = data.get("owner") or {}
    return Repository(
        id=data.get("id") or 0,
        owner=owner.get("login", "") if isinstance(owner, dict) else str(owner),
        name=data.get("name", ""),
        full_name=data.get("fullName", ""),
        clone_url=data.get("cloneUrl", ""),
        ssh_url=data.get("sshUrl") or "",
        html_url=data.get("htmlUrl") or "",
        private=bool(data.get("private")),
        default_branch=data.get("defaultBranch") or "",
    )


class GiteaServiceClient:
    """Client for the gitea-service GraphQL API."""

    def __init__(
        self,
        service_url: str,
        gitea_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the gitea-service client.

        Args:
            service_url: Base URL of gitea-service (GraphQL at /graphql, health at /health)
            gitea_token: Service token embedded into clone URLs of private repositories
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.service_url = service_url.rstrip("/")
        self.gitea_token = gitea_token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    async def _graphql(self, token: str, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run a GraphQL query as the caller.

        Returns:
            The "data" object of the response

        Raises:
            RepositoryNotAccessible: 401/403 or GraphQL-level errors
            RepositoryAccessError: Transport failures and other non-200 responses
        """
        url = f"{self.service_url}/graphql"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        logger.debug(f"Calling gitea-service GraphQL at {url}")

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise RepositoryAccessError(f"gitea-service request failed: {e}") from e

        if response.status_code in (401, 403):
            raise RepositoryNotAccessible(f"gitea-service refused the request: status {response.status_code}")
        if response.status_code != 200:
            raise RepositoryAccessError(
                f"gitea-service returned status {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RepositoryAccessError("gitea-service returned invalid JSON") from e

        errors = body.get("errors") or []
        if errors:
            raise RepositoryNotAccessible(f"graphql error: {errors[0].get('message', 'unknown error')}")

        return body.get("data") or {}

    async def get_repository(self, token: str, owner: str, name: str) -> Repository:
        """
        Fetch one repository as seen by the caller.

        Raises:
            RepositoryNotAccessible: Repository missing or not visible to the caller
            RepositoryAccessError: gitea-service unreachable
        """
        data = await self._graphql(token, GET_REPOSITORY_QUERY, {"owner": owner, "name": name})
        repo = data.get("getRepository")
        if not repo:
            raise RepositoryNotAccessible(f"repository not found: {owner}/{name}")
        return _to_repository(repo)

    async def list_my_repositories(self, token: str) -> List[Repository]:
        """List repositories the caller can access."""
        data = await self._graphql(token, MY_REPOSITORIES_QUERY)
        return [_to_repository(r) for r in data.get("myRepositories") or []]

    async def validate_access(self, user_id: str, repo_owner: str, repo_name: str, token: str) -> bool:
        """
        Check that the caller can see the repository.

        Returns False when gitea-service answers with a refusal or "not found";
        raises RepositoryAccessError when it cannot give an answer at all.
        """
        try:
            await self.get_repository(token, repo_owner, repo_name)
        except RepositoryNotAccessible as e:
            logger.info(f"Repository access denied for {user_id} on {repo_owner}/{repo_name}: {e}")
            return False
        return True

    async def resolve_clone_url(self, user_id: str, repo_owner: str, repo_name: str, token: str) -> str:
        """
        Clone URL for the repository.

        Private repositories get the service token embedded as
        https://token:<gitea_token>@host/owner/repo.git
        """
        try:
            repo = await self.get_repository(token, repo_owner, repo_name)
        except RepositoryNotAccessible as e:
            raise RepositoryAccessError(f"cannot resolve clone URL for {repo_owner}/{repo_name}: {e}") from e

        if repo.private and self.gitea_token:
            parts = urlsplit(repo.clone_url)
            if not parts.scheme or not parts.hostname:
                logger.warning(f"Failed to parse clone URL for {repo.full_name}, using original")
                return repo.clone_url
            host = parts.hostname
            if parts.port:
                host = f"{host}:{parts.port}"
            netloc = f"token:{quote(self.gitea_token, safe='')}@{host}"
            return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

        return repo.clone_url

    async def health_check(self) -> bool:
        """Return True if gitea-service answers /health with 200."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.service_url}/health")
            if response.status_code != 200:
                logger.warning(f"gitea-service unhealthy: status {response.status_code}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.warning(f"gitea-service health check failed: {e}")
            return False


# Global instance - lazily initialized
_gitea_client_instance: Optional[GiteaServiceClient] = None


def get_gitea_client() -> GiteaServiceClient:
    """Get or create the global gitea-service client from settings."""
    global _gitea_client_instance
    if _gitea_client_instance is None:
        from ..config import get_settings

        settings = get_settings()
        _gitea_client_instance = GiteaServiceClient(
            service_url=settings.gitea_service_url,
            gitea_token=settings.gitea_token,
            timeout=settings.gitea_request_timeout_seconds,
        )
    return _gitea_client_instance
