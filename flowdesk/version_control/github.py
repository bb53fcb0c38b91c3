"""
GitHub sync — one repository connection per project.

``initiate_sync`` asks GitHub Actions to run the pull workflow in the
connected repository, which commits the project's current state back to
the configured branch.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from flowdesk.version import __version__
from flowdesk.config import FlowdeskConfig
from flowdesk.exceptions import VersionControlError
from flowdesk.policies import authorize
from flowdesk.types import Project, RepoConnection

logger = logging.getLogger(__name__)

API_SECRET_NAME_PREFIX = "OPENFN"


def api_secret_name(project_id: str) -> str:
    """Name of the repository secret that holds the project's API token."""
    return f"{API_SECRET_NAME_PREFIX}_{project_id.replace('-', '_').upper()}_API_KEY"


class VersionControl:
    """
    Args:
        config:     FlowdeskConfig with the GitHub URL, token and workflow file.
        transport:  Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: Optional[FlowdeskConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config or FlowdeskConfig()
        self._transport = transport
        self._connections: dict[str, RepoConnection] = {}

    # ── Connections ──────────────────────────────────────────────────────────

    def connect(
        self,
        project: Project,
        user_id: str,
        repo: str,
        branch: str = "main",
        config_path: Optional[str] = None,
    ) -> RepoConnection:
        """
        Raises:
            UnauthorizedError: if the user cannot manage GitHub sync.
            VersionControlError: if the repo name is malformed or a connection exists.
        """
        authorize("initiate_github_sync", user_id, project)
        owner, _, name = repo.partition("/")
        if not owner or not name or "/" in name:
            raise VersionControlError(
                f"Repository must be of the form 'owner/name', got '{repo}'",
                reason="invalid_repo",
            )
        if project.id in self._connections:
            raise VersionControlError(
                "Project already has a repository connection", reason="already_connected"
            )
        connection = RepoConnection(
            project_id=project.id, repo=repo, branch=branch or "main", config_path=config_path
        )
        self._connections[project.id] = connection
        logger.info("Project %s connected to %s@%s", project.id, repo, connection.branch)
        return connection

    def disconnect(self, project: Project, user_id: str) -> Optional[RepoConnection]:
        authorize("initiate_github_sync", user_id, project)
        return self._connections.pop(project.id, None)

    def get_connection(self, project_id: str) -> Optional[RepoConnection]:
        return self._connections.get(project_id)

    # ── Sync ─────────────────────────────────────────────────────────────────

    def dispatch_payload(
        self, connection: RepoConnection, commit_message: str
    ) -> dict[str, Any]:
        return {
            "ref": connection.branch,
            "inputs": {
                "projectId": connection.project_id,
                "apiSecretName": api_secret_name(connection.project_id),
                "branch": connection.branch,
                "pathToConfig": connection.config_path or f"openfn-{connection.project_id}-config.json",
                "commitMessage": commit_message,
            },
        }

    async def initiate_sync(
        self, project: Project, user_id: str, commit_message: str = ""
    ) -> RepoConnection:
        """
        Dispatch the pull workflow for the project's connected repository.

        Raises:
            UnauthorizedError: if the user cannot initiate a sync.
            VersionControlError: no connection, or GitHub rejected the request.
        """
        authorize("initiate_github_sync", user_id, project)
        connection = self.get_connection(project.id)
        if connection is None:
            raise VersionControlError("Project is not connected to a repository", reason="not_connected")

        message = commit_message or f"{user_id} initiated a sync from flowdesk"
        url = (
            f"{self._config.github_api_url.rstrip('/')}/repos/{connection.repo}"
            f"/actions/workflows/{self._config.github_sync_workflow}/dispatches"
        )
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"flowdesk/{__version__}",
        }
        if self._config.github_app_token:
            headers["Authorization"] = f"Bearer {self._config.github_app_token}"

        try:
            async with httpx.AsyncClient(
                timeout=self._config.github_timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=self.dispatch_payload(connection, message))
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise VersionControlError(
                f"GitHub rejected the sync request: {exc.response.status_code}",
                reason="github_error",
                details={"status": exc.response.status_code, "body": exc.response.text},
            ) from exc
        except httpx.HTTPError as exc:
            raise VersionControlError(
                f"GitHub sync request failed: {exc}", reason="github_unreachable"
            ) from exc

        logger.info("GitHub sync dispatched for project %s (%s)", project.id, connection.repo)
        return connection
