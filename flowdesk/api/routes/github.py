"""GitHub repository connection and sync routes."""

import logging

from fastapi import APIRouter, Depends

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import GithubConnectRequest, GithubSyncRequest
from flowdesk.exceptions import VersionControlError
from flowdesk.types import Project

logger = logging.getLogger(__name__)
router = APIRouter(tags=["github"])


@router.get("/projects/{project_id}/github")
async def get_connection(
    project: Project = Depends(get_project),
    version_control=Depends(service("version_control")),
):
    connection = version_control.get_connection(project.id)
    if connection is None:
        raise VersionControlError("Project is not connected to a repository", reason="not_connected")
    return connection.model_dump(mode="json")


@router.post("/projects/{project_id}/github", status_code=201)
async def connect_repo(
    body: GithubConnectRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    version_control=Depends(service("version_control")),
):
    connection = version_control.connect(
        project, user_id, body.repo, branch=body.branch, config_path=body.config_path
    )
    return connection.model_dump(mode="json")


@router.delete("/projects/{project_id}/github")
async def disconnect_repo(
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    version_control=Depends(service("version_control")),
):
    removed = version_control.disconnect(project, user_id)
    return {"disconnected": removed is not None}


@router.post("/projects/{project_id}/github/sync", status_code=202)
async def sync_repo(
    body: GithubSyncRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    version_control=Depends(service("version_control")),
):
    """Dispatch the pull workflow on the connected repository."""
    connection = await version_control.initiate_sync(project, user_id, body.commit_message)
    return {"status": "dispatched", "repo": connection.repo, "branch": connection.branch}
