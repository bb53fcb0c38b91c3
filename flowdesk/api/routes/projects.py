"""Project, membership, sandbox and export routes."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import ProjectCreateRequest, ProjectUserRequest, SandboxCreateRequest
from flowdesk.policies import authorize
from flowdesk.projects import export_project_yaml
from flowdesk.types import Project

logger = logging.getLogger(__name__)
router = APIRouter(tags=["projects"])


@router.get("/projects")
async def list_projects(
    user_id: str = Depends(get_user_id),
    projects=Depends(service("projects")),
):
    return {"projects": [p.model_dump(mode="json") for p in projects.list_for_user(user_id)]}


@router.post("/projects", status_code=201)
async def create_project(
    body: ProjectCreateRequest,
    user_id: str = Depends(get_user_id),
    projects=Depends(service("projects")),
):
    project = await projects.create(body.name, user_id, description=body.description)
    return project.model_dump(mode="json")


@router.get("/projects/{project_id}")
async def get_project_route(project: Project = Depends(get_project)):
    return project.model_dump(mode="json")


@router.post("/projects/{project_id}/users")
async def add_project_user(
    body: ProjectUserRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    projects=Depends(service("projects")),
):
    updated = await projects.add_user(project, user_id, body.user_id, body.role)
    return updated.model_dump(mode="json")


@router.get("/projects/{project_id}/sandboxes")
async def list_sandboxes(
    project: Project = Depends(get_project),
    projects=Depends(service("projects")),
):
    return {"sandboxes": [p.model_dump(mode="json") for p in projects.list_sandboxes(project.id)]}


@router.post("/projects/{project_id}/sandboxes", status_code=201)
async def create_sandbox(
    body: SandboxCreateRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    projects=Depends(service("projects")),
):
    sandbox = await projects.create_sandbox(project, user_id, body.name)
    return sandbox.model_dump(mode="json")


@router.get("/projects/{project_id}/export", response_class=PlainTextResponse)
async def export_project(
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    workflows=Depends(service("workflow_manager")),
    vault=Depends(service("vault")),
):
    """The project as YAML."""
    authorize("view_workflow", user_id, project)
    credentials = [(pc, vault.get(pc.credential_id)) for pc in vault.project_credentials(project.id)]
    body = export_project_yaml(project, await workflows.list(project.id), credentials)
    return PlainTextResponse(body, media_type="application/x-yaml")
