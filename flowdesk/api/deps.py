"""Shared route dependencies: the current user, the current project, services."""

from typing import Any, Callable

from fastapi import Depends, HTTPException, Request

from flowdesk.exceptions import ProjectNotFound
from flowdesk.policies import can
from flowdesk.types import Project


def get_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="User not authenticated.")
    return user_id


def service(name: str) -> Callable[[Request], Any]:
    """Dependency returning ``app.state.<name>``, or 503 when it is not wired."""

    def _get(request: Request) -> Any:
        value = getattr(request.app.state, name, None)
        if value is None:
            raise HTTPException(status_code=503, detail=f"{name} not initialised.")
        return value

    _get.__name__ = f"get_{name}"
    return _get


def get_project(
    project_id: str,
    user_id: str = Depends(get_user_id),
    projects=Depends(service("projects")),
) -> Project:
    """The path's project; members only, others get a 404."""
    project = projects.get(project_id)
    if not can("access_project", user_id, project):
        raise ProjectNotFound(f"Project '{project_id}' not found", project_id=project_id)
    return project
