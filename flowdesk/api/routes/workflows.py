"""Workflow, editor, graph node and presence routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import (
    EditorSaveRequest,
    NodeRequest,
    PatchRequest,
    PresenceJoinRequest,
    ValidateRequest,
    WorkflowSaveRequest,
)
from flowdesk.exceptions import UnauthorizedError
from flowdesk.policies import authorize, can
from flowdesk.types import Project, User
from flowdesk.workflows.params import to_map

logger = logging.getLogger(__name__)
router = APIRouter(tags=["workflows"])

_BASE = "/projects/{project_id}/workflows"


def _dump(workflow) -> dict:
    return workflow.model_dump(mode="json")


# ─────────────────────────────────────────────────────────────────────────────
# Workflows
# ─────────────────────────────────────────────────────────────────────────────

@router.get(_BASE)
async def list_workflows(
    search: Optional[str] = None,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    authorize("view_workflow", user_id, project)
    return {"workflows": [_dump(w) for w in await manager.list(project.id, search)]}


@router.post(_BASE, status_code=201)
async def create_workflow(
    body: WorkflowSaveRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    workflow = await manager.create(project, user_id, body.params)
    return _dump(workflow)


@router.get(_BASE + "/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    authorize("view_workflow", user_id, project)
    return _dump(await manager.get(workflow_id, project.id))


@router.put(_BASE + "/{workflow_id}")
async def save_workflow(
    workflow_id: str,
    body: WorkflowSaveRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    workflow = await manager.save(project, user_id, workflow_id, body.params, body.lock_version)
    return _dump(workflow)


@router.delete(_BASE + "/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    workflow = await manager.mark_for_deletion(project, user_id, workflow_id)
    return {"id": workflow.id, "deleted_at": workflow.deleted_at.isoformat()}


@router.get(_BASE + "/{workflow_id}/snapshots")
async def list_snapshots(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    authorize("view_workflow", user_id, project)
    await manager.get(workflow_id, project.id, include_deleted=True)
    return {"snapshots": [s.model_dump(mode="json") for s in manager.snapshots.list(workflow_id)]}


@router.get(_BASE + "/{workflow_id}/versions")
async def list_versions(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
):
    authorize("view_workflow", user_id, project)
    workflow = await manager.get(workflow_id, project.id, include_deleted=True)
    return {
        "versions": [v.model_dump(mode="json") for v in manager.versions.versions(workflow_id)],
        "history": manager.versions.history_for(workflow),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Editor (JSON patch exchange)
# ─────────────────────────────────────────────────────────────────────────────

@router.get(_BASE + "/{workflow_id}/params")
async def get_params(
    workflow_id: str,
    session_id: Optional[str] = None,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    editors=Depends(service("editors")),
):
    """Params map for the editor; an open session's unsaved state when ``session_id`` is given."""
    authorize("view_workflow", user_id, project)
    workflow = await manager.get(workflow_id, project.id)
    if session_id:
        session = await editors.open(project, user_id, workflow_id, session_id)
        return {"params": session.params, "lock_version": session.workflow.lock_version,
                "can_edit": session.can_edit}
    params = to_map(manager.build_changeset(workflow, {}))
    return {"params": params, "lock_version": workflow.lock_version,
            "can_edit": can("edit_job", user_id, project)}


@router.post(_BASE + "/{workflow_id}/patches")
async def push_change(
    workflow_id: str,
    body: PatchRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    editors=Depends(service("editors")),
):
    session = await editors.open(project, user_id, workflow_id, body.session_id)
    return {"patches": session.push_change(body.patches)}


@router.post(_BASE + "/{workflow_id}/validate")
async def validate(
    workflow_id: str,
    body: ValidateRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    editors=Depends(service("editors")),
):
    session = await editors.open(project, user_id, workflow_id, body.session_id)
    return {"patches": session.validate(body.params)}


@router.post(_BASE + "/{workflow_id}/save")
async def save_from_editor(
    workflow_id: str,
    body: EditorSaveRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    editors=Depends(service("editors")),
):
    session = await editors.open(project, user_id, workflow_id, body.session_id)
    saved, patches = await session.save(body.params)
    kind, message = session.flash
    if saved is None:
        return JSONResponse(
            {"detail": message, "patches": patches, "errors": session.params["errors"]},
            status_code=422,
        )
    return {"workflow": _dump(saved), "patches": patches, "flash": {"kind": kind, "message": message}}


# ─────────────────────────────────────────────────────────────────────────────
# Graph nodes
# ─────────────────────────────────────────────────────────────────────────────

@router.post(_BASE + "/{workflow_id}/jobs", status_code=201)
async def add_job(workflow_id: str, body: NodeRequest, project: Project = Depends(get_project),
                  user_id: str = Depends(get_user_id), manager=Depends(service("workflow_manager"))):
    return _dump(await manager.add_job(project, user_id, workflow_id, body.data, body.lock_version))


@router.patch(_BASE + "/{workflow_id}/jobs/{job_id}")
async def update_job(workflow_id: str, job_id: str, body: NodeRequest,
                     project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                     manager=Depends(service("workflow_manager"))):
    return _dump(await manager.update_job(project, user_id, workflow_id, job_id, body.data, body.lock_version))


@router.delete(_BASE + "/{workflow_id}/jobs/{job_id}")
async def delete_job(workflow_id: str, job_id: str, lock_version: Optional[int] = None,
                     project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                     manager=Depends(service("workflow_manager"))):
    return _dump(await manager.delete_job(project, user_id, workflow_id, job_id, lock_version))


@router.post(_BASE + "/{workflow_id}/edges", status_code=201)
async def add_edge(workflow_id: str, body: NodeRequest, project: Project = Depends(get_project),
                   user_id: str = Depends(get_user_id), manager=Depends(service("workflow_manager"))):
    return _dump(await manager.add_edge(project, user_id, workflow_id, body.data, body.lock_version))


@router.patch(_BASE + "/{workflow_id}/edges/{edge_id}")
async def update_edge(workflow_id: str, edge_id: str, body: NodeRequest,
                      project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                      manager=Depends(service("workflow_manager"))):
    return _dump(await manager.update_edge(project, user_id, workflow_id, edge_id, body.data, body.lock_version))


@router.delete(_BASE + "/{workflow_id}/edges/{edge_id}")
async def delete_edge(workflow_id: str, edge_id: str, lock_version: Optional[int] = None,
                      project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                      manager=Depends(service("workflow_manager"))):
    return _dump(await manager.delete_edge(project, user_id, workflow_id, edge_id, lock_version))


@router.post(_BASE + "/{workflow_id}/triggers", status_code=201)
async def add_trigger(workflow_id: str, body: NodeRequest, project: Project = Depends(get_project),
                      user_id: str = Depends(get_user_id), manager=Depends(service("workflow_manager"))):
    return _dump(await manager.add_trigger(project, user_id, workflow_id, body.data, body.lock_version))


@router.patch(_BASE + "/{workflow_id}/triggers/{trigger_id}")
async def update_trigger(workflow_id: str, trigger_id: str, body: NodeRequest,
                         project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                         manager=Depends(service("workflow_manager"))):
    return _dump(await manager.update_trigger(project, user_id, workflow_id, trigger_id, body.data, body.lock_version))


@router.delete(_BASE + "/{workflow_id}/triggers/{trigger_id}")
async def delete_trigger(workflow_id: str, trigger_id: str, lock_version: Optional[int] = None,
                         project: Project = Depends(get_project), user_id: str = Depends(get_user_id),
                         manager=Depends(service("workflow_manager"))):
    return _dump(await manager.delete_trigger(project, user_id, workflow_id, trigger_id, lock_version))


# ─────────────────────────────────────────────────────────────────────────────
# Presence
# ─────────────────────────────────────────────────────────────────────────────

@router.post(_BASE + "/{workflow_id}/presence")
async def join(
    workflow_id: str,
    body: PresenceJoinRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    presence=Depends(service("presence")),
):
    """Track this session and report whether it may edit."""
    authorize("view_workflow", user_id, project)
    await manager.get(workflow_id, project.id)
    _own_session(presence, workflow_id, body.session_id, user_id)
    user = User(id=user_id, email=body.email, first_name=body.first_name, last_name=body.last_name)
    entry = await presence.track(
        workflow_id, user, body.session_id, can_edit=can("edit_workflow", user_id, project)
    )
    return {
        "entry": entry.model_dump(mode="json"),
        "priority": presence.edit_priority(workflow_id, body.session_id),
        "others": [u.model_dump(mode="json") for u in presence.others(workflow_id, user_id)],
    }


def _own_session(presence, workflow_id: str, session_id: str, user_id: str) -> None:
    entry = presence.get(workflow_id, session_id)
    if entry is not None and entry.user.id != user_id:
        raise UnauthorizedError("Presence session belongs to another user.", action="presence")


@router.delete(_BASE + "/{workflow_id}/presence/{session_id}")
async def leave(
    workflow_id: str,
    session_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    presence=Depends(service("presence")),
    editors=Depends(service("editors")),
):
    """Stop tracking one of the caller's own sessions."""
    authorize("view_workflow", user_id, project)
    await manager.get(workflow_id, project.id)
    _own_session(presence, workflow_id, session_id, user_id)
    entry = await presence.untrack(workflow_id, session_id)
    editors.close(workflow_id, session_id, user_id)
    return {"left": entry is not None}


@router.get(_BASE + "/{workflow_id}/presence")
async def list_presence(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    presence=Depends(service("presence")),
):
    authorize("view_workflow", user_id, project)
    await manager.get(workflow_id, project.id)
    return {"presences": [e.model_dump(mode="json") for e in presence.list(workflow_id)]}
