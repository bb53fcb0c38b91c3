"""Credential CRUD and project sharing routes.

Responses carry metadata only; decrypted bodies never leave the vault.
"""

import logging

from fastapi import APIRouter, Depends

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import (
    CredentialCreateRequest,
    CredentialShareRequest,
    CredentialUpdateRequest,
)
from flowdesk.exceptions import ProjectNotFound
from flowdesk.policies import authorize, can
from flowdesk.types import Project

logger = logging.getLogger(__name__)
router = APIRouter(tags=["credentials"])


@router.get("/credentials")
async def list_credentials(
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
):
    return {"credentials": [c.model_dump(mode="json") for c in vault.list_for_user(user_id)]}


@router.post("/credentials", status_code=201)
async def create_credential(
    body: CredentialCreateRequest,
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
    projects=Depends(service("projects")),
):
    for project_id in body.project_ids:
        project = projects.get(project_id)
        if not can("access_project", user_id, project):
            raise ProjectNotFound(f"Project '{project_id}' not found", project_id=project_id)
        authorize("create_project_credential", user_id, project)
    credential = await vault.create(
        user_id=user_id,
        name=body.name,
        body=body.body,
        schema_name=body.schema_name,
        production=body.production,
        project_ids=body.project_ids,
    )
    return credential.model_dump(mode="json")


@router.put("/credentials/{credential_id}")
async def update_credential(
    credential_id: str,
    body: CredentialUpdateRequest,
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
):
    credential = await vault.update(
        credential_id, user_id, name=body.name, body=body.body, production=body.production
    )
    return credential.model_dump(mode="json")


@router.delete("/credentials/{credential_id}")
async def delete_credential(
    credential_id: str,
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
):
    """Schedule deletion; the credential is unshared immediately and purged later."""
    credential = await vault.schedule_deletion(credential_id, user_id)
    return credential.model_dump(mode="json")


@router.post("/credentials/{credential_id}/restore")
async def restore_credential(
    credential_id: str,
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
):
    credential = await vault.cancel_scheduled_deletion(credential_id, user_id)
    return credential.model_dump(mode="json")


# ── Sharing ──────────────────────────────────────────────────────────────────

@router.post("/credentials/{credential_id}/projects", status_code=201)
async def share_credential(
    credential_id: str,
    body: CredentialShareRequest,
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
    projects=Depends(service("projects")),
):
    project = get_project(body.project_id, user_id, projects)
    pc = await vault.add_to_project(project, user_id, credential_id)
    return pc.model_dump(mode="json")


@router.delete("/credentials/{credential_id}/projects/{project_id}")
async def unshare_credential(
    credential_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    vault=Depends(service("vault")),
):
    await vault.remove_from_project(project, user_id, credential_id)
    return {"removed": True}


@router.get("/projects/{project_id}/credentials")
async def list_project_credentials(
    project: Project = Depends(get_project),
    vault=Depends(service("vault")),
):
    shared = vault.project_credentials(project.id)
    return {
        "project_credentials": [
            {**pc.model_dump(mode="json"), "credential": vault.get(pc.credential_id).model_dump(mode="json")}
            for pc in shared
        ]
    }
