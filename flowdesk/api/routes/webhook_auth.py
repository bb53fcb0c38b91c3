"""Webhook auth method routes."""

from fastapi import APIRouter, Depends

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import WebhookAuthMethodRequest, WebhookAuthTriggersRequest
from flowdesk.types import Project, WebhookAuthMethod

router = APIRouter(tags=["webhook-auth"])

_BASE = "/projects/{project_id}/webhook_auth_methods"


def _public(method: WebhookAuthMethod) -> dict:
    # Secrets are write-only.
    return method.model_dump(mode="json", exclude={"password", "api_key"})


@router.get(_BASE)
async def list_auth_methods(
    project: Project = Depends(get_project),
    auth_methods=Depends(service("webhook_auth_methods")),
):
    return {"auth_methods": [_public(m) for m in auth_methods.list_for_project(project.id)]}


@router.post(_BASE, status_code=201)
async def create_auth_method(
    body: WebhookAuthMethodRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    auth_methods=Depends(service("webhook_auth_methods")),
):
    method = await auth_methods.create(
        project, user_id, body.name, body.auth_type,
        username=body.username, password=body.password, api_key=body.api_key,
    )
    return _public(method)


@router.put(_BASE + "/{method_id}/triggers")
async def set_auth_method_triggers(
    method_id: str,
    body: WebhookAuthTriggersRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    auth_methods=Depends(service("webhook_auth_methods")),
):
    method = await auth_methods.set_triggers(project, user_id, method_id, body.trigger_ids)
    return _public(method)


@router.delete(_BASE + "/{method_id}")
async def delete_auth_method(
    method_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    auth_methods=Depends(service("webhook_auth_methods")),
):
    await auth_methods.delete(project, user_id, method_id)
    return {"deleted": True}
