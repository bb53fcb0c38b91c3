"""Pydantic models for API request/response bodies."""

from pydantic import BaseModel, Field
from typing import Any, Optional

from flowdesk.types import ProjectRole, WebhookAuthType


# ── Requests ──

class TokenRequest(BaseModel):
    api_key: str


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""


class ProjectUserRequest(BaseModel):
    user_id: str
    role: ProjectRole = ProjectRole.VIEWER


class SandboxCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class WorkflowSaveRequest(BaseModel):
    params: dict[str, Any] = {}
    lock_version: Optional[int] = None       # version the edit is based on


class NodeRequest(BaseModel):
    data: dict[str, Any] = {}                # job / edge / trigger fields
    lock_version: Optional[int] = None


class PatchRequest(BaseModel):
    session_id: str
    patches: list[dict[str, Any]]


class ValidateRequest(BaseModel):
    session_id: str
    params: dict[str, Any] = {}


class EditorSaveRequest(BaseModel):
    session_id: str
    params: Optional[dict[str, Any]] = None


class PresenceJoinRequest(BaseModel):
    session_id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""


class ManualRunRequest(BaseModel):
    job_id: str
    dataclip_id: Optional[str] = None
    body: Optional[dict[str, Any]] = None    # becomes a saved_input dataclip


class RetryRequest(BaseModel):
    step_id: str


class CredentialCreateRequest(BaseModel):
    name: str
    body: dict[str, Any]
    schema_name: str = "raw"
    production: bool = False
    project_ids: list[str] = Field(default_factory=list)


class CredentialUpdateRequest(BaseModel):
    name: Optional[str] = None
    body: Optional[dict[str, Any]] = None
    production: Optional[bool] = None


class CredentialShareRequest(BaseModel):
    project_id: str


class WebhookAuthMethodRequest(BaseModel):
    name: str
    auth_type: WebhookAuthType = WebhookAuthType.BASIC
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None


class WebhookAuthTriggersRequest(BaseModel):
    trigger_ids: list[str]


class GithubConnectRequest(BaseModel):
    repo: str                                # "owner/name"
    branch: str = "main"
    config_path: Optional[str] = None


class GithubSyncRequest(BaseModel):
    commit_message: str = ""


# ── Responses ──

class TokenResponse(BaseModel):
    token: str
    user_id: str
    expires_in: int                          # seconds


class HealthResponse(BaseModel):
    status: str                              # "ok" | "degraded"
    version: str
    services: dict[str, bool]


class WorkOrderResponse(BaseModel):
    work_order_id: str
    run_id: str
    dataclip_id: Optional[str] = None
