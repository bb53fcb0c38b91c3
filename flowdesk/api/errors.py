"""Maps FlowdeskError subclasses to HTTP responses."""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from flowdesk.exceptions import (
    CredentialNotFound,
    DataclipNotFound,
    FlowdeskError,
    InvalidFilterError,
    InvalidRunTransition,
    ProjectNotFound,
    RunNotFound,
    StaleWorkflowError,
    TriggerDisabledError,
    UnauthorizedError,
    VersionControlError,
    WebhookAuthError,
    WebhookNotFoundError,
    WorkflowDeletedError,
    WorkflowNotFound,
    WorkflowValidationError,
)

# First match wins, so subclasses come before their bases.
ERROR_STATUS: list[tuple[type[FlowdeskError], int]] = [
    (UnauthorizedError, 403),
    (ProjectNotFound, 404),
    (WorkflowNotFound, 404),
    (RunNotFound, 404),
    (DataclipNotFound, 404),
    (CredentialNotFound, 404),
    (WebhookNotFoundError, 404),
    (TriggerDisabledError, 403),
    (WebhookAuthError, 401),
    (StaleWorkflowError, 409),
    (WorkflowDeletedError, 409),
    (InvalidRunTransition, 409),
    (WorkflowValidationError, 422),
    (InvalidFilterError, 422),
]

_VERSION_CONTROL_STATUS = {
    "not_connected": 404,
    "already_connected": 409,
    "github_error": 502,
    "github_unreachable": 502,
}


def status_for(exc: FlowdeskError) -> int:
    if isinstance(exc, VersionControlError):
        return _VERSION_CONTROL_STATUS.get(exc.reason, 422)
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 422


def error_body(exc: FlowdeskError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": str(exc)}
    errors = getattr(exc, "errors", None)
    if errors:
        body["errors"] = errors
    if isinstance(exc, StaleWorkflowError):
        body["lock_version"] = exc.actual
    if isinstance(exc, VersionControlError) and exc.reason:
        body["reason"] = exc.reason
    return body


async def flowdesk_error_handler(request: Request, exc: FlowdeskError) -> JSONResponse:
    return JSONResponse(error_body(exc), status_code=status_for(exc))
