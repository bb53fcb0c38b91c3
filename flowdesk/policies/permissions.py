"""
Role-based permissions for project resources.

Every mutating operation in the workflow, credential, run and sync layers
calls ``authorize`` before touching state.  Roles are ordered
viewer < editor < admin < owner; an action lists the minimum role.
"""

from __future__ import annotations

from typing import Optional

from flowdesk.exceptions import UnauthorizedError
from flowdesk.types import Credential, Project, ProjectRole

_RANK = {
    ProjectRole.VIEWER: 0,
    ProjectRole.EDITOR: 1,
    ProjectRole.ADMIN: 2,
    ProjectRole.OWNER: 3,
}

MINIMUM_ROLE: dict[str, ProjectRole] = {
    # viewers
    "access_project": ProjectRole.VIEWER,
    "view_workflow": ProjectRole.VIEWER,
    "view_dataclips": ProjectRole.VIEWER,
    "view_runs": ProjectRole.VIEWER,
    # editors
    "create_workflow": ProjectRole.EDITOR,
    "edit_workflow": ProjectRole.EDITOR,
    "edit_job": ProjectRole.EDITOR,
    "delete_workflow": ProjectRole.EDITOR,
    "run_workflow": ProjectRole.EDITOR,
    "edit_dataclip": ProjectRole.EDITOR,
    "create_project_credential": ProjectRole.EDITOR,
    # admins
    "edit_webhook_auth_methods": ProjectRole.ADMIN,
    "initiate_github_sync": ProjectRole.ADMIN,
    "create_sandbox": ProjectRole.ADMIN,
    "add_project_user": ProjectRole.ADMIN,
    # owners
    "delete_project": ProjectRole.OWNER,
}


def can(action: str, user_id: Optional[str], project: Optional[Project]) -> bool:
    """Return True when ``user_id``'s role in ``project`` allows ``action``."""
    if project is None or not user_id:
        return False
    required = MINIMUM_ROLE.get(action)
    if required is None:
        raise KeyError(f"Unknown action {action!r}")
    role = project.role_for(user_id)
    if role is None:
        return False
    return _RANK[role] >= _RANK[required]


def authorize(action: str, user_id: Optional[str], project: Optional[Project]) -> None:
    """
    Raises:
        UnauthorizedError: if the user may not perform ``action``.
    """
    if not can(action, user_id, project):
        raise UnauthorizedError(action=action)


def can_edit_credential(user_id: Optional[str], credential: Credential) -> bool:
    """Credentials are personal: only the owning user may change or delete them."""
    return bool(user_id) and credential.user_id == user_id
