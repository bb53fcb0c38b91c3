"""
EditorSession — server side of the collaborative canvas editor.

The client keeps a copy of the workflow params (see ``params.to_map``).
Each interaction sends a small change and gets back JSON patches that
bring the client in line with the server's view, including validation
errors and server-filled defaults.  One session exists per connected
editor tab.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowdesk.exceptions import UnauthorizedError, WorkflowValidationError
from flowdesk.policies import can
from flowdesk.types import Project, Workflow

from .changeset import WorkflowChangeset
from .manager import WorkflowManager
from .params import apply_form_params, apply_patches, to_map, to_patches

logger = logging.getLogger(__name__)

FLASH_SAVED = "Workflow saved"
FLASH_NOT_SAVED = "Workflow could not be saved"


def _strip_errors(params: dict[str, Any]) -> dict[str, Any]:
    result = {k: v for k, v in params.items() if k != "errors"}
    for key in ("jobs", "triggers", "edges"):
        if key in result:
            result[key] = [
                {k: v for k, v in item.items() if k != "errors"} for item in result[key]
            ]
    return result


class EditorSession:
    """
    Holds one editor's working copy of a workflow.

    Args:
        manager:   WorkflowManager used for saves.
        project:   Project the workflow belongs to.
        user_id:   The editing user.
        workflow:  Saved workflow, or None for a workflow not yet created.

    Attributes:
        params:    Current params map, errors included.
        can_edit:  Whether this user may change the workflow.
        flash:     Last user-facing message as ``(kind, text)`` or None.
    """

    def __init__(
        self,
        manager: WorkflowManager,
        project: Project,
        user_id: str,
        workflow: Optional[Workflow] = None,
    ) -> None:
        self._manager = manager
        self.project = project
        self.user_id = user_id
        self.workflow = workflow
        self.can_edit = can("edit_job", user_id, project)
        self.flash: Optional[tuple[str, str]] = None
        self.changeset = self._build({"project_id": project.id} if workflow is None else {})
        self.params = to_map(self.changeset)

    def _build(self, params: dict[str, Any]) -> WorkflowChangeset:
        base = self.workflow or Workflow(project_id=self.project.id)
        return self._manager.build_changeset(base, params)

    def _require_edit(self) -> None:
        if not self.can_edit:
            raise UnauthorizedError(action="edit_job")

    def _update(self, next_params: dict[str, Any]) -> dict[str, Any]:
        self.changeset = self._build(_strip_errors(next_params))
        self.params = to_map(self.changeset)
        return self.params

    # ── Events ────────────────────────────────────────────────────────────────

    def push_change(self, patches: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Apply patches produced by the client.

        Returns the patches the client must apply on top of its own change
        to match the validated params.

        Raises:
            UnauthorizedError: if the user cannot edit.
            PatchError: if the patches do not apply.
        """
        self._require_edit()
        applied = apply_patches(self.params, patches)
        validated = self._update(applied)
        return to_patches(applied, validated)

    def validate(self, form_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Merge a form change and return patches from the previous params."""
        self._require_edit()
        initial = self.params
        return to_patches(initial, self._update(apply_form_params(initial, form_params)))

    def delete_node(self, job_id: str) -> list[dict[str, Any]]:
        """Remove a job and the edges that point at it."""
        self._require_edit()
        initial = self.params
        next_params = dict(initial)
        next_params["edges"] = [e for e in initial["edges"] if e.get("target_job_id") != job_id]
        next_params["jobs"] = [j for j in initial["jobs"] if j.get("id") != job_id]
        return to_patches(initial, self._update(next_params))

    async def save(
        self, form_params: Optional[dict[str, Any]] = None
    ) -> tuple[Optional[Workflow], list[dict[str, Any]]]:
        """
        Persist the working copy.

        Returns:
            (saved workflow or None on validation failure, patches for the client)

        Raises:
            UnauthorizedError: if the user cannot edit.
            StaleWorkflowError / WorkflowDeletedError: from the manager.
        """
        self._require_edit()
        initial = self.params
        if form_params:
            self._update(apply_form_params(initial, form_params))
        payload = _strip_errors(self.params)

        try:
            if self.workflow is None:
                saved = await self._manager.create(self.project, self.user_id, payload)
            else:
                saved = await self._manager.save(
                    self.project,
                    self.user_id,
                    self.workflow.id,
                    payload,
                    lock_version=self.workflow.lock_version,
                )
        except WorkflowValidationError:
            self.flash = ("error", FLASH_NOT_SAVED)
            return None, to_patches(initial, self.params)

        self.workflow = saved
        self.flash = ("info", FLASH_SAVED)
        self.changeset = self._build({})
        self.params = to_map(self.changeset)
        logger.debug("Editor for %s saved workflow %s", self.user_id, saved.id)
        return saved, to_patches(initial, self.params)

    async def reset(self) -> list[dict[str, Any]]:
        """Reload from the stored workflow, dropping unsaved changes."""
        initial = self.params
        if self.workflow is not None:
            self.workflow = await self._manager.get(self.workflow.id, self.project.id)
        self.changeset = self._build({})
        self.params = to_map(self.changeset)
        return to_patches(initial, self.params)


class EditorRegistry:
    """Open editor sessions keyed by (workflow id, client session id)."""

    def __init__(self, manager: WorkflowManager) -> None:
        self._manager = manager
        self._sessions: dict[tuple[str, str], EditorSession] = {}

    async def open(self, project: Project, user_id: str, workflow_id: str, session_id: str) -> EditorSession:
        """
        Return the existing session or start one from the stored workflow.

        Raises:
            UnauthorizedError: if the session id is held by another user.
        """
        key = (workflow_id, session_id)
        session = self._sessions.get(key)
        if session is not None:
            if session.user_id != user_id:
                raise UnauthorizedError("Editor session belongs to another user.", action="edit_workflow")
            return session
        workflow = await self._manager.get(workflow_id, project.id)
        session = EditorSession(self._manager, project, user_id, workflow)
        self._sessions[key] = session
        return session

    def close(self, workflow_id: str, session_id: str, user_id: Optional[str] = None) -> bool:
        """Forget a session; with ``user_id`` only when that user holds it."""
        session = self._sessions.get((workflow_id, session_id))
        if session is None or (user_id is not None and session.user_id != user_id):
            return False
        del self._sessions[(workflow_id, session_id)]
        return True

    def count(self, workflow_id: str) -> int:
        return sum(1 for wid, _ in self._sessions if wid == workflow_id)
