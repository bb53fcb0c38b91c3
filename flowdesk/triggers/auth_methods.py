"""Webhook auth methods — per-project credentials that webhook callers must present."""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from typing import Any, Optional

from flowdesk.exceptions import FlowdeskError, WebhookNotFoundError
from flowdesk.policies import authorize
from flowdesk.types import Project, TriggerType, WebhookAuthMethod, WebhookAuthType

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"


def _header(headers: dict[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class WebhookAuthMethodStore:
    """
    Stores auth methods and their association with webhook triggers.

    Args:
        workflows:   Optional WorkflowManager; triggers get ``has_auth_method``
                     kept in sync when associations change.
        repository:  Optional Repository for persistence.
    """

    def __init__(self, workflows: Any = None, repository: Any = None) -> None:
        self._workflows = workflows
        self._repository = repository
        self._store: dict[str, WebhookAuthMethod] = {}

    async def _persist(self, method: str, *args: Any) -> None:
        if self._repository is None:
            return
        fn = getattr(self._repository, method, None)
        if fn is None:
            return
        try:
            await fn(*args)
        except NotImplementedError:
            pass

    async def load(self) -> int:
        """Populate the store from the repository; returns the count loaded."""
        if self._repository is None:
            return 0
        methods = await self._repository.list_webhook_auth_methods()
        for method in methods:
            self._store[method.id] = method
        logger.info("Loaded %d webhook auth method(s) from the repository", len(methods))
        return len(methods)

    def _project_webhooks(self, project_id: str) -> set[str]:
        if self._workflows is None:
            return set()
        return {
            trigger.id
            for workflow in self._workflows.all()
            if workflow.project_id == project_id
            for trigger in workflow.triggers
            if trigger.type == TriggerType.WEBHOOK
        }

    async def create(
        self,
        project: Project,
        user_id: str,
        name: str,
        auth_type: WebhookAuthType,
        username: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> WebhookAuthMethod:
        """
        Raises:
            UnauthorizedError: if the user may not manage auth methods.
            FlowdeskError: if required fields for the auth type are missing.
        """
        authorize("edit_webhook_auth_methods", user_id, project)
        auth_type = WebhookAuthType(auth_type)
        if auth_type == WebhookAuthType.BASIC and not (username and password):
            raise FlowdeskError("Basic auth requires a username and password")
        if auth_type == WebhookAuthType.API and not api_key:
            raise FlowdeskError("API auth requires an api_key")
        method = WebhookAuthMethod(
            project_id=project.id,
            name=name,
            auth_type=auth_type,
            username=username,
            password=password,
            api_key=api_key,
        )
        await self._persist("save_webhook_auth_method", method)
        self._store[method.id] = method
        return method

    async def set_triggers(
        self, project: Project, user_id: str, method_id: str, trigger_ids: list[str]
    ) -> WebhookAuthMethod:
        """
        Replace the triggers an auth method protects.

        Raises:
            WebhookNotFoundError: if the method, or any trigger, is not a
                webhook of a live workflow in the project.
        """
        authorize("edit_webhook_auth_methods", user_id, project)
        method = self.get(project.id, method_id)
        unknown = set(trigger_ids) - self._project_webhooks(project.id)
        if unknown:
            raise WebhookNotFoundError(
                f"Webhook trigger(s) not found: {', '.join(sorted(unknown))}",
                trigger_type="webhook",
            )
        before = set(method.trigger_ids)
        updated = method.model_copy(update={"trigger_ids": list(dict.fromkeys(trigger_ids))})
        await self._persist("save_webhook_auth_method", updated)
        self._store[method_id] = updated
        await self._sync_triggers(before | set(trigger_ids))
        return updated

    async def delete(self, project: Project, user_id: str, method_id: str) -> None:
        authorize("edit_webhook_auth_methods", user_id, project)
        method = self.get(project.id, method_id)
        await self._persist("delete_webhook_auth_method", method.id)
        del self._store[method.id]
        await self._sync_triggers(set(method.trigger_ids))

    async def _sync_triggers(self, trigger_ids: set[str]) -> None:
        if self._workflows is None:
            return
        protected = {t for t in trigger_ids if self.for_trigger(t)}
        if protected:
            await self._workflows.set_trigger_auth(protected, True)
        if trigger_ids - protected:
            await self._workflows.set_trigger_auth(trigger_ids - protected, False)

    def get(self, project_id: str, method_id: str) -> WebhookAuthMethod:
        method = self._store.get(method_id)
        if method is None or method.project_id != project_id:
            raise WebhookNotFoundError(
                f"Webhook auth method '{method_id}' not found", trigger_type="webhook"
            )
        return method

    def list_for_project(self, project_id: str) -> list[WebhookAuthMethod]:
        return [m for m in self._store.values() if m.project_id == project_id]

    def for_trigger(self, trigger_id: str) -> list[WebhookAuthMethod]:
        return [m for m in self._store.values() if trigger_id in m.trigger_ids]

    def verify(self, trigger_id: str, headers: dict[str, str]) -> bool:
        """True when the trigger has no auth methods or any one of them matches."""
        methods = self.for_trigger(trigger_id)
        if not methods:
            return True
        return any(self._matches(m, headers) for m in methods)

    @staticmethod
    def _matches(method: WebhookAuthMethod, headers: dict[str, str]) -> bool:
        if method.auth_type == WebhookAuthType.API:
            presented = _header(headers, API_KEY_HEADER)
            return presented is not None and hmac.compare_digest(
                presented.encode(), (method.api_key or "").encode()
            )

        authorization = _header(headers, "authorization") or ""
        scheme, _, encoded = authorization.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return False
        try:
            decoded = base64.b64decode(encoded, validate=True).decode()
        except (binascii.Error, UnicodeDecodeError):
            return False
        expected = f"{method.username}:{method.password}"
        return hmac.compare_digest(decoded.encode(), expected.encode())
