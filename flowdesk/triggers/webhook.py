"""WebhookHandler — maps inbound HTTP requests to webhook triggers.

A request is addressed either by trigger id or by the trigger's
``custom_path``.  The body becomes an ``http_request`` dataclip and a work
order is created against the latest snapshot of the trigger's workflow.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from flowdesk.exceptions import TriggerDisabledError, WebhookAuthError, WebhookNotFoundError
from flowdesk.types import DataclipType, Run, Trigger, TriggerType, WorkOrder, Workflow

logger = logging.getLogger(__name__)

# Headers never copied onto the stored request.
_REDACTED_HEADERS = frozenset({"authorization", "x-api-key", "cookie"})


class WebhookHandler:
    """
    Args:
        workflows:     WorkflowManager used to resolve the trigger.
        dataclips:     DataclipStore for the request body.
        work_orders:   WorkOrderService that enqueues the run.
        auth_methods:  Optional WebhookAuthMethodStore; when None no auth is checked.
    """

    def __init__(self, workflows, dataclips, work_orders, auth_methods=None) -> None:
        self._workflows    = workflows
        self._dataclips    = dataclips
        self._work_orders  = work_orders
        self._auth_methods = auth_methods

    def resolve(self, webhook_path: str) -> Optional[tuple[Trigger, Workflow]]:
        """Find the webhook trigger addressed by *webhook_path* (id or custom path)."""
        path = webhook_path.strip("/")
        for workflow in self._workflows.all():
            for trigger in workflow.triggers:
                if trigger.type != TriggerType.WEBHOOK:
                    continue
                if trigger.id == path or (trigger.custom_path and trigger.custom_path.strip("/") == path):
                    return trigger, workflow
        return None

    async def handle(
        self,
        webhook_path: str,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        query_params: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> tuple[WorkOrder, Run]:
        """Find the trigger for *webhook_path* and start a work order.

        Raises:
            WebhookNotFoundError: no webhook trigger matches the path.
            TriggerDisabledError: the trigger is disabled.
            WebhookAuthError:     the request failed every auth method.
            DataclipError:        the body is not a JSON object.
        """
        headers = dict(headers or {})
        found = self.resolve(webhook_path)
        if found is None:
            raise WebhookNotFoundError("Unknown webhook path", trigger_type="webhook")
        trigger, workflow = found
        if not trigger.enabled:
            raise TriggerDisabledError("Trigger is disabled", trigger_type="webhook")
        if self._auth_methods is not None and not self._auth_methods.verify(trigger.id, headers):
            raise WebhookAuthError("Webhook authentication failed", trigger_type="webhook")

        request = {
            "method":       method.upper(),
            "headers":      {k.lower(): v for k, v in headers.items() if k.lower() not in _REDACTED_HEADERS},
            "query_params": dict(query_params or {}),
            "received_at":  datetime.now(timezone.utc).isoformat(),
        }
        dataclip = await self._dataclips.create(
            workflow.project_id, body if body is not None else {}, DataclipType.HTTP_REQUEST,
            request=request,
        )
        logger.info("Webhook %s accepted for workflow %s", trigger.id, workflow.id)
        return await self._work_orders.create_for_trigger(trigger, workflow, dataclip)
