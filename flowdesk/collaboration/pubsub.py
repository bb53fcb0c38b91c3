"""In-process topic pub/sub with optional Redis fan-out.

Every collaborative surface (workflow editor, run viewer, project
dashboard) subscribes to a topic.  Subscribers are plain callables (sync
or async) receiving one message dict::

    {"topic": "workflow:<id>", "event": "workflow_saved", "payload": {...}}

The bus snapshots the subscriber list before iterating so that callbacks
added during a broadcast don't cause mutation issues.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)

# ── Well-known event names ─────────────────────────────────────────────────
EVENT_WORKFLOW_SAVED      = "workflow_saved"
EVENT_WORKFLOW_DELETED    = "workflow_deleted"
EVENT_PRESENCE_DIFF       = "presence_diff"
EVENT_WORK_ORDER_CREATED  = "work_order_created"
EVENT_RUN_CREATED         = "run_created"
EVENT_RUN_UPDATED         = "run_updated"
EVENT_STEP_STARTED        = "step_started"
EVENT_STEP_COMPLETED      = "step_completed"
EVENT_DATACLIP_WIPED      = "dataclip_wiped"


def workflow_topic(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def project_topic(project_id: str) -> str:
    return f"project:{project_id}"


def run_topic(run_id: str) -> str:
    return f"run:{run_id}"


class PubSub:
    """Topic-based broadcast bus.

    Usage::

        pubsub = PubSub()
        pubsub.subscribe(workflow_topic(wf.id), on_message)
        await pubsub.broadcast(workflow_topic(wf.id), "workflow_saved", {"lock_version": 3})

    When a RedisClient is attached every broadcast is also published as JSON
    so other processes serving the same workflow see it.
    """

    def __init__(self, redis_client: Any = None) -> None:
        self._subscribers: dict[str, list[Callable]] = {}
        self._redis = redis_client

    def subscribe(self, topic: str, callback: Callable) -> None:
        """Register *callback* for *topic*.  Same callback may be registered multiple times."""
        self._subscribers.setdefault(topic, []).append(callback)

    def unsubscribe(self, topic: str, callback: Callable) -> None:
        """Remove the first occurrence of *callback* from *topic*.  Silently ignores missing."""
        callbacks = self._subscribers.get(topic, [])
        try:
            callbacks.remove(callback)
        except ValueError:
            pass
        if not callbacks:
            self._subscribers.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def broadcast(self, topic: str, event: str, payload: Optional[dict] = None) -> None:
        """Deliver an event to all subscribers of *topic*.

        Exceptions raised by individual subscribers are logged and swallowed so
        that one failing handler cannot block the rest.
        """
        message = {"topic": topic, "event": event, "payload": payload or {}}
        callbacks = list(self._subscribers.get(topic, []))
        for cb in callbacks:
            try:
                result = cb(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("PubSub subscriber raised for topic=%r event=%r", topic, event)

        if self._redis is not None:
            try:
                await self._redis.publish(topic, json.dumps(message, default=str))
            except Exception:
                logger.warning("Redis fan-out failed for topic=%r", topic, exc_info=True)

    @asynccontextmanager
    async def queue_subscription(
        self, topic: str, maxsize: int = 100
    ) -> AsyncIterator[asyncio.Queue]:
        """Subscribe a bounded queue to *topic* for the duration of the block.

        Messages are dropped (with a warning) when the consumer falls behind.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

        def _enqueue(message: dict) -> None:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dropping message for slow subscriber on topic=%r", topic)

        self.subscribe(topic, _enqueue)
        try:
            yield queue
        finally:
            self.unsubscribe(topic, _enqueue)
