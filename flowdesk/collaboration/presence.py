"""
Presence — who is looking at a workflow right now, and who may edit it.

Only one session edits a workflow at a time.  Priority goes to the user
who joined first among those allowed to edit; everyone else (including
that user's own later sessions, e.g. a second browser tab) is read-only
until the priority session leaves.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowdesk.types import PresenceEntry, User

from .pubsub import EVENT_PRESENCE_DIFF, PubSub, workflow_topic

logger = logging.getLogger(__name__)

EDIT = "edit"
READ_ONLY = "read_only"


class Presence:
    """Tracks sessions per workflow and broadcasts join/leave diffs."""

    def __init__(self, pubsub: Optional[PubSub] = None) -> None:
        self._pubsub = pubsub
        self._entries: dict[str, dict[str, PresenceEntry]] = {}

    async def _broadcast(self, workflow_id: str, joins: list, leaves: list) -> None:
        if self._pubsub is None:
            return
        await self._pubsub.broadcast(
            workflow_topic(workflow_id),
            EVENT_PRESENCE_DIFF,
            {
                "joins": [e.model_dump(mode="json") for e in joins],
                "leaves": [e.model_dump(mode="json") for e in leaves],
            },
        )

    async def track(
        self, workflow_id: str, user: User, session_id: str, can_edit: bool = False
    ) -> PresenceEntry:
        """Register a session; re-tracking an existing session keeps its join time."""
        sessions = self._entries.setdefault(workflow_id, {})
        existing = sessions.get(session_id)
        if existing is not None:
            return existing
        entry = PresenceEntry(user=user, session_id=session_id, can_edit=can_edit)
        sessions[session_id] = entry
        logger.debug("User %s joined workflow %s (session %s)", user.id, workflow_id, session_id)
        await self._broadcast(workflow_id, [entry], [])
        return entry

    async def untrack(self, workflow_id: str, session_id: str) -> Optional[PresenceEntry]:
        sessions = self._entries.get(workflow_id, {})
        entry = sessions.pop(session_id, None)
        if not sessions:
            self._entries.pop(workflow_id, None)
        if entry is not None:
            await self._broadcast(workflow_id, [], [entry])
        return entry

    def get(self, workflow_id: str, session_id: str) -> Optional[PresenceEntry]:
        return self._entries.get(workflow_id, {}).get(session_id)

    def list(self, workflow_id: str) -> list[PresenceEntry]:
        """All sessions, earliest join first."""
        sessions = self._entries.get(workflow_id, {})
        return sorted(sessions.values(), key=lambda e: e.joined_at)

    def others(self, workflow_id: str, user_id: str) -> list[User]:
        """Distinct users present other than ``user_id``, in join order."""
        seen: dict[str, User] = {}
        for entry in self.list(workflow_id):
            if entry.user.id != user_id and entry.user.id not in seen:
                seen[entry.user.id] = entry.user
        return list(seen.values())

    def edit_priority(self, workflow_id: str, session_id: str) -> dict[str, Any]:
        """
        Decide whether ``session_id`` may edit.

        Returns a dict ``{"mode": "edit" | "read_only", "reason": ...,
        "holder": user_id | None}``.  ``reason`` is one of
        ``no_permission``, ``multiple_sessions`` or ``another_user`` for
        read-only sessions, None otherwise.
        """
        entries = self.list(workflow_id)
        me = next((e for e in entries if e.session_id == session_id), None)
        if me is None or not me.can_edit:
            return {"mode": READ_ONLY, "reason": "no_permission", "holder": None}

        holder = next((e for e in entries if e.can_edit), None)
        if holder.session_id == session_id:
            return {"mode": EDIT, "reason": None, "holder": me.user.id}
        if holder.user.id == me.user.id:
            return {"mode": READ_ONLY, "reason": "multiple_sessions", "holder": holder.user.id}
        return {"mode": READ_ONLY, "reason": "another_user", "holder": holder.user.id}
