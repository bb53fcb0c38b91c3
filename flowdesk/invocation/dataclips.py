"""
Dataclips — the JSON inputs and outputs of runs.

A dataclip is created for every webhook request, every manually supplied
input, and every step result.  ``parse_filters`` turns the manual-run
panel's search box into a filter dict; ``DataclipStore.search`` applies it.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qs

from flowdesk.collaboration.pubsub import EVENT_DATACLIP_WIPED, PubSub, project_topic
from flowdesk.exceptions import DataclipError, DataclipNotFound, InvalidFilterError
from flowdesk.types import Dataclip, DataclipType

logger = logging.getLogger(__name__)

INVALID = "is invalid"
_HEX_PREFIX = re.compile(r"^[0-9a-f-]+$")
_FILTER_DATETIME = "%Y-%m-%dT%H:%M"


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.strptime(value, _FILTER_DATETIME)
    return parsed.replace(tzinfo=timezone.utc)


def parse_filters(query_string: str) -> dict[str, Any]:
    """
    Parse a dataclip search query string.

    Recognised keys: ``query`` (full uuid or hex id prefix), ``before`` and
    ``after`` (``YYYY-MM-DDTHH:MM``, UTC), ``type`` (a DataclipType value)
    and ``named_only``.

    Returns:
        Filter dict with any of ``id``, ``id_prefix``, ``before``,
        ``after``, ``type``, ``named_only``.  Blank values are dropped.

    Raises:
        InvalidFilterError: with ``errors`` mapping field → messages.
    """
    raw = {k: v[-1].strip() for k, v in parse_qs(query_string, keep_blank_values=True).items()}
    filters: dict[str, Any] = {}
    errors: dict[str, list[str]] = {}

    query = raw.get("query", "").lower()
    if len(query) == 36:
        try:
            filters["id"] = str(uuid.UUID(query))
        except ValueError:
            errors.setdefault("query", []).append(INVALID)
    elif query:
        if len(query) < 36 and _HEX_PREFIX.match(query):
            filters["id_prefix"] = query
        else:
            errors.setdefault("query", []).append(INVALID)

    for key in ("before", "after"):
        if raw.get(key):
            try:
                filters[key] = _parse_datetime(raw[key])
            except ValueError:
                errors.setdefault(key, []).append(INVALID)

    if raw.get("type"):
        try:
            filters["type"] = DataclipType(raw["type"])
        except ValueError:
            errors.setdefault("type", []).append(INVALID)

    if raw.get("named_only", "").lower() == "true":
        filters["named_only"] = True

    if errors:
        raise InvalidFilterError("Dataclip filters are invalid", errors=errors)
    return filters


def matches(dataclip: Dataclip, filters: dict[str, Any]) -> bool:
    if "id" in filters and dataclip.id != filters["id"]:
        return False
    if "id_prefix" in filters and not dataclip.id.startswith(filters["id_prefix"]):
        return False
    if "before" in filters and dataclip.inserted_at >= filters["before"]:
        return False
    if "after" in filters and dataclip.inserted_at <= filters["after"]:
        return False
    if "type" in filters and dataclip.type != filters["type"]:
        return False
    if filters.get("named_only") and not dataclip.name:
        return False
    return True


class DataclipStore:
    """In-memory dataclip storage scoped by project."""

    def __init__(self, pubsub: Optional[PubSub] = None, repository: Any = None) -> None:
        self._pubsub = pubsub
        self._repository = repository
        self._store: dict[str, Dataclip] = {}

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

    async def create(
        self,
        project_id: str,
        body: Any,
        type: DataclipType = DataclipType.HTTP_REQUEST,
        name: Optional[str] = None,
        request: Optional[dict[str, Any]] = None,
    ) -> Dataclip:
        """
        Raises:
            DataclipError: if *body* is not a JSON object.
        """
        if not isinstance(body, dict):
            raise DataclipError("Dataclip body must be a JSON object")
        dataclip = Dataclip(project_id=project_id, body=body, type=type, name=name, request=request)
        await self._persist("create_dataclip", dataclip)
        self._store[dataclip.id] = dataclip
        return dataclip

    async def load(self) -> int:
        """Populate the store from the repository; returns the count loaded."""
        if self._repository is None:
            return 0
        dataclips = await self._repository.list_dataclips()
        for dataclip in dataclips:
            self._store[dataclip.id] = dataclip
        logger.info("Loaded %d dataclip(s) from the repository", len(dataclips))
        return len(dataclips)

    def get(self, dataclip_id: str) -> Dataclip:
        dataclip = self._store.get(dataclip_id)
        if dataclip is None:
            raise DataclipNotFound(f"Dataclip '{dataclip_id}' not found", dataclip_id=dataclip_id)
        return dataclip

    def get_many(self, dataclip_ids: list[str]) -> list[Dataclip]:
        return [self._store[i] for i in dataclip_ids if i in self._store]

    async def update_name(self, dataclip_id: str, name: Optional[str]) -> Dataclip:
        dataclip = self.get(dataclip_id)
        updated = dataclip.model_copy(update={"name": name or None})
        await self._persist("save_dataclip", updated)
        self._store[dataclip_id] = updated
        return updated

    async def wipe(self, dataclip_id: str) -> Dataclip:
        """Erase body and request data, keeping the record."""
        dataclip = self.get(dataclip_id)
        wiped = dataclip.model_copy(
            update={"body": None, "request": None, "wiped_at": datetime.now(tz=timezone.utc)}
        )
        await self._persist("save_dataclip", wiped)
        self._store[dataclip_id] = wiped
        logger.info("Wiped dataclip %s", dataclip_id)
        if self._pubsub is not None:
            await self._pubsub.broadcast(
                project_topic(dataclip.project_id),
                EVENT_DATACLIP_WIPED,
                {"dataclip_id": dataclip_id},
            )
        return wiped

    def search(
        self,
        project_id: str,
        filters: Optional[dict[str, Any]] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[Dataclip]:
        """Project dataclips matching *filters*, newest first."""
        filters = filters or {}
        results = [
            d for d in self._store.values()
            if d.project_id == project_id and matches(d, filters)
        ]
        results.sort(key=lambda d: d.inserted_at, reverse=True)
        return results[offset: offset + limit]
