"""
WorkflowVersions — content-hash version history for workflows.

Each saved structure is fingerprinted with ``generate_hash`` (12 lowercase
hex characters).  A workflow keeps its ordered list of hashes in
``version_history`` and one WorkflowVersion row per recorded hash.
Consecutive saves from the same source (``app`` or ``cli``) squash into
one entry, so the history records hand-offs between the editor and the
CLI rather than every keystroke.

``classify_with_delta`` compares two histories, which is how a local
checkout and the server decide who is ahead.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from typing import Any, Optional, Union

from flowdesk.exceptions import VersionControlError
from flowdesk.types import VersionSource, Workflow, WorkflowVersion

logger = logging.getLogger(__name__)

HASH_PATTERN = re.compile(r"^[a-f0-9]{12}$")
SOURCES = {s.value for s in VersionSource}

WORKFLOW_KEYS = ("name", "positions")
JOB_KEYS = ("name", "adaptor", "project_credential_id", "body")
TRIGGER_KEYS = ("type", "cron_expression", "enabled")
EDGE_KEYS = ("name", "condition_type", "condition_label", "condition_expression", "enabled")


# ── Hashing ───────────────────────────────────────────────────────────────────


def _serialize(value: Any) -> str:
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _pairs(item: dict[str, Any]) -> list[str]:
    parts: list[str] = []
    for key in sorted(item):
        parts.append(key)
        parts.append(_serialize(item[key]))
    return parts


def _edge_name(edge, workflow: Workflow) -> str:
    source = ""
    if edge.source_trigger_id:
        trigger = workflow.trigger(edge.source_trigger_id)
        source = _serialize(trigger.type) if trigger else ""
    elif edge.source_job_id:
        job = workflow.job(edge.source_job_id)
        source = job.name if job else ""
    target = workflow.job(edge.target_job_id) if edge.target_job_id else None
    return f"{source}-{target.name if target else ''}"


def generate_hash(workflow: Workflow) -> str:
    """Deterministic 12-character fingerprint of a workflow's structure."""
    parts = _pairs({key: getattr(workflow, key) for key in WORKFLOW_KEYS})

    for trigger in sorted(workflow.triggers, key=lambda t: _serialize(t.type)):
        parts.extend(_pairs({key: getattr(trigger, key) for key in TRIGGER_KEYS}))

    for job in sorted(workflow.jobs, key=lambda j: j.name):
        parts.extend(_pairs({key: getattr(job, key) for key in JOB_KEYS}))

    edges = []
    for edge in workflow.edges:
        item = {key: getattr(edge, key) for key in EDGE_KEYS if key != "name"}
        item["name"] = _edge_name(edge, workflow)
        edges.append(item)
    for item in sorted(edges, key=lambda e: e["name"]):
        parts.extend(_pairs(item))

    digest = hashlib.sha256("".join(parts).encode()).hexdigest()
    return digest[:12]


# ── History comparison ────────────────────────────────────────────────────────


def _common_prefix_len(left: list[str], right: list[str]) -> int:
    count = 0
    for a, b in zip(left, right):
        if a != b:
            break
        count += 1
    return count


def classify_with_delta(left: list[str], right: list[str]) -> tuple:
    """
    Compare two histories.

    Returns one of ``("same", 0)``, ``("ahead", "right", n)``,
    ``("ahead", "left", n)`` or ``("diverged", k)`` where ``k`` is the
    length of the shared prefix.
    """
    cpl = _common_prefix_len(left, right)
    if cpl == len(left) and cpl == len(right):
        return ("same", 0)
    if cpl == len(left):
        return ("ahead", "right", len(right) - cpl)
    if cpl == len(right):
        return ("ahead", "left", len(left) - cpl)
    return ("diverged", cpl)


def classify(left: list[str], right: list[str]) -> Union[str, tuple]:
    """Like classify_with_delta without the counts: "same", ("ahead", side) or "diverged"."""
    result = classify_with_delta(left, right)
    if result[0] == "ahead":
        return ("ahead", result[1])
    return result[0]


# ── Store ─────────────────────────────────────────────────────────────────────


class WorkflowVersions:
    """
    Records version hashes against workflows.

    Methods return the workflow with its updated ``version_history``; the
    caller owns storing it.  Writes for one workflow are serialised with a
    per-workflow asyncio.Lock.
    """

    def __init__(self, repository: Any = None) -> None:
        self._repository = repository
        self._rows: dict[str, list[WorkflowVersion]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        return self._locks.setdefault(workflow_id, asyncio.Lock())

    async def _persist(self, method: str, *args: Any, **kwargs: Any) -> None:
        """Best-effort repository call; silently ignores NotImplementedError."""
        if self._repository is None:
            return
        fn = getattr(self._repository, method, None)
        if fn is None:
            return
        try:
            await fn(*args, **kwargs)
        except NotImplementedError:
            pass

    @staticmethod
    def _check(hash_: str, source: str) -> None:
        if not isinstance(hash_, str) or not HASH_PATTERN.match(hash_):
            raise VersionControlError(f"Invalid version hash {hash_!r}", reason="invalid_input")
        if source not in SOURCES:
            raise VersionControlError(f"Invalid version source {source!r}", reason="invalid_input")

    async def load(self) -> int:
        """Populate recorded rows from the repository; returns the count loaded."""
        if self._repository is None:
            return 0
        rows = await self._repository.list_workflow_versions()
        for row in rows:
            self._rows.setdefault(row.workflow_id, []).append(row)
        logger.info("Loaded %d workflow version(s) from the repository", len(rows))
        return len(rows)

    def versions(self, workflow_id: str) -> list[WorkflowVersion]:
        """Rows for a workflow, oldest first (insertion order breaks timestamp ties)."""
        rows = self._rows.get(workflow_id, [])
        return sorted(rows, key=lambda v: v.inserted_at)

    def latest_version(self, workflow_id: str) -> Optional[WorkflowVersion]:
        rows = self.versions(workflow_id)
        return rows[-1] if rows else None

    async def record_version(
        self, workflow: Workflow, hash_: str, source: str = "app"
    ) -> Workflow:
        """
        Record ``hash_`` as the newest version of ``workflow``.

        A hash equal to the latest one is a no-op.  When the latest version
        came from the same source it is replaced (squashed) rather than
        appended after.

        Raises:
            VersionControlError: on a malformed hash or unknown source.
        """
        self._check(hash_, source)
        async with self._lock(workflow.id):
            latest = self.latest_version(workflow.id)
            if latest is not None and latest.hash == hash_:
                return workflow

            history = list(workflow.version_history)
            row = WorkflowVersion(workflow_id=workflow.id, hash=hash_, source=source)
            squash = latest is not None and latest.source.value == source
            if squash:
                await self._persist("delete_workflow_version", latest.id)
            await self._persist("create_workflow_version", row)

            rows = self._rows.setdefault(workflow.id, [])
            if squash:
                rows.remove(latest)
                history = [h for h in history if h != latest.hash]
                logger.debug("Squashed version %s of workflow %s", latest.hash, workflow.id)
            rows.append(row)

            if hash_ not in history:
                history.append(hash_)
            return workflow.model_copy(update={"version_history": history})

    async def record_versions(
        self, workflow: Workflow, hashes: list[str], source: str = "app"
    ) -> tuple[Workflow, int]:
        """
        Bulk-append hashes (deduplicated, order kept).

        Returns:
            (updated workflow, number of rows inserted).
        """
        for hash_ in hashes:
            self._check(hash_, source)
        unique = list(dict.fromkeys(hashes))
        if not unique:
            return workflow, 0

        async with self._lock(workflow.id):
            known = {v.hash for v in self._rows.get(workflow.id, [])}
            inserted = 0
            for hash_ in unique:
                if hash_ in known:
                    continue
                row = WorkflowVersion(workflow_id=workflow.id, hash=hash_, source=source)
                await self._persist("create_workflow_version", row)
                self._rows.setdefault(workflow.id, []).append(row)
                inserted += 1

            history = list(workflow.version_history)
            for hash_ in unique:
                if hash_ not in history:
                    history.append(hash_)
            return workflow.model_copy(update={"version_history": history}), inserted

    def history_for(self, workflow: Workflow) -> list[str]:
        """The workflow's hash list, falling back to recorded rows when empty."""
        if workflow.version_history:
            return list(workflow.version_history)
        return [v.hash for v in self.versions(workflow.id)]

    def latest_hash(self, workflow: Workflow) -> Optional[str]:
        if workflow.version_history:
            return workflow.version_history[-1]
        latest = self.latest_version(workflow.id)
        return latest.hash if latest else None

    def reconcile_history(self, workflow: Workflow) -> Workflow:
        """Rebuild ``version_history`` from the recorded rows."""
        history = [v.hash for v in self.versions(workflow.id)]
        return workflow.model_copy(update={"version_history": history})

    async def ensure_version_recorded(self, workflow: Workflow) -> Workflow:
        """Record the current structure's hash when the workflow has no history yet."""
        if self.history_for(workflow):
            return workflow
        return await self.record_version(workflow, generate_hash(workflow), "app")
