"""Snapshots: frozen copies of a workflow per lock_version, referenced by runs."""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowdesk.types import Snapshot, Workflow

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Captures and looks up workflow snapshots.

    A snapshot is keyed by (workflow_id, lock_version); capturing the same
    pair twice returns the existing snapshot unchanged.
    """

    def __init__(self, repository: Any = None) -> None:
        self._repository = repository
        self._by_workflow: dict[str, dict[int, Snapshot]] = {}
        self._by_id: dict[str, Snapshot] = {}

    async def capture(self, workflow: Workflow) -> Snapshot:
        existing = self.get(workflow.id, workflow.lock_version)
        if existing is not None:
            return existing

        snapshot = Snapshot(
            workflow_id=workflow.id,
            lock_version=workflow.lock_version,
            name=workflow.name,
            jobs=[j.model_copy() for j in workflow.jobs],
            triggers=[t.model_copy() for t in workflow.triggers],
            edges=[e.model_copy() for e in workflow.edges],
        )
        if self._repository is not None:
            try:
                await self._repository.create_snapshot(snapshot)
            except NotImplementedError:
                pass
        self._cache(snapshot)
        logger.debug("Captured snapshot v%d of workflow %s", snapshot.lock_version, workflow.id)
        return snapshot

    def _cache(self, snapshot: Snapshot) -> None:
        self._by_workflow.setdefault(snapshot.workflow_id, {})[snapshot.lock_version] = snapshot
        self._by_id[snapshot.id] = snapshot

    async def load(self) -> int:
        """Populate the store from the repository; returns the count loaded."""
        if self._repository is None:
            return 0
        snapshots = await self._repository.list_snapshots()
        for snapshot in snapshots:
            self._cache(snapshot)
        logger.info("Loaded %d snapshot(s) from the repository", len(snapshots))
        return len(snapshots)

    def get(self, workflow_id: str, lock_version: int) -> Optional[Snapshot]:
        return self._by_workflow.get(workflow_id, {}).get(lock_version)

    def get_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        return self._by_id.get(snapshot_id)

    def get_latest(self, workflow_id: str) -> Optional[Snapshot]:
        versions = self._by_workflow.get(workflow_id)
        if not versions:
            return None
        return versions[max(versions)]

    def list(self, workflow_id: str) -> list[Snapshot]:
        versions = self._by_workflow.get(workflow_id, {})
        return [versions[v] for v in sorted(versions)]
