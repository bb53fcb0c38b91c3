"""
WorkflowManager — lifecycle management for Workflow objects.

Supports both in-memory operation (no repository, for tests) and full
persistence when a Repository is provided.  Every successful save bumps
``lock_version``, captures a Snapshot, records a version hash and
broadcasts ``workflow_saved`` on the workflow's topic so other editors
can refresh.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from flowdesk.collaboration.pubsub import (
    EVENT_WORKFLOW_DELETED,
    EVENT_WORKFLOW_SAVED,
    PubSub,
    project_topic,
    workflow_topic,
)
from flowdesk.config import FlowdeskConfig
from flowdesk.exceptions import (
    StaleWorkflowError,
    WorkflowDeletedError,
    WorkflowNotFound,
    WorkflowValidationError,
)
from flowdesk.policies import authorize
from flowdesk.types import Edge, Job, Project, Trigger, Workflow

from .changeset import WorkflowChangeset
from .comparator import equivalent
from .snapshots import SnapshotStore
from .versions import WorkflowVersions, generate_hash

logger = logging.getLogger(__name__)

_UNCHANGED_IGNORE = {"workflow": ["updated_at", "errors", "delete"]}


def _params_of(workflow: Workflow) -> dict[str, Any]:
    """Full params dict for a workflow, as a changeset would accept it."""
    return workflow.model_dump(
        mode="json",
        include={"name", "project_id", "positions", "concurrency", "enable_job_logs",
                 "jobs", "triggers", "edges"},
    )


class WorkflowManager:
    """
    Manages the full lifecycle of Workflow objects.

    Args:
        repository:  Optional Repository instance for persistence.
                     When None, all state is kept in-memory (useful for tests).
        snapshots:   SnapshotStore; a fresh one is created if not supplied.
        versions:    WorkflowVersions; a fresh one is created if not supplied.
        pubsub:      PubSub used to announce saves and deletions.
        config:      FlowdeskConfig instance.
    """

    def __init__(
        self,
        repository: Any = None,
        snapshots: Optional[SnapshotStore] = None,
        versions: Optional[WorkflowVersions] = None,
        pubsub: Optional[PubSub] = None,
        config: Optional[FlowdeskConfig] = None,
    ) -> None:
        self._repository = repository
        self.snapshots = snapshots or SnapshotStore(repository)
        self.versions = versions or WorkflowVersions(repository)
        self.pubsub = pubsub or PubSub()
        self._config = config or FlowdeskConfig()
        self._store: dict[str, Workflow] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Internal helpers ──────────────────────────────────────────────────────

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

    def build_changeset(
        self, workflow: Optional[Workflow], params: Optional[dict[str, Any]]
    ) -> WorkflowChangeset:
        return WorkflowChangeset.build(workflow, params, config=self._config)

    async def _commit(
        self,
        workflow: Workflow,
        user_id: str,
        created: bool,
        previous: Optional[Workflow] = None,
    ) -> Workflow:
        """
        Snapshot, version and store a workflow whose lock_version was just bumped.

        The in-memory store only changes once every write succeeded; when a
        later write fails the row is put back to ``previous``.
        """
        # the row must exist before snapshots and versions reference it
        await self._persist("save_workflow", workflow)
        try:
            await self.snapshots.capture(workflow)
            workflow = await self.versions.record_version(workflow, generate_hash(workflow), "app")
            await self._persist("save_workflow", workflow)
        except Exception:
            if previous is not None:
                await self._persist("save_workflow", previous)
            raise
        self._store[workflow.id] = workflow
        payload = {
            "workflow_id": workflow.id,
            "lock_version": workflow.lock_version,
            "saved_by": user_id,
            "created": created,
        }
        await self.pubsub.broadcast(workflow_topic(workflow.id), EVENT_WORKFLOW_SAVED, payload)
        if workflow.project_id:
            await self.pubsub.broadcast(
                project_topic(workflow.project_id), EVENT_WORKFLOW_SAVED, payload
            )
        return workflow

    # ── CRUD ──────────────────────────────────────────────────────────────────

    async def create(
        self, project: Project, user_id: str, params: Optional[dict[str, Any]] = None
    ) -> Workflow:
        """
        Validate and persist a new workflow (lock_version=1).

        Raises:
            UnauthorizedError: if the user cannot create workflows here.
            WorkflowValidationError: if the params are invalid.
        """
        authorize("create_workflow", user_id, project)
        params = {**(params or {}), "project_id": project.id}
        changeset = self.build_changeset(Workflow(project_id=project.id), params)
        if not changeset.valid:
            raise WorkflowValidationError("Workflow could not be saved", errors=changeset.errors)
        workflow = changeset.apply().model_copy(update={"lock_version": 1})
        logger.info("Workflow %s created in project %s by %s", workflow.id, project.id, user_id)
        return await self._commit(workflow, user_id, created=True)

    async def get(
        self, workflow_id: str, project_id: str, include_deleted: bool = False
    ) -> Workflow:
        """
        Load a workflow by ID.

        Raises:
            WorkflowNotFound: if not found, in another project, or deleted.
        """
        workflow = self._store.get(workflow_id)
        if workflow is None and self._repository is not None:
            try:
                workflow = await self._repository.get_workflow(workflow_id, project_id)
                if workflow is not None:
                    self._store[workflow.id] = workflow
            except (NotImplementedError, AttributeError):
                pass

        if (
            workflow is None
            or workflow.project_id != project_id
            or (workflow.deleted_at is not None and not include_deleted)
        ):
            raise WorkflowNotFound(
                f"Workflow '{workflow_id}' not found.", workflow_id=workflow_id
            )
        return workflow

    async def list(self, project_id: str, search: Optional[str] = None) -> list[Workflow]:
        """Return non-deleted workflows for a project sorted by name."""
        results = [
            wf for wf in self._store.values()
            if wf.project_id == project_id
            and wf.deleted_at is None
            and (not search or search.lower() in (wf.name or "").lower())
        ]
        results.sort(key=lambda w: (w.name or "").lower())
        return results

    def all(self) -> list[Workflow]:
        """Every live workflow across projects (used by trigger lookups)."""
        return [wf for wf in self._store.values() if wf.deleted_at is None]

    def find(self, workflow_id: str) -> Optional[Workflow]:
        """Workflow by ID in any project, deleted ones included."""
        return self._store.get(workflow_id)

    def find_by_job(self, job_id: str) -> Optional[Workflow]:
        return next((w for w in self.all() if w.job(job_id) is not None), None)

    async def load(self) -> int:
        """Populate workflows, snapshots and versions from the repository; returns the workflow count."""
        if self._repository is None:
            return 0
        workflows = await self._repository.list_workflows(include_deleted=True)
        await self.snapshots.load()
        await self.versions.load()
        for workflow in workflows:
            self._store[workflow.id] = workflow
        logger.info("Loaded %d workflow(s) from the repository", len(workflows))
        return len(workflows)

    async def save(
        self,
        project: Project,
        user_id: str,
        workflow_id: str,
        params: dict[str, Any],
        lock_version: Optional[int] = None,
    ) -> Workflow:
        """
        Apply params to a stored workflow.

        ``lock_version`` is the version the caller's edits are based on; a
        mismatch means someone else saved in between.  A save that changes
        nothing returns the stored workflow without bumping the version.

        Raises:
            UnauthorizedError, WorkflowNotFound, WorkflowDeletedError,
            StaleWorkflowError, WorkflowValidationError
        """
        return await self._update(project, user_id, workflow_id, lambda _: params, lock_version)

    async def _update(
        self,
        project: Project,
        user_id: str,
        workflow_id: str,
        edit: Callable[[Workflow], dict[str, Any]],
        lock_version: Optional[int],
    ) -> Workflow:
        """Read, check, edit and commit one workflow while holding its lock."""
        async with self._lock(workflow_id):
            existing = await self.get(workflow_id, project.id, include_deleted=True)
            if existing.deleted_at is not None:
                raise WorkflowDeletedError()
            authorize("edit_workflow", user_id, project)
            if lock_version is not None and lock_version != existing.lock_version:
                raise StaleWorkflowError(
                    "Workflow has been modified by someone else",
                    expected=lock_version,
                    actual=existing.lock_version,
                )

            params = {**edit(existing), "project_id": existing.project_id}
            changeset = self.build_changeset(existing, params)
            if not changeset.valid:
                raise WorkflowValidationError("Workflow could not be saved", errors=changeset.errors)
            updated = changeset.apply()
            if equivalent(existing, updated, mode="exact", ignore=_UNCHANGED_IGNORE):
                return existing

            updated = updated.model_copy(update={"lock_version": existing.lock_version + 1})
            logger.info(
                "Workflow %s saved by %s (lock_version %d)", workflow_id, user_id, updated.lock_version
            )
            return await self._commit(updated, user_id, created=False, previous=existing)

    async def mark_for_deletion(self, project: Project, user_id: str, workflow_id: str) -> Workflow:
        """Soft-delete a workflow and disable its triggers."""
        authorize("delete_workflow", user_id, project)
        async with self._lock(workflow_id):
            workflow = await self.get(workflow_id, project.id)
            deleted = workflow.model_copy(
                update={
                    "deleted_at": datetime.now(tz=timezone.utc),
                    "triggers": [t.model_copy(update={"enabled": False}) for t in workflow.triggers],
                }
            )
            await self._persist("save_workflow", deleted)
            self._store[workflow_id] = deleted
        await self.pubsub.broadcast(
            workflow_topic(workflow_id), EVENT_WORKFLOW_DELETED, {"workflow_id": workflow_id}
        )
        logger.info("Workflow %s marked for deletion by %s", workflow_id, user_id)
        return deleted

    # ── Node-level CRUD ───────────────────────────────────────────────────────

    def _items(self, workflow: Workflow, key: str) -> list[dict[str, Any]]:
        return _params_of(workflow)[key]

    async def add_job(self, project: Project, user_id: str, workflow_id: str,
                      job: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            return {"jobs": self._items(workflow, "jobs") + [job]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def update_job(self, project: Project, user_id: str, workflow_id: str, job_id: str,
                         changes: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            if workflow.job(job_id) is None:
                raise WorkflowNotFound(f"Job '{job_id}' not found.", workflow_id=workflow_id)
            return {"jobs": [
                {**j, **changes, "id": job_id} if j["id"] == job_id else j
                for j in self._items(workflow, "jobs")
            ]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def delete_job(self, project: Project, user_id: str, workflow_id: str, job_id: str,
                         lock_version: Optional[int] = None) -> Workflow:
        """Remove a job together with every edge into or out of it."""
        def edit(workflow: Workflow) -> dict[str, Any]:
            if workflow.job(job_id) is None:
                raise WorkflowNotFound(f"Job '{job_id}' not found.", workflow_id=workflow_id)
            return {
                "jobs": [j for j in self._items(workflow, "jobs") if j["id"] != job_id],
                "edges": [
                    e for e in self._items(workflow, "edges")
                    if job_id not in (e["source_job_id"], e["target_job_id"])
                ],
            }

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def add_edge(self, project: Project, user_id: str, workflow_id: str,
                       edge: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            return {"edges": self._items(workflow, "edges") + [edge]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    def _edges_with(self, workflow: Workflow, edge_id: str) -> list[dict[str, Any]]:
        edges = self._items(workflow, "edges")
        if not any(e["id"] == edge_id for e in edges):
            raise WorkflowNotFound(f"Edge '{edge_id}' not found.", workflow_id=workflow.id)
        return edges

    async def update_edge(self, project: Project, user_id: str, workflow_id: str, edge_id: str,
                          changes: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            return {"edges": [
                {**e, **changes, "id": edge_id} if e["id"] == edge_id else e
                for e in self._edges_with(workflow, edge_id)
            ]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def delete_edge(self, project: Project, user_id: str, workflow_id: str, edge_id: str,
                          lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            return {"edges": [e for e in self._edges_with(workflow, edge_id) if e["id"] != edge_id]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def add_trigger(self, project: Project, user_id: str, workflow_id: str,
                          trigger: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            return {"triggers": self._items(workflow, "triggers") + [trigger]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def update_trigger(self, project: Project, user_id: str, workflow_id: str, trigger_id: str,
                             changes: dict[str, Any], lock_version: Optional[int] = None) -> Workflow:
        def edit(workflow: Workflow) -> dict[str, Any]:
            if workflow.trigger(trigger_id) is None:
                raise WorkflowNotFound(f"Trigger '{trigger_id}' not found.", workflow_id=workflow_id)
            return {"triggers": [
                {**t, **changes, "id": trigger_id} if t["id"] == trigger_id else t
                for t in self._items(workflow, "triggers")
            ]}

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    async def delete_trigger(self, project: Project, user_id: str, workflow_id: str, trigger_id: str,
                             lock_version: Optional[int] = None) -> Workflow:
        """Remove a trigger and the edges it starts."""
        def edit(workflow: Workflow) -> dict[str, Any]:
            if workflow.trigger(trigger_id) is None:
                raise WorkflowNotFound(f"Trigger '{trigger_id}' not found.", workflow_id=workflow_id)
            return {
                "triggers": [t for t in self._items(workflow, "triggers") if t["id"] != trigger_id],
                "edges": [
                    e for e in self._items(workflow, "edges")
                    if e["source_trigger_id"] != trigger_id
                ],
            }

        return await self._update(project, user_id, workflow_id, edit, lock_version)

    # ── Internal updates (no lock bump) ───────────────────────────────────────

    async def _replace(self, workflow_id: str, change: Callable[[Workflow], Optional[Workflow]]) -> bool:
        """Apply an internal change under the workflow's lock; False when nothing changed."""
        async with self._lock(workflow_id):
            workflow = self._store.get(workflow_id)
            updated = change(workflow) if workflow is not None else None
            if updated is None:
                return False
            await self._persist("save_workflow", updated)
            self._store[workflow_id] = updated
            return True

    async def set_trigger_auth(self, trigger_ids: set[str], has_auth_method: bool) -> None:
        """Reflect webhook auth method changes onto triggers."""
        def change(workflow: Workflow) -> Optional[Workflow]:
            if not any(t.id in trigger_ids for t in workflow.triggers):
                return None
            triggers = [
                t.model_copy(update={"has_auth_method": has_auth_method})
                if t.id in trigger_ids else t
                for t in workflow.triggers
            ]
            return workflow.model_copy(update={"triggers": triggers})

        for workflow_id in list(self._store):
            await self._replace(workflow_id, change)

    async def detach_credentials(self, project_credential_ids: set[str]) -> int:
        """Null out job references to removed project credentials; returns jobs touched."""
        touched = 0

        def change(workflow: Workflow) -> Optional[Workflow]:
            nonlocal touched
            detached = [j for j in workflow.jobs if j.project_credential_id in project_credential_ids]
            if not detached:
                return None
            touched += len(detached)
            jobs = [
                j.model_copy(update={"project_credential_id": None}) if j in detached else j
                for j in workflow.jobs
            ]
            return workflow.model_copy(update={"jobs": jobs})

        for workflow_id in list(self._store):
            await self._replace(workflow_id, change)
        return touched

    # ── Copy ──────────────────────────────────────────────────────────────────

    async def clone_into(
        self,
        source: Workflow,
        project_id: str,
        name: Optional[str] = None,
        credential_map: Optional[dict[str, str]] = None,
    ) -> Workflow:
        """
        Deep-copy a workflow into another project with fresh IDs.

        Job, trigger and edge references within the copy are remapped, as
        are node positions.  ``credential_map`` maps source project
        credential ids to the target project's ids; unmapped ones are
        dropped.
        """
        credential_map = credential_map or {}
        id_map: dict[str, str] = {}
        new_jobs: list[Job] = []
        for job in source.jobs:
            id_map[job.id] = str(uuid4())
            new_jobs.append(
                job.model_copy(
                    update={
                        "id": id_map[job.id],
                        "project_credential_id": credential_map.get(job.project_credential_id),
                    }
                )
            )
        new_triggers: list[Trigger] = []
        for trigger in source.triggers:
            id_map[trigger.id] = str(uuid4())
            new_triggers.append(
                trigger.model_copy(update={"id": id_map[trigger.id], "custom_path": None})
            )
        new_edges: list[Edge] = [
            edge.model_copy(
                update={
                    "id": str(uuid4()),
                    "source_job_id": id_map.get(edge.source_job_id),
                    "source_trigger_id": id_map.get(edge.source_trigger_id),
                    "target_job_id": id_map.get(edge.target_job_id),
                }
            )
            for edge in source.edges
        ]
        positions = None
        if source.positions:
            positions = {id_map.get(k, k): v for k, v in source.positions.items()}

        clone = Workflow(
            project_id=project_id,
            name=name or source.name,
            jobs=new_jobs,
            triggers=new_triggers,
            edges=new_edges,
            positions=positions,
            concurrency=source.concurrency,
            enable_job_logs=source.enable_job_logs,
            lock_version=1,
        )
        return await self._commit(clone, "", created=True)
