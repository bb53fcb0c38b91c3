"""Data access layer.

This is the ONLY layer that talks to the database.  Managers keep their
working state in memory and call into the repository to persist; rows are
converted to and from the pydantic types in flowdesk.types here.

Every operation opens its own session from the factory, so concurrent
requests never share one and a failed commit is rolled back before the
error propagates.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import DateTime, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowdesk.db.models import (
    Base, ProjectModel, WorkflowModel, SnapshotModel, WorkflowVersionModel,
    CredentialModel, ProjectCredentialModel, DataclipModel, WorkOrderModel, RunModel,
    WebhookAuthMethodModel,
)
from flowdesk.types import (
    Project, Workflow, Snapshot, WorkflowVersion, Credential, ProjectCredential,
    Dataclip, WorkOrder, Run, WebhookAuthMethod,
)

T = TypeVar("T", bound=BaseModel)


def _aware(value: Any) -> Any:
    # sqlite hands back naive datetimes even for timezone=True columns
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(model_cls: type[Base], obj: BaseModel, **extra: Any) -> Base:
    """Build an ORM row from a pydantic object; JSON columns get JSON-mode dumps."""
    data = obj.model_dump(mode="json")
    values: dict[str, Any] = {}
    for column in model_cls.__table__.columns:
        if column.name in extra:
            values[column.name] = extra[column.name]
        elif isinstance(column.type, DateTime):
            values[column.name] = getattr(obj, column.name, None)
        elif column.name in data:
            values[column.name] = data[column.name]
    return model_cls(**values)


def _from_row(type_cls: type[T], row: Base) -> T:
    fields = type_cls.model_fields
    return type_cls.model_validate({
        c.name: _aware(getattr(row, c.name))
        for c in row.__table__.columns
        if c.name in fields
    })


class Repository:
    """All database operations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def _merge(self, row: Base) -> None:
        async with self._session() as session:
            await session.merge(row)
            await session.commit()

    async def _add(self, row: Base) -> None:
        async with self._session() as session:
            session.add(row)
            await session.commit()

    async def _get(self, type_cls: type[T], model_cls: type[Base], key: str) -> Optional[T]:
        async with self._session() as session:
            row = await session.get(model_cls, key)
            return _from_row(type_cls, row) if row is not None else None

    async def _all(self, type_cls: type[T], query: Any) -> list[T]:
        async with self._session() as session:
            result = await session.execute(query)
            return [_from_row(type_cls, r) for r in result.scalars().all()]

    async def _delete(self, *statements: Any) -> None:
        async with self._session() as session:
            for statement in statements:
                await session.execute(statement)
            await session.commit()

    # ── Projects ──
    async def save_project(self, project: Project) -> None:
        await self._merge(_to_row(ProjectModel, project))

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._get(Project, ProjectModel, project_id)

    async def list_projects(self, parent_id: Optional[str] = None) -> list[Project]:
        query = select(ProjectModel).order_by(ProjectModel.name)
        if parent_id is not None:
            query = query.where(ProjectModel.parent_id == parent_id)
        return await self._all(Project, query)

    # ── Workflows ──
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or update a workflow row (graph stored as JSON)."""
        await self._merge(_to_row(WorkflowModel, workflow))

    async def get_workflow(self, workflow_id: str, project_id: str) -> Optional[Workflow]:
        """Get workflow by ID within a project, deleted ones included."""
        async with self._session() as session:
            result = await session.execute(
                select(WorkflowModel).where(
                    WorkflowModel.id == workflow_id,
                    WorkflowModel.project_id == project_id,
                )
            )
            row = result.scalar_one_or_none()
            return _from_row(Workflow, row) if row is not None else None

    async def list_workflows(
        self, project_id: Optional[str] = None, include_deleted: bool = False
    ) -> list[Workflow]:
        query = select(WorkflowModel)
        if project_id is not None:
            query = query.where(WorkflowModel.project_id == project_id)
        if not include_deleted:
            query = query.where(WorkflowModel.deleted_at.is_(None))
        return await self._all(Workflow, query.order_by(WorkflowModel.name))

    # ── Snapshots ──
    async def create_snapshot(self, snapshot: Snapshot) -> None:
        await self._add(_to_row(SnapshotModel, snapshot))

    async def list_snapshots(self, workflow_id: Optional[str] = None) -> list[Snapshot]:
        """Snapshots of one workflow, or of every workflow when ``workflow_id`` is None."""
        query = select(SnapshotModel)
        if workflow_id is not None:
            query = query.where(SnapshotModel.workflow_id == workflow_id)
        return await self._all(
            Snapshot, query.order_by(SnapshotModel.workflow_id, SnapshotModel.lock_version)
        )

    # ── Workflow versions ──
    async def create_workflow_version(self, version: WorkflowVersion) -> None:
        await self._add(_to_row(WorkflowVersionModel, version))

    async def delete_workflow_version(self, version_id: str) -> None:
        await self._delete(
            delete(WorkflowVersionModel).where(WorkflowVersionModel.id == version_id)
        )

    async def list_workflow_versions(self, workflow_id: Optional[str] = None) -> list[WorkflowVersion]:
        query = select(WorkflowVersionModel)
        if workflow_id is not None:
            query = query.where(WorkflowVersionModel.workflow_id == workflow_id)
        return await self._all(WorkflowVersion, query.order_by(WorkflowVersionModel.inserted_at))

    # ── Credentials ──
    async def save_credential(self, credential: Credential, encrypted_body: str) -> None:
        await self._merge(_to_row(CredentialModel, credential, encrypted_body=encrypted_body))

    async def get_credential(self, credential_id: str) -> Optional[tuple[Credential, str]]:
        """Credential metadata plus its encrypted body."""
        async with self._session() as session:
            row = await session.get(CredentialModel, credential_id)
            if row is None:
                return None
            return _from_row(Credential, row), row.encrypted_body

    async def list_credentials(self) -> list[tuple[Credential, str]]:
        """Every credential with its encrypted body."""
        async with self._session() as session:
            result = await session.execute(
                select(CredentialModel).order_by(CredentialModel.inserted_at)
            )
            return [(_from_row(Credential, r), r.encrypted_body) for r in result.scalars().all()]

    async def delete_credential(self, credential_id: str) -> None:
        await self._delete(
            delete(ProjectCredentialModel).where(ProjectCredentialModel.credential_id == credential_id),
            delete(CredentialModel).where(CredentialModel.id == credential_id),
        )

    async def save_project_credential(self, project_credential: ProjectCredential) -> None:
        await self._merge(_to_row(ProjectCredentialModel, project_credential))

    async def list_project_credentials(self) -> list[ProjectCredential]:
        return await self._all(ProjectCredential, select(ProjectCredentialModel))

    async def delete_project_credential(self, project_credential_id: str) -> None:
        await self._delete(
            delete(ProjectCredentialModel).where(ProjectCredentialModel.id == project_credential_id)
        )

    # ── Webhook auth methods ──
    async def save_webhook_auth_method(self, method: WebhookAuthMethod) -> None:
        await self._merge(_to_row(WebhookAuthMethodModel, method))

    async def list_webhook_auth_methods(self) -> list[WebhookAuthMethod]:
        return await self._all(WebhookAuthMethod, select(WebhookAuthMethodModel))

    async def delete_webhook_auth_method(self, method_id: str) -> None:
        await self._delete(
            delete(WebhookAuthMethodModel).where(WebhookAuthMethodModel.id == method_id)
        )

    # ── Dataclips ──
    async def create_dataclip(self, dataclip: Dataclip) -> None:
        await self._merge(_to_row(DataclipModel, dataclip))

    save_dataclip = create_dataclip

    async def get_dataclip(self, dataclip_id: str) -> Optional[Dataclip]:
        return await self._get(Dataclip, DataclipModel, dataclip_id)

    async def list_dataclips(self) -> list[Dataclip]:
        return await self._all(Dataclip, select(DataclipModel).order_by(DataclipModel.inserted_at))

    # ── Work orders & runs ──
    async def create_work_order(self, work_order: WorkOrder) -> None:
        await self._merge(_to_row(WorkOrderModel, work_order))

    save_work_order = create_work_order

    async def get_work_order(self, work_order_id: str) -> Optional[WorkOrder]:
        return await self._get(WorkOrder, WorkOrderModel, work_order_id)

    async def list_work_orders(self) -> list[WorkOrder]:
        return await self._all(WorkOrder, select(WorkOrderModel).order_by(WorkOrderModel.inserted_at))

    async def create_run(self, run: Run) -> None:
        await self._merge(_to_row(RunModel, run))

    save_run = create_run

    async def get_run(self, run_id: str) -> Optional[Run]:
        return await self._get(Run, RunModel, run_id)

    async def list_runs(self) -> list[Run]:
        return await self._all(Run, select(RunModel).order_by(RunModel.inserted_at))

    async def list_runs_for_work_order(self, work_order_id: str) -> list[Run]:
        return await self._all(
            Run,
            select(RunModel)
            .where(RunModel.work_order_id == work_order_id)
            .order_by(RunModel.inserted_at),
        )
