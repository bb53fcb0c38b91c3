"""All ORM models. Each maps 1:1 to a pydantic type in flowdesk.types.

Tables: projects, workflows, workflow_snapshots, workflow_versions,
credentials, project_credentials, dataclips, work_orders, runs,
webhook_auth_methods.
Graph contents (jobs, triggers, edges) and run steps are stored as JSON.
"""

from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProjectModel(Base):
    __tablename__ = "projects"
    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    parent_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    users = Column(JSON, default=list)              # [{"user_id", "role"}]
    retention_days = Column(Integer, nullable=True)
    inserted_at = Column(DateTime(timezone=True), default=_now)


class WorkflowModel(Base):
    __tablename__ = "workflows"
    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    name = Column(String, nullable=True)
    jobs = Column(JSON, default=list)
    triggers = Column(JSON, default=list)
    edges = Column(JSON, default=list)
    positions = Column(JSON, nullable=True)
    lock_version = Column(Integer, default=0)
    concurrency = Column(Integer, nullable=True)
    enable_job_logs = Column(Boolean, default=True)
    version_history = Column(JSON, default=list)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    inserted_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_workflow_project_deleted", "project_id", "deleted_at"),)


class SnapshotModel(Base):
    __tablename__ = "workflow_snapshots"
    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    lock_version = Column(Integer, nullable=False)
    name = Column(String, nullable=True)
    jobs = Column(JSON, default=list)
    triggers = Column(JSON, default=list)
    edges = Column(JSON, default=list)
    inserted_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        UniqueConstraint("workflow_id", "lock_version", name="uq_snapshot_workflow_lock_version"),
    )


class WorkflowVersionModel(Base):
    __tablename__ = "workflow_versions"
    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    hash = Column(String(12), nullable=False)
    source = Column(String, nullable=False)         # VersionSource value
    inserted_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_workflow_version_workflow_hash", "workflow_id", "hash"),)


class CredentialModel(Base):
    __tablename__ = "credentials"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    schema_name = Column(String, default="raw")
    production = Column(Boolean, default=False)
    project_ids = Column(JSON, default=list)
    encrypted_body = Column(Text, nullable=False)   # Fernet token
    scheduled_deletion = Column(DateTime(timezone=True), nullable=True)
    inserted_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_credential_user_name"),)


class ProjectCredentialModel(Base):
    __tablename__ = "project_credentials"
    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    credential_id = Column(String, ForeignKey("credentials.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("project_id", "credential_id", name="uq_project_credential"),
    )


class DataclipModel(Base):
    __tablename__ = "dataclips"
    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    type = Column(String, nullable=False)           # DataclipType value
    body = Column(JSON, nullable=True)
    request = Column(JSON, nullable=True)
    wiped_at = Column(DateTime(timezone=True), nullable=True)
    inserted_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_dataclip_project_inserted", "project_id", "inserted_at"),)


class WorkOrderModel(Base):
    __tablename__ = "work_orders"
    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    snapshot_id = Column(String, nullable=True)
    trigger_id = Column(String, nullable=True)
    dataclip_id = Column(String, nullable=True)
    state = Column(String, default="pending")       # WorkOrderState value
    run_ids = Column(JSON, default=list)
    inserted_at = Column(DateTime(timezone=True), default=_now)
    last_activity = Column(DateTime(timezone=True), default=_now)


class RunModel(Base):
    __tablename__ = "runs"
    id = Column(String, primary_key=True, default=_uuid)
    work_order_id = Column(String, ForeignKey("work_orders.id"), nullable=False, index=True)
    snapshot_id = Column(String, nullable=True)
    starting_job_id = Column(String, nullable=True, index=True)
    starting_trigger_id = Column(String, nullable=True)
    dataclip_id = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    state = Column(String, default="available")     # RunState value
    error_type = Column(String, nullable=True)
    worker_name = Column(String, nullable=True)
    steps = Column(JSON, default=list)
    inserted_at = Column(DateTime(timezone=True), default=_now)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)


class WebhookAuthMethodModel(Base):
    __tablename__ = "webhook_auth_methods"
    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    auth_type = Column(String, nullable=False)      # WebhookAuthType value
    username = Column(String, nullable=True)
    password = Column(String, nullable=True)
    api_key = Column(String, nullable=True)
    trigger_ids = Column(JSON, default=list)

    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_webhook_auth_method_name"),)
