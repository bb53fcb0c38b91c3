"""All shared types, enums, and type aliases. Everything imports from here."""

from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import uuid


DEFAULT_ADAPTOR = "@openfn/language-common@latest"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ──────────────────────────────────────────────────────────────

class ProjectRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    OWNER = "owner"

class TriggerType(str, Enum):
    WEBHOOK = "webhook"
    CRON = "cron"

class EdgeCondition(str, Enum):
    ALWAYS = "always"
    ON_JOB_SUCCESS = "on_job_success"
    ON_JOB_FAILURE = "on_job_failure"
    JS_EXPRESSION = "js_expression"

class DataclipType(str, Enum):
    HTTP_REQUEST = "http_request"
    GLOBAL = "global"
    STEP_RESULT = "step_result"
    SAVED_INPUT = "saved_input"
    KAFKA = "kafka"

class RunState(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    KILLED = "killed"
    EXCEPTION = "exception"
    LOST = "lost"

class WorkOrderState(str, Enum):
    REJECTED = "rejected"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    KILLED = "killed"
    EXCEPTION = "exception"
    LOST = "lost"

class WebhookAuthType(str, Enum):
    BASIC = "basic"
    API = "api"

class VersionSource(str, Enum):
    APP = "app"
    CLI = "cli"


FINAL_RUN_STATES = frozenset(s for s in RunState if s not in (
    RunState.AVAILABLE, RunState.CLAIMED, RunState.STARTED,
))


# ── Projects & users ───────────────────────────────────────────────────

class User(BaseModel):
    id: str = Field(default_factory=new_id)
    email: str = ""
    first_name: str = ""
    last_name: str = ""

class ProjectUser(BaseModel):
    user_id: str
    role: ProjectRole = ProjectRole.VIEWER

class Project(BaseModel):
    """A project, or a sandbox project when ``parent_id`` is set."""
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    parent_id: Optional[str] = None
    users: list[ProjectUser] = Field(default_factory=list)
    retention_days: Optional[int] = None
    inserted_at: datetime = Field(default_factory=utcnow)

    def role_for(self, user_id: str) -> Optional[ProjectRole]:
        for member in self.users:
            if member.user_id == user_id:
                return member.role
        return None


# ── Workflow graph ─────────────────────────────────────────────────────

class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    body: str = ""
    adaptor: str = DEFAULT_ADAPTOR
    project_credential_id: Optional[str] = None

class Trigger(BaseModel):
    id: str = Field(default_factory=new_id)
    type: TriggerType = TriggerType.WEBHOOK
    enabled: bool = True
    cron_expression: Optional[str] = None
    custom_path: Optional[str] = None
    comment: Optional[str] = None
    has_auth_method: Optional[bool] = None

class Edge(BaseModel):
    id: str = Field(default_factory=new_id)
    source_job_id: Optional[str] = None
    source_trigger_id: Optional[str] = None
    target_job_id: Optional[str] = None
    condition_type: EdgeCondition = EdgeCondition.ON_JOB_SUCCESS
    condition_expression: Optional[str] = None
    condition_label: Optional[str] = None
    enabled: bool = True

class Workflow(BaseModel):
    """A directed graph of jobs started by triggers. ``lock_version`` guards saves."""
    id: str = Field(default_factory=new_id)
    project_id: Optional[str] = None
    name: Optional[str] = None
    jobs: list[Job] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    positions: Optional[dict[str, Any]] = None    # node id → {"x", "y"}
    lock_version: int = 0
    concurrency: Optional[int] = None
    enable_job_logs: bool = True
    version_history: list[str] = Field(default_factory=list)
    deleted_at: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def job(self, job_id: str) -> Optional[Job]:
        return next((j for j in self.jobs if j.id == job_id), None)

    def trigger(self, trigger_id: str) -> Optional[Trigger]:
        return next((t for t in self.triggers if t.id == trigger_id), None)

class Snapshot(BaseModel):
    """Immutable copy of a workflow at one lock_version; runs execute against it."""
    id: str = Field(default_factory=new_id)
    workflow_id: str
    lock_version: int
    name: Optional[str] = None
    jobs: list[Job] = Field(default_factory=list)
    triggers: list[Trigger] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    inserted_at: datetime = Field(default_factory=utcnow)

class WorkflowVersion(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    hash: str                          # 12 lowercase hex chars
    source: VersionSource = VersionSource.APP
    inserted_at: datetime = Field(default_factory=utcnow)


# ── Invocation ─────────────────────────────────────────────────────────

class Dataclip(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: Optional[str] = None
    type: DataclipType = DataclipType.HTTP_REQUEST
    body: Optional[dict[str, Any]] = None
    request: Optional[dict[str, Any]] = None      # headers etc. for http_request clips
    wiped_at: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)

class Step(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    snapshot_id: Optional[str] = None
    input_dataclip_id: Optional[str] = None
    output_dataclip_id: Optional[str] = None
    exit_reason: Optional[str] = None             # "success", "fail", "crash", ...
    error_type: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

class Run(BaseModel):
    id: str = Field(default_factory=new_id)
    work_order_id: str
    snapshot_id: Optional[str] = None
    starting_job_id: Optional[str] = None
    starting_trigger_id: Optional[str] = None
    dataclip_id: Optional[str] = None
    created_by: Optional[str] = None
    state: RunState = RunState.AVAILABLE
    error_type: Optional[str] = None
    worker_name: Optional[str] = None
    steps: list[Step] = Field(default_factory=list)
    inserted_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class WorkOrder(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    snapshot_id: Optional[str] = None
    trigger_id: Optional[str] = None
    dataclip_id: Optional[str] = None
    state: WorkOrderState = WorkOrderState.PENDING
    run_ids: list[str] = Field(default_factory=list)
    inserted_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


# ── Credentials & webhook auth ─────────────────────────────────────────

class Credential(BaseModel):
    """Credential metadata. The encrypted body is never part of this model."""
    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    schema_name: str = "raw"
    production: bool = False
    project_ids: list[str] = Field(default_factory=list)
    scheduled_deletion: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class ProjectCredential(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    credential_id: str

class WebhookAuthMethod(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    auth_type: WebhookAuthType = WebhookAuthType.BASIC
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    trigger_ids: list[str] = Field(default_factory=list)


# ── Collaboration & version control ────────────────────────────────────

class PresenceEntry(BaseModel):
    user: User
    session_id: str
    can_edit: bool = False
    joined_at: datetime = Field(default_factory=utcnow)

class RepoConnection(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    repo: str                            # "owner/name"
    branch: str = "main"
    config_path: Optional[str] = None
    inserted_at: datetime = Field(default_factory=utcnow)
