"""flowdesk — collaborative workflow editor backend.

Usage:
    from flowdesk import WorkflowManager, Project, ProjectUser, ProjectRole

    manager = WorkflowManager()
    project = Project(name="demo", users=[ProjectUser(user_id="u1", role=ProjectRole.OWNER)])
    workflow = await manager.create(project, "u1", {"name": "intake"})
"""

from flowdesk.types import (
    Project, ProjectUser, ProjectRole, User, Workflow, Job, Trigger, Edge,
    TriggerType, EdgeCondition, Snapshot, WorkflowVersion, Dataclip, DataclipType,
    Run, RunState, Step, WorkOrder, WorkOrderState, Credential, ProjectCredential,
)
from flowdesk.exceptions import (
    FlowdeskError, UnauthorizedError, ProjectNotFound, WorkflowError, WorkflowNotFound,
    WorkflowValidationError, StaleWorkflowError, WorkflowDeletedError, PatchError,
    VersionControlError, TriggerError, CredentialError, DataclipError, RunError,
)
from flowdesk.version import __version__
from flowdesk.workflows.manager import WorkflowManager

__all__ = [
    "Project", "ProjectUser", "ProjectRole", "User", "Workflow", "Job", "Trigger", "Edge",
    "TriggerType", "EdgeCondition", "Snapshot", "WorkflowVersion", "Dataclip", "DataclipType",
    "Run", "RunState", "Step", "WorkOrder", "WorkOrderState", "Credential", "ProjectCredential",
    "FlowdeskError", "UnauthorizedError", "ProjectNotFound", "WorkflowError", "WorkflowNotFound",
    "WorkflowValidationError", "StaleWorkflowError", "WorkflowDeletedError", "PatchError",
    "VersionControlError", "TriggerError", "CredentialError", "DataclipError", "RunError",
    "WorkflowManager",
    "__version__",
]
