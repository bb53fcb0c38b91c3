"""Typed exception hierarchy. Every error flowdesk can raise."""


class FlowdeskError(Exception):
    """Base exception for all flowdesk errors."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.details = details or {}


class UnauthorizedError(FlowdeskError):
    """The user lacks the project role required for an action."""
    def __init__(self, message: str = "You are not authorized to perform this action.",
                 action: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.action = action


class ProjectNotFound(FlowdeskError):
    """Requested project does not exist."""
    def __init__(self, message: str, project_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.project_id = project_id


# ── Workflows ───────────────────────────────────────────────────────────────


class WorkflowError(FlowdeskError):
    """Base exception for all workflow-related errors."""
    pass


class WorkflowNotFound(WorkflowError):
    """Requested workflow does not exist or is not part of this project."""
    def __init__(self, message: str, workflow_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.workflow_id = workflow_id


class WorkflowValidationError(WorkflowError):
    """Workflow changeset is invalid. ``errors`` is the nested error tree."""
    def __init__(self, message: str, errors: dict = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or {}


class StaleWorkflowError(WorkflowError):
    """Save was based on an outdated lock_version."""
    def __init__(self, message: str, expected: int = 0, actual: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class WorkflowDeletedError(WorkflowError):
    """Workflow has been marked for deletion and can no longer be edited."""
    def __init__(self, message: str = "This workflow has been deleted", **kwargs):
        super().__init__(message, **kwargs)


class PatchError(WorkflowError):
    """A JSON patch could not be applied to the workflow params."""
    pass


class VersionControlError(FlowdeskError):
    """Version history input was rejected or a GitHub sync call failed."""
    def __init__(self, message: str, reason: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason


# ── Triggers ────────────────────────────────────────────────────────────────


class TriggerError(FlowdeskError):
    """A workflow trigger failed to fire or configure."""
    def __init__(self, message: str, trigger_type: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.trigger_type = trigger_type


class WebhookNotFoundError(TriggerError):
    """No webhook trigger is registered for the given path."""
    pass


class TriggerDisabledError(TriggerError):
    """Trigger exists but is disabled."""
    pass


class WebhookAuthError(TriggerError):
    """Webhook request failed the trigger's auth methods."""
    pass


# ── Credentials ─────────────────────────────────────────────────────────────


class CredentialError(FlowdeskError):
    """Credential retrieval or decryption failed."""
    def __init__(self, message: str, credential_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.credential_id = credential_id


class CredentialNotFound(CredentialError):
    """Credential ID not found."""
    pass


# ── Dataclips & runs ────────────────────────────────────────────────────────


class DataclipError(FlowdeskError):
    """Dataclip could not be created or used."""
    pass


class DataclipNotFound(DataclipError):
    def __init__(self, message: str, dataclip_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.dataclip_id = dataclip_id


class InvalidFilterError(DataclipError):
    """Dataclip search query string could not be parsed."""
    def __init__(self, message: str, errors: dict = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or {}


class RunError(FlowdeskError):
    """Base exception for run and work order failures."""
    pass


class RunNotFound(RunError):
    def __init__(self, message: str, run_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.run_id = run_id


class InvalidRunTransition(RunError):
    """Run state machine rejected a transition."""
    def __init__(self, message: str, from_state: str = "", to_state: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.from_state = from_state
        self.to_state = to_state
