"""flowdesk.workflows — Workflow graphs, param diffs, snapshots, and versioning."""

from .changeset import WorkflowChangeset
from .editor import EditorRegistry, EditorSession
from .manager import WorkflowManager
from .snapshots import SnapshotStore
from .versions import WorkflowVersions, classify, classify_with_delta, generate_hash

__all__ = [
    "WorkflowChangeset",
    "EditorRegistry",
    "EditorSession",
    "WorkflowManager",
    "SnapshotStore",
    "WorkflowVersions",
    "classify",
    "classify_with_delta",
    "generate_hash",
]
