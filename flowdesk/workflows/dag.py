"""
DAG utilities for workflow graph traversal.

All functions operate on Job / Edge lists and are pure (no side effects,
no I/O) so they can be called safely from the changeset, manager, and the
run services alike.  Trigger edges (``source_trigger_id`` set) mark the
jobs a workflow starts from; only job-to-job edges form the DAG proper.
"""

from __future__ import annotations

from collections import deque

from flowdesk.exceptions import WorkflowValidationError
from flowdesk.types import Edge, Job


# ── Traversal helpers ─────────────────────────────────────────────────────────


def job_edges(edges: list[Edge]) -> list[Edge]:
    """Return only edges whose source is a job."""
    return [e for e in edges if e.source_job_id]


def get_entry_points(jobs: list[Job], edges: list[Edge]) -> list[str]:
    """Return job IDs with no incoming job edges (DAG roots)."""
    target_ids = {e.target_job_id for e in job_edges(edges)}
    return [j.id for j in jobs if j.id not in target_ids]


def get_trigger_targets(trigger_id: str, edges: list[Edge]) -> list[str]:
    """Return job IDs that a trigger starts."""
    return [
        e.target_job_id for e in edges
        if e.source_trigger_id == trigger_id and e.target_job_id
    ]


def get_children(job_id: str, edges: list[Edge]) -> list[tuple[str, Edge]]:
    """Return (target_job_id, edge) pairs for all outgoing edges of job_id."""
    return [(e.target_job_id, e) for e in edges if e.source_job_id == job_id]


def get_parents(job_id: str, edges: list[Edge]) -> list[tuple[str, Edge]]:
    """Return (source id, edge) pairs for all incoming edges of job_id."""
    return [
        (e.source_job_id or e.source_trigger_id, e)
        for e in edges if e.target_job_id == job_id
    ]


# ── Topological sort (Kahn's algorithm) ──────────────────────────────────────


def topological_sort(jobs: list[Job], edges: list[Edge]) -> list[str]:
    """
    Return job IDs in topological order.

    Raises:
        WorkflowValidationError: if the job graph contains a cycle.
    """
    job_ids = [j.id for j in jobs]
    if not job_ids:
        return []

    in_degree: dict[str, int] = {jid: 0 for jid in job_ids}
    adjacency: dict[str, list[str]] = {jid: [] for jid in job_ids}

    for edge in job_edges(edges):
        src, tgt = edge.source_job_id, edge.target_job_id
        # Dangling references are reported by the changeset, not here
        if src in adjacency and tgt in in_degree:
            adjacency[src].append(tgt)
            in_degree[tgt] += 1

    queue: deque[str] = deque(jid for jid in job_ids if in_degree[jid] == 0)
    order: list[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for child in adjacency[node]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    if len(order) < len(job_ids):
        cycle_nodes = sorted(jid for jid in job_ids if in_degree[jid] > 0)
        raise WorkflowValidationError(
            "Workflow contains a cycle",
            errors={"graph": ["Workflow contains a cycle"]},
            details={"job_ids": cycle_nodes},
        )
    return order


def descendants(job_id: str, edges: list[Edge]) -> set[str]:
    """Return every job reachable from job_id (excluding itself)."""
    seen: set[str] = set()
    queue: deque[str] = deque([job_id])
    while queue:
        current = queue.popleft()
        for child, _ in get_children(current, edges):
            if child and child not in seen and child != job_id:
                seen.add(child)
                queue.append(child)
    return seen
