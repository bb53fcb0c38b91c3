"""
ParamsComparator — decide whether two workflow structures are equivalent.

Accepts either Workflow models or params dicts (as produced by
``params.to_map``).  ``semantic`` mode ignores ids, timestamps and other
metadata so that the same graph rebuilt with fresh ids compares equal;
``exact`` mode compares every field.

Usage::

    equivalent(before, after)                                  # semantic
    equivalent(before, after, mode="exact")
    equivalent(before, after, ignore={"jobs": ["body"], "edges": "all"})
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Union

from pydantic import BaseModel

Ignore = dict[str, Union[str, list[str]]]

WORKFLOW_FIELDS = (
    "id", "name", "project_id", "lock_version", "deleted_at", "delete",
    "inserted_at", "updated_at", "concurrency", "enable_job_logs",
    "positions", "errors",
)
JOB_FIELDS = (
    "id", "name", "body", "adaptor", "project_credential_id", "workflow_id",
    "inserted_at", "updated_at", "delete", "errors",
)
TRIGGER_FIELDS = (
    "id", "type", "enabled", "cron_expression", "kafka_configuration",
    "has_auth_method", "comment", "custom_path", "workflow_id",
    "inserted_at", "updated_at", "delete", "errors",
)
EDGE_FIELDS = (
    "id", "source_job_id", "source_trigger_id", "target_job_id", "enabled",
    "condition_type", "condition_expression", "condition_label",
    "workflow_id", "inserted_at", "updated_at", "delete", "errors",
)
_ENTITY_FIELDS = {"jobs": JOB_FIELDS, "triggers": TRIGGER_FIELDS, "edges": EDGE_FIELDS}
_EDGE_REF_FIELDS = ("source_job_id", "source_trigger_id", "target_job_id")

SEMANTIC_DEFAULTS: Ignore = {
    "workflow": [
        "id", "project_id", "lock_version", "deleted_at", "delete",
        "inserted_at", "updated_at", "concurrency", "enable_job_logs",
        "errors", "positions",
    ],
    "jobs": ["id", "inserted_at", "updated_at", "delete", "project_credential_id", "workflow_id"],
    "triggers": [
        "id", "inserted_at", "updated_at", "delete", "has_auth_method",
        "workflow_id", "comment", "custom_path",
    ],
    "edges": ["id", "inserted_at", "updated_at", "delete", "workflow_id"],
}


def _as_dict(workflow: Any) -> dict[str, Any]:
    if isinstance(workflow, BaseModel):
        return workflow.model_dump(mode="json")
    return workflow


def build_ignore_set(mode: str = "semantic", ignore: Optional[Ignore] = None) -> dict[str, set[str]]:
    """Combine mode defaults with custom ignores; ``"all"`` expands to every field."""
    result: dict[str, set[str]] = {"workflow": set(), "jobs": set(), "triggers": set(), "edges": set()}
    sources = [SEMANTIC_DEFAULTS] if mode != "exact" else []
    if ignore:
        sources.append(ignore)
    for source in sources:
        for entity, fields in source.items():
            if fields == "all":
                fields = WORKFLOW_FIELDS if entity == "workflow" else _ENTITY_FIELDS[entity]
            result[entity].update(fields)
    return result


def _pick(item: dict[str, Any], fields: tuple[str, ...], ignored: set[str]) -> dict[str, Any]:
    return {f: item.get(f) for f in fields if f not in ignored}


def _sort_key(*values: Any) -> tuple:
    return tuple("" if v is None else str(v) for v in values)


def normalize(workflow: Any, ignored: dict[str, set[str]]) -> dict[str, Any]:
    """Reduce a workflow to the comparable fields in a stable order."""
    data = _as_dict(workflow)
    jobs = data.get("jobs") or []
    triggers = data.get("triggers") or []
    edges = data.get("edges") or []

    normalized = _pick(data, WORKFLOW_FIELDS, ignored["workflow"])

    job_ignore = ignored["jobs"]
    norm_jobs = [_pick(j, JOB_FIELDS, job_ignore) for j in jobs]
    if "id" in job_ignore:
        norm_jobs.sort(key=lambda j: _sort_key(j.get("name")))
    else:
        norm_jobs.sort(key=lambda j: _sort_key(j.get("id")))
    normalized["jobs"] = norm_jobs

    trigger_ignore = ignored["triggers"]
    norm_triggers = [_pick(t, TRIGGER_FIELDS, trigger_ignore) for t in triggers]
    if "id" in trigger_ignore:
        norm_triggers.sort(key=lambda t: _sort_key(t.get("type"), t.get("enabled")))
    else:
        norm_triggers.sort(key=lambda t: _sort_key(t.get("id")))
    normalized["triggers"] = norm_triggers

    edge_ignore = ignored["edges"]
    if "id" in edge_ignore:
        # Without ids, edges are identified by the names of what they connect
        job_names = {j.get("id"): j.get("name") for j in jobs}
        trigger_names = {
            t.get("id"): f"trigger_{t.get('type')}_{index}"
            for index, t in enumerate(triggers)
        }
        norm_edges = []
        for edge in edges:
            item = _pick(edge, EDGE_FIELDS, edge_ignore | set(_EDGE_REF_FIELDS))
            if edge.get("source_job_id"):
                item["source"] = ["job", job_names.get(edge["source_job_id"])]
            elif edge.get("source_trigger_id"):
                item["source"] = ["trigger", trigger_names.get(edge["source_trigger_id"])]
            else:
                item["source"] = ["unknown", None]
            target = edge.get("target_job_id")
            item["target"] = ["job", job_names.get(target)] if target else ["unknown", None]
            norm_edges.append(item)
        norm_edges.sort(key=lambda e: _sort_key(e["source"], e["target"], e.get("condition_type")))
    else:
        norm_edges = [_pick(e, EDGE_FIELDS, edge_ignore) for e in edges]
        norm_edges.sort(key=lambda e: _sort_key(e.get("id")))
    normalized["edges"] = norm_edges
    return normalized


def checksum(workflow: Any, mode: str = "semantic", ignore: Optional[Ignore] = None) -> str:
    normalized = normalize(workflow, build_ignore_set(mode, ignore))
    encoded = json.dumps(normalized, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


def equivalent(
    workflow1: Any,
    workflow2: Any,
    mode: str = "semantic",
    ignore: Optional[Ignore] = None,
) -> bool:
    """Return True when both workflows normalise to the same checksum."""
    if workflow1 is None and workflow2 is None:
        return True
    if workflow1 is None or workflow2 is None:
        return False
    return checksum(workflow1, mode, ignore) == checksum(workflow2, mode, ignore)
