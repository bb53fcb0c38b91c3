"""
WorkflowParams — the serialisable form of a workflow changeset.

The editor holds a copy of these params client-side.  Each side sends the
other RFC 6902 JSON patches describing what changed, so only the diff
crosses the wire.
"""

from __future__ import annotations

import copy
from typing import Any

import jsonpatch

from flowdesk.exceptions import PatchError

from .changeset import WorkflowChangeset

JOB_KEYS = ("id", "name", "body", "adaptor", "project_credential_id")
TRIGGER_KEYS = ("id", "type", "cron_expression", "has_auth_method")
EDGE_KEYS = (
    "id",
    "source_job_id",
    "source_trigger_id",
    "target_job_id",
    "condition_type",
    "condition_expression",
    "condition_label",
    "enabled",
)


def _item_map(item: dict[str, Any], keys: tuple[str, ...], errors: dict) -> dict[str, Any]:
    result = {key: item.get(key) for key in keys}
    result["errors"] = copy.deepcopy(errors)
    return result


def to_map(changeset: WorkflowChangeset) -> dict[str, Any]:
    """Build the serialisable params map (with errors) for a changeset."""
    jobs = []
    for job, errs in zip(changeset.jobs, changeset.item_errors["jobs"]):
        mapped = _item_map(job, JOB_KEYS, errs)
        if mapped["body"] is None:
            mapped["body"] = ""
        jobs.append(mapped)

    triggers = []
    for trigger, errs in zip(changeset.triggers, changeset.item_errors["triggers"]):
        mapped = _item_map(trigger, TRIGGER_KEYS, errs)
        if mapped["cron_expression"] is None:
            mapped["cron_expression"] = ""
        triggers.append(mapped)

    edges = [
        _item_map(edge, EDGE_KEYS, errs)
        for edge, errs in zip(changeset.edges, changeset.item_errors["edges"])
    ]

    return {
        "name": changeset.fields.get("name"),
        "project_id": changeset.fields.get("project_id"),
        "jobs": jobs,
        "triggers": triggers,
        "edges": edges,
        "errors": copy.deepcopy(changeset.errors),
    }


def to_patches(initial_params: dict[str, Any], target_params: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the JSON patch operations that turn ``initial_params`` into ``target_params``."""
    patch = jsonpatch.make_patch(initial_params, target_params)
    return [dict(op) for op in patch.patch]


def apply_patches(params: dict[str, Any], patches: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Apply client patches to a copy of ``params``.

    Raises:
        PatchError: if any operation cannot be applied.
    """
    try:
        return jsonpatch.apply_patch(params, patches, in_place=False)
    except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as exc:
        raise PatchError(f"Could not apply patches: {exc}", details={"patches": patches}) from exc


def _as_list(value: Any) -> list[dict[str, Any]]:
    """Forms send collections either as lists or as index-keyed dicts."""
    if isinstance(value, dict):
        return [value[k] for k in sorted(value, key=lambda k: int(k))]
    return list(value or [])


def apply_form_params(current: dict[str, Any], form_params: dict[str, Any]) -> dict[str, Any]:
    """
    Merge a form submission into the current params.

    Items are matched by id; unmatched form items are appended, and items
    the form does not mention are kept.
    """
    result = copy.deepcopy(current)
    for key, value in form_params.items():
        if key in ("jobs", "triggers", "edges"):
            existing = {item.get("id"): item for item in result.get(key, [])}
            order = [item.get("id") for item in result.get(key, [])]
            for item in _as_list(value):
                item_id = item.get("id")
                if item_id in existing:
                    existing[item_id] = {**existing[item_id], **item}
                else:
                    existing[item_id] = dict(item)
                    order.append(item_id)
            result[key] = [existing[item_id] for item_id in order]
        elif key != "errors":
            result[key] = value
    return result
