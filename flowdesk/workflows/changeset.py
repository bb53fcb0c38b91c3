"""
WorkflowChangeset — merges client params onto a workflow and validates the graph.

Params are plain string-keyed dicts as the editor sends them.  ``jobs``,
``triggers`` and ``edges`` replace the stored collections wholesale when
present; items are matched to stored ones by ``id`` so fields the client
omits keep their stored values.  Validation never raises: it collects a
nested error tree shaped like the params themselves::

    {
        "name": ["This field can't be blank."],
        "jobs": [{"body": ["This field can't be blank."]}, {}],
        "edges": [{}, {"condition_type": ["..."]}],
    }

Collection keys are present only when at least one item has errors, and
per-item entries line up with the item order.
"""

from __future__ import annotations

from typing import Any, Optional

from croniter import croniter
from pydantic import BaseModel, ValidationError

from flowdesk.config import FlowdeskConfig
from flowdesk.exceptions import WorkflowValidationError
from flowdesk.types import (
    Edge,
    EdgeCondition,
    Job,
    Trigger,
    TriggerType,
    Workflow,
    new_id,
    utcnow,
)

from .dag import topological_sort

BLANK = "This field can't be blank."
INVALID = "is invalid"
MISSING_REF = "does not exist"
TRIGGER_CONDITION = (
    "The condition must be 'Always' or 'JS expression' when the source is trigger."
)
EXCLUSIVE_SOURCE = "source_job_id and source_trigger_id are mutually exclusive"
DUPLICATE_JOB_NAME = "job name has already been taken"

WORKFLOW_FIELDS = ("name", "project_id", "positions", "concurrency", "enable_job_logs")
COLLECTIONS = ("jobs", "triggers", "edges")

_TRIGGER_SAFE_CONDITIONS = {EdgeCondition.ALWAYS.value, EdgeCondition.JS_EXPRESSION.value}
_COLLECTION_MODELS = {"jobs": Job, "triggers": Trigger, "edges": Edge}


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_bool(value: Any) -> Any:
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _add(errors: dict[str, list[str]], field: str, message: str) -> None:
    errors.setdefault(field, []).append(message)


def _type_errors(model: type[BaseModel], data: dict[str, Any], errors: dict[str, list[str]]) -> None:
    """Record pydantic type failures for fields that have no error yet."""
    try:
        model.model_validate(data)
    except ValidationError as exc:
        for err in exc.errors():
            field = str(err["loc"][0]) if err["loc"] else "base"
            if field not in errors:
                _add(errors, field, err["msg"])


class WorkflowChangeset:
    """
    Result of merging params onto a workflow.

    Attributes:
        data:     The workflow the params were applied to.
        fields:   Merged workflow-level fields (name, project_id, ...).
        jobs / triggers / edges:  Merged items as plain dicts, in param order.
        errors:   Nested error tree; empty when valid.
        item_errors:  collection name → per-item error dicts (always aligned).
    """

    def __init__(
        self,
        data: Workflow,
        fields: dict[str, Any],
        items: dict[str, list[dict[str, Any]]],
    ) -> None:
        self.data = data
        self.fields = fields
        self.jobs = items["jobs"]
        self.triggers = items["triggers"]
        self.edges = items["edges"]
        self.field_errors: dict[str, list[str]] = {}
        self.item_errors: dict[str, list[dict[str, list[str]]]] = {
            key: [{} for _ in items[key]] for key in COLLECTIONS
        }

    # ── Construction ──────────────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        workflow: Optional[Workflow],
        params: Optional[dict[str, Any]] = None,
        config: Optional[FlowdeskConfig] = None,
    ) -> "WorkflowChangeset":
        """Merge ``params`` onto ``workflow`` (or a blank workflow) and validate."""
        cfg = config or FlowdeskConfig()
        data = workflow or Workflow()
        params = params or {}

        fields = {key: getattr(data, key) for key in WORKFLOW_FIELDS}
        for key in WORKFLOW_FIELDS:
            if key in params:
                fields[key] = _to_bool(params[key]) if key == "enable_job_logs" else params[key]

        items: dict[str, list[dict[str, Any]]] = {}
        malformed: set[str] = set()
        for key in COLLECTIONS:
            stored = {
                item.id: item.model_dump(mode="json")
                for item in getattr(data, key)
            }
            raw_items = params.get(key) or []
            if key not in params:
                items[key] = list(stored.values())
                continue
            if not isinstance(raw_items, list):
                malformed.add(key)
                items[key] = list(stored.values())
                continue
            merged = []
            for raw in raw_items:
                if not isinstance(raw, dict):
                    malformed.add(key)
                    continue
                if _to_bool(raw.get("delete")) is True:
                    continue
                item = {k: v for k, v in raw.items() if k not in ("errors", "delete")}
                if key == "edges" and "condition" in item:
                    item.setdefault("condition_type", item.pop("condition"))
                if "enabled" in item:
                    item["enabled"] = _to_bool(item["enabled"])
                item_id = item.get("id")
                existing = stored.get(item_id) if isinstance(item_id, str) else None
                if existing is None:
                    item = cls._with_defaults(key, item, cfg)
                else:
                    item = {**existing, **item}
                merged.append(item)
            items[key] = merged

        changeset = cls(data, fields, items)
        for key in malformed:
            _add(changeset.field_errors, key, INVALID)
        changeset._validate(cfg)
        return changeset

    @staticmethod
    def _with_defaults(key: str, item: dict[str, Any], cfg: FlowdeskConfig) -> dict[str, Any]:
        item = dict(item)
        item.setdefault("id", new_id())
        if key == "jobs":
            item.setdefault("name", None)
            item.setdefault("body", "")
            if is_blank(item.get("adaptor")):
                item["adaptor"] = cfg.default_adaptor
            item.setdefault("project_credential_id", None)
        elif key == "triggers":
            item.setdefault("type", TriggerType.WEBHOOK.value)
            item.setdefault("cron_expression", "")
            item.setdefault("enabled", True)
            item.setdefault("has_auth_method", None)
        else:
            item.setdefault("source_job_id", None)
            item.setdefault("source_trigger_id", None)
            item.setdefault("target_job_id", None)
            if is_blank(item.get("condition_type")):
                item["condition_type"] = (
                    EdgeCondition.ALWAYS.value
                    if item.get("source_trigger_id")
                    else EdgeCondition.ON_JOB_SUCCESS.value
                )
            item.setdefault("enabled", True)
        return item

    # ── Validation ────────────────────────────────────────────────────────────

    def _validate(self, cfg: FlowdeskConfig) -> None:
        if is_blank(self.fields.get("name")):
            _add(self.field_errors, "name", BLANK)
        _type_errors(Workflow, self.fields, self.field_errors)

        seen_names: set[str] = set()
        for job, errs in zip(self.jobs, self.item_errors["jobs"]):
            name = job.get("name")
            if is_blank(name):
                _add(errs, "name", BLANK)
            elif isinstance(name, str):
                if len(name) > cfg.max_job_name_length:
                    _add(errs, "name", f"should be at most {cfg.max_job_name_length} character(s)")
                if name in seen_names:
                    _add(errs, "name", DUPLICATE_JOB_NAME)
                seen_names.add(name)
            if is_blank(job.get("body")):
                _add(errs, "body", BLANK)
            if is_blank(job.get("adaptor")):
                _add(errs, "adaptor", BLANK)
            _type_errors(Job, job, errs)

        valid_types = {t.value for t in TriggerType}
        for trigger, errs in zip(self.triggers, self.item_errors["triggers"]):
            ttype = trigger.get("type")
            if not isinstance(ttype, str) or ttype not in valid_types:
                _add(errs, "type", INVALID)
            elif ttype == TriggerType.CRON.value:
                expr = trigger.get("cron_expression")
                if is_blank(expr):
                    _add(errs, "cron_expression", BLANK)
                elif not isinstance(expr, str) or not croniter.is_valid(expr):
                    _add(errs, "cron_expression", INVALID)
            _type_errors(Trigger, trigger, errs)

        job_ids = {j.get("id") for j in self.jobs if isinstance(j.get("id"), str)}
        trigger_ids = {t.get("id") for t in self.triggers if isinstance(t.get("id"), str)}
        valid_conditions = {c.value for c in EdgeCondition}
        for edge, errs in zip(self.edges, self.item_errors["edges"]):
            source_job = edge.get("source_job_id")
            source_trigger = edge.get("source_trigger_id")
            if source_job and source_trigger:
                _add(errs, "source_job_id", EXCLUSIVE_SOURCE)
            elif not source_job and not source_trigger:
                _add(errs, "source_job_id", BLANK)
            if source_job and source_job not in job_ids:
                _add(errs, "source_job_id", MISSING_REF)
            if source_trigger and source_trigger not in trigger_ids:
                _add(errs, "source_trigger_id", MISSING_REF)

            target = edge.get("target_job_id")
            if not target:
                _add(errs, "target_job_id", BLANK)
            elif target not in job_ids:
                _add(errs, "target_job_id", MISSING_REF)

            condition = edge.get("condition_type")
            if not isinstance(condition, str) or condition not in valid_conditions:
                _add(errs, "condition_type", INVALID)
            elif source_trigger and condition not in _TRIGGER_SAFE_CONDITIONS:
                _add(errs, "condition_type", TRIGGER_CONDITION)
            elif condition == EdgeCondition.JS_EXPRESSION.value and is_blank(
                edge.get("condition_expression")
            ):
                _add(errs, "condition_expression", BLANK)
            _type_errors(Edge, edge, errs)

        if not any(self.item_errors["edges"]) and not any(self.item_errors["jobs"]):
            try:
                topological_sort(
                    [Job.model_validate(j) for j in self.jobs],
                    [Edge.model_validate(e) for e in self.edges],
                )
            except WorkflowValidationError as exc:
                for field, messages in exc.errors.items():
                    for message in messages:
                        _add(self.field_errors, field, message)

    # ── Results ───────────────────────────────────────────────────────────────

    @property
    def errors(self) -> dict[str, Any]:
        tree: dict[str, Any] = dict(self.field_errors)
        for key in COLLECTIONS:
            per_item = self.item_errors[key]
            if any(per_item):
                tree[key] = [dict(e) for e in per_item]
        return tree

    @property
    def valid(self) -> bool:
        return not self.errors

    def apply(self) -> Workflow:
        """
        Return the merged workflow.

        Raises:
            WorkflowValidationError: if the changeset is invalid.
        """
        if not self.valid:
            raise WorkflowValidationError("Workflow could not be saved", errors=self.errors)
        updates: dict[str, Any] = dict(self.fields)
        for key in COLLECTIONS:
            model = _COLLECTION_MODELS[key]
            updates[key] = [model.model_validate(item) for item in getattr(self, key)]
        updates["updated_at"] = utcnow()
        return self.data.model_copy(update=updates)
