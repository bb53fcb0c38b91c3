"""Input selection for the manual run panel."""

from __future__ import annotations

from typing import Any, Optional

from flowdesk.exceptions import WorkflowNotFound
from flowdesk.types import Dataclip, TriggerType, Workflow

from .dataclips import DataclipStore, matches, parse_filters


def _workflow_for_job(workflows: Any, job_id: str) -> Workflow:
    for workflow in workflows.all():
        if workflow.job(job_id) is not None:
            return workflow
    raise WorkflowNotFound(f"No workflow contains job '{job_id}'")


def _cron_started(workflow: Workflow, job_id: str) -> bool:
    """True when an enabled cron trigger starts the workflow at this job."""
    cron_ids = {
        t.id for t in workflow.triggers
        if t.type == TriggerType.CRON and t.enabled
    }
    return any(
        e.source_trigger_id in cron_ids and e.target_job_id == job_id
        for e in workflow.edges
    )


def search_selectable_dataclips(
    job_id: str,
    query_string: str,
    limit: int,
    offset: int,
    *,
    workflows: Any,
    runs: Any,
    dataclips: DataclipStore,
) -> dict[str, Any]:
    """
    Dataclips a user can pick as input when running ``job_id`` manually.

    Returns ``{"dataclips": [...], "next_cron_run_dataclip_id": id | None}``.
    For cron-started jobs the input the next cron tick will use (the output
    of the job's last successful step) is reported and listed first, unless
    it has been wiped, deleted or is excluded by the filters.

    Raises:
        InvalidFilterError: if the query string is invalid.
        WorkflowNotFound: if no workflow contains the job.
    """
    filters = parse_filters(query_string)
    workflow = _workflow_for_job(workflows, job_id)

    candidate_ids: list[str] = []
    for step in runs.steps_for_job(job_id):
        if step.input_dataclip_id:
            candidate_ids.append(step.input_dataclip_id)
    for run in runs.runs_starting_at(job_id):
        if run.dataclip_id:
            candidate_ids.append(run.dataclip_id)

    candidates: list[Dataclip] = [
        d for d in dataclips.get_many(list(dict.fromkeys(candidate_ids)))
        if d.wiped_at is None and matches(d, filters)
    ]
    candidates.sort(key=lambda d: d.inserted_at, reverse=True)

    next_clip: Optional[Dataclip] = None
    if _cron_started(workflow, job_id):
        step = runs.last_successful_step_for_job(job_id)
        if step is not None and step.output_dataclip_id:
            found = dataclips.get_many([step.output_dataclip_id])
            # the cron input obeys the same filters as every other candidate
            if found and found[0].wiped_at is None and matches(found[0], filters):
                next_clip = found[0]

    page = candidates[offset: offset + limit]
    next_cron_id = next_clip.id if next_clip is not None else None
    if next_clip is not None:
        page = [next_clip] + [d for d in page if d.id != next_cron_id]
        page = page[:limit]

    return {"dataclips": page, "next_cron_run_dataclip_id": next_cron_id}
