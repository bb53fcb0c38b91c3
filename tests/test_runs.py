"""Dataclips, manual runs, retries and the run state machine."""

import uuid

import pytest

from flowdesk.collaboration import project_topic, run_topic
from flowdesk.exceptions import (
    DataclipError,
    InvalidFilterError,
    InvalidRunTransition,
    RunError,
    UnauthorizedError,
    WorkflowNotFound,
)
from flowdesk.invocation import parse_filters, search_selectable_dataclips
from flowdesk.types import DataclipType, RunState, WorkOrderState

EDITOR = "user-editor"
VIEWER = "user-viewer"


# ── Filters ───────────────────────────────────────────────────────────────────

class TestParseFilters:

    def test_full_uuid(self):
        clip_id = str(uuid.uuid4())
        assert parse_filters(f"query={clip_id.upper()}") == {"id": clip_id}

    def test_hex_prefix(self):
        assert parse_filters("query=ab12") == {"id_prefix": "ab12"}

    def test_dates_and_type(self):
        filters = parse_filters("after=2024-01-01T10:00&type=saved_input&named_only=true")
        assert filters["after"].year == 2024
        assert filters["after"].tzinfo is not None
        assert filters["type"] == DataclipType.SAVED_INPUT
        assert filters["named_only"] is True

    def test_blank_values_are_dropped(self):
        assert parse_filters("query=&before=&type=") == {}

    def test_invalid_values_collect_errors(self):
        with pytest.raises(InvalidFilterError) as exc_info:
            parse_filters("query=not-hex!&before=yesterday&type=bogus")
        assert set(exc_info.value.errors) == {"query", "before", "type"}

    def test_unknown_keys_are_ignored(self):
        assert parse_filters("limit=5&offset=10") == {}


# ── Dataclip store ────────────────────────────────────────────────────────────

class TestDataclipStore:

    async def test_body_must_be_an_object(self, dataclips, project):
        with pytest.raises(DataclipError):
            await dataclips.create(project.id, ["not", "an", "object"])

    async def test_search_is_scoped_and_paged(self, dataclips, project):
        for n in range(3):
            await dataclips.create(project.id, {"n": n}, DataclipType.GLOBAL)
        await dataclips.create("other-project", {"n": 99})
        found = dataclips.search(project.id, {}, limit=2, offset=0)
        assert len(found) == 2
        assert all(d.project_id == project.id for d in found)
        assert len(dataclips.search(project.id, {}, limit=10, offset=2)) == 1

    async def test_search_by_type_and_name(self, dataclips, project):
        await dataclips.create(project.id, {}, DataclipType.GLOBAL)
        named = await dataclips.create(project.id, {}, DataclipType.SAVED_INPUT, name="fixture")
        assert dataclips.search(project.id, {"type": DataclipType.SAVED_INPUT}) == [named]
        assert dataclips.search(project.id, {"named_only": True}) == [named]
        assert dataclips.search(project.id, {"id_prefix": named.id[:6]})[0].id == named.id

    async def test_update_name_blank_clears_it(self, dataclips, project):
        clip = await dataclips.create(project.id, {}, name="fixture")
        assert (await dataclips.update_name(clip.id, "")).name is None
        assert dataclips.get(clip.id).name is None

    async def test_wipe_erases_body_and_broadcasts(self, dataclips, project, pubsub):
        seen = []
        pubsub.subscribe(project_topic(project.id), seen.append)
        clip = await dataclips.create(project.id, {"secret": "x"}, request={"headers": {}})
        wiped = await dataclips.wipe(clip.id)
        assert wiped.body is None and wiped.request is None
        assert wiped.wiped_at is not None
        assert seen[0]["event"] == "dataclip_wiped"


# ── Manual runs ───────────────────────────────────────────────────────────────

class TestManualRun:

    async def test_body_becomes_saved_input(self, work_orders, dataclips, project, workflow):
        work_order, run = await work_orders.create_for_manual(
            project, EDITOR, workflow, "job-a", body={"patient": 1}
        )
        clip = dataclips.get(run.dataclip_id)
        assert clip.type == DataclipType.SAVED_INPUT
        assert clip.body == {"patient": 1}
        assert run.state == RunState.AVAILABLE
        assert run.starting_job_id == "job-a"
        assert run.created_by == EDITOR
        assert work_order.state == WorkOrderState.PENDING
        assert work_order.run_ids == [run.id]

    async def test_run_is_pinned_to_latest_snapshot(self, work_orders, manager, project, workflow):
        _, run = await work_orders.create_for_manual(project, EDITOR, workflow, "job-a", body={})
        assert run.snapshot_id == manager.snapshots.get_latest(workflow.id).id

    async def test_existing_dataclip_is_reused(self, work_orders, dataclips, project, workflow):
        clip = await dataclips.create(project.id, {"a": 1}, DataclipType.GLOBAL)
        _, run = await work_orders.create_for_manual(
            project, EDITOR, workflow, "job-a", dataclip_id=clip.id
        )
        assert run.dataclip_id == clip.id

    async def test_wiped_dataclip_is_rejected(self, work_orders, dataclips, project, workflow):
        clip = await dataclips.create(project.id, {"a": 1})
        await dataclips.wipe(clip.id)
        with pytest.raises(DataclipError):
            await work_orders.create_for_manual(project, EDITOR, workflow, "job-a", dataclip_id=clip.id)

    async def test_input_is_required(self, work_orders, project, workflow):
        with pytest.raises(DataclipError):
            await work_orders.create_for_manual(project, EDITOR, workflow, "job-a")

    async def test_unknown_job(self, work_orders, project, workflow):
        with pytest.raises(WorkflowNotFound):
            await work_orders.create_for_manual(project, EDITOR, workflow, "nope", body={})

    async def test_viewer_cannot_run(self, work_orders, project, workflow):
        with pytest.raises(UnauthorizedError):
            await work_orders.create_for_manual(project, VIEWER, workflow, "job-a", body={})


# ── Run state machine ─────────────────────────────────────────────────────────

@pytest.fixture
async def run(work_orders, project, workflow):
    _, run = await work_orders.create_for_manual(project, EDITOR, workflow, "job-a", body={"x": 1})
    return run


class TestRunLifecycle:

    async def test_happy_path_updates_work_order(self, runs, run):
        await runs.claim(run.id, "worker-1")
        await runs.start_run(run.id)
        finished = await runs.complete_run(run.id, RunState.SUCCESS)
        assert finished.state == RunState.SUCCESS
        assert finished.worker_name == "worker-1"
        assert runs.get_work_order(run.work_order_id).state == WorkOrderState.SUCCESS

    async def test_started_run_marks_work_order_running(self, runs, run):
        await runs.claim(run.id, "worker-1")
        await runs.start_run(run.id)
        assert runs.get_work_order(run.work_order_id).state == WorkOrderState.RUNNING

    async def test_cannot_skip_states(self, runs, run):
        with pytest.raises(InvalidRunTransition):
            await runs.complete_run(run.id, RunState.SUCCESS)

    async def test_non_final_completion_is_rejected(self, runs, run):
        await runs.claim(run.id, "w")
        await runs.start_run(run.id)
        with pytest.raises(InvalidRunTransition):
            await runs.complete_run(run.id, RunState.CLAIMED)

    async def test_available_run_can_be_cancelled(self, runs, run):
        cancelled = await runs.cancel(run.id)
        assert cancelled.state == RunState.CANCELLED

    async def test_transitions_are_broadcast(self, runs, run, pubsub):
        seen = []
        pubsub.subscribe(run_topic(run.id), seen.append)
        await runs.claim(run.id, "w")
        assert seen[0]["event"] == "run_updated"
        assert seen[0]["payload"]["state"] == "claimed"

    async def test_steps_require_started_run(self, runs, run):
        with pytest.raises(RunError):
            await runs.start_step(run.id, "job-a")

    async def test_step_completion_and_lookup(self, runs, run, dataclips, project):
        await runs.claim(run.id, "w")
        await runs.start_run(run.id)
        step = await runs.start_step(run.id, "job-a", input_dataclip_id=run.dataclip_id)
        output = await dataclips.create(project.id, {"out": True}, DataclipType.STEP_RESULT)
        finished = await runs.complete_step(run.id, step.id, "success", output_dataclip_id=output.id)
        assert finished.finished_at is not None
        assert runs.last_successful_step_for_job("job-a").id == step.id
        with pytest.raises(RunError):
            await runs.complete_step(run.id, step.id, "success")


class TestRetry:

    async def test_retry_from_step_adds_run(self, runs, work_orders, run, project):
        await runs.claim(run.id, "w")
        await runs.start_run(run.id)
        step = await runs.start_step(run.id, "job-a", input_dataclip_id=run.dataclip_id)
        await runs.complete_step(run.id, step.id, "fail")
        await runs.complete_run(run.id, RunState.FAILED)

        retried = await work_orders.retry(project, EDITOR, run.id, step.id)
        work_order = runs.get_work_order(run.work_order_id)
        assert retried.dataclip_id == run.dataclip_id
        assert retried.starting_job_id == "job-a"
        assert work_order.run_ids == [run.id, retried.id]
        assert work_order.state == WorkOrderState.PENDING

    async def test_step_must_belong_to_run(self, runs, work_orders, run, project):
        await runs.claim(run.id, "w")
        await runs.start_run(run.id)
        step = await runs.start_step(run.id, "job-a", input_dataclip_id=run.dataclip_id)
        with pytest.raises(RunError):
            await work_orders.retry(project, EDITOR, "another-run", step.id)


# ── Selectable inputs ─────────────────────────────────────────────────────────

class TestSelectableDataclips:

    async def test_previous_inputs_are_listed(self, manager, runs, dataclips, run):
        result = search_selectable_dataclips(
            "job-a", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert [d.id for d in result["dataclips"]] == [run.dataclip_id]
        assert result["next_cron_run_dataclip_id"] is None

    async def test_wiped_inputs_are_hidden(self, manager, runs, dataclips, run):
        await dataclips.wipe(run.dataclip_id)
        result = search_selectable_dataclips(
            "job-a", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert result["dataclips"] == []

    async def test_unknown_job(self, manager, runs, dataclips):
        with pytest.raises(WorkflowNotFound):
            search_selectable_dataclips(
                "nope", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
            )

    @pytest.fixture
    async def cron_output(self, manager, project, make_params, runs, dataclips, work_orders):
        """A cron-started job whose last successful step produced an output clip."""
        params = make_params(name="Nightly")
        params["triggers"] = [{"id": "cron-1", "type": "cron", "cron_expression": "0 0 * * *"}]
        params["edges"][0]["source_trigger_id"] = "cron-1"
        params["jobs"] = [
            {"id": "cron-job", "name": "pull", "body": "get('/x')"},
            {"id": "cron-load", "name": "push", "body": "post('/y')"},
        ]
        params["edges"][0]["target_job_id"] = "cron-job"
        params["edges"][1].update({"source_job_id": "cron-job", "target_job_id": "cron-load"})
        nightly = await manager.create(project, EDITOR, params)

        _, run = await work_orders.create_for_manual(project, EDITOR, nightly, "cron-job", body={"a": 1})
        await runs.claim(run.id, "w")
        await runs.start_run(run.id)
        step = await runs.start_step(run.id, "cron-job", input_dataclip_id=run.dataclip_id)
        output = await dataclips.create(project.id, {"cursor": 42}, DataclipType.STEP_RESULT)
        await runs.complete_step(run.id, step.id, "success", output_dataclip_id=output.id)
        return run, output

    async def test_cron_job_lists_next_input_first(self, manager, runs, dataclips, cron_output):
        run, output = cron_output
        result = search_selectable_dataclips(
            "cron-job", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert result["next_cron_run_dataclip_id"] == output.id
        assert result["dataclips"][0].id == output.id
        assert run.dataclip_id in [d.id for d in result["dataclips"]]

    async def test_wiped_cron_input_is_skipped(self, manager, runs, dataclips, cron_output):
        run, output = cron_output
        await dataclips.wipe(output.id)
        result = search_selectable_dataclips(
            "cron-job", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert result["next_cron_run_dataclip_id"] is None
        assert [d.id for d in result["dataclips"]] == [run.dataclip_id]

    async def test_cron_input_obeys_filters(self, manager, runs, dataclips, cron_output):
        run, output = cron_output
        result = search_selectable_dataclips(
            "cron-job", "type=saved_input", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert result["next_cron_run_dataclip_id"] is None
        assert output.id not in [d.id for d in result["dataclips"]]
        assert run.dataclip_id in [d.id for d in result["dataclips"]]

    async def test_missing_cron_input_is_skipped(self, manager, runs, dataclips, cron_output):
        run, output = cron_output
        del dataclips._store[output.id]
        result = search_selectable_dataclips(
            "cron-job", "", 10, 0, workflows=manager, runs=runs, dataclips=dataclips
        )
        assert result["next_cron_run_dataclip_id"] is None
