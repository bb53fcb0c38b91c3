"""Changeset validation and the params map / JSON patch round trip."""

import pytest

from flowdesk.exceptions import PatchError, WorkflowValidationError
from flowdesk.types import EdgeCondition, Workflow
from flowdesk.workflows import WorkflowChangeset
from flowdesk.workflows.changeset import (
    BLANK,
    DUPLICATE_JOB_NAME,
    EXCLUSIVE_SOURCE,
    INVALID,
    MISSING_REF,
    TRIGGER_CONDITION,
)
from flowdesk.workflows.params import apply_form_params, apply_patches, to_map, to_patches


# ── Changeset ─────────────────────────────────────────────────────────────────

class TestChangeset:

    def test_valid_params_apply_to_workflow(self, make_params):
        changeset = WorkflowChangeset.build(None, make_params())
        assert changeset.valid
        workflow = changeset.apply()
        assert workflow.name == "Simple Workflow"
        assert [j.name for j in workflow.jobs] == ["fetch", "load"]
        assert workflow.edges[0].condition_type == EdgeCondition.ALWAYS

    def test_blank_name_is_reported(self, make_params):
        changeset = WorkflowChangeset.build(None, make_params(name="  "))
        assert changeset.errors["name"] == [BLANK]
        with pytest.raises(WorkflowValidationError):
            changeset.apply()

    def test_job_errors_line_up_with_items(self, make_params):
        params = make_params()
        params["jobs"][1]["body"] = ""
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["jobs"] == [{}, {"body": [BLANK]}]

    def test_duplicate_job_names(self, make_params):
        params = make_params()
        params["jobs"][1]["name"] = "fetch"
        changeset = WorkflowChangeset.build(None, params)
        assert DUPLICATE_JOB_NAME in changeset.errors["jobs"][1]["name"]

    def test_new_job_gets_default_adaptor(self, make_params, config):
        changeset = WorkflowChangeset.build(None, make_params(), config=config)
        assert changeset.jobs[0]["adaptor"] == config.default_adaptor

    def test_trigger_edge_rejects_job_conditions(self, make_params):
        params = make_params()
        params["edges"][0]["condition_type"] = "on_job_failure"
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["edges"][0] == {"condition_type": [TRIGGER_CONDITION]}

    def test_edge_with_both_sources(self, make_params):
        params = make_params()
        params["edges"][1]["source_trigger_id"] = params["triggers"][0]["id"]
        changeset = WorkflowChangeset.build(None, params)
        assert EXCLUSIVE_SOURCE in changeset.errors["edges"][1]["source_job_id"]

    def test_edge_to_unknown_job(self, make_params):
        params = make_params()
        params["edges"][1]["target_job_id"] = "missing"
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["edges"][1]["target_job_id"] == [MISSING_REF]

    def test_js_expression_needs_an_expression(self, make_params):
        params = make_params()
        params["edges"][1]["condition_type"] = "js_expression"
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["edges"][1] == {"condition_expression": [BLANK]}

    def test_cron_trigger_expression_is_validated(self, make_params):
        params = make_params()
        params["triggers"] = [{"id": "cron", "type": "cron", "cron_expression": "not a cron"}]
        params["edges"][0]["source_trigger_id"] = "cron"
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["triggers"] == [{"cron_expression": [INVALID]}]

    def test_cycle_is_a_workflow_level_error(self, make_params):
        params = make_params()
        params["edges"].append(
            {"id": "edge-b-a", "source_job_id": "job-b", "target_job_id": "job-a"}
        )
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.errors["graph"] == ["Workflow contains a cycle"]

    def test_deleted_items_are_dropped(self, make_params):
        params = make_params()
        params["edges"][1]["delete"] = "true"
        changeset = WorkflowChangeset.build(None, params)
        assert changeset.valid
        assert [e["id"] for e in changeset.edges] == ["edge-trigger-a"]

    def test_omitted_fields_keep_stored_values(self, make_params):
        stored = WorkflowChangeset.build(None, make_params()).apply()
        changeset = WorkflowChangeset.build(stored, {"jobs": [{"id": "job-a", "name": "renamed"}, {"id": "job-b"}]})
        assert changeset.valid
        assert changeset.jobs[0]["body"] == "get('/patients')"
        assert changeset.jobs[0]["name"] == "renamed"

    def test_collections_absent_from_params_are_untouched(self, make_params):
        stored = WorkflowChangeset.build(None, make_params()).apply()
        changeset = WorkflowChangeset.build(stored, {"name": "Renamed"})
        assert len(changeset.edges) == 2
        assert changeset.fields["name"] == "Renamed"


# ── Params map ────────────────────────────────────────────────────────────────

class TestParamsMap:

    def test_to_map_shape(self, make_params):
        params = to_map(WorkflowChangeset.build(None, make_params()))
        assert set(params) == {"name", "project_id", "jobs", "triggers", "edges", "errors"}
        assert params["errors"] == {}
        assert params["jobs"][0]["errors"] == {}
        assert params["triggers"][0]["cron_expression"] == ""

    def test_to_map_carries_item_errors(self, make_params):
        params = make_params()
        params["jobs"][0]["body"] = ""
        mapped = to_map(WorkflowChangeset.build(None, params))
        assert mapped["jobs"][0]["errors"] == {"body": [BLANK]}
        assert mapped["errors"]["jobs"][0] == {"body": [BLANK]}

    def test_blank_workflow_map(self):
        mapped = to_map(WorkflowChangeset.build(Workflow(project_id="p1"), {}))
        assert mapped["project_id"] == "p1"
        assert mapped["jobs"] == [] and mapped["edges"] == []
        assert mapped["errors"] == {"name": [BLANK]}

    def test_patches_transform_initial_into_target(self, make_params):
        initial = to_map(WorkflowChangeset.build(None, make_params()))
        edited = make_params(name="Renamed")
        edited["jobs"][1]["body"] = ""
        target = to_map(WorkflowChangeset.build(None, edited))

        patches = to_patches(initial, target)
        assert patches
        assert apply_patches(initial, patches) == target

    def test_identical_params_produce_no_patches(self, make_params):
        params = to_map(WorkflowChangeset.build(None, make_params()))
        assert to_patches(params, params) == []

    def test_apply_patches_does_not_mutate_input(self, make_params):
        params = to_map(WorkflowChangeset.build(None, make_params()))
        apply_patches(params, [{"op": "replace", "path": "/name", "value": "Other"}])
        assert params["name"] == "Simple Workflow"

    def test_bad_patch_raises(self, make_params):
        params = to_map(WorkflowChangeset.build(None, make_params()))
        with pytest.raises(PatchError):
            apply_patches(params, [{"op": "remove", "path": "/jobs/9"}])


class TestFormParams:

    def test_items_matched_by_id(self, make_params):
        current = to_map(WorkflowChangeset.build(None, make_params()))
        merged = apply_form_params(current, {"jobs": [{"id": "job-b", "name": "store"}]})
        assert [j["name"] for j in merged["jobs"]] == ["fetch", "store"]
        assert merged["jobs"][1]["body"] == "fn(state => state)"

    def test_index_keyed_collections(self, make_params):
        current = to_map(WorkflowChangeset.build(None, make_params()))
        form = {"jobs": {"1": {"id": "job-new", "name": "third"}, "0": {"id": "job-a", "name": "first"}}}
        merged = apply_form_params(current, form)
        assert [j["id"] for j in merged["jobs"]] == ["job-a", "job-b", "job-new"]
        assert merged["jobs"][0]["name"] == "first"

    def test_errors_key_is_ignored(self, make_params):
        current = to_map(WorkflowChangeset.build(None, make_params()))
        merged = apply_form_params(current, {"errors": {"name": ["x"]}, "name": "New"})
        assert merged["name"] == "New"
        assert merged["errors"] == current["errors"]
