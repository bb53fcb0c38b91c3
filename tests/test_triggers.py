"""Trigger system: webhook ingress, webhook auth methods, cron scheduling.

No mocks.  Real in-memory services wired together, asserting on returned state.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import pytest

from flowdesk.exceptions import (
    DataclipError,
    FlowdeskError,
    TriggerDisabledError,
    UnauthorizedError,
    WebhookAuthError,
    WebhookNotFoundError,
)
from flowdesk.triggers import CronScheduler, WebhookAuthMethodStore, WebhookHandler
from flowdesk.types import (
    DataclipType,
    Project,
    ProjectRole,
    ProjectUser,
    RunState,
    WebhookAuthType,
)

EDITOR = "user-editor"
ADMIN = "user-admin"

T0 = datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)


def _basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


@pytest.fixture
def auth_methods(manager):
    return WebhookAuthMethodStore(manager)


@pytest.fixture
def handler(manager, dataclips, work_orders, auth_methods):
    return WebhookHandler(manager, dataclips, work_orders, auth_methods)


@pytest.fixture
def scheduler(manager, runs, dataclips, work_orders, config):
    return CronScheduler(manager, runs, dataclips, work_orders, config)


@pytest.fixture
async def cron_workflow(manager, project, make_params):
    params = make_params(name="Hourly")
    params["triggers"] = [{"id": "cron-1", "type": "cron", "cron_expression": "0 * * * *"}]
    params["jobs"] = [
        {"id": "cron-pull", "name": "pull", "body": "get('/x')"},
        {"id": "cron-push", "name": "push", "body": "post('/y')"},
    ]
    params["edges"] = [
        {"id": "edge-cron-pull", "source_trigger_id": "cron-1", "target_job_id": "cron-pull",
         "condition_type": "always"},
        {"id": "edge-pull-push", "source_job_id": "cron-pull", "target_job_id": "cron-push",
         "condition_type": "on_job_success"},
    ]
    return await manager.create(project, EDITOR, params)


# ── Webhooks ──────────────────────────────────────────────────────────────────

class TestWebhookHandler:

    async def test_request_creates_dataclip_and_run(self, handler, dataclips, workflow):
        work_order, run = await handler.handle(
            "trigger-webhook",
            method="post",
            headers={"Content-Type": "application/json", "Authorization": "Bearer x"},
            query_params={"source": "emr"},
            body={"patient": {"id": 7}},
        )
        clip = dataclips.get(run.dataclip_id)
        assert clip.type == DataclipType.HTTP_REQUEST
        assert clip.body == {"patient": {"id": 7}}
        assert clip.request["method"] == "POST"
        assert clip.request["query_params"] == {"source": "emr"}
        assert clip.request["headers"] == {"content-type": "application/json"}
        assert work_order.trigger_id == "trigger-webhook"
        assert run.starting_trigger_id == "trigger-webhook"
        assert run.state == RunState.AVAILABLE

    async def test_empty_body_becomes_empty_object(self, handler, dataclips, workflow):
        _, run = await handler.handle("trigger-webhook", body=None)
        assert dataclips.get(run.dataclip_id).body == {}

    async def test_non_object_body_is_rejected(self, handler, workflow):
        with pytest.raises(DataclipError):
            await handler.handle("trigger-webhook", body=[1, 2, 3])

    async def test_unknown_path(self, handler, workflow):
        with pytest.raises(WebhookNotFoundError):
            await handler.handle("no-such-trigger", body={})

    async def test_custom_path(self, manager, project, handler, workflow):
        await manager.update_trigger(project, EDITOR, workflow.id, "trigger-webhook", {"custom_path": "intake/"})
        work_order, _ = await handler.handle("/intake", body={})
        assert work_order.workflow_id == workflow.id

    async def test_disabled_trigger(self, manager, project, handler, workflow):
        await manager.update_trigger(project, EDITOR, workflow.id, "trigger-webhook", {"enabled": False})
        with pytest.raises(TriggerDisabledError):
            await handler.handle("trigger-webhook", body={})

    async def test_deleted_workflow_is_unknown(self, manager, project, handler, workflow):
        await manager.mark_for_deletion(project, EDITOR, workflow.id)
        with pytest.raises(WebhookNotFoundError):
            await handler.handle("trigger-webhook", body={})


# ── Webhook auth methods ─────────────────────────────────────────────────────

class TestWebhookAuth:

    async def test_admin_only(self, auth_methods, project):
        with pytest.raises(UnauthorizedError):
            await auth_methods.create(project, EDITOR, "basic", WebhookAuthType.BASIC, "u", "p")

    async def test_required_fields(self, auth_methods, project):
        with pytest.raises(FlowdeskError):
            await auth_methods.create(project, ADMIN, "basic", WebhookAuthType.BASIC, username="u")
        with pytest.raises(FlowdeskError):
            await auth_methods.create(project, ADMIN, "api", WebhookAuthType.API)

    async def test_basic_auth_protects_trigger(self, auth_methods, handler, manager, project, workflow):
        method = await auth_methods.create(project, ADMIN, "basic", WebhookAuthType.BASIC, "emr", "s3cret")
        await auth_methods.set_triggers(project, ADMIN, method.id, ["trigger-webhook"])

        stored = await manager.get(workflow.id, project.id)
        assert stored.trigger("trigger-webhook").has_auth_method is True

        with pytest.raises(WebhookAuthError):
            await handler.handle("trigger-webhook", headers={}, body={})
        with pytest.raises(WebhookAuthError):
            await handler.handle("trigger-webhook", headers={"Authorization": _basic("emr", "nope")}, body={})
        work_order, _ = await handler.handle(
            "trigger-webhook", headers={"Authorization": _basic("emr", "s3cret")}, body={}
        )
        assert work_order.workflow_id == workflow.id

    async def test_any_method_may_match(self, auth_methods, project, workflow):
        basic = await auth_methods.create(project, ADMIN, "basic", WebhookAuthType.BASIC, "emr", "s3cret")
        api = await auth_methods.create(project, ADMIN, "api", WebhookAuthType.API, api_key="key-1")
        await auth_methods.set_triggers(project, ADMIN, basic.id, ["trigger-webhook"])
        await auth_methods.set_triggers(project, ADMIN, api.id, ["trigger-webhook"])
        assert auth_methods.verify("trigger-webhook", {"X-API-KEY": "key-1"})
        assert auth_methods.verify("trigger-webhook", {"authorization": _basic("emr", "s3cret")})
        assert not auth_methods.verify("trigger-webhook", {"x-api-key": "wrong"})
        assert not auth_methods.verify("trigger-webhook", {"authorization": "Basic !!!not-base64"})

    async def test_non_ascii_credentials_compare_as_bytes(self, auth_methods, project, workflow):
        basic = await auth_methods.create(project, ADMIN, "basic", WebhookAuthType.BASIC, "emr", "pässword")
        await auth_methods.set_triggers(project, ADMIN, basic.id, ["trigger-webhook"])
        assert auth_methods.verify("trigger-webhook", {"authorization": _basic("emr", "pässword")})
        assert not auth_methods.verify("trigger-webhook", {"authorization": _basic("emr", "password")})
        assert not auth_methods.verify("trigger-webhook", {"x-api-key": "clé"})

    async def test_triggers_must_belong_to_the_project(self, auth_methods, manager, project, workflow):
        other = Project(name="Other", users=[ProjectUser(user_id="mallory", role=ProjectRole.OWNER)])
        method = await auth_methods.create(other, "mallory", "api", WebhookAuthType.API, api_key="k")
        with pytest.raises(WebhookNotFoundError):
            await auth_methods.set_triggers(other, "mallory", method.id, [workflow.triggers[0].id])

        assert auth_methods.get(other.id, method.id).trigger_ids == []
        stored = await manager.get(workflow.id, project.id)
        assert not stored.trigger("trigger-webhook").has_auth_method
        assert auth_methods.verify("trigger-webhook", {})

    async def test_unknown_trigger_is_rejected(self, auth_methods, project, workflow):
        method = await auth_methods.create(project, ADMIN, "api", WebhookAuthType.API, api_key="k")
        with pytest.raises(WebhookNotFoundError):
            await auth_methods.set_triggers(project, ADMIN, method.id, ["trigger-webhook", "t1"])
        assert auth_methods.get(project.id, method.id).trigger_ids == []

    async def test_unprotected_trigger_passes(self, auth_methods):
        assert auth_methods.verify("anything", {})

    async def test_delete_unprotects_trigger(self, auth_methods, manager, project, workflow):
        method = await auth_methods.create(project, ADMIN, "api", WebhookAuthType.API, api_key="k")
        await auth_methods.set_triggers(project, ADMIN, method.id, ["trigger-webhook"])
        await auth_methods.delete(project, ADMIN, method.id)
        stored = await manager.get(workflow.id, project.id)
        assert stored.trigger("trigger-webhook").has_auth_method is False
        assert auth_methods.list_for_project(project.id) == []

    async def test_method_from_another_project(self, auth_methods, project):
        with pytest.raises(WebhookNotFoundError):
            await auth_methods.delete(project, ADMIN, "missing")


# ── Cron ──────────────────────────────────────────────────────────────────────

class TestCronScheduler:

    def test_compute_next_run_is_utc(self):
        next_run = CronScheduler.compute_next_run("0 * * * *", T0)
        assert next_run == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)

    async def test_sync_registers_enabled_cron_triggers(self, scheduler, cron_workflow, workflow):
        scheduler.sync(T0)
        assert scheduler.next_run("cron-1") == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
        assert scheduler.next_run("trigger-webhook") is None

    async def test_nothing_fires_before_due(self, scheduler, cron_workflow):
        scheduler.sync(T0)
        assert await scheduler.check_and_fire(T0 + timedelta(minutes=10)) == 0

    async def test_due_trigger_fires_once_and_advances(self, scheduler, runs, dataclips, cron_workflow):
        scheduler.sync(T0)
        due = datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
        assert await scheduler.check_and_fire(due) == 1
        assert await scheduler.check_and_fire(due) == 0
        assert scheduler.next_run("cron-1") == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        [work_order] = runs.work_orders_for_workflow(cron_workflow.id)
        assert work_order.trigger_id == "cron-1"
        assert dataclips.get(work_order.dataclip_id).type == DataclipType.GLOBAL

    async def test_disabled_trigger_is_unregistered(self, scheduler, manager, project, cron_workflow):
        scheduler.sync(T0)
        await manager.update_trigger(project, EDITOR, cron_workflow.id, "cron-1", {"enabled": False})
        scheduler.sync(T0)
        assert scheduler.next_run("cron-1") is None

    async def test_changed_expression_reschedules(self, scheduler, manager, project, cron_workflow):
        scheduler.sync(T0)
        await manager.update_trigger(
            project, EDITOR, cron_workflow.id, "cron-1", {"cron_expression": "0 0 * * *"}
        )
        scheduler.sync(T0)
        assert scheduler.next_run("cron-1") == datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)

    async def test_next_input_is_last_successful_output(
        self, scheduler, runs, dataclips, project, cron_workflow
    ):
        due = datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
        scheduler.sync(T0)
        await scheduler.check_and_fire(due)
        [work_order] = runs.work_orders_for_workflow(cron_workflow.id)
        run_id = work_order.run_ids[0]

        await runs.claim(run_id, "w")
        await runs.start_run(run_id)
        step = await runs.start_step(run_id, "cron-pull", input_dataclip_id=work_order.dataclip_id)
        output = await dataclips.create(project.id, {"cursor": 5}, DataclipType.STEP_RESULT)
        await runs.complete_step(run_id, step.id, "success", output_dataclip_id=output.id)

        trigger = cron_workflow.trigger("cron-1")
        assert (await scheduler.input_for(trigger, cron_workflow)).id == output.id

        await dataclips.wipe(output.id)
        fresh = await scheduler.input_for(trigger, cron_workflow)
        assert fresh.type == DataclipType.GLOBAL and fresh.body == {}

    async def test_start_and_stop(self, scheduler, cron_workflow):
        await scheduler.start()
        assert scheduler.next_run("cron-1") is not None
        await scheduler.stop()
