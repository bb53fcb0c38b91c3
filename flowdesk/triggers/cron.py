"""CronScheduler — asyncio loop that fires enabled cron triggers on schedule."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from croniter import croniter

from flowdesk.exceptions import FlowdeskError
from flowdesk.types import DataclipType, Dataclip, Trigger, TriggerType, Workflow

logger = logging.getLogger(__name__)


class CronScheduler:
    """Polls cron triggers every ``config.cron_check_interval`` seconds.

    Registered jobs are kept in sync with the live workflows on each tick:
    new or edited cron triggers are (re)registered, removed or disabled ones
    dropped.  A fired trigger starts from the output of the last successful
    step of its target job, or an empty ``global`` dataclip when there is none.
    """

    def __init__(self, workflows, runs, dataclips, work_orders, config) -> None:
        self._workflows   = workflows
        self._runs        = runs
        self._dataclips   = dataclips
        self._work_orders = work_orders
        self._config      = config

        # trigger_id → {"trigger", "workflow_id", "next_run"}
        self._jobs: dict[str, dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.sync()
        self._task = asyncio.create_task(self._loop(), name="flowdesk-cron-scheduler")
        logger.info("CronScheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("CronScheduler stopped")

    # ── Job management ───────────────────────────────────────────────────────

    def register(self, trigger: Trigger, workflow_id: str, after: Optional[datetime] = None) -> None:
        """Add (or replace) the job for *trigger*."""
        next_run = self.compute_next_run(trigger.cron_expression or "", after)
        self._jobs[trigger.id] = {"trigger": trigger, "workflow_id": workflow_id, "next_run": next_run}
        logger.debug("CronScheduler registered trigger=%s next_run=%s", trigger.id, next_run)

    def unregister(self, trigger_id: str) -> None:
        self._jobs.pop(trigger_id, None)

    def next_run(self, trigger_id: str) -> Optional[datetime]:
        job = self._jobs.get(trigger_id)
        return job["next_run"] if job else None

    def sync(self, now: Optional[datetime] = None) -> None:
        """Reconcile registered jobs with the enabled cron triggers of live workflows."""
        live: dict[str, tuple[Trigger, str]] = {}
        for workflow in self._workflows.all():
            for trigger in workflow.triggers:
                if trigger.type == TriggerType.CRON and trigger.enabled and trigger.cron_expression:
                    live[trigger.id] = (trigger, workflow.id)

        for trigger_id in set(self._jobs) - set(live):
            self.unregister(trigger_id)
        for trigger_id, (trigger, workflow_id) in live.items():
            job = self._jobs.get(trigger_id)
            if job is None or job["trigger"].cron_expression != trigger.cron_expression:
                self.register(trigger, workflow_id, after=now)
            else:
                job["trigger"] = trigger

    # ── Core tick ────────────────────────────────────────────────────────────

    async def check_and_fire(self, now: Optional[datetime] = None) -> int:
        """Fire every overdue job once; returns how many fired."""
        now = now or datetime.now(timezone.utc)
        self.sync(now)
        fired = 0
        for trigger_id, job in list(self._jobs.items()):
            if now < job["next_run"]:
                continue

            # advance first so a failing fire is not retried every tick
            job["next_run"] = self.compute_next_run(job["trigger"].cron_expression or "", now)

            workflow = next((w for w in self._workflows.all() if w.id == job["workflow_id"]), None)
            if workflow is None:
                continue
            try:
                await self.fire(job["trigger"], workflow)
                fired += 1
            except FlowdeskError as exc:
                logger.warning("Cron trigger '%s' fire blocked: %s", trigger_id, exc)
            except Exception:
                logger.exception("Cron trigger '%s' fire raised", trigger_id)
        return fired

    async def fire(self, trigger: Trigger, workflow: Workflow):
        """Create a work order for *trigger* with its next input dataclip."""
        dataclip = await self.input_for(trigger, workflow)
        return await self._work_orders.create_for_trigger(trigger, workflow, dataclip)

    async def input_for(self, trigger: Trigger, workflow: Workflow) -> Dataclip:
        for edge in workflow.edges:
            if edge.source_trigger_id != trigger.id or edge.target_job_id is None:
                continue
            step = self._runs.last_successful_step_for_job(edge.target_job_id)
            if step is not None and step.output_dataclip_id:
                try:
                    dataclip = self._dataclips.get(step.output_dataclip_id)
                except FlowdeskError:
                    continue
                if dataclip.wiped_at is None:
                    return dataclip
        return await self._dataclips.create(workflow.project_id, {}, DataclipType.GLOBAL)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cron_check_interval)
            try:
                await self.check_and_fire()
            except Exception:
                logger.exception("CronScheduler tick raised unexpectedly")

    @staticmethod
    def compute_next_run(expression: str, after: Optional[datetime] = None) -> datetime:
        base = after or datetime.now(timezone.utc)
        # croniter returns tz-naive for naive bases; force UTC
        naive = croniter(expression or "* * * * *", base).get_next(datetime)
        return naive.replace(tzinfo=timezone.utc)
