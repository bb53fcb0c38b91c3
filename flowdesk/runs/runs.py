"""
RunService — run and step state tracking.

Runs move through a fixed state machine::

    available ──► claimed ──► started ──► success | failed | crashed |
        │            │                    cancelled | killed | exception | lost
        └────────────┴──► cancelled | lost

Any other transition raises InvalidRunTransition.  A work order mirrors
the state of its most recent run.  Every change is broadcast on the run's
topic and the workflow's topic.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from flowdesk.collaboration.pubsub import (
    EVENT_RUN_CREATED,
    EVENT_RUN_UPDATED,
    EVENT_STEP_COMPLETED,
    EVENT_STEP_STARTED,
    PubSub,
    run_topic,
    workflow_topic,
)
from flowdesk.exceptions import InvalidRunTransition, RunError, RunNotFound
from flowdesk.types import (
    FINAL_RUN_STATES,
    Run,
    RunState,
    Step,
    WorkOrder,
    WorkOrderState,
)

logger = logging.getLogger(__name__)

_ALLOWED: dict[RunState, frozenset] = {
    RunState.AVAILABLE: frozenset({RunState.CLAIMED, RunState.CANCELLED, RunState.LOST}),
    RunState.CLAIMED: frozenset({RunState.STARTED, RunState.CANCELLED, RunState.LOST}),
    RunState.STARTED: FINAL_RUN_STATES,
}

SUCCESS_EXIT_REASON = "success"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def work_order_state_for(state: RunState) -> WorkOrderState:
    if state in (RunState.AVAILABLE, RunState.CLAIMED):
        return WorkOrderState.PENDING
    if state == RunState.STARTED:
        return WorkOrderState.RUNNING
    return WorkOrderState(state.value)


class RunService:
    """In-memory store of work orders, runs and steps."""

    def __init__(self, pubsub: Optional[PubSub] = None, repository: Any = None) -> None:
        self._pubsub = pubsub
        self._repository = repository
        self._runs: dict[str, Run] = {}
        self._work_orders: dict[str, WorkOrder] = {}

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _persist(self, method: str, *args: Any, **kwargs: Any) -> None:
        """Best-effort repository call; silently ignores NotImplementedError."""
        if self._repository is None:
            return
        fn = getattr(self._repository, method, None)
        if fn is None:
            return
        try:
            await fn(*args, **kwargs)
        except NotImplementedError:
            pass

    async def _announce(self, run: Run, event: str, extra: Optional[dict] = None) -> None:
        if self._pubsub is None:
            return
        work_order = self._work_orders.get(run.work_order_id)
        payload = {"run_id": run.id, "state": run.state.value, "work_order_id": run.work_order_id}
        payload.update(extra or {})
        await self._pubsub.broadcast(run_topic(run.id), event, payload)
        if work_order is not None:
            await self._pubsub.broadcast(workflow_topic(work_order.workflow_id), event, payload)

    def _work_order_after(self, run: Run, work_order: Optional[WorkOrder] = None) -> Optional[WorkOrder]:
        """The run's work order once *run* is stored; it mirrors its latest run."""
        work_order = work_order or self._work_orders.get(run.work_order_id)
        if work_order is not None and work_order.run_ids and work_order.run_ids[-1] == run.id:
            return work_order.model_copy(
                update={"state": work_order_state_for(run.state), "last_activity": _now()}
            )
        return work_order

    async def _save_run(
        self, run: Run, method: str = "save_run", work_order: Optional[WorkOrder] = None
    ) -> Run:
        """Persist the run and its work order, then cache both."""
        work_order = self._work_order_after(run, work_order)
        await self._persist(method, run)
        if work_order is not None:
            await self._persist("save_work_order", work_order)
            self._work_orders[work_order.id] = work_order
        self._runs[run.id] = run
        return run

    async def load(self) -> int:
        """Populate work orders and runs from the repository; returns the run count."""
        if self._repository is None:
            return 0
        work_orders = await self._repository.list_work_orders()
        for work_order in work_orders:
            self._work_orders[work_order.id] = work_order
        runs = await self._repository.list_runs()
        for run in runs:
            self._runs[run.id] = run
        logger.info(
            "Loaded %d work order(s) and %d run(s) from the repository", len(work_orders), len(runs)
        )
        return len(runs)

    async def _transition(self, run_id: str, to_state: RunState, **updates: Any) -> Run:
        run = self.get(run_id)
        if to_state not in _ALLOWED.get(run.state, frozenset()):
            raise InvalidRunTransition(
                f"Run '{run_id}' cannot move from {run.state.value} to {to_state.value}",
                from_state=run.state.value,
                to_state=to_state.value,
            )
        run = await self._save_run(run.model_copy(update={"state": to_state, **updates}))
        logger.debug("Run %s -> %s", run_id, to_state.value)
        await self._announce(run, EVENT_RUN_UPDATED)
        return run

    # ── Lookup ────────────────────────────────────────────────────────────────

    def get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(f"Run '{run_id}' not found", run_id=run_id)
        return run

    def get_work_order(self, work_order_id: str) -> WorkOrder:
        work_order = self._work_orders.get(work_order_id)
        if work_order is None:
            raise RunNotFound(f"Work order '{work_order_id}' not found")
        return work_order

    def work_orders_for_workflow(self, workflow_id: str) -> list[WorkOrder]:
        results = [w for w in self._work_orders.values() if w.workflow_id == workflow_id]
        results.sort(key=lambda w: w.inserted_at, reverse=True)
        return results

    def runs_starting_at(self, job_id: str) -> list[Run]:
        return [r for r in self._runs.values() if r.starting_job_id == job_id]

    def steps_for_job(self, job_id: str) -> list[Step]:
        return [s for r in self._runs.values() for s in r.steps if s.job_id == job_id]

    def last_successful_step_for_job(self, job_id: str) -> Optional[Step]:
        """Most recently finished step of the job that exited with success."""
        steps = [
            s for s in self.steps_for_job(job_id)
            if s.exit_reason == SUCCESS_EXIT_REASON and s.finished_at is not None
        ]
        return max(steps, key=lambda s: s.finished_at) if steps else None

    # ── Creation ──────────────────────────────────────────────────────────────

    async def add_work_order(self, work_order: WorkOrder) -> WorkOrder:
        await self._persist("create_work_order", work_order)
        self._work_orders[work_order.id] = work_order
        return work_order

    async def enqueue(self, run: Run) -> Run:
        """Attach a new available run to its work order."""
        work_order = self.get_work_order(run.work_order_id)
        work_order = work_order.model_copy(update={"run_ids": [*work_order.run_ids, run.id]})
        await self._save_run(run, "create_run", work_order)
        await self._announce(run, EVENT_RUN_CREATED)
        return run

    # ── Transitions ───────────────────────────────────────────────────────────

    async def claim(self, run_id: str, worker_name: str) -> Run:
        return await self._transition(
            run_id, RunState.CLAIMED, worker_name=worker_name, claimed_at=_now()
        )

    async def start_run(self, run_id: str) -> Run:
        return await self._transition(run_id, RunState.STARTED, started_at=_now())

    async def complete_run(
        self, run_id: str, state: RunState, error_type: Optional[str] = None
    ) -> Run:
        state = RunState(state)
        if state not in FINAL_RUN_STATES:
            raise InvalidRunTransition(
                f"{state.value} is not a final state", to_state=state.value
            )
        return await self._transition(run_id, state, error_type=error_type, finished_at=_now())

    async def mark_run_lost(self, run_id: str) -> Run:
        return await self._transition(
            run_id, RunState.LOST, error_type="LostAfterClaim", finished_at=_now()
        )

    async def cancel(self, run_id: str) -> Run:
        return await self._transition(run_id, RunState.CANCELLED, finished_at=_now())

    # ── Steps ─────────────────────────────────────────────────────────────────

    async def start_step(
        self, run_id: str, job_id: str, input_dataclip_id: Optional[str] = None
    ) -> Step:
        run = self.get(run_id)
        if run.state != RunState.STARTED:
            raise RunError(f"Run '{run_id}' is not started")
        step = Step(job_id=job_id, snapshot_id=run.snapshot_id, input_dataclip_id=input_dataclip_id)
        run = await self._save_run(run.model_copy(update={"steps": [*run.steps, step]}))
        await self._announce(run, EVENT_STEP_STARTED, {"step_id": step.id, "job_id": job_id})
        return step

    async def complete_step(
        self,
        run_id: str,
        step_id: str,
        exit_reason: str,
        output_dataclip_id: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> Step:
        run = self.get(run_id)
        step = next((s for s in run.steps if s.id == step_id), None)
        if step is None:
            raise RunError(f"Step '{step_id}' not found in run '{run_id}'")
        if step.finished_at is not None:
            raise RunError(f"Step '{step_id}' already finished")
        finished = step.model_copy(
            update={
                "exit_reason": exit_reason,
                "output_dataclip_id": output_dataclip_id,
                "error_type": error_type,
                "finished_at": _now(),
            }
        )
        steps = [finished if s.id == step_id else s for s in run.steps]
        run = await self._save_run(run.model_copy(update={"steps": steps}))
        await self._announce(
            run, EVENT_STEP_COMPLETED, {"step_id": step_id, "exit_reason": exit_reason}
        )
        return finished

    def find_step(self, step_id: str) -> tuple[Run, Step]:
        for run in self._runs.values():
            for step in run.steps:
                if step.id == step_id:
                    return run, step
        raise RunError(f"Step '{step_id}' not found")
