"""
WorkOrderService — turns triggers, manual runs and retries into work orders.

A work order is one unit of requested work for a workflow: the input
dataclip plus every run attempted for it.  Each run is pinned to the
workflow snapshot that was current when the work order was created, so a
later edit to the workflow never changes what an in-flight run executes.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowdesk.collaboration.pubsub import EVENT_WORK_ORDER_CREATED, PubSub, project_topic
from flowdesk.exceptions import DataclipError, RunError, WorkflowNotFound
from flowdesk.invocation.dataclips import DataclipStore
from flowdesk.policies import authorize
from flowdesk.types import (
    Dataclip,
    DataclipType,
    Project,
    Run,
    Trigger,
    WorkOrder,
    Workflow,
)
from flowdesk.workflows.manager import WorkflowManager

from .runs import RunService

logger = logging.getLogger(__name__)


class WorkOrderService:
    """
    Args:
        workflows:  WorkflowManager (for snapshots and lookups).
        dataclips:  DataclipStore for inputs.
        runs:       RunService that tracks the created runs.
        pubsub:     Optional PubSub for ``work_order_created``.
    """

    def __init__(
        self,
        workflows: WorkflowManager,
        dataclips: DataclipStore,
        runs: RunService,
        pubsub: Optional[PubSub] = None,
    ) -> None:
        self._workflows = workflows
        self._dataclips = dataclips
        self._runs = runs
        self._pubsub = pubsub

    async def _snapshot_id(self, workflow: Workflow) -> str:
        snapshot = self._workflows.snapshots.get_latest(workflow.id)
        if snapshot is None:
            snapshot = await self._workflows.snapshots.capture(workflow)
        return snapshot.id

    async def _create(
        self,
        workflow: Workflow,
        dataclip: Dataclip,
        trigger_id: Optional[str] = None,
        starting_job_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> tuple[WorkOrder, Run]:
        snapshot_id = await self._snapshot_id(workflow)
        work_order = await self._runs.add_work_order(
            WorkOrder(
                workflow_id=workflow.id,
                snapshot_id=snapshot_id,
                trigger_id=trigger_id,
                dataclip_id=dataclip.id,
            )
        )
        run = await self._runs.enqueue(
            Run(
                work_order_id=work_order.id,
                snapshot_id=snapshot_id,
                starting_trigger_id=trigger_id,
                starting_job_id=starting_job_id,
                dataclip_id=dataclip.id,
                created_by=created_by,
            )
        )
        work_order = self._runs.get_work_order(work_order.id)
        if self._pubsub is not None and workflow.project_id:
            await self._pubsub.broadcast(
                project_topic(workflow.project_id),
                EVENT_WORK_ORDER_CREATED,
                {"work_order_id": work_order.id, "workflow_id": workflow.id, "run_id": run.id},
            )
        logger.info("Work order %s created for workflow %s", work_order.id, workflow.id)
        return work_order, run

    async def create_for_trigger(
        self, trigger: Trigger, workflow: Workflow, dataclip: Dataclip
    ) -> tuple[WorkOrder, Run]:
        """Work order for a webhook request or cron tick."""
        return await self._create(workflow, dataclip, trigger_id=trigger.id)

    async def create_for_manual(
        self,
        project: Project,
        user_id: str,
        workflow: Workflow,
        job_id: str,
        dataclip_id: Optional[str] = None,
        body: Optional[Any] = None,
    ) -> tuple[WorkOrder, Run]:
        """
        Start a run at ``job_id`` using an existing dataclip or a new saved input.

        Raises:
            UnauthorizedError: if the user cannot run workflows.
            WorkflowNotFound: if the job is not part of the workflow.
            DataclipError: if neither input is usable.
        """
        authorize("run_workflow", user_id, project)
        if workflow.job(job_id) is None:
            raise WorkflowNotFound(f"Job '{job_id}' not found.", workflow_id=workflow.id)

        if dataclip_id is not None:
            dataclip = self._dataclips.get(dataclip_id)
            if dataclip.project_id != project.id:
                raise DataclipError("Dataclip belongs to another project")
            if dataclip.wiped_at is not None:
                raise DataclipError("Dataclip has been wiped and can no longer be used")
        elif body is not None:
            dataclip = await self._dataclips.create(project.id, body, DataclipType.SAVED_INPUT)
        else:
            raise DataclipError("Either a dataclip or a body is required")

        return await self._create(
            workflow, dataclip, starting_job_id=job_id, created_by=user_id
        )

    async def retry(self, project: Project, user_id: str, run_id: str, step_id: str) -> Run:
        """
        Rerun a work order from one of its steps, with that step's input.

        Raises:
            UnauthorizedError, RunError, DataclipError
        """
        authorize("run_workflow", user_id, project)
        previous, step = self._runs.find_step(step_id)
        if previous.id != run_id:
            raise RunError(f"Step '{step_id}' does not belong to run '{run_id}'")
        if step.input_dataclip_id is None:
            raise DataclipError("Step has no input dataclip to retry with")
        dataclip = self._dataclips.get(step.input_dataclip_id)
        if dataclip.wiped_at is not None:
            raise DataclipError("Input dataclip has been wiped, this step cannot be retried")

        work_order = self._runs.get_work_order(previous.work_order_id)
        run = Run(
            work_order_id=work_order.id,
            snapshot_id=work_order.snapshot_id,
            starting_job_id=step.job_id,
            dataclip_id=dataclip.id,
            created_by=user_id,
        )
        logger.info("Retrying work order %s from step %s", work_order.id, step_id)
        return await self._runs.enqueue(run)
