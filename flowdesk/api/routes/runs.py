"""Manual runs, retries, run lookup and dataclip routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from flowdesk.api.deps import get_project, get_user_id, service
from flowdesk.api.schemas import ManualRunRequest, RetryRequest, WorkOrderResponse
from flowdesk.config import config
from flowdesk.invocation import parse_filters, search_selectable_dataclips
from flowdesk.policies import authorize, can
from flowdesk.types import Project

logger = logging.getLogger(__name__)
router = APIRouter(tags=["runs"])


def _member_project(projects, project_id: str, user_id: str) -> Project:
    project = projects.get(project_id)
    if not can("access_project", user_id, project):
        raise HTTPException(status_code=404, detail="Not found.")
    return project


def _project_for_run(run, runs, manager, projects, user_id: str) -> Project:
    work_order = runs.get_work_order(run.work_order_id)
    workflow = manager.find(work_order.workflow_id)
    if workflow is None or workflow.project_id is None:
        raise HTTPException(status_code=404, detail="Run not found.")
    return _member_project(projects, workflow.project_id, user_id)


@router.post("/projects/{project_id}/workflows/{workflow_id}/runs", status_code=201,
             response_model=WorkOrderResponse)
async def create_manual_run(
    workflow_id: str,
    body: ManualRunRequest,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    work_orders=Depends(service("work_orders")),
):
    workflow = await manager.get(workflow_id, project.id)
    work_order, run = await work_orders.create_for_manual(
        project, user_id, workflow, body.job_id, dataclip_id=body.dataclip_id, body=body.body
    )
    return WorkOrderResponse(work_order_id=work_order.id, run_id=run.id, dataclip_id=run.dataclip_id)


@router.post("/runs/{run_id}/retry", status_code=201, response_model=WorkOrderResponse)
async def retry_run(
    run_id: str,
    body: RetryRequest,
    user_id: str = Depends(get_user_id),
    runs=Depends(service("runs")),
    manager=Depends(service("workflow_manager")),
    projects=Depends(service("projects")),
    work_orders=Depends(service("work_orders")),
):
    project = _project_for_run(runs.get(run_id), runs, manager, projects, user_id)
    run = await work_orders.retry(project, user_id, run_id, body.step_id)
    return WorkOrderResponse(work_order_id=run.work_order_id, run_id=run.id, dataclip_id=run.dataclip_id)


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    user_id: str = Depends(get_user_id),
    runs=Depends(service("runs")),
    manager=Depends(service("workflow_manager")),
    projects=Depends(service("projects")),
):
    run = runs.get(run_id)
    project = _project_for_run(run, runs, manager, projects, user_id)
    authorize("view_runs", user_id, project)
    return run.model_dump(mode="json")


@router.get("/projects/{project_id}/workflows/{workflow_id}/work_orders")
async def list_work_orders(
    workflow_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    runs=Depends(service("runs")),
):
    authorize("view_runs", user_id, project)
    await manager.get(workflow_id, project.id, include_deleted=True)
    return {"work_orders": [w.model_dump(mode="json") for w in runs.work_orders_for_workflow(workflow_id)]}


# ── Dataclips ────────────────────────────────────────────────────────────────

@router.get("/projects/{project_id}/dataclips")
async def search_dataclips(
    request: Request,
    limit: int = config.dataclip_search_limit,
    offset: int = 0,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    dataclips=Depends(service("dataclips")),
):
    authorize("view_dataclips", user_id, project)
    filters = parse_filters(request.url.query)
    results = dataclips.search(project.id, filters, limit=limit, offset=offset)
    return {"dataclips": [d.model_dump(mode="json") for d in results]}


@router.get("/jobs/{job_id}/dataclips")
async def selectable_dataclips(
    job_id: str,
    request: Request,
    limit: int = config.dataclip_search_limit,
    offset: int = 0,
    user_id: str = Depends(get_user_id),
    manager=Depends(service("workflow_manager")),
    projects=Depends(service("projects")),
    runs=Depends(service("runs")),
    dataclips=Depends(service("dataclips")),
):
    """Inputs a user can pick when running ``job_id`` manually."""
    workflow = manager.find_by_job(job_id)
    if workflow is None or workflow.project_id is None:
        raise HTTPException(status_code=404, detail="Job not found.")
    project = _member_project(projects, workflow.project_id, user_id)
    authorize("view_dataclips", user_id, project)
    result = search_selectable_dataclips(
        job_id, request.url.query, limit, offset,
        workflows=manager, runs=runs, dataclips=dataclips,
    )
    return {
        "dataclips": [d.model_dump(mode="json") for d in result["dataclips"]],
        "next_cron_run_dataclip_id": result["next_cron_run_dataclip_id"],
    }


@router.delete("/projects/{project_id}/dataclips/{dataclip_id}")
async def wipe_dataclip(
    dataclip_id: str,
    project: Project = Depends(get_project),
    user_id: str = Depends(get_user_id),
    dataclips=Depends(service("dataclips")),
):
    authorize("edit_dataclip", user_id, project)
    dataclip = dataclips.get(dataclip_id)
    if dataclip.project_id != project.id:
        raise HTTPException(status_code=404, detail="Dataclip not found.")
    wiped = await dataclips.wipe(dataclip_id)
    return wiped.model_dump(mode="json")
