"""SSE stream of PubSub messages for one topic."""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from flowdesk.api.deps import get_user_id
from flowdesk.exceptions import FlowdeskError
from flowdesk.policies import can

logger = logging.getLogger(__name__)
router = APIRouter(tags=["events"])

KEEPALIVE_SECONDS = 30.0


def project_id_for_topic(state, topic: str):
    """Project that owns *topic* (``workflow:``, ``project:`` or ``run:``), else None."""
    kind, _, ident = topic.partition(":")
    if not ident:
        return None
    if kind == "project":
        return ident
    manager = getattr(state, "workflow_manager", None)
    if manager is None:
        return None
    if kind == "workflow":
        workflow = manager.find(ident)
        return workflow.project_id if workflow else None
    if kind == "run":
        runs = getattr(state, "runs", None)
        if runs is None:
            return None
        try:
            run = runs.get(ident)
            workflow = manager.find(runs.get_work_order(run.work_order_id).workflow_id)
        except FlowdeskError:
            return None
        return workflow.project_id if workflow else None
    return None


@router.get("/events/stream")
async def event_stream(
    request: Request,
    topic: str,
    user_id: str = Depends(get_user_id),
):
    """SSE stream for one topic the user can see.

    Auth via the Authorization header or ``?token=`` (EventSource cannot
    set headers).
    """
    state = request.app.state
    pubsub = getattr(state, "pubsub", None)
    projects = getattr(state, "projects", None)
    if pubsub is None or projects is None:
        raise HTTPException(status_code=503, detail="pubsub not initialised.")

    project_id = project_id_for_topic(state, topic)
    if project_id is None:
        raise HTTPException(status_code=404, detail="Unknown topic.")
    project = projects.get(project_id)
    if not can("access_project", user_id, project):
        raise HTTPException(status_code=404, detail="Unknown topic.")

    async def generate():
        yield f"data: {json.dumps({'type': 'connected', 'topic': topic})}\n\n"
        async with pubsub.queue_subscription(topic) as queue:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                    yield f"data: {json.dumps(message, default=str)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
