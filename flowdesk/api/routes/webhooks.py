"""Webhook ingress: ``/i/{path}``. No JWT required.

The AuthMiddleware skips this prefix; triggers protected by webhook auth
methods are checked by the handler itself.
"""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.api_route("/i/{path:path}", methods=["GET", "POST", "PUT", "PATCH"])
async def webhook_ingress(request: Request, path: str):
    """Turn the request into an ``http_request`` dataclip and a work order.

    Returns 503 when the handler is not wired and 415 when the body is not
    JSON.  Handler errors (unknown path, disabled trigger, failed auth,
    non-object body) are mapped by the app's error handler.
    """
    handler = getattr(request.app.state, "webhook_handler", None)
    if handler is None:
        return JSONResponse({"detail": "webhook service unavailable"}, status_code=503)

    raw = await request.body()
    body = None
    if raw:
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"detail": "Request body must be JSON"}, status_code=415)

    work_order, run = await handler.handle(
        webhook_path=path,
        method=request.method,
        headers=dict(request.headers),
        query_params=dict(request.query_params),
        body=body,
    )
    return JSONResponse({"work_order_id": work_order.id, "run_id": run.id}, status_code=200)
