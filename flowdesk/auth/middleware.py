"""FastAPI authentication middleware.

Accepts a Bearer JWT in the Authorization header, or a ``token`` query
parameter for EventSource clients that cannot set headers.  Sets
``request.state.user_id`` and ``request.state.email``.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from flowdesk.auth.jwt import JWTManager
from flowdesk.exceptions import FlowdeskError


class AuthMiddleware(BaseHTTPMiddleware):
    """User authentication middleware."""

    # Paths that don't require auth
    PUBLIC_PATHS = {"/v1/health", "/v1/auth/token", "/docs", "/openapi.json", "/redoc"}
    # Webhook endpoints authenticate per trigger instead
    PUBLIC_PREFIXES = ("/i/",)

    def __init__(self, app, jwt_manager: JWTManager = None):
        super().__init__(app)
        self.jwt_manager = jwt_manager or JWTManager()

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES):
            return await call_next(request)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
        elif not auth_header and request.query_params.get("token"):
            token = request.query_params["token"]
        elif not auth_header:
            return JSONResponse({"detail": "Missing Authorization header"}, status_code=401)
        else:
            return JSONResponse({"detail": "Invalid auth format"}, status_code=401)

        try:
            payload = await self.jwt_manager.verify_token(token)
        except FlowdeskError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=401)

        request.state.user_id = payload["user_id"]
        request.state.email = payload["email"]
        return await call_next(request)
