"""FastAPI application factory with lifespan management."""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from flowdesk.config import config
from flowdesk.exceptions import FlowdeskError
from flowdesk.version import __version__


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        return response

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # ── Startup ──
    logger.info(f"flowdesk v{__version__} starting...")

    # 1. Database
    from flowdesk.db.database import init_db, async_session
    await init_db()

    # 2. Redis
    from flowdesk.cache.redis_client import RedisClient
    redis_client = RedisClient()
    app.state.redis = redis_client

    # 3. Session factory; the repository opens one session per operation
    app.state.async_session = async_session
    from flowdesk.db.repository import Repository
    repo = Repository(async_session)

    # 4. PubSub + presence
    from flowdesk.collaboration import PubSub, Presence
    pubsub = PubSub(redis_client if config.redis_fanout else None)
    app.state.pubsub = pubsub
    app.state.presence = Presence(pubsub)

    # 5. Workflows and editor sessions
    from flowdesk.workflows import EditorRegistry, WorkflowManager
    workflow_manager = WorkflowManager(repository=repo, pubsub=pubsub, config=config)
    loaded = await workflow_manager.load()
    app.state.workflow_manager = workflow_manager
    app.state.editors = EditorRegistry(workflow_manager)

    # 6. Credentials
    from flowdesk.credentials import CredentialEncryption, CredentialVault
    vault = CredentialVault(
        encryption=CredentialEncryption(keys=config.credential_encryption_key),
        workflows=workflow_manager,
        purge_after_days=config.credential_purge_after_days,
        refresh_margin_seconds=config.token_refresh_margin_seconds,
        repository=repo,
    )
    await vault.load()
    purged = await vault.purge_deleted()
    app.state.vault = vault

    # 7. Projects
    from flowdesk.projects import ProjectManager
    projects = ProjectManager(workflow_manager, vault=vault, repository=repo)
    await projects.load()
    app.state.projects = projects

    # 8. Dataclips, runs, work orders
    from flowdesk.invocation import DataclipStore
    from flowdesk.runs import RunService, WorkOrderService
    dataclips = DataclipStore(pubsub=pubsub, repository=repo)
    runs = RunService(pubsub=pubsub, repository=repo)
    await dataclips.load()
    await runs.load()
    work_orders = WorkOrderService(workflow_manager, dataclips, runs, pubsub=pubsub)
    app.state.dataclips = dataclips
    app.state.runs = runs
    app.state.work_orders = work_orders

    # 9. Trigger system
    from flowdesk.triggers import CronScheduler, WebhookAuthMethodStore, WebhookHandler
    auth_methods = WebhookAuthMethodStore(workflow_manager, repository=repo)
    await auth_methods.load()
    webhook_handler = WebhookHandler(workflow_manager, dataclips, work_orders, auth_methods)
    cron_scheduler = CronScheduler(workflow_manager, runs, dataclips, work_orders, config)
    await cron_scheduler.start()
    app.state.webhook_auth_methods = auth_methods
    app.state.webhook_handler      = webhook_handler
    app.state.cron_scheduler       = cron_scheduler

    # 10. GitHub sync + auth
    from flowdesk.version_control import VersionControl
    from flowdesk.auth.jwt import JWTManager
    app.state.version_control = VersionControl(config)
    app.state.jwt_manager = JWTManager(config)

    logger.info(f"flowdesk v{__version__} ready — {loaded} workflows loaded, {purged} credentials purged")

    yield

    # ── Shutdown ──
    logger.info("flowdesk shutting down...")
    await cron_scheduler.stop()
    await redis_client.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    logging.basicConfig(level=config.log_level.upper())

    app = FastAPI(
        title="flowdesk",
        description="Collaborative workflow editor with webhook and cron triggers.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )

    # Auth middleware
    from flowdesk.auth.middleware import AuthMiddleware
    from flowdesk.auth.jwt import JWTManager
    app.add_middleware(AuthMiddleware, jwt_manager=JWTManager())

    # Security headers are the outermost middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # Domain errors → HTTP
    from flowdesk.api.errors import flowdesk_error_handler
    app.add_exception_handler(FlowdeskError, flowdesk_error_handler)

    # Routes
    from flowdesk.api.routes import health, auth, projects, workflows, runs, credentials
    from flowdesk.api.routes import webhook_auth, github, events, webhooks
    app.include_router(health.router, prefix="/v1")
    app.include_router(auth.router, prefix="/v1")
    app.include_router(projects.router, prefix="/v1")
    app.include_router(workflows.router, prefix="/v1")
    app.include_router(runs.router, prefix="/v1")
    app.include_router(credentials.router, prefix="/v1")
    app.include_router(webhook_auth.router, prefix="/v1")
    app.include_router(github.router, prefix="/v1")
    app.include_router(events.router, prefix="/v1")
    app.include_router(webhooks.router)

    return app


app = create_app()
