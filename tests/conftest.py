"""Test fixtures: config, a project with one member per role, wired services.

All tests should use these fixtures for consistency.
"""

import pytest
from cryptography.fernet import Fernet

from flowdesk.collaboration import Presence, PubSub
from flowdesk.config import FlowdeskConfig
from flowdesk.credentials import CredentialEncryption, CredentialVault
from flowdesk.invocation import DataclipStore
from flowdesk.runs import RunService, WorkOrderService
from flowdesk.types import Project, ProjectRole, ProjectUser
from flowdesk.workflows import WorkflowManager

OWNER = "user-owner"
ADMIN = "user-admin"
EDITOR = "user-editor"
VIEWER = "user-viewer"
OUTSIDER = "user-outsider"

JOB_A = "job-a"
JOB_B = "job-b"
WEBHOOK_TRIGGER = "trigger-webhook"
EDGE_TRIGGER_A = "edge-trigger-a"
EDGE_A_B = "edge-a-b"


@pytest.fixture
def config():
    """Test configuration with safe defaults."""
    return FlowdeskConfig(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",  # test DB
        secret_key="test-secret-key-that-is-at-least-32-bytes",
        credential_encryption_key=Fernet.generate_key().decode(),
        cron_check_interval=1,
    )


@pytest.fixture
def users():
    return {"owner": OWNER, "admin": ADMIN, "editor": EDITOR, "viewer": VIEWER, "outsider": OUTSIDER}


@pytest.fixture
def project():
    """A project with one member of each role."""
    return Project(
        name="Test Project",
        users=[
            ProjectUser(user_id=OWNER, role=ProjectRole.OWNER),
            ProjectUser(user_id=ADMIN, role=ProjectRole.ADMIN),
            ProjectUser(user_id=EDITOR, role=ProjectRole.EDITOR),
            ProjectUser(user_id=VIEWER, role=ProjectRole.VIEWER),
        ],
    )


@pytest.fixture
def make_params():
    """Builder for a two-job workflow: webhook → a → b."""

    def _make(name: str = "Simple Workflow", **overrides):
        params = {
            "name": name,
            "jobs": [
                {"id": JOB_A, "name": "fetch", "body": "get('/patients')"},
                {"id": JOB_B, "name": "load", "body": "fn(state => state)"},
            ],
            "triggers": [{"id": WEBHOOK_TRIGGER, "type": "webhook"}],
            "edges": [
                {
                    "id": EDGE_TRIGGER_A,
                    "source_trigger_id": WEBHOOK_TRIGGER,
                    "target_job_id": JOB_A,
                    "condition_type": "always",
                },
                {
                    "id": EDGE_A_B,
                    "source_job_id": JOB_A,
                    "target_job_id": JOB_B,
                    "condition_type": "on_job_success",
                },
            ],
        }
        params.update(overrides)
        return params

    return _make


@pytest.fixture
def pubsub():
    return PubSub()


@pytest.fixture
def recorded(pubsub):
    """Subscribe to a topic and collect every message broadcast on it."""
    messages: list[dict] = []

    def _listen(topic: str) -> list[dict]:
        pubsub.subscribe(topic, messages.append)
        return messages

    return _listen


@pytest.fixture
def manager(pubsub, config):
    return WorkflowManager(pubsub=pubsub, config=config)


@pytest.fixture
def presence(pubsub):
    return Presence(pubsub)


@pytest.fixture
def vault(config, manager):
    return CredentialVault(
        encryption=CredentialEncryption(keys=config.credential_encryption_key),
        workflows=manager,
        purge_after_days=7,
    )


@pytest.fixture
def dataclips(pubsub):
    return DataclipStore(pubsub=pubsub)


@pytest.fixture
def runs(pubsub):
    return RunService(pubsub=pubsub)


@pytest.fixture
def work_orders(manager, dataclips, runs, pubsub):
    return WorkOrderService(manager, dataclips, runs, pubsub=pubsub)


@pytest.fixture
async def workflow(manager, project, make_params):
    """A saved two-job workflow (lock_version 1)."""
    return await manager.create(project, EDITOR, make_params())
