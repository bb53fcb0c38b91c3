"""GitHub sync: repository connections and workflow_dispatch requests."""

import json

import httpx
import pytest

from flowdesk.config import FlowdeskConfig
from flowdesk.exceptions import UnauthorizedError, VersionControlError
from flowdesk.version_control import VersionControl, api_secret_name

ADMIN = "user-admin"
EDITOR = "user-editor"


def _vc(handler, **config) -> VersionControl:
    cfg = FlowdeskConfig(github_app_token="ghs_test", **config)
    return VersionControl(cfg, transport=httpx.MockTransport(handler))


def _unused(request: httpx.Request) -> httpx.Response:
    raise AssertionError("no request expected")


def test_api_secret_name():
    assert api_secret_name("ab-12-cd") == "OPENFN_AB_12_CD_API_KEY"


class TestConnections:

    def test_connect_and_disconnect(self, project):
        vc = _vc(_unused)
        connection = vc.connect(project, ADMIN, "openfn/demo", branch="sync")
        assert vc.get_connection(project.id) == connection
        assert connection.branch == "sync"
        assert vc.disconnect(project, ADMIN) == connection
        assert vc.get_connection(project.id) is None
        assert vc.disconnect(project, ADMIN) is None

    def test_editor_cannot_connect(self, project):
        with pytest.raises(UnauthorizedError):
            _vc(_unused).connect(project, EDITOR, "openfn/demo")

    @pytest.mark.parametrize("repo", ["demo", "openfn/", "/demo", "a/b/c"])
    def test_malformed_repo(self, project, repo):
        with pytest.raises(VersionControlError) as exc_info:
            _vc(_unused).connect(project, ADMIN, repo)
        assert exc_info.value.reason == "invalid_repo"

    def test_second_connection_is_rejected(self, project):
        vc = _vc(_unused)
        vc.connect(project, ADMIN, "openfn/demo")
        with pytest.raises(VersionControlError) as exc_info:
            vc.connect(project, ADMIN, "openfn/other")
        assert exc_info.value.reason == "already_connected"


class TestSync:

    async def test_dispatches_pull_workflow(self, project):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        vc = _vc(handler)
        vc.connect(project, ADMIN, "openfn/demo", branch="main", config_path="config.json")
        await vc.initiate_sync(project, ADMIN)

        [request] = seen
        assert request.method == "POST"
        assert request.url.path == "/repos/openfn/demo/actions/workflows/openfn-pull.yml/dispatches"
        assert request.headers["authorization"] == "Bearer ghs_test"
        payload = json.loads(request.content)
        assert payload["ref"] == "main"
        assert payload["inputs"] == {
            "projectId": project.id,
            "apiSecretName": api_secret_name(project.id),
            "branch": "main",
            "pathToConfig": "config.json",
            "commitMessage": f"{ADMIN} initiated a sync from flowdesk",
        }

    async def test_default_config_path(self, project):
        vc = _vc(_unused)
        connection = vc.connect(project, ADMIN, "openfn/demo")
        payload = vc.dispatch_payload(connection, "msg")
        assert payload["inputs"]["pathToConfig"] == f"openfn-{project.id}-config.json"

    async def test_not_connected(self, project):
        with pytest.raises(VersionControlError) as exc_info:
            await _vc(_unused).initiate_sync(project, ADMIN)
        assert exc_info.value.reason == "not_connected"

    async def test_github_rejection(self, project):
        vc = _vc(lambda request: httpx.Response(422, json={"message": "No ref found"}))
        vc.connect(project, ADMIN, "openfn/demo")
        with pytest.raises(VersionControlError) as exc_info:
            await vc.initiate_sync(project, ADMIN, "sync")
        assert exc_info.value.reason == "github_error"

    async def test_github_unreachable(self, project):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        vc = _vc(handler)
        vc.connect(project, ADMIN, "openfn/demo")
        with pytest.raises(VersionControlError) as exc_info:
            await vc.initiate_sync(project, ADMIN)
        assert exc_info.value.reason == "github_unreachable"
