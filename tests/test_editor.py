"""EditorSession: patches in, corrective patches out; saves through the manager."""

import pytest

from flowdesk.exceptions import StaleWorkflowError, UnauthorizedError
from flowdesk.workflows import EditorRegistry, EditorSession
from flowdesk.workflows.changeset import BLANK
from flowdesk.workflows.editor import FLASH_NOT_SAVED, FLASH_SAVED
from flowdesk.workflows.params import apply_patches

EDITOR = "user-editor"
VIEWER = "user-viewer"


class TestEditorSession:

    async def test_params_mirror_stored_workflow(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        assert session.can_edit
        assert session.params["name"] == "Simple Workflow"
        assert [j["id"] for j in session.params["jobs"]] == ["job-a", "job-b"]

    async def test_new_workflow_session_starts_blank(self, manager, project):
        session = EditorSession(manager, project, EDITOR)
        assert session.params["project_id"] == project.id
        assert session.params["errors"] == {"name": [BLANK]}

    async def test_push_change_returns_validation_patches(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        client_params = session.params
        client_change = [{"op": "replace", "path": "/jobs/0/body", "value": ""}]

        server_patches = session.push_change(client_change)

        client_view = apply_patches(apply_patches(client_params, client_change), server_patches)
        assert client_view == session.params
        assert session.params["jobs"][0]["errors"] == {"body": [BLANK]}

    async def test_push_change_without_validation_changes_is_empty(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        patches = session.push_change([{"op": "replace", "path": "/jobs/0/body", "value": "fn()"}])
        assert patches == []

    async def test_viewer_cannot_push_changes(self, manager, project, workflow):
        session = EditorSession(manager, project, VIEWER, workflow)
        assert not session.can_edit
        with pytest.raises(UnauthorizedError):
            session.push_change([{"op": "replace", "path": "/name", "value": "x"}])

    async def test_validate_merges_form_params(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        patches = session.validate({"name": ""})
        assert {"op": "replace", "path": "/name", "value": ""} in patches
        assert session.params["errors"]["name"] == [BLANK]

    async def test_delete_node_drops_incoming_edges(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        session.delete_node("job-b")
        assert [j["id"] for j in session.params["jobs"]] == ["job-a"]
        assert [e["id"] for e in session.params["edges"]] == ["edge-trigger-a"]

    async def test_save_persists_and_flashes(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        session.validate({"name": "Edited"})
        saved, _ = await session.save()
        assert saved.lock_version == 2
        assert session.flash == ("info", FLASH_SAVED)
        assert (await manager.get(workflow.id, project.id)).name == "Edited"

    async def test_save_new_workflow_creates_it(self, manager, project, make_params):
        session = EditorSession(manager, project, EDITOR)
        saved, _ = await session.save(make_params(name="From Editor"))
        assert saved.lock_version == 1
        assert session.workflow.id == saved.id

    async def test_invalid_save_returns_none(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        saved, patches = await session.save({"name": ""})
        assert saved is None
        assert session.flash == ("error", FLASH_NOT_SAVED)
        assert any(p["path"] == "/errors/name" for p in patches)

    async def test_concurrent_editor_save_is_stale(self, manager, project, workflow):
        first = EditorSession(manager, project, EDITOR, workflow)
        second = EditorSession(manager, project, EDITOR, workflow)
        await first.save({"name": "First"})
        with pytest.raises(StaleWorkflowError):
            await second.save({"name": "Second"})

    async def test_reset_reloads_stored_workflow(self, manager, project, workflow):
        session = EditorSession(manager, project, EDITOR, workflow)
        session.validate({"name": "Unsaved"})
        await session.reset()
        assert session.params["name"] == "Simple Workflow"


class TestEditorRegistry:

    async def test_open_reuses_session(self, manager, project, workflow):
        registry = EditorRegistry(manager)
        first = await registry.open(project, EDITOR, workflow.id, "tab-1")
        again = await registry.open(project, EDITOR, workflow.id, "tab-1")
        assert first is again
        assert registry.count(workflow.id) == 1

    async def test_close_forgets_session(self, manager, project, workflow):
        registry = EditorRegistry(manager)
        await registry.open(project, EDITOR, workflow.id, "tab-1")
        await registry.open(project, VIEWER, workflow.id, "tab-2")
        registry.close(workflow.id, "tab-1")
        assert registry.count(workflow.id) == 1

    async def test_session_id_of_another_user_is_rejected(self, manager, project, workflow):
        registry = EditorRegistry(manager)
        await registry.open(project, EDITOR, workflow.id, "tab-1")
        with pytest.raises(UnauthorizedError):
            await registry.open(project, VIEWER, workflow.id, "tab-1")
        assert registry.close(workflow.id, "tab-1", VIEWER) is False
        assert registry.count(workflow.id) == 1
