"""ProjectManager — projects, their members, and sandbox copies."""

from __future__ import annotations

import logging
from typing import Any, Optional

from flowdesk.exceptions import FlowdeskError, ProjectNotFound
from flowdesk.policies import authorize
from flowdesk.types import Project, ProjectRole, ProjectUser

logger = logging.getLogger(__name__)


class ProjectManager:
    """
    Args:
        workflows:   WorkflowManager; sandboxes receive copies of its workflows.
        vault:       Optional CredentialVault; sandboxes share the parent's credentials.
        repository:  Optional Repository for persistence.
    """

    def __init__(self, workflows: Any, vault: Any = None, repository: Any = None) -> None:
        self._workflows = workflows
        self._vault = vault
        self._repository = repository
        self._store: dict[str, Project] = {}

    async def _persist(self, project: Project) -> None:
        if self._repository is None:
            return
        try:
            await self._repository.save_project(project)
        except NotImplementedError:
            pass

    async def load(self) -> int:
        if self._repository is None:
            return 0
        projects = await self._repository.list_projects()
        for project in projects:
            self._store[project.id] = project
        return len(projects)

    async def create(self, name: str, owner_id: str, description: str = "") -> Project:
        """Create a project with *owner_id* as its owner.

        Raises:
            FlowdeskError: if *name* is blank.
        """
        if not name or not name.strip():
            raise FlowdeskError("Project name can't be blank")
        project = Project(
            name=name.strip(),
            description=description,
            users=[ProjectUser(user_id=owner_id, role=ProjectRole.OWNER)],
        )
        self._store[project.id] = project
        await self._persist(project)
        logger.info("Project %s created by %s", project.id, owner_id)
        return project

    def get(self, project_id: str) -> Project:
        """
        Raises:
            ProjectNotFound: unknown ID.
        """
        project = self._store.get(project_id)
        if project is None:
            raise ProjectNotFound(f"Project '{project_id}' not found", project_id=project_id)
        return project

    def list_for_user(self, user_id: str) -> list[Project]:
        return sorted(
            (p for p in self._store.values() if p.role_for(user_id) is not None),
            key=lambda p: p.name.lower(),
        )

    async def add_user(
        self, project: Project, user_id: str, member_id: str, role: ProjectRole = ProjectRole.VIEWER
    ) -> Project:
        """Add or re-role a member.  Only owners may grant the owner role."""
        authorize("add_project_user", user_id, project)
        role = ProjectRole(role)
        if role == ProjectRole.OWNER:
            authorize("delete_project", user_id, project)
        users = [u for u in project.users if u.user_id != member_id]
        users.append(ProjectUser(user_id=member_id, role=role))
        updated = project.model_copy(update={"users": users})
        self._store[project.id] = updated
        await self._persist(updated)
        return updated

    # ── Sandboxes ────────────────────────────────────────────────────────────

    async def create_sandbox(self, parent: Project, user_id: str, name: str) -> Project:
        """
        Copy *parent* into a child project: members, credentials, then workflows.

        Raises:
            UnauthorizedError: if the user cannot create sandboxes of *parent*.
        """
        authorize("create_sandbox", user_id, parent)
        sandbox = Project(
            name=name,
            description=parent.description,
            parent_id=parent.id,
            users=[u.model_copy() for u in parent.users],
            retention_days=parent.retention_days,
        )
        self._store[sandbox.id] = sandbox
        await self._persist(sandbox)

        credential_map: dict[str, str] = {}
        if self._vault is not None:
            credential_map = await self._vault.copy_project_credentials(parent.id, sandbox.id)

        for workflow in await self._workflows.list(parent.id):
            await self._workflows.clone_into(workflow, sandbox.id, credential_map=credential_map)

        logger.info("Sandbox %s created from project %s by %s", sandbox.id, parent.id, user_id)
        return sandbox

    def list_sandboxes(self, parent_id: str) -> list[Project]:
        return sorted(
            (p for p in self._store.values() if p.parent_id == parent_id),
            key=lambda p: p.name.lower(),
        )

    def root_of(self, project: Project) -> Optional[Project]:
        """The top-level project a sandbox descends from (itself for a root project)."""
        current = project
        while current.parent_id is not None:
            parent = self._store.get(current.parent_id)
            if parent is None:
                return None
            current = parent
        return current
