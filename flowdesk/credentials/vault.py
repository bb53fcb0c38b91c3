"""CredentialVault — user-owned, encrypted credentials shared into projects.

A credential belongs to one user.  Sharing it with a project creates a
ProjectCredential, and jobs reference that project credential rather than
the credential itself.  Bodies are encrypted at rest and never returned
with the metadata records.  ``sensitive_values_for`` lists the secrets a
run's logs must be scrubbed of.
"""

import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from flowdesk.credentials.encryption import CredentialEncryption
from flowdesk.exceptions import CredentialError, CredentialNotFound, UnauthorizedError
from flowdesk.policies import authorize, can_edit_credential
from flowdesk.types import Credential, Project, ProjectCredential

logger = logging.getLogger(__name__)

# Body keys whose values identify rather than authenticate; never scrubbed.
SAFE_KEYS: frozenset[str] = frozenset({
    "host",
    "port",
    "database",
    "user",
    "username",
    "email",
    "baseUrl",
    "instanceUrl",
    "hostUrl",
    "loginUrl",
    "apiVersion",
    "clientId",
    "scope",
    "tokenType",
    "expires_at",
    "ssl",
    "allowSelfSignedCert",
})

SCRUBBED = "***"


def _leaf_values(body: Any, key: Optional[str] = None) -> list[tuple[str, Any]]:
    if isinstance(body, dict):
        pairs: list[tuple[str, Any]] = []
        for k, v in body.items():
            pairs.extend(_leaf_values(v, k))
        return pairs
    if isinstance(body, list):
        pairs = []
        for item in body:
            pairs.extend(_leaf_values(item, key))
        return pairs
    return [(key or "", body)]


class CredentialVault:
    """In-process credential store.

    Args:
        encryption:        A configured :class:`CredentialEncryption`.
        workflows:         Optional WorkflowManager; jobs using a removed
                           project credential get their reference cleared.
        purge_after_days:  Grace period between scheduling deletion and purge.
    """

    def __init__(
        self,
        encryption: CredentialEncryption,
        workflows: Any = None,
        purge_after_days: int = 0,
        refresh_margin_seconds: int = 300,
        repository: Any = None,
    ) -> None:
        self._enc = encryption
        self._workflows = workflows
        self._purge_after = timedelta(days=purge_after_days)
        self._refresh_margin = refresh_margin_seconds
        self._store: dict[str, Credential] = {}
        self._bodies: dict[str, str] = {}
        self._project_credentials: dict[str, ProjectCredential] = {}
        self._repository = repository

    async def _persist(self, method: str, *args: Any) -> None:
        if self._repository is None:
            return
        fn = getattr(self._repository, method, None)
        if fn is None:
            return
        try:
            await fn(*args)
        except NotImplementedError:
            pass

    async def _save(self, record: Credential, body: Optional[str] = None) -> Credential:
        """Persist *record*, then cache it with its encrypted body."""
        body = body if body is not None else self._bodies[record.id]
        await self._persist("save_credential", record, body)
        self._store[record.id] = record
        self._bodies[record.id] = body
        return record

    async def load(self) -> int:
        """Populate credentials and project shares from the repository."""
        if self._repository is None:
            return 0
        credentials = await self._repository.list_credentials()
        for record, body in credentials:
            self._store[record.id] = record
            self._bodies[record.id] = body
        for pc in await self._repository.list_project_credentials():
            self._project_credentials[pc.id] = pc
        logger.info("[Vault] Loaded %d credential(s) from the repository", len(credentials))
        return len(credentials)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, credential_id: str) -> Credential:
        """
        Raises:
            CredentialNotFound: unknown ID.
        """
        record = self._store.get(credential_id)
        if record is None:
            raise CredentialNotFound(
                f"Credential '{credential_id}' not found", credential_id=credential_id
            )
        return record

    def _owned(self, credential_id: str, user_id: str) -> Credential:
        record = self.get(credential_id)
        if not can_edit_credential(user_id, record):
            raise UnauthorizedError(action="edit_credential")
        return record

    def list_for_user(self, user_id: str) -> list[Credential]:
        return sorted(
            (c for c in self._store.values() if c.user_id == user_id),
            key=lambda c: c.name.lower(),
        )

    def list_for_project(self, project_id: str) -> list[Credential]:
        ids = {
            pc.credential_id for pc in self._project_credentials.values()
            if pc.project_id == project_id
        }
        return sorted((self._store[i] for i in ids), key=lambda c: c.name.lower())

    def project_credentials(self, project_id: str) -> list[ProjectCredential]:
        return [pc for pc in self._project_credentials.values() if pc.project_id == project_id]

    def get_project_credential(self, project_credential_id: str) -> Optional[ProjectCredential]:
        return self._project_credentials.get(project_credential_id)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        user_id: str,
        name: str,
        body: dict[str, Any],
        schema_name: str = "raw",
        production: bool = False,
        project_ids: Optional[list[str]] = None,
    ) -> Credential:
        """Encrypt *body* and store a new credential, shared with *project_ids*.

        Raises:
            CredentialError: if *body* is not a dict or *name* is blank.
        """
        if not name or not name.strip():
            raise CredentialError("Credential name can't be blank")
        record = Credential(
            user_id=user_id,
            name=name,
            schema_name=schema_name,
            production=production,
        )
        await self._save(record, self._enc.encrypt_body(body))
        for project_id in project_ids or []:
            await self._share(record.id, project_id)
        logger.debug("[Vault] Stored credential %s for user %s", record.id, user_id)
        return self.get(record.id)

    async def update(
        self,
        credential_id: str,
        user_id: str,
        *,
        name: Optional[str] = None,
        body: Optional[dict[str, Any]] = None,
        production: Optional[bool] = None,
    ) -> Credential:
        """
        Raises:
            CredentialNotFound: unknown ID.
            UnauthorizedError: the user does not own the credential.
        """
        record = self._owned(credential_id, user_id)
        updates: dict[str, Any] = {"updated_at": datetime.now(tz=timezone.utc)}
        if name is not None:
            updates["name"] = name
        if production is not None:
            updates["production"] = production
        encrypted = self._enc.encrypt_body(body) if body is not None else None
        return await self._save(record.model_copy(update=updates), encrypted)

    def decrypt_body(self, credential_id: str) -> dict[str, Any]:
        self.get(credential_id)
        return self._enc.decrypt_body(self._bodies[credential_id])

    # ------------------------------------------------------------------
    # Project sharing
    # ------------------------------------------------------------------

    async def _share(self, credential_id: str, project_id: str) -> ProjectCredential:
        for pc in self._project_credentials.values():
            if pc.credential_id == credential_id and pc.project_id == project_id:
                return pc
        pc = ProjectCredential(project_id=project_id, credential_id=credential_id)
        record = self._store[credential_id]
        await self._save(record.model_copy(update={"project_ids": [*record.project_ids, project_id]}))
        await self._persist("save_project_credential", pc)
        self._project_credentials[pc.id] = pc
        return pc

    async def add_to_project(self, project: Project, user_id: str, credential_id: str) -> ProjectCredential:
        """Share a credential the user owns with a project they can edit."""
        authorize("create_project_credential", user_id, project)
        self._owned(credential_id, user_id)
        return await self._share(credential_id, project.id)

    async def copy_project_credentials(self, source_project_id: str, target_project_id: str) -> dict[str, str]:
        """Share every credential of one project with another; maps old to new project credential ids."""
        mapping: dict[str, str] = {}
        for pc in self.project_credentials(source_project_id):
            copied = await self._share(pc.credential_id, target_project_id)
            mapping[pc.id] = copied.id
        return mapping

    async def remove_from_project(self, project: Project, user_id: str, credential_id: str) -> None:
        authorize("create_project_credential", user_id, project)
        self._owned(credential_id, user_id)
        await self._unshare(credential_id, {project.id})

    async def _unshare(self, credential_id: str, project_ids: Optional[set[str]] = None) -> None:
        removed = {
            pc_id for pc_id, pc in self._project_credentials.items()
            if pc.credential_id == credential_id
            and (project_ids is None or pc.project_id in project_ids)
        }
        for pc_id in removed:
            await self._persist("delete_project_credential", pc_id)
            del self._project_credentials[pc_id]
        record = self._store[credential_id]
        remaining = [
            p for p in record.project_ids
            if project_ids is not None and p not in project_ids
        ]
        await self._save(record.model_copy(update={"project_ids": remaining}))
        if removed and self._workflows is not None:
            await self._workflows.detach_credentials(removed)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def schedule_deletion(self, credential_id: str, user_id: str) -> Credential:
        """Mark for purge after the grace period and unshare from all projects."""
        self._owned(credential_id, user_id)
        when = datetime.now(tz=timezone.utc) + self._purge_after
        await self._unshare(credential_id)
        record = self._store[credential_id].model_copy(update={"scheduled_deletion": when})
        await self._save(record)
        logger.info("[Vault] Credential %s scheduled for deletion at %s", credential_id, when.isoformat())
        return record

    async def cancel_scheduled_deletion(self, credential_id: str, user_id: str) -> Credential:
        record = self._owned(credential_id, user_id)
        return await self._save(record.model_copy(update={"scheduled_deletion": None}))

    async def purge_deleted(self, now: Optional[datetime] = None) -> int:
        """Permanently remove credentials whose deletion date has passed."""
        now = now or datetime.now(tz=timezone.utc)
        due = [
            c.id for c in self._store.values()
            if c.scheduled_deletion is not None and c.scheduled_deletion <= now
        ]
        for credential_id in due:
            await self._persist("delete_credential", credential_id)
            del self._store[credential_id]
            self._bodies.pop(credential_id, None)
        if due:
            logger.info("[Vault] Purged %d credential(s)", len(due))
        return len(due)

    # ------------------------------------------------------------------
    # Secrets handling
    # ------------------------------------------------------------------

    def sensitive_values_for(self, credential_id: Optional[str]) -> list[str]:
        """Every secret leaf value of the body (keys in SAFE_KEYS excluded)."""
        if credential_id is None:
            return []
        body = self.decrypt_body(credential_id)
        values = [
            str(value) for key, value in _leaf_values(body)
            if key not in SAFE_KEYS and value not in (None, "") and not isinstance(value, bool)
        ]
        return values + self.basic_auth_for(credential_id)

    def basic_auth_for(self, credential_id: str) -> list[str]:
        """Base64 ``user:password`` pairs for each of ``username`` and ``email``."""
        body = self.decrypt_body(credential_id)
        password = body.get("password", "")
        return [
            base64.b64encode(f"{body[key]}:{password}".encode()).decode()
            for key in ("username", "email")
            if key in body
        ]

    def scrub(self, text: str, credential_id: Optional[str]) -> str:
        """Replace every sensitive value in *text* with ``***`` (longest first)."""
        for secret in sorted(self.sensitive_values_for(credential_id), key=len, reverse=True):
            text = text.replace(secret, SCRUBBED)
        return text

    # ------------------------------------------------------------------
    # OAuth2 refresh
    # ------------------------------------------------------------------

    async def maybe_refresh_token(self, credential_id: str, token_url: str) -> dict[str, Any]:
        """Refresh an OAuth2 body whose ``expires_at`` is within the refresh margin.

        Returns the (possibly refreshed) decrypted body.

        Raises:
            CredentialError: HTTP failure or missing ``access_token`` in response.
        """
        body = self.decrypt_body(credential_id)
        expires_at = body.get("expires_at")
        if expires_at is None or float(expires_at) - time.time() > self._refresh_margin:
            return body
        refresh_token = body.get("refresh_token")
        if not refresh_token:
            raise CredentialError(
                f"Credential '{credential_id}' has no refresh_token for OAuth2 refresh",
                credential_id=credential_id,
            )

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                resp = await client.post(
                    token_url,
                    data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                )
                resp.raise_for_status()
                token_data: dict[str, Any] = resp.json()
        except httpx.HTTPStatusError as exc:
            raise CredentialError(
                f"OAuth2 token refresh failed: {exc.response.status_code} {exc.response.text}",
                credential_id=credential_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise CredentialError(
                f"OAuth2 token refresh request error: {exc}",
                credential_id=credential_id,
            ) from exc

        if "access_token" not in token_data:
            raise CredentialError(
                "OAuth2 token response missing 'access_token'",
                credential_id=credential_id,
            )

        body = {**body, **token_data}
        if "expires_in" in token_data:
            body["expires_at"] = int(time.time()) + int(token_data["expires_in"])
        await self._save(self._store[credential_id], self._enc.encrypt_body(body))
        logger.info("[Vault] Refreshed OAuth2 token for credential %s", credential_id)
        return body
