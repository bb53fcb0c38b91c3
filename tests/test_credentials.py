"""CredentialEncryption and CredentialVault: ownership, sharing, deletion, scrubbing, refresh."""

import base64
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
from cryptography.fernet import Fernet

from flowdesk.credentials import CredentialEncryption, CredentialVault
from flowdesk.exceptions import CredentialError, CredentialNotFound, UnauthorizedError

OWNER = "user-owner"
EDITOR = "user-editor"
VIEWER = "user-viewer"

BODY = {"username": "amy", "password": "hunter2", "apiKey": "k-123", "host": "db.local"}


# ── Encryption ────────────────────────────────────────────────────────────────

class TestCredentialEncryption:

    def test_body_is_not_stored_in_plaintext(self):
        enc = CredentialEncryption(Fernet.generate_key().decode())
        token = enc.encrypt_body(BODY)
        assert "hunter2" not in token
        assert enc.decrypt_body(token) == BODY

    def test_rejects_non_object_body(self):
        enc = CredentialEncryption(Fernet.generate_key().decode())
        with pytest.raises(CredentialError):
            enc.encrypt_body(["x"])

    def test_wrong_key_fails(self):
        token = CredentialEncryption(Fernet.generate_key().decode()).encrypt_body(BODY)
        with pytest.raises(CredentialError):
            CredentialEncryption(Fernet.generate_key().decode()).decrypt_body(token)

    def test_key_rotation(self):
        old, new = Fernet.generate_key().decode(), Fernet.generate_key().decode()
        token = CredentialEncryption(old).encrypt_body(BODY)
        rotated = CredentialEncryption(f"{new},{old}").rotate(token)
        assert CredentialEncryption(new).decrypt_body(rotated) == BODY

    def test_invalid_key(self):
        with pytest.raises(CredentialError):
            CredentialEncryption("not-a-fernet-key")


# ── Vault ─────────────────────────────────────────────────────────────────────

class TestVaultCrud:

    async def test_create_and_decrypt(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        assert credential.user_id == EDITOR
        assert vault.decrypt_body(credential.id) == BODY
        assert "password" not in credential.model_dump()

    async def test_blank_name_rejected(self, vault):
        with pytest.raises(CredentialError):
            await vault.create(user_id=EDITOR, name=" ", body=BODY)

    async def test_only_owner_can_update(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        with pytest.raises(UnauthorizedError):
            await vault.update(credential.id, OWNER, name="Stolen")
        updated = await vault.update(credential.id, EDITOR, body={"password": "new"})
        assert vault.decrypt_body(updated.id) == {"password": "new"}

    async def test_unknown_credential(self, vault):
        with pytest.raises(CredentialNotFound):
            vault.get("missing")

    async def test_list_for_user_sorted(self, vault):
        await vault.create(user_id=EDITOR, name="zeta", body={})
        await vault.create(user_id=EDITOR, name="Alpha", body={})
        await vault.create(user_id=OWNER, name="other", body={})
        assert [c.name for c in vault.list_for_user(EDITOR)] == ["Alpha", "zeta"]


class TestVaultSharing:

    async def test_share_with_project(self, vault, project):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        pc = await vault.add_to_project(project, EDITOR, credential.id)
        assert pc.project_id == project.id
        assert vault.list_for_project(project.id)[0].id == credential.id
        assert vault.get(credential.id).project_ids == [project.id]

    async def test_sharing_twice_is_idempotent(self, vault, project):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        first = await vault.add_to_project(project, EDITOR, credential.id)
        second = await vault.add_to_project(project, EDITOR, credential.id)
        assert first.id == second.id
        assert len(vault.project_credentials(project.id)) == 1

    async def test_viewer_cannot_share(self, vault, project):
        credential = await vault.create(user_id=VIEWER, name="Mine", body=BODY)
        with pytest.raises(UnauthorizedError):
            await vault.add_to_project(project, VIEWER, credential.id)

    async def test_unshare_detaches_jobs(self, vault, manager, project, workflow):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        pc = await vault.add_to_project(project, EDITOR, credential.id)
        await manager.update_job(project, EDITOR, workflow.id, "job-a", {"project_credential_id": pc.id})

        await vault.remove_from_project(project, EDITOR, credential.id)

        stored = await manager.get(workflow.id, project.id)
        assert stored.job("job-a").project_credential_id is None
        assert vault.project_credentials(project.id) == []

    async def test_copy_project_credentials(self, vault, project):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY, project_ids=[project.id])
        mapping = await vault.copy_project_credentials(project.id, "sandbox")
        [(old_id, new_id)] = mapping.items()
        assert vault.get_project_credential(old_id).project_id == project.id
        assert vault.get_project_credential(new_id).project_id == "sandbox"
        assert set(vault.get(credential.id).project_ids) == {project.id, "sandbox"}


class TestVaultDeletion:

    async def test_schedule_deletion_unshares(self, vault, project):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY, project_ids=[project.id])
        scheduled = await vault.schedule_deletion(credential.id, EDITOR)
        assert scheduled.scheduled_deletion is not None
        assert scheduled.project_ids == []
        assert vault.project_credentials(project.id) == []

    async def test_cancel_scheduled_deletion(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        await vault.schedule_deletion(credential.id, EDITOR)
        restored = await vault.cancel_scheduled_deletion(credential.id, EDITOR)
        assert restored.scheduled_deletion is None

    async def test_purge_after_grace_period(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        await vault.schedule_deletion(credential.id, EDITOR)
        assert await vault.purge_deleted() == 0
        later = datetime.now(tz=timezone.utc) + timedelta(days=8)
        assert await vault.purge_deleted(now=later) == 1
        with pytest.raises(CredentialNotFound):
            vault.get(credential.id)


class TestScrubbing:

    async def test_sensitive_values_exclude_safe_keys(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        values = vault.sensitive_values_for(credential.id)
        assert "hunter2" in values and "k-123" in values
        assert "db.local" not in values and "amy" not in values
        assert base64.b64encode(b"amy:hunter2").decode() in values

    async def test_scrub_replaces_secrets(self, vault):
        credential = await vault.create(user_id=EDITOR, name="Postgres", body=BODY)
        scrubbed = vault.scrub("connect amy:hunter2 with key k-123", credential.id)
        assert scrubbed == "connect amy:*** with key ***"

    async def test_no_credential_no_scrub(self, vault):
        assert vault.scrub("plain text", None) == "plain text"


class TestTokenRefresh:

    async def test_fresh_token_is_left_alone(self, vault):
        body = {"access_token": "a", "refresh_token": "r", "expires_at": time.time() + 3600}
        credential = await vault.create(user_id=EDITOR, name="OAuth", body=body)
        assert await vault.maybe_refresh_token(credential.id, "https://auth.test/token") == body

    async def test_expiring_token_without_refresh_token(self, vault):
        body = {"access_token": "a", "expires_at": time.time() + 10}
        credential = await vault.create(user_id=EDITOR, name="OAuth", body=body)
        with pytest.raises(CredentialError):
            await vault.maybe_refresh_token(credential.id, "https://auth.test/token")

    async def test_expiring_token_is_refreshed(self, vault):
        body = {"access_token": "old", "refresh_token": "r", "expires_at": time.time() + 10}
        credential = await vault.create(user_id=EDITOR, name="OAuth", body=body)

        def handler(request: httpx.Request) -> httpx.Response:
            assert b"grant_type=refresh_token" in request.content
            return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

        real_client = httpx.AsyncClient

        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("flowdesk.credentials.vault.httpx.AsyncClient", client_factory):
            refreshed = await vault.maybe_refresh_token(credential.id, "https://auth.test/token")

        assert refreshed["access_token"] == "new"
        assert refreshed["expires_at"] > time.time() + 3000
        assert vault.decrypt_body(credential.id)["access_token"] == "new"
