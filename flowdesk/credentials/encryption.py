"""Fernet encryption for credential bodies at rest."""

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from flowdesk.exceptions import CredentialError

logger = logging.getLogger(__name__)


class CredentialEncryption:
    """Encrypts credential bodies (JSON objects) with Fernet.

    ``keys`` is a comma-separated list of URL-safe base64 Fernet keys.  The
    first key encrypts; all keys are tried when decrypting, so keys can be
    rotated by prepending a new one and calling :meth:`rotate` on stored
    tokens.  With no key an ephemeral one is generated and a WARNING logged;
    bodies encrypted with it are unrecoverable after restart.
    """

    def __init__(self, keys: str = "") -> None:
        raw_keys = [k.strip() for k in keys.split(",") if k.strip()]
        if not raw_keys:
            raw_keys = [Fernet.generate_key().decode()]
            logger.warning(
                "CredentialEncryption: no encryption key configured, using an ephemeral key. "
                "Set FLOWDESK_CREDENTIAL_ENCRYPTION_KEY to keep credentials across restarts."
            )
        try:
            self._fernet = MultiFernet([Fernet(k.encode()) for k in raw_keys])
        except (ValueError, TypeError) as exc:
            raise CredentialError(f"Invalid Fernet key: {exc}") from exc

    def encrypt_body(self, body: dict[str, Any]) -> str:
        """Serialise and encrypt a credential body.

        Raises:
            CredentialError: if *body* is not a dict.
        """
        if not isinstance(body, dict):
            raise CredentialError("Credential body must be a JSON object")
        return self._fernet.encrypt(json.dumps(body).encode()).decode()

    def decrypt_body(self, token: str) -> dict[str, Any]:
        """
        Raises:
            CredentialError: if the token is invalid or tampered with.
        """
        try:
            return json.loads(self._fernet.decrypt(token.encode()))
        except InvalidToken as exc:
            raise CredentialError("Decryption failed: invalid or tampered token") from exc

    def rotate(self, token: str) -> str:
        """Re-encrypt *token* under the primary key."""
        try:
            return self._fernet.rotate(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError("Rotation failed: invalid or tampered token") from exc
