"""Credential Vault — encrypted, user-owned secrets shared into projects."""

from flowdesk.credentials.encryption import CredentialEncryption
from flowdesk.credentials.vault import CredentialVault

__all__ = ["CredentialEncryption", "CredentialVault"]
