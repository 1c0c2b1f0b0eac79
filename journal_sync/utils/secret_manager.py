"""
Credential encryption for stored broker passwords.

Passwords are kept encrypted at rest with Fernet. The Fernet key is derived
from the configured encryption key (any string) via SHA-256, so rotating
ENCRYPTION_KEY makes every stored password undecryptable; that surfaces as
StaleCredentialsError and the user reconnects.
"""
import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from journal_sync.exceptions import StaleCredentialsError
from journal_sync.monitoring.logger import get_logger

logger = get_logger(__name__)


def _derive_fernet_key(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


class CredentialCipher:
    """Encrypts and decrypts broker passwords with a process-wide key."""

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise ValueError("encryption_key must be a non-empty string")
        self._fernet = Fernet(_derive_fernet_key(encryption_key))

    @classmethod
    def from_env(cls, env_var: str = "ENCRYPTION_KEY", fallback: Optional[str] = None) -> "CredentialCipher":
        """Build from an environment variable, falling back to a configured value."""
        key = os.getenv(env_var) or fallback
        if not key:
            raise ValueError(f"{env_var} is not set; cannot encrypt broker credentials")
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored password.

        Raises:
            StaleCredentialsError: ciphertext is corrupt or was written under another key
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, UnicodeError) as e:
            logger.error("CREDENTIAL_DECRYPT_FAILED", error_type=type(e).__name__)
            raise StaleCredentialsError() from e
