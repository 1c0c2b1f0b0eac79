"""
Unit tests for stored credential encryption.
"""
import pytest

from journal_sync.exceptions import StaleCredentialsError
from journal_sync.utils.secret_manager import CredentialCipher


def test_encrypted_password_is_not_plaintext(cipher):
    token = cipher.encrypt("hunter2")
    assert "hunter2" not in token
    assert cipher.decrypt(token) == "hunter2"


def test_rotated_key_makes_credentials_stale(cipher):
    token = cipher.encrypt("hunter2")
    with pytest.raises(StaleCredentialsError):
        CredentialCipher("another-key").decrypt(token)


def test_garbage_ciphertext_is_stale(cipher):
    with pytest.raises(StaleCredentialsError):
        cipher.decrypt("not-a-fernet-token")
    with pytest.raises(StaleCredentialsError):
        cipher.decrypt("")


def test_empty_key_rejected():
    with pytest.raises(ValueError):
        CredentialCipher("")


def test_from_env(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "from-env")
    assert CredentialCipher.from_env().decrypt(CredentialCipher("from-env").encrypt("x")) == "x"


def test_from_env_missing(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
    with pytest.raises(ValueError):
        CredentialCipher.from_env()
    assert CredentialCipher.from_env(fallback="configured") is not None
