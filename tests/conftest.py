"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timedelta, timezone

import pytest

from factories import FakeBroker, instruments_payload
from journal_sync.data.instrument_catalog import InstrumentCatalog
from journal_sync.domain.models import BrokerAccount
from journal_sync.storage.db import Database
from journal_sync.storage.repository import JournalRepository
from journal_sync.utils.secret_manager import CredentialCipher

TEST_ENCRYPTION_KEY = "unit-test-encryption-key"


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def db():
    """Fresh in-memory SQLite database per test."""
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.drop_all()
    database.dispose()


@pytest.fixture
def repo(db) -> JournalRepository:
    return JournalRepository(db)


@pytest.fixture
def account(cipher) -> BrokerAccount:
    return BrokerAccount(
        account_id="ACC-1",
        acc_num=1,
        email="trader@example.com",
        encrypted_password=cipher.encrypt("hunter2"),
        server="HEROFX",
        environment="demo",
        access_token="cached-token",
        refresh_token="cached-refresh",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def catalog() -> InstrumentCatalog:
    return InstrumentCatalog.from_payload(instruments_payload())


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
