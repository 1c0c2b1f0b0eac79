"""
Configuration loading and validation.

Verifies that the packaged config loads, validates, and picks up secrets
from the environment.
"""
import os
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from journal_sync.config import config as config_module
from journal_sync.config.config import Config, SyncConfig, load_config
from journal_sync.config.dotenv_loader import load_dotenv_files

CONFIG_PATH = Path(config_module.__file__).parent / "config.yaml"


def test_config_yaml_exists():
    assert CONFIG_PATH.exists(), f"Config file not found at {CONFIG_PATH}"


def test_config_loads_with_defaults(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)

    config = load_config()

    assert config.sync.initial_sync_limit == 100
    assert config.sync.default_starting_balance == Decimal("1000")
    assert config.broker.rate_limit_backoff_seconds == 2.0
    assert config.data.database_url is None
    assert config.security.encryption_key is None


def test_env_secrets_are_expanded(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///journal.db")
    monkeypatch.setenv("ENCRYPTION_KEY", "s3cret")

    config = load_config(CONFIG_PATH)

    assert config.data.database_url == "sqlite:///journal.db"
    assert config.security.encryption_key == "s3cret"


def test_broker_base_url_per_environment():
    config = load_config(CONFIG_PATH)
    assert config.broker.base_url_for("demo").startswith("https://demo.")
    assert config.broker.base_url_for("live").startswith("https://live.")


def test_missing_config_file():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml("does/not/exist.yaml")


def test_unsupported_database_url_rejected(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("data:\n  database_url: mysql://localhost/journal\n")
    with pytest.raises(ValidationError):
        load_config(path)


def test_sync_limits_validated():
    with pytest.raises(ValidationError):
        SyncConfig(initial_sync_limit=0)


def test_dotenv_loading_skipped_in_prod(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("JOURNAL_TEST_FLAG=loaded\n")
    monkeypatch.delenv("JOURNAL_TEST_FLAG", raising=False)

    monkeypatch.setenv("ENVIRONMENT", "prod")
    load_dotenv_files(repo_root=tmp_path)
    assert "JOURNAL_TEST_FLAG" not in os.environ

    monkeypatch.setenv("ENVIRONMENT", "dev")
    load_dotenv_files(repo_root=tmp_path)
    assert os.environ["JOURNAL_TEST_FLAG"] == "loaded"
    monkeypatch.delenv("JOURNAL_TEST_FLAG")
