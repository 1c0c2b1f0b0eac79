"""
Configuration models for the journal sync engine.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from journal_sync.constants import (
    DEFAULT_API_TIMEOUT,
    DEFAULT_RISK_PERCENT,
    DEFAULT_RISK_REWARD,
    DEFAULT_STARTING_BALANCE,
    INITIAL_SYNC_LIMIT,
    RATE_LIMIT_BACKOFF_SECONDS,
    TRADELOCKER_BASE_URLS,
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)")


class BrokerConfig(BaseSettings):
    """Broker REST API configuration."""
    model_config = SettingsConfigDict(env_prefix="BROKER_", extra="ignore")

    environment: Literal["live", "demo"] = "live"
    base_urls: Dict[str, str] = Field(default_factory=lambda: dict(TRADELOCKER_BASE_URLS))
    request_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT, ge=1.0, le=120.0)

    # Fixed wait before the single retry on HTTP 429
    rate_limit_backoff_seconds: float = Field(default=RATE_LIMIT_BACKOFF_SECONDS, ge=0.0, le=60.0)

    # Treat a token as expired this many seconds early
    token_expiry_skew_seconds: int = Field(default=0, ge=0, le=600)

    def base_url_for(self, environment: Optional[str] = None) -> str:
        env = environment or self.environment
        return self.base_urls.get(env) or self.base_urls["live"]


class SyncConfig(BaseSettings):
    """Sync run configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_mode: Literal["initial", "refresh"] = "refresh"
    initial_sync_limit: int = Field(default=INITIAL_SYNC_LIMIT, ge=1, le=10000)

    # Journal defaults when an account has no settings row
    default_starting_balance: Decimal = Field(default=Decimal(DEFAULT_STARTING_BALANCE), ge=0)
    default_risk_percent: Decimal = Field(default=Decimal(DEFAULT_RISK_PERCENT), gt=0, le=100)
    default_risk_reward: Decimal = Field(default=Decimal(DEFAULT_RISK_REWARD), gt=0)

    # Currency pairs quoted for P&L conversion
    fx_pairs: List[str] = Field(
        default_factory=lambda: ["EURUSD", "GBPUSD", "AUDUSD", "NZDUSD", "USDCAD", "USDCHF", "USDJPY"]
    )
    # Symbols whose live spread is recorded for diagnostics only
    spread_symbols: Dict[str, List[str]] = Field(
        default_factory=lambda: {
            "NAS100": ["NAS100", "NAS100.PRO", "USA100"],
            "XAUUSD": ["XAUUSD", "GOLD", "XAU/USD"],
            "DE40": ["DE40.PRO", "DE40", "GER40"],
        }
    )


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # May be None at load time; resolved from DATABASE_URL when the DB is opened
    database_url: Optional[str] = None

    @field_validator("database_url")
    @classmethod
    def _check_scheme(cls, v: Optional[str]) -> Optional[str]:
        if v and not (v.startswith("postgresql") or v.startswith("sqlite")):
            raise ValueError("database_url must be a postgresql:// or sqlite:// URL")
        return v


class SecurityConfig(BaseSettings):
    """Credential encryption configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    encryption_key: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = _ENV_VAR_PATTERN.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        data = config_dict.setdefault("data", {}) or {}
        config_dict["data"] = data
        if not _is_set(data.get("database_url")) and os.getenv("DATABASE_URL"):
            data["database_url"] = os.environ["DATABASE_URL"]
        elif not _is_set(data.get("database_url")):
            data["database_url"] = None

        security = config_dict.setdefault("security", {}) or {}
        config_dict["security"] = security
        if not _is_set(security.get("encryption_key")):
            security["encryption_key"] = os.getenv("ENCRYPTION_KEY")

        return cls(**config_dict)


def _is_set(value: Optional[str]) -> bool:
    # Unexpanded ${VAR} placeholders count as unset
    return bool(value) and not str(value).startswith("$")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses journal_sync/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
