"""Configuration loading and validation using Pydantic."""

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

CONFIG_ENV_VAR = "EVLEDGER_CONFIG"
DEFAULT_CONFIG_PATH = "instance/config.yaml"


def expand_env_vars(value: str) -> str:
    """Expand ${VAR} style environment variables in a string."""
    pattern = re.compile(r"\$\{([^}]+)\}")

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return pattern.sub(replacer, value)


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "./instance/ledger.db"  # SQLite path or SQLAlchemy URL

    @field_validator("path", mode="before")
    @classmethod
    def expand_env(cls, v: str | Path) -> str:
        """Expand environment variables in connection strings."""
        if isinstance(v, Path):
            return str(v)
        if isinstance(v, str):
            return expand_env_vars(v)
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = True
    level: Literal["DEBUG", "INFO", "WARN", "WARNING", "ERROR"] = "INFO"
    format: Literal["splunk", "json"] = "splunk"
    file: Path | None = None


class PaymentConfig(BaseModel):
    """Payment processor configuration."""

    provider: Literal["stripe"] = "stripe"
    secret_key: str = ""
    webhook_secret: str = ""
    api_version: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0)
    currency: str = "EUR"
    default_hold_amount: float = Field(default=50.0, gt=0)

    @field_validator("secret_key", "webhook_secret", mode="before")
    @classmethod
    def expand_env(cls, v: str) -> str:
        """Expand environment variables in credentials."""
        if isinstance(v, str):
            return expand_env_vars(v)
        return v


class ReconciliationConfig(BaseModel):
    """Tolerance bands used when matching roaming CDRs."""

    energy_tolerance_kwh: float = Field(default=0.1, ge=0)
    duration_tolerance_seconds: int = Field(default=60, ge=0)
    amount_tolerance: float = Field(default=0.05, ge=0)
    start_time_tolerance_seconds: int = Field(default=300, ge=0)


class PayoutConfig(BaseModel):
    """Session selection rules for payout statements."""

    # Outbound roaming sessions are paid to a foreign CPO, not our operators
    exclude_outbound_roaming: bool = True
    # Only include non-roaming sessions whose payment has been captured
    require_captured_payment: bool = False


class Config(BaseModel):
    """Root configuration model."""

    currency: str = "EUR"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    payouts: PayoutConfig = Field(default_factory=PayoutConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load and validate the YAML config.

    Without an explicit path, $EVLEDGER_CONFIG is used, then
    instance/config.yaml. A missing file yields the defaults.

    Raises:
        ValidationError: If a value is out of range or of the wrong type.
    """
    if config_path is None:
        config_path = Path(os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        return Config()

    raw = yaml.safe_load(config_path.read_text()) or {}
    return Config.model_validate(raw)


def ensure_directories(config: Config) -> None:
    """Create directories for the SQLite database and log file."""
    db_path = config.database.path
    if "://" not in db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    if config.logging.file:
        config.logging.file.parent.mkdir(parents=True, exist_ok=True)
