"""ERP integration settings.

Settings come from the environment; a ``.env`` file in the working directory
(or the path in ERP_ENV_FILE) is loaded first without overriding variables
that are already set.

Environment variables:
    ERP_ENCRYPTION_KEY               Base64 32-byte master key (required for the vault)
    ERP_DB_PATH                      SQLite path for connection records (default: erp_connections.db)
    ERP_HTTP_TIMEOUT_SECONDS         Per-request timeout (default: 30)
    ERP_RETRY_MAX_ATTEMPTS           Total attempts per request (default: 3)
    ERP_RETRY_BASE_DELAY_MS          First backoff delay (default: 500)
    ERP_RETRY_BACKOFF_FACTOR         Backoff multiplier (default: 2)
    ERP_TOKEN_EXPIRY_MARGIN_SECONDS  Refresh SAP tokens this long before expiry (default: 60)
    ERP_CLIENT_IDLE_SECONDS          Evict cached clients idle this long (default: 900)
    LOG_LEVEL                        Logging level name (default: INFO)
    LOG_JSON                         "true" for JSON logs (default: false)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from connectors.errors import ConfigurationError
from connectors.http import RetryConfig


_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class ErpSettings:
    """Resolved settings for the ERP integration core."""
    encryption_key: str = ""
    db_path: str = "erp_connections.db"
    http_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 500
    retry_backoff_factor: float = 2.0
    token_expiry_margin_seconds: float = 60.0
    client_idle_seconds: float = 900.0
    log_level: str = "INFO"
    log_json: bool = False

    def __repr__(self) -> str:
        key = "<set>" if self.encryption_key else "<unset>"
        return (
            f"ErpSettings(encryption_key={key}, db_path={self.db_path!r}, "
            f"http_timeout_seconds={self.http_timeout_seconds}, "
            f"retry_max_attempts={self.retry_max_attempts})"
        )

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_ms / 1000.0,
            backoff_factor=self.retry_backoff_factor,
        )

    @property
    def logging_level(self) -> int:
        return logging.getLevelName(self.log_level.upper())


def _number(env: Mapping[str, str], name: str, default, cast, minimum) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    env_file: Optional[str] = None,
) -> ErpSettings:
    """Build settings from the environment.

    Args:
        env: Mapping to read instead of os.environ (no .env loading then)
        env_file: Explicit .env path (default: ERP_ENV_FILE or ./.env)

    Returns:
        ErpSettings

    Raises:
        ConfigurationError: If a variable has an invalid value
    """
    if env is None:
        path = Path(env_file or os.getenv("ERP_ENV_FILE", ".env"))
        if path.exists():
            load_dotenv(path, override=False)
        env = os.environ

    log_level = env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigurationError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return ErpSettings(
        encryption_key=env.get("ERP_ENCRYPTION_KEY", "").strip(),
        db_path=env.get("ERP_DB_PATH", "").strip() or "erp_connections.db",
        http_timeout_seconds=_number(env, "ERP_HTTP_TIMEOUT_SECONDS", 30.0, float, 0.001),
        retry_max_attempts=_number(env, "ERP_RETRY_MAX_ATTEMPTS", 3, int, 1),
        retry_base_delay_ms=_number(env, "ERP_RETRY_BASE_DELAY_MS", 500, int, 0),
        retry_backoff_factor=_number(env, "ERP_RETRY_BACKOFF_FACTOR", 2.0, float, 1.0),
        token_expiry_margin_seconds=_number(env, "ERP_TOKEN_EXPIRY_MARGIN_SECONDS", 60.0, float, 0),
        client_idle_seconds=_number(env, "ERP_CLIENT_IDLE_SECONDS", 900.0, float, 1),
        log_level=log_level,
        log_json=_flag(env, "LOG_JSON", False),
    )
