"""
Structured Logging with Correlation IDs

Provides logging utilities that automatically include:
- tenant_id: Tenant owning the ERP connection
- connection_id: Links logs to a specific ERP connection
- provider: ERP provider kind (netsuite, sap_s4hana)
- operation: Connector operation being executed (health_check, fetch_records, ...)

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(connection_id="conn-1", provider="netsuite"):
        logger.info("Fetching records")  # Automatically includes correlation IDs
"""

import json
import logging
import sys
from contextvars import ContextVar
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextlib import contextmanager

from core.observability.sanitize import is_sensitive_key, redact_mapping


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    """Context for correlating logs across one connector operation."""
    tenant_id: Optional[str] = None
    connection_id: Optional[str] = None
    provider: Optional[str] = None
    operation: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """Create a new context with merged values."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


# Context variable for async/thread-safe correlation
_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "correlation_context",
    default=CorrelationContext()
)


def get_correlation_context() -> CorrelationContext:
    """Get the current correlation context."""
    return _correlation_context.get()


def set_correlation_context(ctx: CorrelationContext) -> None:
    """Set the current correlation context."""
    _correlation_context.set(ctx)


@contextmanager
def with_correlation(**kwargs):
    """
    Context manager to set correlation IDs for logging.

    Usage:
        with with_correlation(tenant_id="t-1", connection_id="conn-1"):
            logger.info("Testing connection")  # Will include tenant_id and connection_id
    """
    old_ctx = get_correlation_context()
    new_ctx = old_ctx.merge(**kwargs)
    token = _correlation_context.set(new_ctx)
    try:
        yield new_ctx
    finally:
        _correlation_context.reset(token)


# =============================================================================
# Structured JSON Formatter
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that includes correlation context.

    Output format:
    {
        "timestamp": "2026-01-09T12:00:00.000Z",
        "level": "INFO",
        "logger": "connectors.sap.client",
        "message": "Fetched CSRF token",
        "connection_id": "conn-1",
        "provider": "sap_s4hana",
        "duration_ms": 150
    }

    Extra fields whose key looks like a secret (token, secret, cookie, ...) are
    redacted before serialization.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = get_correlation_context()
        log_data.update(ctx.to_dict())

        if hasattr(record, "extra_fields"):
            log_data.update(redact_mapping(record.extra_fields))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter that includes key correlation IDs.

    Output format:
    2026-01-09 12:00:00 [INFO ] connectors.sap.client [sap_s4hana/conn-1]: Fetched CSRF token
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_correlation_context()

        correlation_parts = []
        if ctx.provider:
            correlation_parts.append(ctx.provider)
        if ctx.connection_id:
            # Truncate connection_id for readability
            conn_short = ctx.connection_id[:12] if len(ctx.connection_id) > 12 else ctx.connection_id
            correlation_parts.append(conn_short)
        if ctx.operation:
            correlation_parts.append(f"op:{ctx.operation}")

        correlation = "/".join(correlation_parts) if correlation_parts else "-"

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        msg = f"{timestamp} [{record.levelname:5}] {record.name} [{correlation}]: {record.getMessage()}"

        extra = getattr(record, "extra_fields", None)
        if extra:
            pairs = " ".join(f"{k}={v}" for k, v in redact_mapping(extra).items())
            msg += f" ({pairs})"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


# =============================================================================
# Logger with Correlation Support
# =============================================================================

class CorrelatedLogger:
    """
    Logger wrapper that automatically includes correlation context.

    Also supports adding extra fields to individual log calls.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, *args, **kwargs):
        """Log with extra fields support."""
        extra_fields = kwargs.pop("extra_fields", {})
        exc_info = kwargs.pop("exc_info", None)
        if exc_info is True:
            exc_info = sys.exc_info()

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "(unknown file)",
            0,
            msg,
            args,
            exc_info or None,
        )
        record.extra_fields = extra_fields

        self._logger.handle(record)

    def debug(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.DEBUG):
            self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.INFO):
            self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.WARNING):
            self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        if self._logger.isEnabledFor(logging.ERROR):
            self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs["exc_info"] = True
        self.error(msg, *args, **kwargs)

    # Delegate other methods
    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level):
        return self._logger.isEnabledFor(level)


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
):
    """
    Configure logging for the application.

    Args:
        level: Logging level
        json_format: If True, use JSON format; otherwise human-readable
    """
    global _configured

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for logger_name in ["connectors", "api", "core"]:
        logger = logging.getLogger(logger_name)
        logger.setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """
    Get a correlated logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        CorrelatedLogger instance
    """
    if name not in _loggers:
        if not _configured:
            configure_logging()

        base_logger = logging.getLogger(name)
        _loggers[name] = CorrelatedLogger(base_logger)

    return _loggers[name]


# =============================================================================
# Convenience Functions for Connector Operations
# =============================================================================

def log_erp_request(method: str, url: str, status: int, duration_ms: float, attempt: int = 1):
    """Log one outbound ERP HTTP exchange."""
    logger = get_logger("connectors.http")
    logger.debug(
        f"{method} {url} -> {status}",
        extra_fields={"duration_ms": round(duration_ms, 1), "attempt": attempt},
    )


def log_connection_event(event: str, **kwargs):
    """Log a connection lifecycle event (created, rotated, deleted, tested)."""
    logger = get_logger("core.connections")
    fields = {k: v for k, v in kwargs.items() if not is_sensitive_key(k)}
    logger.info(event, extra_fields=fields)
