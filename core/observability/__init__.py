"""
Observability Module for ERP Connectors

Provides:
- Structured logging with correlation IDs
- Metrics collection (requests, retries, token/CSRF refreshes, health checks)
- Log sanitizing for response bodies and secrets
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_request,
    record_retry,
    record_health_check,
)

from core.observability.logging import (
    get_logger,
    CorrelationContext,
    with_correlation,
    configure_logging,
)

from core.observability.sanitize import (
    sanitize_for_log,
    redact,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_request",
    "record_retry",
    "record_health_check",
    # Logging
    "get_logger",
    "CorrelationContext",
    "with_correlation",
    "configure_logging",
    # Sanitizing
    "sanitize_for_log",
    "redact",
]
