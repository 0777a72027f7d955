"""
Metrics Collection for ERP Connectors

Collects and exposes metrics for:
- Outbound ERP requests (by provider and outcome)
- Retries and retry exhaustion
- SAP token refreshes and CSRF fetches
- Connection health checks (healthy/failing, latency average and p95)

Metrics are held in-memory per process.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class RequestMetrics:
    """Metrics for outbound ERP HTTP requests."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0

    # By provider
    by_provider: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"total": 0, "succeeded": 0, "failed": 0, "retries": 0})
    )


@dataclass
class AuthMetrics:
    """Metrics for bearer-token and CSRF state maintenance."""
    token_refreshes: int = 0
    token_refresh_failures: int = 0
    csrf_fetches: int = 0
    csrf_rejections: int = 0


@dataclass
class HealthMetrics:
    """Metrics for connection health checks."""
    healthy: int = 0
    failing: int = 0
    discarded: int = 0

    # Last outcome by error kind
    failures_by_kind: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TimingMetrics:
    """Latency metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    # By provider
    by_provider: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, provider: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if provider:
            self.by_provider[provider].append(duration_ms)
            if len(self.by_provider[provider]) > self.max_samples:
                self.by_provider[provider] = self.by_provider[provider][-self.max_samples:]

    def get_average(self, provider: str = None) -> float:
        """Get average latency."""
        samples = self.by_provider.get(provider, []) if provider else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, provider: str = None) -> float:
        """Get 95th percentile latency."""
        samples = self.by_provider.get(provider, []) if provider else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for ERP connectors.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_request("netsuite", succeeded=True)
        metrics.record_health_check("sap_s4hana", healthy=True, latency_ms=120.0)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.requests = RequestMetrics()
        self.auth = AuthMetrics()
        self.health = HealthMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next instance() starts from zero."""
        with cls._lock:
            cls._instance = None

    # =========================================================================
    # Request Metrics
    # =========================================================================

    def record_request(self, provider: str, succeeded: bool):
        """Record one completed ERP request (after retries)."""
        with self._lock:
            self.requests.total += 1
            self.requests.by_provider[provider]["total"] += 1
            if succeeded:
                self.requests.succeeded += 1
                self.requests.by_provider[provider]["succeeded"] += 1
            else:
                self.requests.failed += 1
                self.requests.by_provider[provider]["failed"] += 1

    def record_retry(self, provider: str):
        """Record a retry attempt."""
        with self._lock:
            self.requests.retries += 1
            self.requests.by_provider[provider]["retries"] += 1

    # =========================================================================
    # Auth Metrics
    # =========================================================================

    def record_token_refresh(self, succeeded: bool = True):
        with self._lock:
            if succeeded:
                self.auth.token_refreshes += 1
            else:
                self.auth.token_refresh_failures += 1

    def record_csrf_fetch(self):
        with self._lock:
            self.auth.csrf_fetches += 1

    def record_csrf_rejection(self):
        with self._lock:
            self.auth.csrf_rejections += 1

    # =========================================================================
    # Health Check Metrics
    # =========================================================================

    def record_health_check(
        self,
        provider: str,
        healthy: bool,
        latency_ms: float,
        error_kind: str = None,
    ):
        """Record the outcome of a connection test."""
        with self._lock:
            if healthy:
                self.health.healthy += 1
            else:
                self.health.failing += 1
                if error_kind:
                    self.health.failures_by_kind[error_kind] += 1
            self.timings.add_sample(latency_ms, provider)

    def record_health_check_discarded(self):
        """Record a health check result dropped because a newer one superseded it."""
        with self._lock:
            self.health.discarded += 1

    def get_timing_stats(self, provider: str = None) -> Dict[str, float]:
        """Get latency statistics for a provider."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(provider),
                "p95_ms": self.timings.get_p95(provider),
                "sample_count": len(self.timings.by_provider.get(provider, []) if provider else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "requests": {
                    "total": self.requests.total,
                    "succeeded": self.requests.succeeded,
                    "failed": self.requests.failed,
                    "retries": self.requests.retries,
                    "by_provider": {k: dict(v) for k, v in self.requests.by_provider.items()},
                },
                "auth": {
                    "token_refreshes": self.auth.token_refreshes,
                    "token_refresh_failures": self.auth.token_refresh_failures,
                    "csrf_fetches": self.auth.csrf_fetches,
                    "csrf_rejections": self.auth.csrf_rejections,
                },
                "health_checks": {
                    "healthy": self.health.healthy,
                    "failing": self.health.failing,
                    "discarded": self.health.discarded,
                    "failures_by_kind": dict(self.health.failures_by_kind),
                },
                "latency": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_provider": {
                        provider: {
                            "average_ms": self.timings.get_average(provider),
                            "p95_ms": self.timings.get_p95(provider),
                        }
                        for provider in self.timings.by_provider.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_request(provider: str, succeeded: bool):
    """Record one completed ERP request."""
    get_metrics().record_request(provider, succeeded)


def record_retry(provider: str):
    """Record a retry attempt."""
    get_metrics().record_retry(provider)


def record_health_check(provider: str, healthy: bool, latency_ms: float, error_kind: str = None):
    """Record the outcome of a connection test."""
    get_metrics().record_health_check(provider, healthy, latency_ms, error_kind)
