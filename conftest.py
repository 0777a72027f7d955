"""Shared pytest fixtures for the ERP connector tests."""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import pytest

from connectors.erp_base import (
    ErpClient,
    HealthReport,
    ProviderKind,
    PushResult,
    RecordPage,
    RecordPayload,
    RecordQuery,
)
from connectors.http import RetryConfig
from core.connections import ConnectionService, InMemoryConnectionStore
from core.observability.metrics import MetricsCollector
from core.security.encryption import CredentialVault, generate_encryption_key


NETSUITE_CREDENTIALS = {
    "account_id": "1234567_SB1",
    "consumer_key": "ck-4f1c2a",
    "consumer_secret": "cs-super-secret-value",
    "token_id": "tk-9b7e10",
    "token_secret": "ts-super-secret-value",
}

SAP_CREDENTIALS = {
    "client_id": "sb-erp-client",
    "client_secret": "sap-super-secret-value",
    "token_endpoint": "https://auth.example.com/oauth/token",
    "api_base_url": "https://s4.example.com",
}


@pytest.fixture(autouse=True)
def reset_metrics():
    """Every test starts with an empty metrics collector."""
    MetricsCollector.reset()
    yield
    MetricsCollector.reset()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=0)


@pytest.fixture
def encryption_key() -> str:
    return generate_encryption_key()


@pytest.fixture
def vault(encryption_key) -> CredentialVault:
    return CredentialVault(encryption_key)


# =============================================================================
# Fake Client
# =============================================================================

Behavior = Callable[[], Awaitable[None]]


class FakeClient(ErpClient):
    """In-process client whose health check runs the factory's next behavior."""

    def __init__(self, factory: "FakeClientFactory", credentials: Any, **options):
        super().__init__(
            connection_id=options.get("connection_id"),
            retry_config=options.get("retry_config"),
            timeout_seconds=options.get("timeout_seconds", 30.0),
        )
        self.factory = factory
        self.credentials = credentials
        self.options = options
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def health_check(self) -> HealthReport:
        await self.factory.next_behavior()()
        return HealthReport(provider=self.provider, endpoint="fake://health", status_code=200)

    async def fetch_records(self, query: RecordQuery) -> RecordPage:
        return RecordPage(records=[], offset=query.offset)

    async def push_record(self, payload: RecordPayload) -> PushResult:
        return PushResult(record_id=payload.record_id or "new-1", status_code=201)


async def _succeed() -> None:
    return None


class FakeClientFactory:
    """Stands in for create_client; records every client it builds.

    Health checks succeed unless behaviors are queued; each queued behavior is
    used by exactly one health check, in order.
    """

    def __init__(self):
        self.built: List[FakeClient] = []
        self.behaviors: List[Behavior] = []

    def fail_with(self, error: Exception) -> None:
        async def behavior() -> None:
            raise error
        self.behaviors.append(behavior)

    def wait_for(self, gate: asyncio.Event, error: Optional[Exception] = None) -> None:
        async def behavior() -> None:
            await gate.wait()
            if error is not None:
                raise error
        self.behaviors.append(behavior)

    def next_behavior(self) -> Behavior:
        return self.behaviors.pop(0) if self.behaviors else _succeed

    def __call__(self, provider: ProviderKind, credentials: Any, **options) -> FakeClient:
        client = FakeClient(self, credentials, **options)
        client.provider = ProviderKind(provider)
        self.built.append(client)
        return client


@pytest.fixture
def fake_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def service(vault, fast_retry, fake_factory) -> ConnectionService:
    return ConnectionService(
        InMemoryConnectionStore(),
        vault,
        retry_config=fast_retry,
        client_factory=fake_factory,
    )
