"""Connection Service.

Owns the lifecycle of ERP connections: create, test, rotate credentials,
delete. It is the only place where sealed credentials are opened, and only to
build a client.

Client cache:
- One client per connection, built at most once at a time per connection, so
  SAP token/CSRF state is shared by every caller of that connection
- Rotating or deleting a connection evicts and closes its client; calls
  already running on it finish on the old session before it is closed
- IdleClientReaper (core.connections.housekeeping) evicts unused clients

Health checks:
- Every test takes a sequence number; a credential rotation also bumps it
- A test result is written only if no newer test or rotation started since,
  so the stored status always reflects the most recent check
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from connectors.credentials import validate_credentials
from connectors.erp_base import Environment, ErpClient, ProviderKind, create_client
from connectors.errors import ConfigurationError, DecryptionError, ErpError
from connectors.http import RetryConfig
from core.config import ErpSettings
from core.connections.models import (
    ConnectionStatus,
    ConnectionTestResult,
    ErpConnection,
    ErrorDetail,
    utcnow,
)
from core.connections.store import ConnectionStore, SqliteConnectionStore
from core.observability.logging import get_logger, log_connection_event, with_correlation
from core.observability.metrics import get_metrics
from core.security.encryption import CredentialVault

logger = get_logger(__name__)


class ConnectionNotFoundError(ErpError):
    """No connection with the given id."""

    kind = "connection_not_found"


@dataclass
class _CachedClient:
    client: ErpClient
    last_used: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_used = time.monotonic()


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {field_name}: expected one of {allowed}") from None


class ConnectionService:
    """Manages ERP connections for all tenants.

    Usage:
        service = ConnectionService(InMemoryConnectionStore(), CredentialVault(key))
        connection_id = await service.create(
            tenant_id="tenant-1",
            provider="netsuite",
            environment="sandbox",
            credentials={"account_id": "1234567_SB1", ...},
        )
        result = await service.test_connection(connection_id)
    """

    def __init__(
        self,
        store: ConnectionStore,
        vault: CredentialVault,
        retry_config: Optional[RetryConfig] = None,
        http_timeout_seconds: float = 30.0,
        token_expiry_margin_seconds: float = 60.0,
        client_factory: Callable[..., ErpClient] = create_client,
    ):
        self.store = store
        self.vault = vault
        self.retry_config = retry_config or RetryConfig()
        self.http_timeout_seconds = http_timeout_seconds
        self.token_expiry_margin_seconds = token_expiry_margin_seconds
        self._client_factory = client_factory

        self._clients: Dict[str, _CachedClient] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._check_seq: Dict[str, int] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ErpSettings,
        store: Optional[ConnectionStore] = None,
    ) -> "ConnectionService":
        """Build a service from ErpSettings (SQLite store at ERP_DB_PATH unless given)."""
        if store is None:
            store = SqliteConnectionStore(settings.db_path)
        return cls(
            store=store,
            vault=CredentialVault(settings.encryption_key),
            retry_config=settings.retry_config,
            http_timeout_seconds=settings.http_timeout_seconds,
            token_expiry_margin_seconds=settings.token_expiry_margin_seconds,
        )

    async def _lock_for(self, connection_id: str) -> asyncio.Lock:
        """Per-connection lock, only ever created for a stored connection."""
        lock = self._locks.get(connection_id)
        if lock is None:
            await self._require(connection_id)
            lock = self._locks.setdefault(connection_id, asyncio.Lock())
        return lock

    async def _require(self, connection_id: str) -> ErpConnection:
        connection = await self.store.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(
                f"ERP connection not found: {connection_id}",
                connection_id=connection_id,
            )
        return connection

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_connection(self, connection_id: str) -> ErpConnection:
        return await self._require(connection_id)

    async def list_connections(self, tenant_id: str) -> List[ErpConnection]:
        return await self.store.list_for_tenant(tenant_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(
        self,
        tenant_id: str,
        provider: Union[ProviderKind, str],
        environment: Union[Environment, str],
        credentials: Union[Dict[str, Any], BaseModel],
        name: Optional[str] = None,
    ) -> str:
        """Validate, seal and persist a new connection.

        Args:
            tenant_id: Owning tenant
            provider: "netsuite" or "sap_s4hana"
            environment: "sandbox" or "production"
            credentials: Provider credential fields
            name: Optional display name

        Returns:
            New connection id (status untested)

        Raises:
            ConfigurationError: Unknown provider/environment, or missing/invalid
                credential fields (named, never echoed)
        """
        if not tenant_id or not tenant_id.strip():
            raise ConfigurationError("tenant_id is required")
        provider = _parse_enum(ProviderKind, provider, "provider")
        environment = _parse_enum(Environment, environment, "environment")
        validated = validate_credentials(provider, credentials)

        connection_id = str(uuid.uuid4())
        now = utcnow()
        connection = ErpConnection(
            id=connection_id,
            tenant_id=tenant_id,
            name=name,
            provider=provider,
            environment=environment,
            credentials=self.vault.seal_credentials(validated, connection_id),
            status=ConnectionStatus.UNTESTED,
            created_at=now,
            updated_at=now,
        )
        await self.store.save(connection)

        log_connection_event(
            "ERP connection created",
            connection_id=connection_id,
            tenant_id=tenant_id,
            provider=provider.value,
            environment=environment.value,
        )
        return connection_id

    async def rotate_credentials(
        self,
        connection_id: str,
        new_credentials: Union[Dict[str, Any], BaseModel],
    ) -> ErpConnection:
        """Replace a connection's credentials.

        Resets the status to untested, discards any health check still running
        and evicts the cached client (with its token/CSRF state).
        """
        lock = await self._lock_for(connection_id)
        async with lock:
            connection = await self._require(connection_id)
            validated = validate_credentials(connection.provider, new_credentials)

            updated = connection.model_copy(update={
                "credentials": self.vault.seal_credentials(validated, connection_id),
                "status": ConnectionStatus.UNTESTED,
                "last_tested_at": None,
                "last_latency_ms": None,
                "last_error": None,
                "updated_at": utcnow(),
            })
            await self.store.save(updated)
            self._check_seq[connection_id] = self._check_seq.get(connection_id, 0) + 1
            await self._evict(connection_id)

        log_connection_event(
            "ERP connection credentials rotated",
            connection_id=connection_id,
            tenant_id=connection.tenant_id,
            provider=connection.provider.value,
        )
        return updated

    async def delete(self, connection_id: str) -> None:
        """Remove a connection and drop its cached client."""
        lock = await self._lock_for(connection_id)
        async with lock:
            connection = await self._require(connection_id)
            await self.store.delete(connection_id)
            self._check_seq.pop(connection_id, None)
            await self._evict(connection_id)
        self._locks.pop(connection_id, None)

        log_connection_event(
            "ERP connection deleted",
            connection_id=connection_id,
            tenant_id=connection.tenant_id,
            provider=connection.provider.value,
        )

    # =========================================================================
    # Clients
    # =========================================================================

    async def get_client(self, connection_id: str) -> ErpClient:
        """Return the connection's client, building it on first use.

        Raises:
            ConnectionNotFoundError: Unknown connection
            DecryptionError: Stored credentials cannot be opened
        """
        cached = self._clients.get(connection_id)
        if cached is not None:
            cached.touch()
            return cached.client

        lock = await self._lock_for(connection_id)
        async with lock:
            cached = self._clients.get(connection_id)
            if cached is not None:
                cached.touch()
                return cached.client

            connection = await self._require(connection_id)
            client = self._build_client(connection)
            self._clients[connection_id] = _CachedClient(client)
            logger.info(
                "Built ERP client",
                extra_fields={"connection_id": connection_id, "provider": connection.provider.value},
            )
            return client

    def _build_client(self, connection: ErpConnection) -> ErpClient:
        credentials = self.vault.open_credentials(connection.credentials, connection.provider, connection.id)
        options: Dict[str, Any] = {
            "connection_id": connection.id,
            "retry_config": self.retry_config,
            "timeout_seconds": self.http_timeout_seconds,
        }
        if connection.provider == ProviderKind.SAP_S4HANA:
            options["token_expiry_margin_seconds"] = self.token_expiry_margin_seconds
        try:
            return self._client_factory(connection.provider, credentials, **options)
        finally:
            del credentials

    async def _evict(self, connection_id: str) -> bool:
        cached = self._clients.pop(connection_id, None)
        if cached is None:
            return False
        await cached.client.close()
        return True

    def cached_client_ids(self) -> List[str]:
        return list(self._clients)

    async def evict_idle(self, max_idle_seconds: float) -> int:
        """Close clients unused for longer than ``max_idle_seconds``.

        Clients with calls in flight, and connections whose lock is held
        (build, rotate, delete in progress), are skipped until the next pass.
        """
        cutoff = time.monotonic() - max_idle_seconds
        evicted = 0
        for connection_id, cached in list(self._clients.items()):
            if cached.last_used > cutoff or cached.client.in_flight:
                continue
            lock = self._locks.get(connection_id)
            if lock is not None and lock.locked():
                continue
            if self._clients.get(connection_id) is cached:
                del self._clients[connection_id]
                await cached.client.close()
                evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} idle ERP client(s)")
        return evicted

    async def close(self) -> None:
        """Close every cached client and the store."""
        clients = list(self._clients.values())
        self._clients.clear()
        for cached in clients:
            await cached.client.close()
        await self.store.close()

    # =========================================================================
    # Health Checks
    # =========================================================================

    async def test_connection(self, connection_id: str) -> ConnectionTestResult:
        """Run the provider health check and record the outcome.

        healthy only on a fully successful authenticated round trip; failing on
        any ErpError with the error retained. A DecryptionError also evicts the
        cached client: the connection stays unusable until credentials are
        rotated.

        Raises:
            ConnectionNotFoundError: Unknown connection
        """
        connection = await self._require(connection_id)
        seq = self._check_seq.get(connection_id, 0) + 1
        self._check_seq[connection_id] = seq

        error: Optional[ErpError] = None
        start = time.perf_counter()
        with with_correlation(
            tenant_id=connection.tenant_id,
            connection_id=connection_id,
            provider=connection.provider.value,
            operation="test_connection",
        ):
            try:
                client = await self.get_client(connection_id)
                await client.health_check()
            except DecryptionError as e:
                error = e.with_context(connection.provider.value, connection_id)
                await self._evict(connection_id)
            except ErpError as e:
                error = e.with_context(connection.provider.value, connection_id)

            latency_ms = (time.perf_counter() - start) * 1000
            status = ConnectionStatus.FAILING if error else ConnectionStatus.HEALTHY
            detail = ErrorDetail.from_error(error) if error else None
            tested_at = utcnow()

            applied = await self._apply_result(connection_id, seq, status, latency_ms, detail, tested_at)

            get_metrics().record_health_check(
                connection.provider.value,
                healthy=error is None,
                latency_ms=latency_ms,
                error_kind=error.kind if error else None,
            )
            if error:
                logger.warning(
                    f"ERP connection test failed: {error}",
                    extra_fields={"latency_ms": round(latency_ms, 1), "error_kind": error.kind},
                )
            else:
                logger.info(
                    "ERP connection test succeeded",
                    extra_fields={"latency_ms": round(latency_ms, 1)},
                )

        return ConnectionTestResult(
            connection_id=connection_id,
            status=status,
            latency_ms=latency_ms,
            error=detail,
            tested_at=tested_at,
            applied=applied,
        )

    async def _apply_result(
        self,
        connection_id: str,
        seq: int,
        status: ConnectionStatus,
        latency_ms: float,
        detail: Optional[ErrorDetail],
        tested_at,
    ) -> bool:
        if self._check_seq.get(connection_id) != seq:
            get_metrics().record_health_check_discarded()
            logger.info("Discarding superseded connection test result")
            return False

        current = await self.store.get(connection_id)
        if current is None or self._check_seq.get(connection_id) != seq:
            get_metrics().record_health_check_discarded()
            return False

        await self.store.save(current.model_copy(update={
            "status": status,
            "last_tested_at": tested_at,
            "last_latency_ms": latency_ms,
            "last_error": detail,
            "updated_at": tested_at,
        }))
        return True
