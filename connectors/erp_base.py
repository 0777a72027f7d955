"""Abstract ERP Client Interface.

This module defines the abstract interface that all ERP provider clients must
implement. It is intentionally provider-agnostic - no NetSuite or SAP specifics
here.

Clients implement this interface to:
1. Authenticate every outbound request in their provider's style
2. Verify credentials with a cheap authenticated round trip (health check)
3. Fetch a page of records of a given type
4. Create or update a single record

Key Design Principles:
- All methods return NORMALIZED objects (RecordPage, PushResult, HealthReport)
- The Connection Service and API routes depend ONLY on this interface
- Provider-specific implementations live in connector subfolders and register
  themselves against a ProviderKind with @register_client
"""

import functools
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from connectors.errors import ConfigurationError, TransientNetworkError
from connectors.http import RetryConfig


# =============================================================================
# Enums
# =============================================================================

class ProviderKind(str, Enum):
    """Supported ERP providers."""
    NETSUITE = "netsuite"
    SAP_S4HANA = "sap_s4hana"


class Environment(str, Enum):
    """ERP tenant environment."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


# =============================================================================
# Normalized Record Models (Provider-Agnostic)
# =============================================================================

class RecordQuery(BaseModel):
    """Query for a page of ERP records.

    record_type is provider specific:
    In NetSuite: a REST record type (e.g., "inventoryItem")
    In SAP: "<OData service>/<entity set>" (e.g., "API_MATERIAL_STOCK_SRV/A_MatlStkInAcctMod")

    None selects the provider's default inventory record type.
    """
    record_type: Optional[str] = Field(default=None, description="Provider record type")
    filter: Optional[str] = Field(default=None, description="Provider filter expression (q / $filter)")
    fields: Optional[List[str]] = Field(default=None, description="Fields to return")
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class RecordPage(BaseModel):
    """One page of normalized ERP records."""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    offset: int = 0
    total: Optional[int] = None


class RecordPayload(BaseModel):
    """A record to push to the ERP.

    record_id present -> update the existing record (PATCH)
    record_id absent  -> create a new record (POST)
    """
    record_type: str = Field(..., min_length=1)
    record_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def is_update(self) -> bool:
        return bool(self.record_id)


class PushResult(BaseModel):
    """Outcome of a successful push."""
    record_id: Optional[str] = Field(default=None, description="ERP id of the created/updated record")
    status_code: int

    model_config = ConfigDict(frozen=True)


class HealthReport(BaseModel):
    """Outcome of a successful authenticated round trip."""
    provider: ProviderKind
    endpoint: str
    status_code: int

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Client Interface
# =============================================================================

class ErpClient(ABC):
    """Abstract base class for ERP provider clients.

    A client owns its aiohttp session (unless one is injected) and any
    per-connection auth state. Use as an async context manager or call close().

    Operations decorated with @client_operation count as in flight. close()
    called while any are running only marks the client closing; the session is
    closed when the last of them finishes, and new operations are refused.

    Example:
        async with create_client(ProviderKind.NETSUITE, credentials) as client:
            await client.health_check()
            page = await client.fetch_records(RecordQuery(limit=10))
    """

    provider: ProviderKind

    def __init__(
        self,
        connection_id: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.connection_id = connection_id
        self.retry_config = retry_config or RetryConfig()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._in_flight = 0
        self._closing = False

    # -------------------------------------------------------------------------
    # Session Management
    # -------------------------------------------------------------------------

    def _new_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=self.timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = self._new_session()
            self._owns_session = True
        return self._session

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closing(self) -> bool:
        return self._closing

    @asynccontextmanager
    async def _operation(self):
        if self._closing:
            raise TransientNetworkError(
                "ERP client was closed; obtain a new client for this connection",
                provider=self.provider.value,
                connection_id=self.connection_id,
                attempts=0,
            )
        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            if self._closing and self._in_flight == 0:
                await self._close_session()

    async def _close_session(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def close(self) -> None:
        """Close the HTTP session if this client created it.

        Deferred until in-flight operations finish.
        """
        self._closing = True
        if self._in_flight == 0:
            await self._close_session()

    async def __aenter__(self) -> "ErpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def health_check(self) -> HealthReport:
        """Perform the cheapest fully-authenticated round trip.

        Returns:
            HealthReport on success

        Raises:
            ErpError subclass describing why the credentials or ERP are unusable
        """
        pass

    @abstractmethod
    async def fetch_records(self, query: RecordQuery) -> RecordPage:
        """Fetch one page of records.

        Args:
            query: Record type, filter, field selection and paging

        Returns:
            Normalized RecordPage
        """
        pass

    @abstractmethod
    async def push_record(self, payload: RecordPayload) -> PushResult:
        """Create or update a single record.

        Not idempotent: only retried when the request provably never left
        the client (connection could not be established).

        Args:
            payload: Record to create (no record_id) or update (record_id set)

        Returns:
            PushResult with the ERP record id where the ERP reports one
        """
        pass


def client_operation(method):
    """Mark an ErpClient coroutine method as an in-flight operation."""
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        async with self._operation():
            return await method(self, *args, **kwargs)
    return wrapper


# =============================================================================
# Client Factory
# =============================================================================

_client_registry: Dict[ProviderKind, type] = {}


def register_client(kind: ProviderKind):
    """Decorator to register a client implementation for a provider kind."""
    def decorator(cls):
        cls.provider = kind
        _client_registry[kind] = cls
        return cls
    return decorator


def create_client(
    kind: ProviderKind,
    credentials: BaseModel,
    **kwargs,
) -> ErpClient:
    """Create a client instance for a provider.

    Args:
        kind: Provider kind the credentials belong to
        credentials: Decrypted, validated credentials for that provider
        **kwargs: connection_id, retry_config, timeout_seconds, session, ...

    Returns:
        Configured client instance

    Raises:
        ConfigurationError: If no client is registered for the provider
    """
    kind = ProviderKind(kind)

    if kind not in _client_registry:
        available = [k.value for k in _client_registry]
        raise ConfigurationError(
            f"No client registered for provider {kind.value}. Available: {available}",
            provider=kind.value,
        )

    client_class = _client_registry[kind]
    return client_class(credentials, **kwargs)


def list_available_clients() -> List[ProviderKind]:
    """List all registered provider kinds."""
    return list(_client_registry.keys())
