"""Connection management - ERP connection records, lifecycle and health checks."""

from core.connections.models import (
    ConnectionStatus,
    ConnectionTestResult,
    ErpConnection,
    ErrorDetail,
)
from core.connections.store import (
    ConnectionStore,
    InMemoryConnectionStore,
    SqliteConnectionStore,
)
from core.connections.service import ConnectionNotFoundError, ConnectionService
from core.connections.housekeeping import IdleClientReaper

__all__ = [
    # Models
    "ConnectionStatus",
    "ConnectionTestResult",
    "ErpConnection",
    "ErrorDetail",
    # Storage
    "ConnectionStore",
    "InMemoryConnectionStore",
    "SqliteConnectionStore",
    # Service
    "ConnectionService",
    "ConnectionNotFoundError",
    "IdleClientReaper",
]
