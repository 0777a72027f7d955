"""Connection records.

An ErpConnection is a tenant's configured link to one ERP provider. Credentials
are only ever held here in sealed form (EncryptedCredentials).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from connectors.erp_base import Environment, ProviderKind
from connectors.errors import ErpError
from core.security.encryption import EncryptedCredentials


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, Enum):
    """Outcome of the most recent connection test."""
    UNTESTED = "untested"
    HEALTHY = "healthy"
    FAILING = "failing"


class ErrorDetail(BaseModel):
    """Operator-facing summary of why a connection test failed."""
    kind: str
    message: str
    status_code: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_error(cls, error: ErpError) -> "ErrorDetail":
        return cls(kind=error.kind, message=error.message, status_code=error.status_code)


class ErpConnection(BaseModel):
    """Persisted ERP connection.

    Mutated only through credential rotation or by applying a health check
    result; both go through ConnectionService.
    """
    id: str
    tenant_id: str
    name: Optional[str] = None
    provider: ProviderKind
    environment: Environment = Environment.PRODUCTION
    credentials: EncryptedCredentials
    status: ConnectionStatus = ConnectionStatus.UNTESTED
    last_tested_at: Optional[datetime] = None
    last_latency_ms: Optional[float] = None
    last_error: Optional[ErrorDetail] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def to_public_dict(self) -> Dict[str, Any]:
        """Everything except the sealed credentials."""
        return self.model_dump(mode="json", exclude={"credentials"})


class ConnectionTestResult(BaseModel):
    """Result of ConnectionService.test_connection.

    applied is False when a newer test or a credential rotation started while
    this test was running; the stored status was then left untouched.
    """
    connection_id: str
    status: ConnectionStatus
    latency_ms: float
    error: Optional[ErrorDetail] = None
    tested_at: datetime = Field(default_factory=utcnow)
    applied: bool = True

    model_config = ConfigDict(frozen=True)
