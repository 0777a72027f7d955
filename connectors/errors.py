"""ERP integration error taxonomy.

Every error raised across the connector boundary derives from ErpError and
carries the provider kind, connection id and HTTP status where known. The
``kind`` attribute is a stable identifier surfaced to operators alongside the
message (e.g. on a failed connection test).

Retry semantics by type:
- ConfigurationError: fatal, never retried
- AuthenticationError: NetSuite fatal; SAP retried once after a forced refresh
- CsrfError: retried once after refetching the CSRF token
- TransientNetworkError: retried with bounded backoff, then fatal
- DecryptionError: fatal, credentials must be re-entered
"""

from typing import Any, Dict, Optional


class ErpError(Exception):
    """Base exception for ERP integration errors."""

    kind = "erp_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.connection_id = connection_id
        self.status_code = status_code

    def with_context(
        self,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> "ErpError":
        """Fill in provider/connection context without overwriting known values."""
        if self.provider is None:
            self.provider = provider
        if self.connection_id is None:
            self.connection_id = connection_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "provider": self.provider,
            "connection_id": self.connection_id,
            "status_code": self.status_code,
        }

    def __str__(self) -> str:
        context = []
        if self.provider:
            context.append(f"provider={self.provider}")
        if self.connection_id:
            context.append(f"connection_id={self.connection_id}")
        if self.status_code is not None:
            context.append(f"status={self.status_code}")
        if not context:
            return self.message
        return f"{self.message} [{' '.join(context)}]"


class ConfigurationError(ErpError):
    """Missing or malformed credential/config fields."""

    kind = "configuration_error"


class AuthenticationError(ErpError):
    """Signature or bearer token rejected by the ERP."""

    kind = "authentication_error"


class CsrfError(ErpError):
    """Anti-CSRF token rejected twice, or not issued by the ERP."""

    kind = "csrf_error"


class TransientNetworkError(ErpError):
    """Timeout, connection failure, 5xx or rate limit after the retry budget."""

    kind = "transient_network_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 1,
    ):
        super().__init__(message, provider, connection_id, status_code)
        self.attempts = attempts


class DecryptionError(ErpError):
    """Stored credentials failed authenticated decryption (tamper or wrong key)."""

    kind = "decryption_error"


class RecordNotFoundError(ErpError):
    """Requested ERP record does not exist (404)."""

    kind = "record_not_found"


class ErpApiError(ErpError):
    """Any other non-success response from the ERP."""

    kind = "api_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: str = "",
    ):
        super().__init__(message, provider, connection_id, status_code)
        self.response_body = response_body
