"""ERP Connectors - Provider clients for external ERP systems.

This package contains the abstract client interface and concrete
implementations for the supported ERP providers:
- netsuite/: Oracle NetSuite, OAuth 1.0a Token-Based Authentication (signing)
- sap/: SAP S/4HANA, OAuth 2.0 bearer token plus anti-CSRF token for writes

This package handles:
- Provider-specific authentication
- HTTP communication with bounded retries
- Normalizing responses and errors

Key Design Principle:
- The Connection Service and API routes depend ONLY on the ErpClient interface
- All methods return NORMALIZED types (RecordPage, PushResult, HealthReport)
- Errors are always ErpError subclasses (connectors.errors)

To add a provider:
1. Add a ProviderKind member and a credentials model
2. Implement ErpClient in a new folder
3. Register it using the @register_client decorator
"""

from connectors.erp_base import (
    # Core interface
    ErpClient,
    client_operation,
    ProviderKind,
    Environment,

    # Normalized record types
    RecordQuery,
    RecordPage,
    RecordPayload,
    PushResult,
    HealthReport,

    # Factory functions
    create_client,
    register_client,
    list_available_clients,
)
from connectors.credentials import (
    NetSuiteCredentials,
    SapCredentials,
    validate_credentials,
)
from connectors.http import RetryConfig

# Importing the provider packages registers their clients
from connectors.netsuite import NetSuiteClient
from connectors.sap import SapClient

__all__ = [
    # Core interface
    "ErpClient",
    "client_operation",
    "ProviderKind",
    "Environment",

    # Normalized record types
    "RecordQuery",
    "RecordPage",
    "RecordPayload",
    "PushResult",
    "HealthReport",

    # Credentials
    "NetSuiteCredentials",
    "SapCredentials",
    "validate_credentials",

    # Retry
    "RetryConfig",

    # Clients
    "NetSuiteClient",
    "SapClient",

    # Factory
    "create_client",
    "register_client",
    "list_available_clients",
]
