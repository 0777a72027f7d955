"""Core module - provider-neutral ERP integration services.

This module contains the credential vault, connection records and service,
configuration and observability. It is intentionally provider-agnostic.

Provider-specific logic (NetSuite, SAP S/4HANA) belongs in /connectors/.
"""

__version__ = "1.0.0"
