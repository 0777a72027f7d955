"""SAP S/4HANA Connector Package.

Implements the ErpClient interface for SAP S/4HANA OData APIs using OAuth 2.0
client credentials and anti-CSRF tokens for writes.
"""

from connectors.sap.auth import CachedToken, SapTokenProvider
from connectors.sap.client import CachedCsrfState, SapClient, parse_odata_collection

__all__ = [
    "SapClient",
    "SapTokenProvider",
    "CachedToken",
    "CachedCsrfState",
    "parse_odata_collection",
]
