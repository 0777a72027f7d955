"""NetSuite Connector Package.

Implements the ErpClient interface for Oracle NetSuite using OAuth 1.0a
Token-Based Authentication.
"""

from connectors.netsuite.client import NetSuiteClient
from connectors.netsuite.signing import (
    OAuth1Signer,
    percent_encode,
    normalize_parameters,
    signature_base_string,
)

__all__ = [
    "NetSuiteClient",
    "OAuth1Signer",
    "percent_encode",
    "normalize_parameters",
    "signature_base_string",
]
