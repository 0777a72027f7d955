"""Security module - credential encryption at rest."""

from core.security.encryption import (
    CredentialVault,
    EncryptedCredentials,
    generate_encryption_key,
)

__all__ = [
    "CredentialVault",
    "EncryptedCredentials",
    "generate_encryption_key",
]
