"""Credential vault using AES-GCM.

Provides authenticated encryption for ERP credentials at rest.
Uses AES-256-GCM with a deployment-wide master key.
"""

import base64
import json
import os
import secrets
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, Field

from connectors.credentials import (
    Credentials,
    canonical_credentials_json,
    validate_credentials,
)
from connectors.erp_base import ProviderKind
from connectors.errors import ConfigurationError, DecryptionError

NONCE_SIZE = 12  # 96-bit nonce, recommended for GCM
KEY_SIZE = 32  # AES-256


def generate_encryption_key() -> str:
    """Generate a new 256-bit encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for ERP_ENCRYPTION_KEY
    """
    key = secrets.token_bytes(KEY_SIZE)
    return base64.b64encode(key).decode('utf-8')


class EncryptedCredentials(BaseModel):
    """Sealed credential blob as persisted on an ErpConnection."""
    ciphertext: str = Field(..., description="Base64 ciphertext including the GCM tag")
    nonce: str = Field(..., description="Base64 96-bit nonce")
    key_version: int = Field(default=1, description="Master key version for rotation")

    model_config = ConfigDict(frozen=True)

    def __repr__(self) -> str:
        return f"EncryptedCredentials(key_version={self.key_version}, ciphertext_len={len(self.ciphertext)})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "key_version": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedCredentials":
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            key_version=data.get("key_version", 1),
        )


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


class CredentialVault:
    """AES-256-GCM encryption for ERP credentials.

    Security properties:
    - Confidentiality: AES-256 encryption
    - Integrity: GCM authentication tag (any modified byte fails decryption)
    - Uniqueness: Random 96-bit nonce per encryption
    - Binding: the connection id is authenticated data, so a blob copied onto
      another connection does not decrypt

    Usage:
        # Generate and store key securely (e.g., env var, KMS)
        key = generate_encryption_key()

        vault = CredentialVault(key)
        sealed = vault.seal_credentials(credentials, connection_id="conn-1")

        # Decrypt only when building a client
        credentials = vault.open_credentials(sealed, ProviderKind.NETSUITE, "conn-1")
    """

    def __init__(self, encryption_key: str, key_version: int = 1):
        """Initialize with base64-encoded encryption key.

        Args:
            encryption_key: Base64-encoded 32-byte key (from generate_encryption_key())
            key_version: Version tag recorded on everything this vault seals

        Raises:
            ConfigurationError: If the key is not base64 for exactly 32 bytes
        """
        if not encryption_key:
            raise ConfigurationError("ERP_ENCRYPTION_KEY is not set")
        try:
            key = base64.b64decode(encryption_key, validate=True)
        except ValueError:
            raise ConfigurationError("Invalid encryption key: not valid base64") from None
        if len(key) != KEY_SIZE:
            raise ConfigurationError(f"Invalid encryption key: must be {KEY_SIZE} bytes, got {len(key)}")

        self._aesgcm = AESGCM(key)
        self.key_version = key_version

    def __repr__(self) -> str:
        return f"CredentialVault(key_version={self.key_version})"

    # =========================================================================
    # Raw Encryption
    # =========================================================================

    def encrypt(
        self,
        plaintext: bytes,
        associated_data: Optional[bytes] = None,
    ) -> Tuple[bytes, bytes]:
        """Encrypt bytes.

        Args:
            plaintext: Data to encrypt
            associated_data: Optional data authenticated but not encrypted

        Returns:
            (ciphertext including tag, nonce)
        """
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, bytes(plaintext), associated_data)
        return ciphertext, nonce

    def decrypt(
        self,
        ciphertext: bytes,
        nonce: bytes,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """Decrypt and verify bytes.

        Raises:
            DecryptionError: Tag mismatch (tampered data, wrong key or wrong
                associated data) or malformed nonce. Never retried.
        """
        if len(nonce) != NONCE_SIZE:
            raise DecryptionError(f"Invalid nonce length: {len(nonce)}")
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag:
            raise DecryptionError(
                "Credential decryption failed: authentication tag mismatch"
            ) from None

    # =========================================================================
    # Credentials
    # =========================================================================

    def seal_credentials(self, credentials: Credentials, connection_id: str) -> EncryptedCredentials:
        """Encrypt validated credentials for one connection.

        The canonical plaintext is zeroed once encrypted.
        """
        plaintext = canonical_credentials_json(credentials)
        try:
            ciphertext, nonce = self.encrypt(plaintext, connection_id.encode("utf-8"))
        finally:
            _zero(plaintext)

        return EncryptedCredentials(
            ciphertext=base64.b64encode(ciphertext).decode("utf-8"),
            nonce=base64.b64encode(nonce).decode("utf-8"),
            key_version=self.key_version,
        )

    def open_credentials(
        self,
        sealed: EncryptedCredentials,
        provider: ProviderKind,
        connection_id: str,
    ) -> Credentials:
        """Decrypt and validate credentials for one connection.

        Raises:
            DecryptionError: Tampered blob, wrong key, wrong connection, or a
                plaintext that no longer parses as the provider's credentials
        """
        try:
            ciphertext = base64.b64decode(sealed.ciphertext, validate=True)
            nonce = base64.b64decode(sealed.nonce, validate=True)
        except ValueError:
            raise DecryptionError(
                "Stored credentials are not valid base64",
                connection_id=connection_id,
            ) from None

        try:
            plaintext = bytearray(self.decrypt(ciphertext, nonce, connection_id.encode("utf-8")))
        except DecryptionError as e:
            raise e.with_context(provider=ProviderKind(provider).value, connection_id=connection_id)

        try:
            data = json.loads(plaintext.decode("utf-8"))
            return validate_credentials(provider, data)
        except (ValueError, ConfigurationError):
            raise DecryptionError(
                "Decrypted credentials are malformed",
                provider=ProviderKind(provider).value,
                connection_id=connection_id,
            ) from None
        finally:
            _zero(plaintext)
