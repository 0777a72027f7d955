"""
Credential Vault and Credential Model Tests

1. Sealed credentials round-trip and never contain plaintext secrets
2. Any modified byte, wrong key or wrong connection fails with DecryptionError
3. Invalid master keys are rejected up front
4. Credential validation names missing fields without echoing values
"""

import base64

import pytest

from connectors.credentials import (
    NetSuiteCredentials,
    SapCredentials,
    canonical_credentials_json,
    validate_credentials,
)
from connectors.erp_base import ProviderKind
from connectors.errors import ConfigurationError, DecryptionError
from core.security.encryption import (
    CredentialVault,
    EncryptedCredentials,
    generate_encryption_key,
)
from conftest import NETSUITE_CREDENTIALS, SAP_CREDENTIALS


def _flip_byte(encoded: str, index: int) -> str:
    raw = bytearray(base64.b64decode(encoded))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("utf-8")


class TestCredentialVault:

    def test_round_trip(self, vault):
        credentials = NetSuiteCredentials(**NETSUITE_CREDENTIALS)
        sealed = vault.seal_credentials(credentials, "conn-1")

        opened = vault.open_credentials(sealed, ProviderKind.NETSUITE, "conn-1")
        assert opened == credentials
        assert opened.token_secret.get_secret_value() == NETSUITE_CREDENTIALS["token_secret"]

    def test_ciphertext_hides_secrets(self, vault):
        sealed = vault.seal_credentials(SapCredentials(**SAP_CREDENTIALS), "conn-1")
        raw = base64.b64decode(sealed.ciphertext)
        assert SAP_CREDENTIALS["client_secret"].encode() not in raw
        assert SAP_CREDENTIALS["client_secret"] not in repr(sealed)
        assert sealed.key_version == 1

    def test_fresh_nonce_per_seal(self, vault):
        credentials = SapCredentials(**SAP_CREDENTIALS)
        first = vault.seal_credentials(credentials, "conn-1")
        second = vault.seal_credentials(credentials, "conn-1")
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_every_modified_byte_detected(self, vault):
        sealed = vault.seal_credentials(NetSuiteCredentials(**NETSUITE_CREDENTIALS), "conn-1")
        length = len(base64.b64decode(sealed.ciphertext))

        for index in range(length):
            tampered = sealed.model_copy(update={"ciphertext": _flip_byte(sealed.ciphertext, index)})
            with pytest.raises(DecryptionError):
                vault.open_credentials(tampered, ProviderKind.NETSUITE, "conn-1")

    def test_modified_nonce_detected(self, vault):
        sealed = vault.seal_credentials(NetSuiteCredentials(**NETSUITE_CREDENTIALS), "conn-1")
        tampered = sealed.model_copy(update={"nonce": _flip_byte(sealed.nonce, 0)})
        with pytest.raises(DecryptionError):
            vault.open_credentials(tampered, ProviderKind.NETSUITE, "conn-1")

    def test_bound_to_connection(self, vault):
        sealed = vault.seal_credentials(NetSuiteCredentials(**NETSUITE_CREDENTIALS), "conn-1")
        with pytest.raises(DecryptionError) as exc_info:
            vault.open_credentials(sealed, ProviderKind.NETSUITE, "conn-2")
        assert exc_info.value.connection_id == "conn-2"
        assert exc_info.value.provider == "netsuite"

    def test_wrong_key(self, vault):
        sealed = vault.seal_credentials(NetSuiteCredentials(**NETSUITE_CREDENTIALS), "conn-1")
        other = CredentialVault(generate_encryption_key())
        with pytest.raises(DecryptionError):
            other.open_credentials(sealed, ProviderKind.NETSUITE, "conn-1")

    def test_wrong_provider_is_malformed(self, vault):
        sealed = vault.seal_credentials(NetSuiteCredentials(**NETSUITE_CREDENTIALS), "conn-1")
        with pytest.raises(DecryptionError):
            vault.open_credentials(sealed, ProviderKind.SAP_S4HANA, "conn-1")

    def test_invalid_base64_blob(self, vault):
        sealed = EncryptedCredentials(ciphertext="not base64!", nonce="AAAA")
        with pytest.raises(DecryptionError):
            vault.open_credentials(sealed, ProviderKind.NETSUITE, "conn-1")

    def test_raw_encrypt_with_associated_data(self, vault):
        ciphertext, nonce = vault.encrypt(b"payload", b"aad")
        assert len(nonce) == 12
        assert vault.decrypt(ciphertext, nonce, b"aad") == b"payload"
        with pytest.raises(DecryptionError):
            vault.decrypt(ciphertext, nonce, b"other")

    @pytest.mark.parametrize("key", [
        "",
        "not-base64!!",
        base64.b64encode(b"k" * 16).decode(),
    ])
    def test_invalid_master_key(self, key):
        with pytest.raises(ConfigurationError):
            CredentialVault(key)

    def test_serialized_form(self, vault):
        sealed = vault.seal_credentials(SapCredentials(**SAP_CREDENTIALS), "conn-1")
        assert EncryptedCredentials.from_dict(sealed.to_dict()) == sealed


class TestCredentialModels:

    def test_missing_fields_named_not_echoed(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_credentials("netsuite", {"account_id": "1234567", "consumer_key": "ck-visible-value"})

        message = str(exc_info.value)
        assert "consumer_secret, token_id, token_secret" in message
        assert "ck-visible-value" not in message
        assert exc_info.value.provider == "netsuite"

    def test_blank_secret_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_credentials("netsuite", {**NETSUITE_CREDENTIALS, "token_secret": "   "})
        assert "token_secret" in exc_info.value.message

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_credentials("sap_s4hana", {**SAP_CREDENTIALS, "password": "hunter2"})
        assert "password" in exc_info.value.message
        assert "hunter2" not in exc_info.value.message

    def test_sap_plant_and_company_code_accepted(self):
        credentials = validate_credentials(
            "sap_s4hana", {**SAP_CREDENTIALS, "plant": "1010", "company_code": "1000"}
        )
        assert credentials.plant == "1010"
        assert credentials.company_code == "1000"
        assert SapCredentials(**SAP_CREDENTIALS).plant is None

    def test_sap_urls_must_be_absolute(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_credentials("sap_s4hana", {**SAP_CREDENTIALS, "token_endpoint": "/oauth/token"})
        assert "token_endpoint" in exc_info.value.message

    def test_wrong_model_for_provider(self):
        with pytest.raises(ConfigurationError):
            validate_credentials("netsuite", SapCredentials(**SAP_CREDENTIALS))

    def test_netsuite_defaults(self):
        credentials = NetSuiteCredentials(**NETSUITE_CREDENTIALS)
        assert credentials.oauth_realm == "1234567_SB1"
        assert credentials.base_url == (
            "https://1234567-sb1.suitetalk.api.netsuite.com/services/rest/record/v1"
        )
        assert NETSUITE_CREDENTIALS["consumer_secret"] not in repr(credentials)

    def test_canonical_json_sorted_and_compact(self):
        credentials = SapCredentials(**SAP_CREDENTIALS)
        text = canonical_credentials_json(credentials).decode("utf-8")
        assert text.startswith('{"api_base_url":"https://s4.example.com","client_id":')
        assert " " not in text
        assert "scope" not in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
