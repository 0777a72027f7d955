"""Decrypted credential models.

These models only ever exist in memory: they are built from user input (then
sealed by the vault) or opened from the vault just long enough to construct a
client. Secret fields are SecretStr so repr() and logging never show them.
"""

import json
from typing import Any, Dict, Optional, Type, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from connectors.errors import ConfigurationError
from connectors.erp_base import ProviderKind


NETSUITE_REST_URL_TEMPLATE = "https://{account}.suitetalk.api.netsuite.com/services/rest/record/v1"


def _plain(value: Any) -> str:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value or ""


def _require_http_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an absolute http(s) URL")
    return value.rstrip("/")


class NetSuiteCredentials(BaseModel):
    """NetSuite Token-Based Authentication (OAuth 1.0a) credentials."""
    account_id: str = Field(..., description="NetSuite account id, e.g. 1234567 or 1234567_SB1")
    consumer_key: SecretStr
    consumer_secret: SecretStr
    token_id: SecretStr
    token_secret: SecretStr
    realm: Optional[str] = Field(default=None, description="OAuth realm (defaults to account_id)")
    rest_base_url: Optional[str] = Field(default=None, description="Override of the REST record base URL")

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("account_id", "consumer_key", "consumer_secret", "token_id", "token_secret")
    @classmethod
    def _not_blank(cls, value):
        if not _plain(value).strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("rest_base_url")
    @classmethod
    def _valid_url(cls, value):
        return _require_http_url(value) if value else value

    @property
    def oauth_realm(self) -> str:
        return self.realm or self.account_id

    @property
    def base_url(self) -> str:
        if self.rest_base_url:
            return self.rest_base_url
        account = self.account_id.strip().lower().replace("_", "-")
        return NETSUITE_REST_URL_TEMPLATE.format(account=account)


class SapCredentials(BaseModel):
    """SAP S/4HANA OAuth 2.0 client-credentials configuration."""
    client_id: str
    client_secret: SecretStr
    token_endpoint: str = Field(..., description="OAuth 2.0 token endpoint URL")
    api_base_url: str = Field(..., description="S/4HANA host URL serving the OData APIs")
    scope: Optional[str] = None
    plant: Optional[str] = Field(default=None, description="Default plant for stock reads")
    company_code: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("client_id", "client_secret")
    @classmethod
    def _not_blank(cls, value):
        if not _plain(value).strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("token_endpoint", "api_base_url")
    @classmethod
    def _valid_url(cls, value):
        return _require_http_url(value)


Credentials = Union[NetSuiteCredentials, SapCredentials]

CREDENTIAL_MODELS: Dict[ProviderKind, Type[BaseModel]] = {
    ProviderKind.NETSUITE: NetSuiteCredentials,
    ProviderKind.SAP_S4HANA: SapCredentials,
}


def credentials_model(provider: ProviderKind) -> Type[BaseModel]:
    provider = ProviderKind(provider)
    return CREDENTIAL_MODELS[provider]


def validate_credentials(provider: ProviderKind, data: Union[Dict[str, Any], BaseModel]) -> Credentials:
    """Validate raw credential input for a provider.

    Args:
        provider: Provider the credentials are for
        data: Raw mapping (e.g. request body) or an already-built model

    Returns:
        The provider's credential model

    Raises:
        ConfigurationError: Naming every missing/invalid field. Field values are
            never included in the message.
    """
    provider = ProviderKind(provider)
    model = credentials_model(provider)

    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise ConfigurationError(
            f"Credentials of type {type(data).__name__} do not match provider {provider.value}",
            provider=provider.value,
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) or "<root>" for err in e.errors()})
        raise ConfigurationError(
            f"Missing or invalid credential fields: {', '.join(fields)}",
            provider=provider.value,
        ) from None


def credentials_to_dict(credentials: BaseModel) -> Dict[str, Any]:
    """Plain dict with secrets revealed. Only for sealing into the vault."""
    return {
        name: _plain(value) if isinstance(value, SecretStr) else value
        for name, value in credentials
        if value is not None
    }


def canonical_credentials_json(credentials: BaseModel) -> bytearray:
    """Canonical serialization: sorted keys, compact separators, UTF-8."""
    text = json.dumps(credentials_to_dict(credentials), sort_keys=True, separators=(",", ":"))
    return bytearray(text.encode("utf-8"))
