"""NetSuite REST Record API client.

Authenticates every request with OAuth 1.0a Token-Based Authentication. The
client keeps no mutable auth state: each attempt (including retries) gets a
fresh nonce, timestamp and signature.

Failure policy:
- 401/403: AuthenticationError, never retried (a bad signature stays bad)
- 404: RecordNotFoundError
- timeouts, connection errors, 429, 5xx: retried with backoff, then
  TransientNetworkError
- other 4xx: ErpApiError
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urlsplit

import aiohttp

from connectors.credentials import NetSuiteCredentials
from connectors.erp_base import (
    ErpClient,
    client_operation,
    HealthReport,
    ProviderKind,
    PushResult,
    RecordPage,
    RecordPayload,
    RecordQuery,
    register_client,
)
from connectors.errors import (
    AuthenticationError,
    ErpApiError,
    ErpError,
    RecordNotFoundError,
    TransientNetworkError,
)
from connectors.http import HttpResult, RetryConfig, perform_request, send_with_retry
from connectors.netsuite.signing import DEFAULT_SIGNATURE_METHOD, OAuth1Signer
from core.observability.metrics import record_request
from core.observability.sanitize import sanitize_for_log

logger = logging.getLogger(__name__)


@register_client(ProviderKind.NETSUITE)
class NetSuiteClient(ErpClient):
    """Client for the NetSuite REST Record API (``/services/rest/record/v1``).

    Example:
        async with NetSuiteClient(credentials) as client:
            page = await client.fetch_records(RecordQuery(limit=50))
            for item in page.records:
                print(item["id"])
    """

    DEFAULT_RECORD_TYPE = "inventoryItem"

    def __init__(
        self,
        credentials: NetSuiteCredentials,
        connection_id: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        signature_method: str = DEFAULT_SIGNATURE_METHOD,
    ):
        super().__init__(
            connection_id=connection_id,
            retry_config=retry_config,
            timeout_seconds=timeout_seconds,
            session=session,
        )
        self.account_id = credentials.account_id
        self.base_url = credentials.base_url
        self._signer = OAuth1Signer(
            consumer_key=credentials.consumer_key.get_secret_value(),
            consumer_secret=credentials.consumer_secret.get_secret_value(),
            token_id=credentials.token_id.get_secret_value(),
            token_secret=credentials.token_secret.get_secret_value(),
            realm=credentials.oauth_realm,
            signature_method=signature_method,
        )

    def __repr__(self) -> str:
        return f"NetSuiteClient(account_id={self.account_id!r}, connection_id={self.connection_id!r})"

    # =========================================================================
    # Operations
    # =========================================================================

    @client_operation
    async def health_check(self) -> HealthReport:
        """GET one inventory item: proves the signature is accepted."""
        url = self._record_url(self.DEFAULT_RECORD_TYPE)
        result = await self._request("GET", url, params={"limit": "1"})
        return HealthReport(
            provider=self.provider,
            endpoint=url,
            status_code=result.status,
        )

    @client_operation
    async def fetch_records(self, query: RecordQuery) -> RecordPage:
        record_type = query.record_type or self.DEFAULT_RECORD_TYPE
        params: Dict[str, str] = {
            "limit": str(query.limit),
            "offset": str(query.offset),
        }
        if query.filter:
            params["q"] = query.filter
        if query.fields:
            params["fields"] = ",".join(query.fields)

        result = await self._request("GET", self._record_url(record_type), params=params)
        body = result.json()
        if not isinstance(body, dict):
            raise ErpApiError(
                f"Unexpected NetSuite list response: {sanitize_for_log(result.text)}",
                provider=self.provider.value,
                connection_id=self.connection_id,
                status_code=result.status,
            )

        return RecordPage(
            records=body.get("items", []),
            has_more=bool(body.get("hasMore", False)),
            offset=int(body.get("offset", query.offset)),
            total=body.get("totalResults"),
        )

    @client_operation
    async def push_record(self, payload: RecordPayload) -> PushResult:
        """Create (POST) or update (PATCH) a record.

        NetSuite answers 204 with a Location header pointing at the record; the
        record id is taken from its last path segment.
        """
        if payload.is_update:
            url = self._record_url(payload.record_type, payload.record_id)
            result = await self._request("PATCH", url, json_body=payload.data, idempotent=False)
            return PushResult(record_id=payload.record_id, status_code=result.status)

        url = self._record_url(payload.record_type)
        result = await self._request("POST", url, json_body=payload.data, idempotent=False)
        return PushResult(record_id=self._created_record_id(result), status_code=result.status)

    # =========================================================================
    # HTTP
    # =========================================================================

    def _record_url(self, record_type: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/{quote(record_type, safe='')}"
        if record_id:
            url += f"/{quote(str(record_id), safe='')}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> HttpResult:
        """Sign and send a request, retrying per the failure policy."""
        session = await self._get_session()

        async def attempt() -> HttpResult:
            headers = {
                "Authorization": self._signer.authorization_header(method, url, params),
                "Accept": "application/json",
            }
            kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.timeout}
            if params:
                kwargs["params"] = params
            if json_body is not None:
                kwargs["json"] = json_body
            return await perform_request(session, method, url, **kwargs)

        path = urlsplit(url).path.rsplit("/", 2)
        description = f"NetSuite {method} {'/'.join(path[-2:])}"

        try:
            result = await send_with_retry(
                attempt,
                self.retry_config,
                idempotent=idempotent,
                provider=self.provider.value,
                connection_id=self.connection_id,
                description=description,
            )
            self._raise_for_status(result)
        except ErpError:
            record_request(self.provider.value, succeeded=False)
            raise

        record_request(self.provider.value, succeeded=True)
        return result

    def _raise_for_status(self, result: HttpResult) -> None:
        if result.ok:
            return

        body = sanitize_for_log(result.text)
        context = {
            "provider": self.provider.value,
            "connection_id": self.connection_id,
            "status_code": result.status,
        }

        if result.status in (401, 403):
            logger.warning(f"NetSuite rejected request signature ({result.status})")
            raise AuthenticationError(f"NetSuite authentication failed: {body}", **context)
        if result.status == 404:
            raise RecordNotFoundError(f"NetSuite record not found: {body}", **context)
        if result.status == 429 or result.status >= 500:
            raise TransientNetworkError(f"NetSuite unavailable: {body}", **context)
        raise ErpApiError(f"NetSuite API error {result.status}: {body}", response_body=body, **context)

    def _created_record_id(self, result: HttpResult) -> Optional[str]:
        location = result.headers.get("Location")
        if location:
            return urlsplit(location).path.rstrip("/").rsplit("/", 1)[-1] or None
        if result.text:
            body = result.json()
            if isinstance(body, dict) and body.get("id") is not None:
                return str(body["id"])
        return None
