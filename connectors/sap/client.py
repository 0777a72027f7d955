"""SAP S/4HANA OData client.

Bearer-token client for the S/4HANA OData APIs (``/sap/opu/odata/sap/<service>``).

Reads only need a bearer token. Mutating requests (POST/PATCH/PUT/DELETE)
additionally need an anti-CSRF token plus the session cookies it was issued
with, obtained by a ``GET <service root>`` carrying ``X-CSRF-Token: Fetch``.

Recovery rules:
- 401: invalidate the token, force one refresh, retry once; second 401 is an
  AuthenticationError
- 403 with ``X-CSRF-Token: Required``: drop the CSRF state, refetch, retry
  once; second rejection is a CsrfError
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from connectors.credentials import SapCredentials
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
    ConfigurationError,
    CsrfError,
    ErpApiError,
    ErpError,
    RecordNotFoundError,
    TransientNetworkError,
)
from connectors.http import HttpResult, RetryConfig, perform_request, send_with_retry
from connectors.sap.auth import CachedToken, SapTokenProvider
from core.observability.metrics import get_metrics, record_request
from core.observability.sanitize import sanitize_for_log

logger = logging.getLogger(__name__)

ODATA_SERVICE_PATH = "/sap/opu/odata/sap"

_ENTITY_KEY = re.compile(r"\(([^()]*)\)/?$")


@dataclass(frozen=True)
class CachedCsrfState:
    """Anti-CSRF token and the session cookies it is bound to."""
    token: str
    cookies: Dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"CachedCsrfState(cookies={sorted(self.cookies)!r})"

    def headers(self) -> Dict[str, str]:
        headers = {"X-CSRF-Token": self.token}
        if self.cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in self.cookies.items())
        return headers


# =============================================================================
# OData Helpers
# =============================================================================

def parse_odata_collection(body: Any) -> Tuple[List[Dict[str, Any]], Optional[str], Optional[int]]:
    """Extract (records, next link, total count) from an OData v2 or v4 payload.

    v2: {"d": {"results": [...], "__next": "...", "__count": "42"}}
    v4: {"value": [...], "@odata.nextLink": "...", "@odata.count": 42}
    """
    if not isinstance(body, dict):
        raise ErpApiError("Unexpected OData payload", provider=ProviderKind.SAP_S4HANA.value)

    if "d" in body:
        data = body["d"]
        if isinstance(data, list):
            records, next_link, count = data, None, None
        elif isinstance(data, dict):
            records = data.get("results", [])
            next_link = data.get("__next")
            count = data.get("__count")
        else:
            raise ErpApiError("Unexpected OData v2 payload", provider=ProviderKind.SAP_S4HANA.value)
    elif "value" in body:
        records = body["value"]
        next_link = body.get("@odata.nextLink")
        count = body.get("@odata.count")
    else:
        raise ErpApiError("OData payload has neither 'd' nor 'value'", provider=ProviderKind.SAP_S4HANA.value)

    cleaned = [
        {k: v for k, v in record.items() if k != "__metadata"} if isinstance(record, dict) else record
        for record in records
    ]

    total: Optional[int] = None
    if count is not None:
        try:
            total = int(count)
        except (TypeError, ValueError):
            total = None

    return cleaned, next_link, total


def odata_error_message(text: str) -> str:
    """Best-effort extraction of the message from an OData error body."""
    try:
        body = json.loads(text)
    except ValueError:
        return sanitize_for_log(text)

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, dict):
            message = message.get("value")
        if message:
            code = error.get("code")
            return sanitize_for_log(f"{code}: {message}" if code else str(message))
    return sanitize_for_log(text)


def format_entity_key(record_id: str) -> str:
    """OData key predicate: ``'MAT-1'`` for a plain id, passthrough for
    composite keys like ``Material='1',Plant='1010'``."""
    if "=" in record_id or (record_id.startswith("'") and record_id.endswith("'")):
        return f"({record_id})"
    escaped = record_id.replace("'", "''")
    return f"('{escaped}')"


# =============================================================================
# Client
# =============================================================================

@register_client(ProviderKind.SAP_S4HANA)
class SapClient(ErpClient):
    """Client for SAP S/4HANA OData services.

    record_type is "<service>/<entity set>", e.g.
    "API_MATERIAL_STOCK_SRV/A_MatlStkInAcctMod".

    Example:
        async with SapClient(credentials) as client:
            page = await client.fetch_records(RecordQuery(filter="Plant eq '1010'"))
    """

    DEFAULT_RECORD_TYPE = "API_MATERIAL_STOCK_SRV/A_MatlStkInAcctMod"
    HEALTH_CHECK_SERVICE = "API_MATERIAL_STOCK_SRV"

    def __init__(
        self,
        credentials: SapCredentials,
        connection_id: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        token_expiry_margin_seconds: float = 60.0,
    ):
        super().__init__(
            connection_id=connection_id,
            retry_config=retry_config,
            timeout_seconds=timeout_seconds,
            session=session,
        )
        self.api_base_url = credentials.api_base_url
        self.default_plant = credentials.plant
        self.company_code = credentials.company_code
        if "/sap/opu/odata" in self.api_base_url:
            self.odata_root = self.api_base_url
        else:
            self.odata_root = self.api_base_url + ODATA_SERVICE_PATH

        self.tokens = SapTokenProvider(
            credentials,
            self._get_session,
            self.retry_config,
            self.timeout,
            expiry_margin_seconds=token_expiry_margin_seconds,
            connection_id=connection_id,
        )
        self._csrf: Optional[CachedCsrfState] = None
        self._csrf_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"SapClient(api_base_url={self.api_base_url!r}, connection_id={self.connection_id!r})"

    def _new_session(self) -> aiohttp.ClientSession:
        # Session cookies are tracked with the CSRF token, not in a shared jar
        return aiohttp.ClientSession(timeout=self.timeout, cookie_jar=aiohttp.DummyCookieJar())

    @property
    def csrf_state(self) -> Optional[CachedCsrfState]:
        return self._csrf

    # =========================================================================
    # Operations
    # =========================================================================

    @client_operation
    async def health_check(self) -> HealthReport:
        """Obtain a token, then GET a service's $metadata document."""
        url = f"{self.odata_root}/{self.HEALTH_CHECK_SERVICE}/$metadata"
        result = await self._tracked(
            self._send_authorized("GET", url, extra_headers={"Accept": "application/xml"})
        )
        return HealthReport(provider=self.provider, endpoint=url, status_code=result.status)

    @client_operation
    async def fetch_records(self, query: RecordQuery) -> RecordPage:
        """Read one page of an entity set.

        Without a record type or filter, material stock is read for the
        connection's default plant when one is configured.
        """
        _, url = self._entity_url(query.record_type or self.DEFAULT_RECORD_TYPE)
        odata_filter = query.filter
        if odata_filter is None and query.record_type is None and self.default_plant:
            plant = self.default_plant.replace("'", "''")
            odata_filter = f"Plant eq '{plant}'"
        params: Dict[str, str] = {
            "$top": str(query.limit),
            "$skip": str(query.offset),
            "$format": "json",
        }
        if odata_filter:
            params["$filter"] = odata_filter
        if query.fields:
            params["$select"] = ",".join(query.fields)

        result = await self._tracked(self._send_authorized("GET", url, params=params))
        records, next_link, total = parse_odata_collection(result.json())

        if next_link:
            has_more = True
        elif total is not None:
            has_more = query.offset + len(records) < total
        else:
            has_more = len(records) >= query.limit

        return RecordPage(records=records, has_more=has_more, offset=query.offset, total=total)

    @client_operation
    async def push_record(self, payload: RecordPayload) -> PushResult:
        """Create (POST to the entity set) or update (PATCH the entity)."""
        service_root, url = self._entity_url(payload.record_type, payload.record_id)
        method = "PATCH" if payload.is_update else "POST"

        result = await self._tracked(self._send_mutating(method, url, service_root, payload.data))

        record_id = payload.record_id
        if record_id is None:
            location = result.headers.get("Location", "")
            match = _ENTITY_KEY.search(location)
            if match:
                record_id = match.group(1).strip("'")
        return PushResult(record_id=record_id, status_code=result.status)

    # =========================================================================
    # URLs
    # =========================================================================

    def _entity_url(self, record_type: str, record_id: Optional[str] = None) -> Tuple[str, str]:
        service, _, entity_set = record_type.strip("/").partition("/")
        if not service or not entity_set:
            raise ConfigurationError(
                f"SAP record type must be '<service>/<entity set>', got {sanitize_for_log(record_type)!r}",
                provider=self.provider.value,
                connection_id=self.connection_id,
            )
        service_root = f"{self.odata_root}/{quote(service, safe='')}"
        url = f"{service_root}/{quote(entity_set, safe='')}"
        if record_id:
            url += quote(format_entity_key(record_id), safe="()'=,")
        return service_root, url

    # =========================================================================
    # Authorized Requests
    # =========================================================================

    async def _tracked(self, coro):
        try:
            result = await coro
        except ErpError:
            record_request(self.provider.value, succeeded=False)
            raise
        record_request(self.provider.value, succeeded=True)
        return result

    async def _send_once(
        self,
        token: CachedToken,
        method: str,
        url: str,
        params: Optional[Dict[str, str]],
        json_body: Optional[Dict[str, Any]],
        extra_headers: Optional[Dict[str, str]],
        idempotent: bool,
    ) -> HttpResult:
        session = await self._get_session()

        async def attempt() -> HttpResult:
            headers = {"Accept": "application/json"}
            headers.update(extra_headers or {})
            headers["Authorization"] = token.authorization_header
            kwargs: Dict[str, Any] = {"headers": headers, "timeout": self.timeout}
            if params:
                kwargs["params"] = params
            if json_body is not None:
                kwargs["json"] = json_body
            return await perform_request(session, method, url, **kwargs)

        return await send_with_retry(
            attempt,
            self.retry_config,
            idempotent=idempotent,
            provider=self.provider.value,
            connection_id=self.connection_id,
            description=f"SAP {method} {url.rsplit('/', 1)[-1]}",
        )

    async def _send_authorized(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        idempotent: bool = True,
        raise_for_status: bool = True,
    ) -> HttpResult:
        """Send with a bearer token; one forced refresh on 401."""
        token = await self.tokens.get_valid_token()
        result = await self._send_once(token, method, url, params, json_body, extra_headers, idempotent)

        if result.status == 401:
            logger.warning("SAP rejected bearer token (401), forcing one refresh")
            self.tokens.invalidate(token)
            token = await self.tokens.get_valid_token()
            result = await self._send_once(token, method, url, params, json_body, extra_headers, idempotent)
            if result.status == 401:
                raise AuthenticationError(
                    f"SAP rejected a freshly issued token: {odata_error_message(result.text)}",
                    provider=self.provider.value,
                    connection_id=self.connection_id,
                    status_code=401,
                )

        if raise_for_status:
            self._raise_for_status(result)
        return result

    # =========================================================================
    # CSRF
    # =========================================================================

    @staticmethod
    def _is_csrf_rejection(result: HttpResult) -> bool:
        return result.status == 403 and result.headers.get("X-CSRF-Token", "").lower() == "required"

    def _invalidate_csrf(self, state: CachedCsrfState) -> None:
        if self._csrf is state:
            self._csrf = None

    async def _get_csrf_state(
        self,
        service_root: str,
        stale: Optional[CachedCsrfState] = None,
    ) -> CachedCsrfState:
        state = self._csrf
        if state is not None and state is not stale:
            return state

        async with self._csrf_lock:
            state = self._csrf
            if state is not None and state is not stale:
                return state

            result = await self._send_authorized(
                "GET",
                service_root,
                extra_headers={"X-CSRF-Token": "Fetch"},
            )
            token = result.headers.get("X-CSRF-Token", "")
            if not token or token.lower() == "required":
                raise CsrfError(
                    "SAP did not issue a CSRF token",
                    provider=self.provider.value,
                    connection_id=self.connection_id,
                    status_code=result.status,
                )

            state = CachedCsrfState(token=token, cookies=dict(result.cookies))
            self._csrf = state
            get_metrics().record_csrf_fetch()
            logger.info("Fetched SAP CSRF token")
            return state

    async def _send_mutating(
        self,
        method: str,
        url: str,
        service_root: str,
        json_body: Optional[Dict[str, Any]],
    ) -> HttpResult:
        """Send a write with CSRF token and cookies; one refetch on rejection."""
        csrf = await self._get_csrf_state(service_root)
        result = await self._send_with_csrf(method, url, json_body, csrf)

        if self._is_csrf_rejection(result):
            logger.info("SAP rejected CSRF token, refetching once")
            self._reject_csrf(csrf)
            csrf = await self._get_csrf_state(service_root, stale=csrf)
            result = await self._send_with_csrf(method, url, json_body, csrf)
            if self._is_csrf_rejection(result):
                self._reject_csrf(csrf)
                raise CsrfError(
                    "SAP rejected the CSRF token after a refetch",
                    provider=self.provider.value,
                    connection_id=self.connection_id,
                    status_code=403,
                )

        self._raise_for_status(result)
        return result

    async def _send_with_csrf(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]],
        csrf: CachedCsrfState,
    ) -> HttpResult:
        return await self._send_authorized(
            method,
            url,
            json_body=json_body,
            extra_headers=csrf.headers(),
            idempotent=False,
            raise_for_status=False,
        )

    def _reject_csrf(self, state: CachedCsrfState) -> None:
        get_metrics().record_csrf_rejection()
        self._invalidate_csrf(state)

    # =========================================================================
    # Status Mapping
    # =========================================================================

    def _raise_for_status(self, result: HttpResult) -> None:
        if result.ok:
            return

        message = odata_error_message(result.text)
        context = {
            "provider": self.provider.value,
            "connection_id": self.connection_id,
            "status_code": result.status,
        }

        if result.status in (401, 403):
            raise AuthenticationError(f"SAP authorization failed: {message}", **context)
        if result.status == 404:
            raise RecordNotFoundError(f"SAP entity not found: {message}", **context)
        if result.status == 429 or result.status >= 500:
            raise TransientNetworkError(f"SAP unavailable: {message}", **context)
        raise ErpApiError(f"SAP API error {result.status}: {message}", response_body=message, **context)
