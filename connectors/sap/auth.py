"""SAP S/4HANA OAuth 2.0 token provider.

Handles the client-credentials grant (HTTP Basic client authentication) and
caches the bearer token for every caller of one client.

Concurrency:
- Fast path: plain read of the cached token when it expires more than
  ``expiry_margin_seconds`` from now
- Slow path: one refresh task per provider; every caller that finds the token
  stale while it runs awaits that same task and gets its token or its error
- The refresh task is cancelled once every caller waiting on it is cancelled
- The cached token is replaced only with a fully parsed response, so a
  cancelled refresh leaves the previous token in place
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

import aiohttp

from connectors.credentials import SapCredentials
from connectors.errors import AuthenticationError, ErpApiError
from connectors.http import HttpResult, RetryConfig, perform_request, send_with_retry
from core.observability.metrics import get_metrics
from core.observability.sanitize import sanitize_for_log

logger = logging.getLogger(__name__)

PROVIDER = "sap_s4hana"

DEFAULT_EXPIRES_IN = 3600
_EXPIRED = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachedToken:
    """OAuth2 access token with expiration tracking."""
    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"CachedToken(token_type={self.token_type!r}, expires_at={self.expires_at.isoformat()!r})"

    def expires_within(self, margin_seconds: float) -> bool:
        """True if the token expires less than ``margin_seconds`` from now."""
        return _utcnow() + timedelta(seconds=margin_seconds) >= self.expires_at

    @property
    def authorization_header(self) -> str:
        """Get the Authorization header value."""
        token_type = "Bearer" if self.token_type.lower() == "bearer" else self.token_type
        return f"{token_type} {self.access_token}"


@dataclass
class _Refresh:
    """The grant in progress and how many callers await it."""
    task: "asyncio.Future[CachedToken]"
    waiters: int = 0


class SapTokenProvider:
    """Bearer token cache with single-flight refresh.

    Usage:
        tokens = SapTokenProvider(credentials, client._get_session, RetryConfig(), timeout)
        token = await tokens.get_valid_token()
        headers = {"Authorization": token.authorization_header}

        # after a 401 with that token:
        tokens.invalidate(token)
    """

    def __init__(
        self,
        credentials: SapCredentials,
        get_session: Callable[[], Awaitable[aiohttp.ClientSession]],
        retry_config: RetryConfig,
        timeout: aiohttp.ClientTimeout,
        expiry_margin_seconds: float = 60.0,
        connection_id: Optional[str] = None,
    ):
        self.token_endpoint = credentials.token_endpoint
        self.scope = credentials.scope
        self._client_auth = aiohttp.BasicAuth(
            credentials.client_id,
            credentials.client_secret.get_secret_value(),
        )
        self._get_session = get_session
        self.retry_config = retry_config
        self.timeout = timeout
        self.expiry_margin_seconds = expiry_margin_seconds
        self.connection_id = connection_id

        self._token: Optional[CachedToken] = None
        self._refresh: Optional[_Refresh] = None

    @property
    def current_token(self) -> Optional[CachedToken]:
        return self._token

    @property
    def refreshing(self) -> bool:
        return self._refresh is not None

    def _is_fresh(self, token: Optional[CachedToken]) -> bool:
        return token is not None and not token.expires_within(self.expiry_margin_seconds)

    async def get_valid_token(self) -> CachedToken:
        """Return a token valid for at least the expiry margin.

        At most one grant runs at a time; concurrent callers share its outcome,
        so a failing token endpoint is also asked only once.

        Raises:
            AuthenticationError: Credentials rejected by the token endpoint
            TransientNetworkError: Token endpoint unreachable after retries
        """
        token = self._token
        if self._is_fresh(token):
            return token

        flight = self._refresh
        if flight is None:
            flight = self._refresh = _Refresh(asyncio.ensure_future(self._run_refresh(token)))

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if not flight.task.done() and flight.waiters == 0:
                flight.task.cancel()
            if self._refresh is flight and (flight.task.done() or flight.waiters == 0):
                self._refresh = None

    async def _run_refresh(self, previous: Optional[CachedToken]) -> CachedToken:
        new_token = await self._obtain_token(previous)
        self._token = new_token
        return new_token

    def invalidate(self, token: CachedToken) -> bool:
        """Mark ``token`` as rejected if it is still the cached token.

        Compare-and-clear: callers that saw the same stale token after another
        caller already refreshed do nothing, so N concurrent 401s cause one
        refresh. The refresh token (if any) is kept for the next grant.

        Returns:
            True if the cached token was invalidated by this call
        """
        if self._token is token:
            self._token = replace(token, expires_at=_EXPIRED)
            logger.info("SAP access token invalidated after rejection")
            return True
        return False

    # =========================================================================
    # Grants
    # =========================================================================

    async def _obtain_token(self, previous: Optional[CachedToken]) -> CachedToken:
        metrics = get_metrics()
        if previous is not None and previous.refresh_token:
            try:
                token = await self._grant(
                    {"grant_type": "refresh_token", "refresh_token": previous.refresh_token},
                    previous_refresh_token=previous.refresh_token,
                )
                metrics.record_token_refresh(succeeded=True)
                return token
            except AuthenticationError:
                logger.info("SAP refresh token rejected, falling back to client credentials")

        data = {"grant_type": "client_credentials"}
        if self.scope:
            data["scope"] = self.scope
        try:
            token = await self._grant(data)
        except Exception:
            metrics.record_token_refresh(succeeded=False)
            raise
        metrics.record_token_refresh(succeeded=True)
        return token

    async def _grant(
        self,
        data: Dict[str, str],
        previous_refresh_token: Optional[str] = None,
    ) -> CachedToken:
        session = await self._get_session()

        async def attempt() -> HttpResult:
            return await perform_request(
                session,
                "POST",
                self.token_endpoint,
                data=data,
                auth=self._client_auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )

        result = await send_with_retry(
            attempt,
            self.retry_config,
            idempotent=True,
            provider=PROVIDER,
            connection_id=self.connection_id,
            description=f"SAP token request ({data['grant_type']})",
        )

        if result.status in (400, 401, 403):
            raise AuthenticationError(
                f"SAP token endpoint rejected client credentials: {sanitize_for_log(result.text)}",
                provider=PROVIDER,
                connection_id=self.connection_id,
                status_code=result.status,
            )
        if not result.ok:
            raise ErpApiError(
                f"SAP token endpoint error {result.status}: {sanitize_for_log(result.text)}",
                provider=PROVIDER,
                connection_id=self.connection_id,
                status_code=result.status,
                response_body=sanitize_for_log(result.text),
            )

        return self._parse_token(result, previous_refresh_token)

    def _parse_token(self, result: HttpResult, previous_refresh_token: Optional[str]) -> CachedToken:
        body = result.json()
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthenticationError(
                "SAP token response did not contain an access_token",
                provider=PROVIDER,
                connection_id=self.connection_id,
                status_code=result.status,
            )

        try:
            expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        token = CachedToken(
            access_token=access_token,
            expires_at=_utcnow() + timedelta(seconds=expires_in),
            token_type=body.get("token_type") or "Bearer",
            refresh_token=body.get("refresh_token") or previous_refresh_token,
        )
        logger.info(f"Obtained SAP access token (expires in {expires_in}s)")
        return token
