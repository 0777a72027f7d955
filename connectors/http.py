"""Shared HTTP plumbing for ERP clients.

Low-level helpers used by every provider client:
- perform_request: one HTTP exchange, body read inside the response context
- send_with_retry: bounded exponential backoff around a request factory

The request factory is called once per attempt so that per-attempt state
(OAuth 1.0a nonce/timestamp, current bearer token) is rebuilt every time.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import aiohttp

from connectors.errors import ErpApiError, TransientNetworkError
from core.observability.logging import log_erp_request
from core.observability.metrics import record_retry
from core.observability.sanitize import sanitize_for_log

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts counts every attempt including the first, so the default
    budget is one call plus two retries.
    """
    max_attempts: int = 3
    base_delay: float = 0.5  # seconds
    backoff_factor: float = 2.0
    max_delay: float = 8.0  # seconds
    jitter: float = 0.1  # fraction of the delay added at random
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


@dataclass
class HttpResult:
    """A fully-read HTTP response."""
    status: int
    headers: Mapping[str, str]
    text: str
    url: str = ""
    cookies: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Parse the body as JSON ({} for an empty body)."""
        if not self.text:
            return {}
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise ErpApiError(
                f"Invalid JSON in ERP response: {sanitize_for_log(self.text)}",
                status_code=self.status,
                response_body=sanitize_for_log(self.text),
            ) from e


RequestFactory = Callable[[], Awaitable[HttpResult]]


async def perform_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    **kwargs,
) -> HttpResult:
    """Issue one request and read the whole body before the connection is released."""
    start = time.perf_counter()
    async with session.request(method, url, **kwargs) as response:
        text = await response.text()
        cookies = {name: morsel.value for name, morsel in response.cookies.items()}
        result = HttpResult(
            status=response.status,
            headers=response.headers,
            text=text,
            url=str(response.url),
            cookies=cookies,
        )
    log_erp_request(method, url, result.status, (time.perf_counter() - start) * 1000)
    return result


def _retry_after_seconds(result: HttpResult) -> Optional[float]:
    value = result.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


async def send_with_retry(
    perform: RequestFactory,
    retry_config: RetryConfig,
    idempotent: bool = True,
    provider: Optional[str] = None,
    connection_id: Optional[str] = None,
    description: str = "request",
) -> HttpResult:
    """Run ``perform`` until it yields a non-retryable response or the budget is spent.

    Retry rules:
    - Connection could not be established: always retried (nothing was sent)
    - Timeout / other transport error: retried only when ``idempotent``
    - Status in retry_on_status (5xx, 429): retried only when ``idempotent``

    asyncio.CancelledError is never caught; cancelling the caller aborts both
    in-flight attempts and backoff sleeps.

    Args:
        perform: Zero-arg coroutine factory issuing one attempt
        retry_config: Attempt budget and backoff parameters
        idempotent: Whether the request may be replayed after it was sent
        provider: Provider kind for error context
        connection_id: Connection id for error context
        description: Short label for log lines (e.g. "GET inventoryItem")

    Returns:
        The first response whose status is not retryable

    Raises:
        TransientNetworkError: Budget exhausted, or a non-idempotent request
            failed in a way that may have reached the ERP
    """
    max_attempts = max(1, retry_config.max_attempts)
    attempt = 0

    while True:
        attempt += 1
        retryable = False
        status_code: Optional[int] = None
        retry_after: Optional[float] = None

        try:
            result = await perform()
        except aiohttp.ClientConnectorError as e:
            retryable = True
            reason = f"connection failed: {type(e).__name__}: {e}"
        except asyncio.TimeoutError:
            retryable = idempotent
            reason = "request timed out"
        except aiohttp.ClientError as e:
            retryable = idempotent
            reason = f"transport error: {type(e).__name__}: {e}"
        else:
            if result.status not in retry_config.retry_on_status:
                return result
            retryable = idempotent
            status_code = result.status
            reason = f"HTTP {result.status}: {sanitize_for_log(result.text)}"
            if result.status == 429:
                retry_after = _retry_after_seconds(result)

        if not retryable or attempt >= max_attempts:
            raise TransientNetworkError(
                f"{description} failed after {attempt} attempt(s): {sanitize_for_log(reason)}",
                provider=provider,
                connection_id=connection_id,
                status_code=status_code,
                attempts=attempt,
            )

        delay = retry_config.get_delay(attempt - 1)
        if retry_after is not None:
            delay = min(max(delay, retry_after), retry_config.max_delay)

        logger.warning(
            f"{description} failed ({sanitize_for_log(reason, 80)}), "
            f"retrying in {delay:.2f}s (attempt {attempt}/{max_attempts})"
        )
        if provider:
            record_retry(provider)
        await asyncio.sleep(delay)
