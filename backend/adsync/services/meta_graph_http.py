"""Retrying HTTP layer for the Meta Graph API.

WHAT:
    `send_with_retry` wraps a single async transport call (normally
    `httpx.AsyncClient.send`) with exponential backoff, logs Meta's usage
    headers on every response, and turns non-2xx responses into typed
    exceptions.

WHY:
    - Meta answers bursts with 429/5xx that clear up within seconds.
    - Usage headers (x-app-usage, x-ad-account-usage, ...) are the only
      early warning before hard throttling, so every response is logged
      with them for external monitoring.
    - The retry is a plain higher-order function over the transport call,
      so the report client and tests can compose it with any sender.

RETRY POLICY:
    - Retriable statuses: 408, 409, 425, 429 and the whole 5xx family
    - Network errors (httpx.TransportError) are retriable too
    - Delay before retry n is base * 2 ** (n - 1): 0.5s, 1s, 2s, 4s, 8s
    - Up to 6 attempts; after that the last error is raised, never swallowed

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
    - https://developers.facebook.com/docs/graph-api/guides/error-handling
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


RETRIABLE_STATUS = frozenset({408, 409, 425, 429})

USAGE_HEADERS = (
    "x-app-usage",
    "x-ad-account-usage",
    "x-business-use-case-usage",
    "x-fb-trace-id",
    "x-ratelimit-type",
)

# Graph API error codes
AUTH_ERROR_CODES = frozenset({102, 190})
PERMISSION_ERROR_CODES = frozenset({10} | set(range(200, 300)))
RATE_LIMIT_ERROR_CODES = frozenset({4, 17, 32, 613, 80000, 80003, 80004})
UNKNOWN_OBJECT_SUBCODE = 33  # code 100: object does not exist or missing permissions

Sender = Callable[[httpx.Request], Awaitable[httpx.Response]]
Sleeper = Callable[[float], Awaitable[None]]


class MetaAdsClientError(Exception):
    """Base exception for Meta Graph API errors."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[int] = None,
        error_subcode: Optional[int] = None,
        trace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.trace_id = trace_id


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when authentication fails (401 / OAuth code 190)."""


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient or the object is unknown (403/404)."""


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when request is malformed (400)."""


class MetaAdsRateLimitError(MetaAdsClientError):
    """Raised when Meta keeps throttling after all retries."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 6
    base_delay: float = 0.5

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))


def is_retriable_status(status_code: int) -> bool:
    return status_code in RETRIABLE_STATUS or 500 <= status_code <= 599


def usage_headers(response: httpx.Response) -> Dict[str, str]:
    return {name: response.headers[name] for name in USAGE_HEADERS if name in response.headers}


def _log_response(response: httpx.Response, attempt: int, context: str) -> None:
    request = response.request
    level = logging.INFO if response.is_success else logging.WARNING
    logger.log(
        level,
        "[META_HTTP] %s %s -> %d (attempt=%d, context=%s) usage=%s",
        request.method,
        request.url.path,
        response.status_code,
        attempt,
        context,
        usage_headers(response) or "-",
    )


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def error_from_response(response: httpx.Response, context: str = "") -> MetaAdsClientError:
    """Translate a non-2xx Graph response into a specific exception.

    Uses the HTTP status first and Graph's `error.code` / `error_subcode`
    second, since Meta reports some permission problems as plain 400s.
    """
    error = _error_payload(response)
    status_code = response.status_code
    error_code = error.get("code")
    error_subcode = error.get("error_subcode")
    message = error.get("message") or response.reason_phrase or f"HTTP {status_code}"
    if context:
        message = f"{message} (while {context})"

    kwargs = dict(
        status_code=status_code,
        error_code=error_code,
        error_subcode=error_subcode,
        trace_id=error.get("fbtrace_id") or response.headers.get("x-fb-trace-id"),
    )

    if status_code == 401 or error_code in AUTH_ERROR_CODES:
        return MetaAdsAuthenticationError(message, **kwargs)
    if (
        status_code in (403, 404)
        or error_code in PERMISSION_ERROR_CODES
        or (error_code == 100 and error_subcode == UNKNOWN_OBJECT_SUBCODE)
    ):
        return MetaAdsPermissionError(message, **kwargs)
    if status_code == 429 or error_code in RATE_LIMIT_ERROR_CODES:
        return MetaAdsRateLimitError(message, **kwargs)
    if status_code == 400:
        return MetaAdsValidationError(message, **kwargs)
    return MetaAdsClientError(message, **kwargs)


async def send_with_retry(
    send: Sender,
    request: httpx.Request,
    *,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Sleeper = asyncio.sleep,
    context: str = "",
) -> httpx.Response:
    """Send `request` through `send`, retrying transient failures.

    Returns:
        The first 2xx response.

    Raises:
        httpx.TransportError: network failure on the final attempt.
        MetaAdsClientError: non-retriable non-2xx response, or the last
            retriable response once attempts are exhausted.
    """
    last_response: Optional[httpx.Response] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            response = await send(request)
        except httpx.TransportError as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "[META_HTTP] %s %s failed after %d attempts: %s",
                    request.method, request.url.path, attempt, exc,
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "[META_HTTP] Network error on attempt %d/%d (%s), retrying in %.1fs: %s",
                attempt, policy.max_attempts, context, delay, exc,
            )
            await sleep(delay)
            continue

        _log_response(response, attempt, context)

        if response.is_success:
            return response

        if not is_retriable_status(response.status_code):
            raise error_from_response(response, context)

        last_response = response
        if attempt >= policy.max_attempts:
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            "[META_HTTP] HTTP %d on attempt %d/%d (%s), retrying in %.1fs",
            response.status_code, attempt, policy.max_attempts, context, delay,
        )
        await sleep(delay)

    error = error_from_response(last_response, context)
    logger.error("[META_HTTP] Giving up after %d attempts: %s", policy.max_attempts, error)
    raise error


def retrying(
    send: Sender,
    *,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Sleeper = asyncio.sleep,
) -> Callable[..., Awaitable[httpx.Response]]:
    """Compose `send_with_retry` over a transport call.

    Example:
        send = retrying(client.send, policy=RetryPolicy(max_attempts=3))
        response = await send(request, context="start report")
    """

    async def _send(request: httpx.Request, context: str = "") -> httpx.Response:
        return await send_with_retry(send, request, policy=policy, sleep=sleep, context=context)

    return _send
