"""Discord-compatible webhook client for Cartpilot.

Provides :class:`WebhookClient`, a small async wrapper that POSTs a JSON
payload to one webhook URL.  It handles:

* A keep-alive :class:`httpx.AsyncClient` with an explicit timeout budget.
* Automatic retries with capped exponential back-off via :mod:`tenacity`.
* ``retry_after`` honouring on HTTP 429 responses.
* Structured exception mapping to
  :class:`~cartpilot.core.exceptions.WebhookError` and
  :class:`~cartpilot.core.exceptions.WebhookRateLimitError`.

This module owns *transport* concerns only (connection, retries).  Message
formatting lives in :mod:`cartpilot.notifiers.formatter` and the
fire-and-forget :class:`~cartpilot.notifiers.notifier.Notifier` sink lives in
:mod:`cartpilot.notifiers.notifier`.

Typical usage::

    async with WebhookClient(url=settings.webhook_url) as client:
        await client.post({"content": "Cartpilot started"})
"""

from __future__ import annotations

import logging
import random
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from cartpilot.core.exceptions import WebhookError, WebhookRateLimitError

__all__ = ["WebhookClient"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: HTTP status codes that indicate a transient server error and are safe to retry.
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

#: Success codes; Discord answers 204 unless ``?wait=true`` is set.
_SUCCESS_STATUS: Final[frozenset[int]] = frozenset({200, 201, 204})

_DEFAULT_CONNECT_TIMEOUT: Final[float] = 5.0
_DEFAULT_READ_TIMEOUT: Final[float] = 10.0
_DEFAULT_WRITE_TIMEOUT: Final[float] = 10.0

#: Default total send attempts (1 initial + 2 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

_MAX_BACKOFF_JITTER: Final[float] = 2.0
_MAX_BACKOFF_BASE: Final[float] = 15.0


class _RetryableServerError(WebhookError):
    """Internal sentinel raised on 5xx to trigger a tenacity retry."""


# ---------------------------------------------------------------------------
# Wait strategy
# ---------------------------------------------------------------------------


def _webhook_wait(retry_state: RetryCallState) -> float:
    """Seconds to wait before the next attempt.

    Honours ``retry_after`` from a 429; otherwise exponential back-off
    (1, 2, 4 … s capped at :data:`_MAX_BACKOFF_BASE`) plus jitter.
    """
    if retry_state.outcome is not None:
        exc = retry_state.outcome.exception()
        if isinstance(exc, WebhookRateLimitError) and exc.retry_after > 0:
            return exc.retry_after

    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class WebhookClient:
    """Async webhook poster with timeout budget and automatic retries.

    Args:
        url: Full webhook URL (non-empty).
        connect_timeout: TCP connect timeout in seconds.
        read_timeout: Response read timeout in seconds.
        write_timeout: Request upload timeout in seconds.
        max_attempts: Total attempts including the first (≥ 1).

    Raises:
        ValueError: If ``url`` or ``max_attempts`` are invalid.
    """

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = _DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = _DEFAULT_READ_TIMEOUT,
        write_timeout: float = _DEFAULT_WRITE_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if not url:
            raise ValueError("WebhookClient requires a non-empty url.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")

        self._url = url
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=write_timeout,
            pool=5.0,
        )
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> WebhookClient:
        await self._ensure_http_client()
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def post(self, payload: dict[str, Any]) -> None:
        """POST *payload* as JSON to the webhook.

        Retries on transport errors, HTTP 429, and HTTP 5xx.  Any other
        non-success status raises immediately.

        Raises:
            WebhookRateLimitError: After exhausting retries on HTTP 429.
            WebhookError: For any other non-recoverable error.
        """
        retry_types = (WebhookRateLimitError, _RetryableServerError, httpx.TransportError)

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Webhook attempt %d/%d failed (%s); retrying in %.1f s.",
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
                _webhook_wait(rs),
            )

        try:
            async for attempt in AsyncRetrying(
                wait=_webhook_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type(retry_types),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    await self._single_attempt(payload)
        except httpx.TransportError as exc:
            raise WebhookError(f"Transport error: {exc}") from exc

    async def close(self) -> None:
        """Close the HTTP client.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("WebhookClient HTTP session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_http_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": "Cartpilot/0.1"},
            )
            logger.debug("WebhookClient HTTP session opened.")
        return self._http

    async def _single_attempt(self, payload: dict[str, Any]) -> None:
        """Perform exactly one POST.

        Raises:
            WebhookRateLimitError: HTTP 429.
            _RetryableServerError: HTTP 5xx.
            WebhookError: Any other non-success status.
            httpx.TransportError: Network-level error, retried by tenacity.
        """
        client = await self._ensure_http_client()
        response = await client.post(self._url, json=payload)
        logger.debug("Webhook response: HTTP %d", response.status_code)

        if response.status_code in _SUCCESS_STATUS:
            return

        if response.status_code == 429:
            retry_after = _parse_retry_after(response)
            logger.warning("Webhook rate limit (HTTP 429); retry_after=%.1f s", retry_after)
            raise WebhookRateLimitError(retry_after=retry_after)

        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableServerError(
                f"Transient server error: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        raise WebhookError(_extract_description(response), status_code=response.status_code)


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _parse_retry_after(response: httpx.Response) -> float:
    """Back-off delay from a 429: JSON ``retry_after`` first, then the header.

    Returns ``1.0`` when neither is present or parseable.
    """
    try:
        body = response.json()
        ra = body.get("retry_after") if isinstance(body, dict) else None
        if ra is not None:
            return max(float(ra), 0.5)
    except ValueError:
        pass

    header = response.headers.get("retry-after", "")
    if header:
        try:
            return max(float(header), 0.5)
        except ValueError:
            pass

    return 1.0


def _extract_description(response: httpx.Response) -> str:
    """Readable error text from a non-2xx response (``message`` field or body)."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or f"HTTP {response.status_code}"
