"""Failure classification and retry with exponential backoff.

A logical request moves through::

    Attempt(n) ─► Success
               ─► TerminalFailure
               ─► RetryableFailure ─► n < max_retries: sleep(backoff(n)) ─► Attempt(n + 1)
                                   └► n ≥ max_retries: TerminalFailure

The sleep primitive is injected so tests can run the loop on a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from spritekit.config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    TRANSIENT_STATUS_CODES,
)
from spritekit.errors import ApiError, NotFoundError, TerminalApiError, TransientApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


# ── Classification ───────────────────────────────────────────────────────────


def error_message(response: httpx.Response) -> str:
    """Best server-supplied message: JSON ``message``/``error``, else raw body."""
    fallback = f"Request failed with status {response.status_code}"
    try:
        text = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return fallback
    if not text:
        return fallback
    try:
        body = response.json()
    except ValueError:
        return text.strip() or fallback
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return text.strip() or fallback


def classify_status(
    status: int,
    message: str,
    *,
    method: str,
    path: str,
    retry_statuses: frozenset[int] = TRANSIENT_STATUS_CODES,
) -> ApiError:
    """Turn an HTTP error status into the matching :class:`ApiError` subclass."""
    if status == 404:
        cls: type[ApiError] = NotFoundError
    elif status in retry_statuses:
        cls = TransientApiError
    else:
        cls = TerminalApiError
    return cls(message, status=status, method=method, path=path)


def classify_transport_error(exc: httpx.TransportError, *, method: str, path: str) -> ApiError:
    """Connection resets, DNS failures and timeouts are all retryable."""
    code = type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        message = f"Request timed out ({code})"
    else:
        message = str(exc) or code
    return TransientApiError(message, method=method, path=path, code=code)


# ── Policy ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_statuses: frozenset[int] = TRANSIENT_STATUS_CODES

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after failed attempt ``attempt`` (0-based)."""
        return self.base_delay * (2**attempt)

    def should_retry(self, error: ApiError, *, expect_not_found: bool = False) -> bool:
        if error.status is None:
            return error.retryable
        if error.status == 404 and expect_not_found:
            return False
        return error.status in self.retry_statuses

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        sleep: Sleep = asyncio.sleep,
        expect_not_found: bool = False,
        description: str = "Request",
    ) -> T:
        """Run ``operation`` until it succeeds, fails terminally, or retries run out.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            sleep: Awaitable delay primitive.
            expect_not_found: 404 is a meaningful answer for this call; raise
                :class:`NotFoundError` at once instead of retrying.
            description: Used in retry warnings, e.g. ``"GET /sprites/x"``.

        Raises:
            ApiError: The last failure, with ``attempts`` set.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except ApiError as error:
                error.attempts = attempt + 1
                if not self.should_retry(error, expect_not_found=expect_not_found):
                    raise
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    description,
                    error.message,
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
                await sleep(delay)
                attempt += 1
