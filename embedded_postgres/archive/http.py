"""HTTP retry policy shared by the catalog client and the archive fetcher."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from embedded_postgres.archive.constants import DEFAULT_ATTEMPT_TIMEOUT, RETRYABLE_STATUS_CODES


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[httpx.Timeout], httpx.AsyncClient]
Sleeper = Callable[[float], Awaitable[None]]


def default_client_factory(timeout: httpx.Timeout) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


class RetryExhausted(Exception):
    """Raised when an HTTP operation failed permanently or ran out of attempts."""

    def __init__(self, description: str, last_error: httpx.HTTPError, attempts: int, retryable: bool) -> None:
        super().__init__(f"{description} failed after {attempts} attempt(s): {describe_http_error(last_error)}")
        self.last_error = last_error
        self.attempts = attempts
        self.retryable = retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient network failures."""

    max_attempts: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 8.0
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "max_attempts", max(1, int(self.max_attempts)))
        object.__setattr__(self, "backoff_initial", max(0.0, float(self.backoff_initial)))
        object.__setattr__(self, "backoff_max", max(self.backoff_initial, float(self.backoff_max)))

    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.attempt_timeout, connect=self.attempt_timeout)

    def should_retry(self, exc: httpx.HTTPError) -> bool:
        if isinstance(exc, httpx.TimeoutException):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in RETRYABLE_STATUS_CODES
        if isinstance(exc, httpx.RequestError):
            return True
        return False

    def delay(self, attempt: int, exc: httpx.HTTPError) -> float:
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after:
                try:
                    parsed = float(retry_after)
                except ValueError:
                    parsed = 0.0
                if parsed > 0:
                    return min(parsed, self.backoff_max)
        if attempt <= 0:
            return 0.0
        return min(self.backoff_initial * (2 ** (attempt - 1)), self.backoff_max)


async def retrying(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    ``operation`` receives the 1-based attempt number and signals failure by
    raising :class:`httpx.HTTPError`. Non-retryable errors stop immediately.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except httpx.HTTPError as exc:
            retryable = policy.should_retry(exc)
            if not retryable or attempt >= policy.max_attempts:
                _LOGGER.warning(
                    "%s failed on attempt %s/%s: %s",
                    description,
                    attempt,
                    policy.max_attempts,
                    describe_http_error(exc),
                )
                raise RetryExhausted(description, exc, attempt, retryable) from exc
            delay = policy.delay(attempt, exc)
            _LOGGER.info(
                "%s failed: %s; retrying in %.1fs (%s/%s)",
                description,
                describe_http_error(exc),
                delay,
                attempt + 1,
                policy.max_attempts,
            )
            if delay > 0:
                await sleep(delay)


def describe_http_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return f"HTTP {response.status_code} from {response.request.url}"
    if isinstance(exc, httpx.TimeoutException):
        return f"timed out ({type(exc).__name__})"
    return str(exc) or type(exc).__name__


__all__ = [
    "ClientFactory",
    "RetryExhausted",
    "RetryPolicy",
    "default_client_factory",
    "describe_http_error",
    "retrying",
]
