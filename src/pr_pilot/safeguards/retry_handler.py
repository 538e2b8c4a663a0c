"""Retry handler with exponential backoff for provider calls."""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional, TypeVar

import litellm

from ..core.config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_IN_RE = re.compile(r"(?:try again|retry) (?:in|after) (\d+(?:\.\d+)?)\s*(ms|s|seconds?)?", re.IGNORECASE)

TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.APIConnectionError,
    asyncio.TimeoutError,
)


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, litellm.RateLimitError):
        return True
    if getattr(error, "status_code", None) == 429:
        return True
    text = str(error).lower()
    return "rate_limit" in text or "rate limit" in text or "quota" in text


def is_transient_error(error: BaseException) -> bool:
    return isinstance(error, TRANSIENT_ERRORS) or is_rate_limit_error(error)


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """Server-suggested wait from a Retry-After header or the error text."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after")
        if value:
            try:
                return float(value)
            except ValueError:
                pass
    match = _RETRY_IN_RE.search(str(error))
    if match:
        amount = float(match.group(1))
        return amount / 1000 if (match.group(2) or "").lower() == "ms" else amount
    return None


class RetryHandler:
    """
    Retries transient provider errors with exponential backoff.

    Logic:
    - Backoff: initial * multiplier^(retry_count-1), capped at max_backoff
    - A server-provided Retry-After replaces the computed delay (still capped)
    - After max_retries the last error propagates
    """

    def __init__(
        self,
        initial_backoff_ms: int = 2000,
        max_backoff_ms: int = 30000,
        multiplier: float = 2,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.multiplier = multiplier
        self.max_retries = max_retries
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings, **kwargs) -> "RetryHandler":
        return cls(
            initial_backoff_ms=settings.initial_backoff_ms,
            max_backoff_ms=settings.max_backoff_ms,
            multiplier=settings.backoff_multiplier,
            max_retries=settings.max_retries,
            **kwargs,
        )

    def calculate_backoff(self, retry_count: int) -> float:
        """
        Backoff in seconds for the given 1-based retry count.

        Formula: initial * multiplier^(retry_count-1), capped at max_backoff
        """
        backoff_ms = self.initial_backoff_ms * (self.multiplier ** (retry_count - 1))
        return min(backoff_ms, self.max_backoff_ms) / 1000

    def should_retry(self, error: BaseException, retry_count: int) -> bool:
        return retry_count < self.max_retries and is_transient_error(error)

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "API call") -> T:
        """Await ``operation()``, retrying transient failures."""
        retry_count = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.should_retry(e, retry_count):
                    raise
                retry_count += 1
                delay = self.calculate_backoff(retry_count)
                suggested = retry_after_seconds(e)
                if suggested is not None:
                    delay = min(suggested, self.max_backoff_ms / 1000)
                logger.warning(
                    f"⚠️ {label} failed ({type(e).__name__}), retry {retry_count}/{self.max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)
