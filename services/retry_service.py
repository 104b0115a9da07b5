"""
Retry harness for remote AI calls.

Every provider call made by the indexer, extraction and synthesis goes
through `with_retry`. Rate limits and transient server failures are
retried with exponential backoff; anything else propagates at once.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from exceptions import TransientProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 500, 503}

RETRYABLE_MARKERS = (
    "429",
    "500",
    "503",
    "quota",
    "resource_exhausted",
    "internal error",
)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY_MS = 1000
# One wait never exceeds this; with the default 5 attempts the largest wait is 8s
DEFAULT_MAX_DELAY_MS = 30000


def _status_of(error: BaseException) -> Optional[int]:
    """Read an HTTP status from the attributes SDK errors use."""
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error as transient (retry) or fatal (propagate).

    Transient: TransientProviderError, HTTP 429/500/503, or a message
    mentioning quota exhaustion or an internal error.
    """
    if isinstance(error, TransientProviderError):
        return True

    if _status_of(error) in RETRYABLE_STATUS_CODES:
        return True

    message = str(error).lower()
    status_text = getattr(error, "status", None)
    if isinstance(status_text, str):
        message = f"{message} {status_text.lower()}"

    return any(marker in message for marker in RETRYABLE_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "remote_call"
) -> T:
    """
    Run an async operation with bounded exponential backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total tries including the first
        initial_delay_ms: Wait after the first retryable failure
        max_delay_ms: Ceiling for any single wait
        sleep: Awaitable sleep taking seconds (injectable for tests)
        label: Name used in log events

    Returns:
        The operation's result

    Raises:
        The last error once attempts run out, or the first non-retryable error
    """
    delay_ms = initial_delay_ms
    attempt = 1

    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable_error(e):
                raise
            if attempt >= max_attempts:
                logger.error(
                    "retry_attempts_exhausted",
                    operation=label,
                    attempts=attempt,
                    error=str(e)[:200]
                )
                raise

            wait_ms = min(delay_ms, max_delay_ms)
            logger.warning(
                "transient_error_retrying",
                operation=label,
                attempt=attempt,
                delay_ms=wait_ms,
                error=str(e)[:200]
            )
            await sleep(wait_ms / 1000)
            delay_ms *= 2
            attempt += 1


class RetryPolicy:
    """
    Retry settings bound once and reused by the pipeline services.

    Services call `policy.run(fn, label)` instead of threading the
    individual knobs through every call site.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.max_attempts = max_attempts
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "remote_call") -> T:
        return await with_retry(
            operation,
            max_attempts=self.max_attempts,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            sleep=self.sleep,
            label=label,
        )
