"""
Bounded retries with exponential backoff for outbound fetches.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import httpx

from shared.logging import get_logger

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass
class RetryConfig:
    """Attempt budget and backoff shape. ``max_attempts`` counts the first try."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = True

    def __post_init__(self):
        self.max_attempts = max(1, self.max_attempts)

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``: base * 2^(attempt-1), capped, +/-10% jitter."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(-delay * 0.1, delay * 0.1)
        return max(0.0, delay)


class RetryError(Exception):
    """Raised when an operation gives up; wraps the last underlying error."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def is_transient_http_error(error: BaseException) -> bool:
    """Network failures and retryable status codes; other 4xx answers are final."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.HTTPError)


def retry_on_exception(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Callable:
    """Retry an async callable on ``exceptions``.

    Errors outside ``exceptions`` propagate untouched. A caught error that
    ``should_retry`` rejects, or the last failed attempt, raises RetryError.
    ``context`` is bound to every log line (e.g. the URL being fetched).
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger("retry").bind(operation=func.__name__, **(context or {}))

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        logger.warning("Permanent failure, not retrying", attempt=attempt, error=str(e))
                        raise RetryError(f"{func.__name__} failed permanently", e, attempt) from e
                    if attempt == config.max_attempts:
                        logger.warning("Giving up", attempts=attempt, error=str(e))
                        raise RetryError(f"{func.__name__} failed after {attempt} attempts", e, attempt) from e

                    delay = config.delay_for(attempt)
                    logger.info("Attempt failed, backing off", attempt=attempt, delay=round(delay, 3), error=str(e))
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Succeeded after retry", attempt=attempt)
                return result

        return wrapper

    return decorator
