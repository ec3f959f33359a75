import asyncio
import random
from functools import wraps
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar
import httpx

from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        """Build the shared RPC retry policy from application settings."""
        from config import settings

        return cls(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    # Errors that classify themselves (RpcError) take precedence.
    flagged = getattr(error, "retryable", None)
    if isinstance(flagged, bool):
        return flagged

    if isinstance(error, config.retryable_exceptions):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    description: str = "operation",
) -> T:
    """Await ``operation()`` until it succeeds or the retry budget is spent.

    Non-retryable errors propagate immediately. After the last attempt the
    final error is re-raised so the caller's failure policy applies.
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[Exception] = None
    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e

            if not is_retryable_error(e, config):
                logger.debug(
                    "Non-retryable error",
                    operation=description,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    "Retrying after error",
                    operation=description,
                    attempt=attempt + 1,
                    max_attempts=config.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "All retry attempts exhausted",
                    operation=description,
                    attempts=config.max_attempts,
                    error=str(e),
                )

    raise last_error


def with_retry(config: RetryConfig = None):
    """Decorator for async functions with retry logic"""

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(
                lambda: func(*args, **kwargs),
                config,
                description=func.__name__,
            )

        return wrapper

    return decorator
