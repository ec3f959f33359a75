from .logger import setup_logging, get_logger, population_logger, rpc_logger, api_logger, cache_logger
from .retry import RetryConfig, with_retry, retry_async
from .rate_limiter import RateLimiter, category_for_method
from .validation import (
    validate_eth_address,
    normalize_wallet,
    validate_page_size,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "population_logger",
    "rpc_logger",
    "api_logger",
    "cache_logger",

    # Retry
    "RetryConfig",
    "with_retry",
    "retry_async",

    # Rate Limiter
    "RateLimiter",
    "category_for_method",

    # Validation
    "validate_eth_address",
    "normalize_wallet",
    "validate_page_size",
]
