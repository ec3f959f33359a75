import asyncio
import time
from typing import Dict, Optional
from dataclasses import dataclass, field

from config import settings
from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an upstream request category"""

    requests_per_window: int
    window_seconds: float = 1.0
    burst_limit: Optional[int] = None  # Max burst if different from rate


@dataclass
class TokenBucket:
    """Token bucket for rate limiting"""

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self):
        """Refill tokens based on elapsed time"""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens, returns True if successful"""
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: int = 1) -> float:
        """Calculate how long to wait for tokens to be available"""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return needed / self.refill_rate


def default_limits(requests_per_second: int) -> Dict[str, RateLimitConfig]:
    """Request budgets per category, scaled from the provider's per-second cap.

    eth_getLogs is far more expensive in provider compute units than eth_call,
    so it gets a fraction of the budget.
    """
    rps = max(1, int(requests_per_second))
    return {
        "rpc_call": RateLimitConfig(requests_per_window=rps, window_seconds=1.0, burst_limit=rps * 2),
        "rpc_logs": RateLimitConfig(requests_per_window=max(1, rps // 4), window_seconds=1.0),
        "owners_api": RateLimitConfig(requests_per_window=max(1, rps // 2), window_seconds=1.0),
    }


class RateLimiter:
    """Rate limiter using token bucket algorithm"""

    def __init__(self, limits: Optional[Dict[str, RateLimitConfig]] = None):
        self.limits = limits if limits is not None else default_limits(settings.RPC_REQUESTS_PER_SECOND)
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_bucket(self, category: str) -> TokenBucket:
        """Get or create a token bucket for a category"""
        if category not in self._buckets:
            config = self.limits.get(category, RateLimitConfig(settings.RPC_REQUESTS_PER_SECOND, 1.0))
            capacity = config.burst_limit or config.requests_per_window
            refill_rate = config.requests_per_window / config.window_seconds
            self._buckets[category] = TokenBucket(
                capacity=capacity, tokens=capacity, refill_rate=refill_rate
            )
        return self._buckets[category]

    def _get_lock(self, category: str) -> asyncio.Lock:
        if category not in self._locks:
            self._locks[category] = asyncio.Lock()
        return self._locks[category]

    async def acquire(self, category: str, tokens: int = 1) -> float:
        """
        Acquire rate limit permission. Returns wait time (0 if immediate).
        Blocks until permission is granted.
        """
        lock = self._get_lock(category)
        async with lock:
            bucket = self._get_bucket(category)
            wait_time = bucket.wait_time(tokens)

            if wait_time > 0:
                logger.debug("Rate limit wait", category=category, wait_seconds=wait_time)
                await asyncio.sleep(wait_time)
                bucket.refill()

            bucket.consume(tokens)
            return wait_time

    def check(self, category: str, tokens: int = 1) -> bool:
        """Check if a request would be allowed without consuming"""
        bucket = self._get_bucket(category)
        bucket.refill()
        return bucket.tokens >= tokens

    def get_status(self) -> Dict[str, dict]:
        """Get current rate limit status for all categories"""
        status = {}
        for category, bucket in self._buckets.items():
            bucket.refill()
            config = self.limits.get(category)
            status[category] = {
                "available_tokens": round(bucket.tokens, 2),
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
                "limit": f"{config.requests_per_window}/{config.window_seconds}s"
                if config
                else "default",
            }
        return status


def category_for_method(method: str) -> str:
    """Map a JSON-RPC method (or owners API call) to its rate limit category"""
    if method == "eth_getLogs":
        return "rpc_logs"
    if method == "getOwnersForContract":
        return "owners_api"
    return "rpc_call"
