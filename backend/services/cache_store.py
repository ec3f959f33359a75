"""
Key-value cache for holders snapshots and population state.

Three interchangeable backends share one interface (get/set with TTL,
namespaced keys):
  - MemoryCacheStore: process-local dict, for tests and single-shot runs
  - SqlCacheStore: SQLAlchemy async (SQLite by default), survives restarts
  - RedisCacheStore: redis.asyncio, shared across processes

Values are stored as JSON text. Integers wider than 53 bits (raw on-chain
amounts) are written as decimal strings so no consumer ever reads them back
as lossy floats.
"""

import json
import time
from datetime import timedelta
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from models.database import AsyncSessionLocal, CacheEntry
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("cache")

MAX_SAFE_INTEGER = 2**53 - 1
DEFAULT_NAMESPACE = "default"

HOLDERS_KEY = "holders"
STATE_KEY = "state"


# ==================== SERIALIZATION ====================


def stringify_wide_ints(value: Any) -> Any:
    """Recursively replace ints outside the float-safe range with strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, dict):
        return {k: stringify_wide_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [stringify_wide_ints(v) for v in value]
    return value


def encode_value(value: Any) -> str:
    return json.dumps(stringify_wide_ints(value), separators=(",", ":"))


def decode_value(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


def _ttl(ttl_seconds: Optional[float]) -> Optional[float]:
    """0/None mean the entry never expires."""
    if ttl_seconds is None or ttl_seconds <= 0:
        return None
    return float(ttl_seconds)


# ==================== BACKENDS ====================


class CacheStore:
    """Namespaced key-value store with per-entry TTL."""

    backend = "base"

    async def get(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Any:
        raise NotImplementedError

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        raise NotImplementedError

    async def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryCacheStore(CacheStore):
    backend = "memory"

    def __init__(self):
        # (namespace, key) -> (json text, monotonic expiry or None)
        self._entries: dict[tuple[str, str], tuple[str, Optional[float]]] = {}

    async def get(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Any:
        entry = self._entries.get((namespace, key))
        if entry is None:
            return None
        text, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._entries.pop((namespace, key), None)
            return None
        return decode_value(text)

    async def set(self, key, value, ttl_seconds=None, namespace=DEFAULT_NAMESPACE) -> None:
        ttl = _ttl(ttl_seconds)
        expires_at = time.monotonic() + ttl if ttl is not None else None
        self._entries[(namespace, key)] = (encode_value(value), expires_at)

    async def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._entries.pop((namespace, key), None)


class SqlCacheStore(CacheStore):
    backend = "sqlite"

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def get(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Any:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheEntry).where(CacheEntry.namespace == namespace, CacheEntry.key == key)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                if row.expires_at is not None and row.expires_at <= utcnow():
                    await session.execute(
                        delete(CacheEntry).where(CacheEntry.namespace == namespace, CacheEntry.key == key)
                    )
                    await session.commit()
                    return None
                return decode_value(row.value)
        except SQLAlchemyError as e:
            logger.error("Cache read failed", backend=self.backend, namespace=namespace, key=key, error=str(e))
            return None

    async def set(self, key, value, ttl_seconds=None, namespace=DEFAULT_NAMESPACE) -> None:
        ttl = _ttl(ttl_seconds)
        now = utcnow()
        values = {
            "namespace": namespace,
            "key": key,
            "value": encode_value(value),
            "expires_at": now + timedelta(seconds=ttl) if ttl is not None else None,
            "updated_at": now,
        }
        async with self._session_factory() as session:
            if session.bind.dialect.name == "sqlite":
                stmt = sqlite_upsert(CacheEntry).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["namespace", "key"],
                    set_={
                        "value": stmt.excluded.value,
                        "expires_at": stmt.excluded.expires_at,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
            else:
                await session.execute(
                    delete(CacheEntry).where(CacheEntry.namespace == namespace, CacheEntry.key == key)
                )
                session.add(CacheEntry(**values))
            await session.commit()

    async def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(CacheEntry).where(CacheEntry.namespace == namespace, CacheEntry.key == key)
            )
            await session.commit()

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(select(CacheEntry.key).limit(1))
            return True
        except SQLAlchemyError as e:
            logger.warning("Cache ping failed", backend=self.backend, error=str(e))
            return False


class RedisCacheStore(CacheStore):
    backend = "redis"

    def __init__(self, url: Optional[str] = None, *, client: Optional[redis.Redis] = None, prefix: str = "holders"):
        self._client = client or redis.Redis.from_url(url or settings.REDIS_URL, decode_responses=True)
        self._prefix = prefix

    def _key(self, key: str, namespace: str) -> str:
        return f"{self._prefix}:{namespace}:{key}"

    async def get(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> Any:
        try:
            text = await self._client.get(self._key(key, namespace))
        except RedisError as e:
            logger.error("Cache read failed", backend=self.backend, namespace=namespace, key=key, error=str(e))
            return None
        return decode_value(text)

    async def set(self, key, value, ttl_seconds=None, namespace=DEFAULT_NAMESPACE) -> None:
        ttl = _ttl(ttl_seconds)
        await self._client.set(
            self._key(key, namespace),
            encode_value(value),
            ex=int(max(1, ttl)) if ttl is not None else None,
        )

    async def delete(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        await self._client.delete(self._key(key, namespace))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Cache ping failed", backend=self.backend, error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()


def create_cache_store(backend: Optional[str] = None) -> CacheStore:
    """Build the configured cache backend (CACHE_BACKEND)."""
    backend = (backend or settings.CACHE_BACKEND).lower()
    if backend == "memory":
        return MemoryCacheStore()
    if backend == "sqlite":
        return SqlCacheStore()
    if backend == "redis":
        return RedisCacheStore()
    raise ValueError(f"Unknown cache backend: {backend}")
