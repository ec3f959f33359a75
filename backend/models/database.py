from sqlalchemy import (
    Column,
    String,
    Text,
    DateTime,
    Index,
    PrimaryKeyConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import declarative_base, sessionmaker
from pathlib import Path
import logging

from config import settings
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== CACHE ENTRIES ====================


class CacheEntry(Base):
    """One cached value (holders snapshot or population state) per namespace/key."""

    __tablename__ = "cache_entries"

    namespace = Column(String, nullable=False)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=False)  # JSON; wide ints already stringified
    expires_at = Column(DateTime, nullable=True)  # NULL = no expiry
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("namespace", "key", name="pk_cache_entries"),
        Index("idx_cache_entries_expires", "expires_at"),
    )


# ==================== DATABASE SETUP ====================


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine; SQLite gets WAL + busy_timeout on every connection."""
    engine_kw: dict = {"echo": False}
    if "sqlite" in database_url:
        engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
        path_part = database_url.split(":///", 1)[-1]
        if path_part and path_part != ":memory:":
            Path(path_part).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(database_url, **engine_kw)

    if "sqlite" in database_url:
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


async_engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database(engine: AsyncEngine = None):
    """Create the cache tables if they do not exist yet."""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Cache tables ready")
