"""
Routing Database Module

Declarative base for the routing tables and the async engine that backs
the SQL routing store. Every store call runs in its own short transaction
opened through ``DatabaseManager.session()``.
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import DateTime, String, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..base import utcnow


logger = structlog.get_logger(__name__)

# Plain driver URLs are upgraded to their asyncio drivers
_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_database_url(url: str) -> str:
    """Rewrite a routing database URL to use an asyncio driver."""
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


# =============================================================================
# Declarative Base
# =============================================================================


class Base(DeclarativeBase):
    """Routing tables share a surrogate string key; natural keys are unique indexes."""

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by column name, datetimes as ISO strings."""
        return {
            column.name: _column_value(getattr(self, column.name))
            for column in self.__table__.columns
        }


def _column_value(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class TimestampMixin:
    """Naive-UTC creation and modification times."""

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Engine and session lifecycle for the routing store.

    The engine is created lazily on first use so an application can be
    built without a reachable database; ``health_check`` reports whether
    it is reachable.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
        echo: bool = False,
    ):
        """
        Args:
            database_url: SQLAlchemy URL; plain postgresql/sqlite URLs are
                switched to asyncpg/aiosqlite
            pool_size: Pooled connections (ignored for SQLite)
            max_overflow: Connections allowed beyond the pool (ignored for SQLite)
            pool_recycle: Seconds before a pooled connection is replaced
            echo: Log emitted SQL
        """
        self.database_url = async_database_url(database_url)
        self._engine_options: Dict[str, Any] = {"echo": echo}
        if not self.is_sqlite:
            self._engine_options.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=pool_recycle,
                pool_pre_ping=True,
            )

        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options)
        return self._engine

    def _session_factory(self) -> async_sessionmaker:
        if self._sessions is None:
            self._sessions = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._sessions

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One transaction: committed when the block exits normally, rolled
        back when it raises.
        """
        async with self._session_factory()() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            await session.commit()

    async def create_all(self) -> None:
        """Create any routing tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "routing_schema_ready",
            tables=len(Base.metadata.tables),
            backend=self.engine.url.get_backend_name(),
        )

    async def health_check(self) -> bool:
        started = time.monotonic()
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("routing_database_unhealthy", error=str(e))
            return False
        logger.debug(
            "routing_database_ping",
            latency_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None


__all__ = [
    "Base",
    "TimestampMixin",
    "DatabaseManager",
    "async_database_url",
]
