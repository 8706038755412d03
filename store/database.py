"""Database — shared async engine, table metadata and retrying transactions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from core.errors import StoreUnavailableError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Every store module registers its tables here; Database.init() creates them all.
metadata = sa.MetaData()


class UTCDateTime(sa.types.TypeDecorator):
    """Store aware datetimes as naive UTC, hand them back as aware UTC."""

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Database:
    """Owns the engine and runs store callbacks inside retried transactions.

    A callback runs inside one ``engine.begin()`` block, so a failed attempt
    rolls back completely before the next one starts.
    """

    def __init__(
        self,
        db_url: str = "sqlite+aiosqlite:///engine.db",
        *,
        retry_attempts: int = 3,
        retry_delay: float = 0.05,
        retry_backoff: float = 2.0,
    ):
        self._engine = create_async_engine(db_url, echo=False)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        return cls(
            settings.database_url,
            retry_attempts=settings.store_retry_attempts,
            retry_delay=settings.store_retry_delay_seconds,
            retry_backoff=settings.store_retry_backoff,
        )

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def transaction(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        """Run *fn* in a write transaction, retrying transient failures."""
        return await self._with_retry(fn, write=True)

    async def read(self, fn: Callable[[AsyncConnection], Awaitable[T]]) -> T:
        return await self._with_retry(fn, write=False)

    async def _with_retry(
        self,
        fn: Callable[[AsyncConnection], Awaitable[T]],
        write: bool,
    ) -> T:
        delay = self.retry_delay
        for attempt in range(self.retry_attempts):
            try:
                if write:
                    async with self._engine.begin() as conn:
                        return await fn(conn)
                async with self._engine.connect() as conn:
                    return await fn(conn)
            except OperationalError as e:
                if attempt + 1 >= self.retry_attempts:
                    logger.error(
                        "Store unavailable",
                        extra={"attempts": attempt + 1, "error": str(e.orig or e)},
                    )
                    raise StoreUnavailableError(
                        f"Store unavailable after {attempt + 1} attempts: {e.orig or e}"
                    ) from e
                logger.warning(
                    "Store retry",
                    extra={"attempt": attempt + 1, "max": self.retry_attempts, "delay_s": delay},
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                delay *= self.retry_backoff
        raise AssertionError("unreachable")
