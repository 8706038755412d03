"""WorkPoolStore — persistence for work pools and their queues."""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from core.errors import ConflictError, UnknownPoolError, UnknownQueueError
from store.database import Database, UTCDateTime, metadata
from workpools.models import WorkPool, WorkQueue

# ── Schema ───────────────────────────────────────────────────────────────────

work_pools = sa.Table(
    "work_pools",
    metadata,
    sa.Column("name",               sa.String,  primary_key=True),
    sa.Column("type",               sa.String,  nullable=False),
    sa.Column("description",        sa.String,  nullable=False),
    sa.Column("concurrency_limit",  sa.Integer, nullable=True),
    sa.Column("base_job_variables", sa.JSON,    nullable=False),
    sa.Column("default_queue_name", sa.String,  nullable=False),
    sa.Column("created_at",         UTCDateTime, nullable=False),
)

work_queues = sa.Table(
    "work_queues",
    metadata,
    sa.Column("pool_name",         sa.String,  primary_key=True),
    sa.Column("name",              sa.String,  primary_key=True),
    sa.Column("description",       sa.String,  nullable=False),
    sa.Column("priority",          sa.Integer, nullable=False),
    sa.Column("concurrency_limit", sa.Integer, nullable=True),
    sa.Column("capacity",          sa.Integer, nullable=True),
    sa.Column("paused",            sa.Boolean, nullable=False),
    sa.Column("created_at",        UTCDateTime, nullable=False),
)


# ── Store ────────────────────────────────────────────────────────────────────

class WorkPoolStore:
    def __init__(self, db: Database):
        self.db = db

    async def create_pool(self, pool: WorkPool, default_queue: WorkQueue) -> None:
        """Insert a pool together with its default queue."""
        async def insert(conn):
            await conn.execute(sa.insert(work_pools).values(**pool.model_dump()))
            await conn.execute(sa.insert(work_queues).values(**default_queue.model_dump()))

        try:
            await self.db.transaction(insert)
        except IntegrityError as e:
            raise ConflictError(f"Work pool '{pool.name}' already exists", pool=pool.name) from e

    async def get_pool(self, name: str) -> WorkPool:
        async def select(conn):
            return (await conn.execute(
                sa.select(work_pools).where(work_pools.c.name == name)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            raise UnknownPoolError(f"Work pool '{name}' not found", pool=name)
        return WorkPool(**row._mapping)

    async def list_pools(self) -> list[WorkPool]:
        async def select(conn):
            return (await conn.execute(
                sa.select(work_pools).order_by(work_pools.c.name)
            )).fetchall()

        return [WorkPool(**r._mapping) for r in await self.db.read(select)]

    async def create_queue(self, queue: WorkQueue) -> None:
        async def insert(conn):
            await conn.execute(sa.insert(work_queues).values(**queue.model_dump()))

        try:
            await self.db.transaction(insert)
        except IntegrityError as e:
            raise ConflictError(
                f"Work queue '{queue.name}' already exists in pool '{queue.pool_name}'",
                pool=queue.pool_name, queue=queue.name,
            ) from e

    async def get_queue(self, pool_name: str, name: str) -> WorkQueue:
        async def select(conn):
            return (await conn.execute(
                sa.select(work_queues)
                .where(work_queues.c.pool_name == pool_name)
                .where(work_queues.c.name == name)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            raise UnknownQueueError(
                f"Work queue '{name}' not found in pool '{pool_name}'",
                pool=pool_name, queue=name,
            )
        return WorkQueue(**row._mapping)

    async def list_queues(self, pool_name: str) -> list[WorkQueue]:
        """Queues of a pool in claim order (priority, then name)."""
        async def select(conn):
            return (await conn.execute(
                sa.select(work_queues)
                .where(work_queues.c.pool_name == pool_name)
                .order_by(work_queues.c.priority, work_queues.c.name)
            )).fetchall()

        return [WorkQueue(**r._mapping) for r in await self.db.read(select)]

    async def update_queue(self, pool_name: str, name: str, values: dict[str, Any]) -> WorkQueue:
        if values:
            async def write(conn):
                result = await conn.execute(
                    sa.update(work_queues)
                    .where(work_queues.c.pool_name == pool_name)
                    .where(work_queues.c.name == name)
                    .values(**values)
                )
                return result.rowcount

            if not await self.db.transaction(write):
                raise UnknownQueueError(
                    f"Work queue '{name}' not found in pool '{pool_name}'",
                    pool=pool_name, queue=name,
                )
        return await self.get_queue(pool_name, name)
