"""CursorStore — last-dispatched markers per (deployment, schedule)."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from scheduler.models import ScheduleCursor
from store.database import Database, UTCDateTime, metadata

schedule_cursors = sa.Table(
    "schedule_cursors",
    metadata,
    sa.Column("deployment_id",       sa.String,  primary_key=True),
    sa.Column("schedule_id",         sa.String,  primary_key=True),
    sa.Column("last_dispatched_at",  UTCDateTime, nullable=True),
    sa.Column("deployment_revision", sa.Integer, nullable=False),
    sa.Column("version",             sa.Integer, nullable=False),
)


class CursorStore:
    def __init__(self, db: Database):
        self.db = db

    async def get(self, deployment_id: str, schedule_id: str) -> ScheduleCursor:
        """Current cursor, or a version-0 blank if nothing was dispatched yet."""
        async def select(conn):
            return (await conn.execute(
                sa.select(schedule_cursors)
                .where(schedule_cursors.c.deployment_id == deployment_id)
                .where(schedule_cursors.c.schedule_id == schedule_id)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            return ScheduleCursor(deployment_id=deployment_id, schedule_id=schedule_id)
        return ScheduleCursor(**row._mapping)

    async def advance(
        self,
        cursor: ScheduleCursor,
        last_dispatched_at: datetime,
        deployment_revision: int,
    ) -> ScheduleCursor | None:
        """Compare-and-swap the cursor forward.

        Succeeds only if the stored version still equals ``cursor.version``.
        Returns the new cursor, or None if another writer got there first.
        """
        new = cursor.model_copy(update={
            "last_dispatched_at": last_dispatched_at,
            "deployment_revision": deployment_revision,
            "version": cursor.version + 1,
        })

        async def swap(conn):
            if cursor.version == 0:
                await conn.execute(sa.insert(schedule_cursors).values(**new.model_dump()))
                return 1
            result = await conn.execute(
                sa.update(schedule_cursors)
                .where(schedule_cursors.c.deployment_id == cursor.deployment_id)
                .where(schedule_cursors.c.schedule_id == cursor.schedule_id)
                .where(schedule_cursors.c.version == cursor.version)
                .values(
                    last_dispatched_at=new.last_dispatched_at,
                    deployment_revision=new.deployment_revision,
                    version=new.version,
                )
            )
            return result.rowcount

        try:
            swapped = await self.db.transaction(swap)
        except IntegrityError:
            # a concurrent first insert for the same pair
            return None
        return new if swapped == 1 else None

    async def list_for(self, deployment_id: str) -> list[ScheduleCursor]:
        async def select(conn):
            return (await conn.execute(
                sa.select(schedule_cursors)
                .where(schedule_cursors.c.deployment_id == deployment_id)
            )).fetchall()

        return [ScheduleCursor(**r._mapping) for r in await self.db.read(select)]

    async def prune(self, deployment_id: str, keep: set[str]) -> int:
        """Drop cursors of schedules no longer on the deployment."""
        async def remove(conn):
            result = await conn.execute(
                sa.delete(schedule_cursors)
                .where(schedule_cursors.c.deployment_id == deployment_id)
                .where(schedule_cursors.c.schedule_id.not_in(sorted(keep)))
            )
            return result.rowcount

        return await self.db.transaction(remove)
