"""FlowRunStore — queued and executing flow runs.

Every status change is a single conditional UPDATE whose WHERE clause carries
the expected current status, so concurrent callers race on the row itself and
exactly one of them wins.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa

from core.errors import NotFoundError
from core.state import ALLOWED_SOURCES, IN_FLIGHT_STATUSES, FlowRun, FlowRunStatus
from scheduler.models import RunRequest
from store.database import Database, UTCDateTime, metadata
from store.work_pool_store import work_queues

# ── Schema ───────────────────────────────────────────────────────────────────

flow_runs = sa.Table(
    "flow_runs",
    metadata,
    sa.Column("seq",               sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("id",                sa.String,  nullable=False, unique=True),
    sa.Column("deployment_id",     sa.String,  nullable=False, index=True),
    sa.Column("pool_name",         sa.String,  nullable=False),
    sa.Column("queue_name",        sa.String,  nullable=False),
    sa.Column("status",            sa.String,  nullable=False, index=True),
    sa.Column("worker",            sa.String,  nullable=True),
    sa.Column("message",           sa.Text,    nullable=True),
    sa.Column("scheduled_time",    UTCDateTime, nullable=False),
    sa.Column("created_at",        UTCDateTime, nullable=False),
    sa.Column("claimed_at",        UTCDateTime, nullable=True),
    sa.Column("started_at",        UTCDateTime, nullable=True),
    sa.Column("finished_at",       UTCDateTime, nullable=True),
    sa.Column("last_heartbeat_at", UTCDateTime, nullable=True),
    sa.Column("request",           sa.Text,    nullable=False),   # RunRequest JSON
    sa.Index("ix_flow_runs_queue_status", "pool_name", "queue_name", "status"),
)

_IN_FLIGHT = [s.value for s in IN_FLIGHT_STATUSES]


def _row(run: FlowRun) -> dict:
    return {
        "id":                run.id,
        "deployment_id":     run.deployment_id,
        "pool_name":         run.pool_name,
        "queue_name":        run.queue_name,
        "status":            run.status.value,
        "worker":            run.worker,
        "message":           run.message,
        "scheduled_time":    run.scheduled_time,
        "created_at":        run.created_at,
        "claimed_at":        run.claimed_at,
        "started_at":        run.started_at,
        "finished_at":       run.finished_at,
        "last_heartbeat_at": run.last_heartbeat_at,
        "request":           run.request.model_dump_json(),
    }


def _to_run(row) -> FlowRun:
    data = dict(row._mapping)
    data.pop("seq", None)
    data.pop("deployment_id", None)
    data.pop("scheduled_time", None)
    data["request"] = RunRequest.model_validate_json(data["request"])
    return FlowRun(**data)


def _in_flight_count(alias_name: str, **equals):
    """Scalar subquery counting in-flight runs whose columns match *equals*."""
    runs = flow_runs.alias(alias_name)
    return (
        sa.select(sa.func.count())
        .select_from(runs)
        .where(runs.c.status.in_(_IN_FLIGHT))
        .where(*[runs.c[col] == val for col, val in equals.items()])
        .scalar_subquery()
    )


# ── Store ────────────────────────────────────────────────────────────────────

class FlowRunStore:
    def __init__(self, db: Database):
        self.db = db

    async def insert(self, run: FlowRun, capacity: int | None = None) -> bool:
        """Insert a scheduled run. Returns False if the queue already holds
        *capacity* scheduled runs; the count and the insert are one statement.
        """
        values = _row(run)
        if capacity is None:
            stmt = sa.insert(flow_runs).values(**values)
        else:
            queued = flow_runs.alias("queued")
            queued_count = (
                sa.select(sa.func.count())
                .select_from(queued)
                .where(queued.c.pool_name == run.pool_name)
                .where(queued.c.queue_name == run.queue_name)
                .where(queued.c.status == FlowRunStatus.SCHEDULED.value)
                .scalar_subquery()
            )
            columns = list(values)
            source = sa.select(*[
                sa.literal(values[c], type_=flow_runs.c[c].type).label(c) for c in columns
            ]).where(queued_count < capacity)
            stmt = sa.insert(flow_runs).from_select(columns, source)

        async def write(conn):
            return (await conn.execute(stmt)).rowcount

        return await self.db.transaction(write) == 1

    async def get(self, run_id: str) -> FlowRun:
        async def select(conn):
            return (await conn.execute(
                sa.select(flow_runs).where(flow_runs.c.id == run_id)
            )).fetchone()

        row = await self.db.read(select)
        if row is None:
            raise NotFoundError(f"Flow run '{run_id}' not found")
        return _to_run(row)

    async def list(
        self,
        pool_name: str | None = None,
        queue_name: str | None = None,
        deployment_id: str | None = None,
        status: FlowRunStatus | None = None,
        limit: int | None = None,
    ) -> list[FlowRun]:
        """Runs in enqueue order, optionally filtered."""
        query = sa.select(flow_runs)
        if pool_name is not None:
            query = query.where(flow_runs.c.pool_name == pool_name)
        if queue_name is not None:
            query = query.where(flow_runs.c.queue_name == queue_name)
        if deployment_id is not None:
            query = query.where(flow_runs.c.deployment_id == deployment_id)
        if status is not None:
            query = query.where(flow_runs.c.status == status.value)
        query = query.order_by(flow_runs.c.seq)
        if limit is not None:
            query = query.limit(limit)

        async def select(conn):
            return (await conn.execute(query)).fetchall()

        return [_to_run(r) for r in await self.db.read(select)]

    async def claim_candidates(
        self,
        pool_name: str,
        queue_names: list[str],
        cutoff: datetime,
    ) -> list[tuple[str, str]]:
        """(run_id, queue_name) of claimable runs, best first.

        Order: queue priority, then scheduled time, then enqueue order.
        Runs on paused queues and runs scheduled after *cutoff* are skipped.
        """
        query = (
            sa.select(flow_runs.c.id, flow_runs.c.queue_name)
            .select_from(flow_runs.join(
                work_queues,
                sa.and_(
                    work_queues.c.pool_name == flow_runs.c.pool_name,
                    work_queues.c.name == flow_runs.c.queue_name,
                ),
            ))
            .where(flow_runs.c.pool_name == pool_name)
            .where(flow_runs.c.status == FlowRunStatus.SCHEDULED.value)
            .where(flow_runs.c.scheduled_time <= cutoff)
            .where(sa.not_(work_queues.c.paused))
            .order_by(work_queues.c.priority, flow_runs.c.scheduled_time, flow_runs.c.seq)
        )
        if queue_names:
            query = query.where(flow_runs.c.queue_name.in_(queue_names))

        async def select(conn):
            return (await conn.execute(query)).fetchall()

        return [(r.id, r.queue_name) for r in await self.db.read(select)]

    async def claim(
        self,
        run_id: str,
        pool_name: str,
        queue_name: str,
        worker: str,
        now: datetime,
        queue_limit: int | None = None,
        pool_limit: int | None = None,
    ) -> bool:
        """Scheduled → Pending for *worker*, if the run is still unclaimed and
        neither the queue nor the pool is at its concurrency limit.
        """
        stmt = (
            sa.update(flow_runs)
            .where(flow_runs.c.id == run_id)
            .where(flow_runs.c.status == FlowRunStatus.SCHEDULED.value)
            .values(
                status=FlowRunStatus.PENDING.value,
                worker=worker,
                claimed_at=now,
                last_heartbeat_at=now,
            )
        )
        if queue_limit is not None:
            stmt = stmt.where(_in_flight_count(
                "queue_in_flight", pool_name=pool_name, queue_name=queue_name,
            ) < queue_limit)
        if pool_limit is not None:
            stmt = stmt.where(_in_flight_count("pool_in_flight", pool_name=pool_name) < pool_limit)

        async def write(conn):
            return (await conn.execute(stmt)).rowcount

        return await self.db.transaction(write) == 1

    async def transition(
        self,
        run_id: str,
        target: FlowRunStatus,
        values: dict[str, Any] | None = None,
        worker: str | None = None,
        heartbeat_before: datetime | None = None,
    ) -> bool:
        """Move a run to *target* if its current status allows it.

        *worker* additionally requires the run to be held by that worker;
        *heartbeat_before* requires the last heartbeat to be older than it.
        """
        stmt = (
            sa.update(flow_runs)
            .where(flow_runs.c.id == run_id)
            .where(flow_runs.c.status.in_([s.value for s in ALLOWED_SOURCES[target]]))
            .values(status=target.value, **(values or {}))
        )
        if worker is not None:
            stmt = stmt.where(flow_runs.c.worker == worker)
        if heartbeat_before is not None:
            stmt = stmt.where(flow_runs.c.last_heartbeat_at < heartbeat_before)

        async def write(conn):
            return (await conn.execute(stmt)).rowcount

        return await self.db.transaction(write) == 1

    async def touch_heartbeat(self, run_id: str, worker: str, now: datetime) -> bool:
        """Record a heartbeat for an in-flight run held by *worker*."""
        async def write(conn):
            result = await conn.execute(
                sa.update(flow_runs)
                .where(flow_runs.c.id == run_id)
                .where(flow_runs.c.worker == worker)
                .where(flow_runs.c.status.in_(_IN_FLIGHT))
                .values(last_heartbeat_at=now)
            )
            return result.rowcount

        return await self.db.transaction(write) == 1

    async def stale_running(self, heartbeat_before: datetime) -> list[str]:
        """Ids of Running runs whose last heartbeat is older than the cutoff."""
        async def select(conn):
            return (await conn.execute(
                sa.select(flow_runs.c.id)
                .where(flow_runs.c.status == FlowRunStatus.RUNNING.value)
                .where(flow_runs.c.last_heartbeat_at < heartbeat_before)
                .order_by(flow_runs.c.seq)
            )).fetchall()

        return [r.id for r in await self.db.read(select)]

    async def stale_pending(self, claimed_before: datetime) -> list[FlowRun]:
        """Pending runs claimed before the cutoff and never started."""
        async def select(conn):
            return (await conn.execute(
                sa.select(flow_runs)
                .where(flow_runs.c.status == FlowRunStatus.PENDING.value)
                .where(flow_runs.c.claimed_at < claimed_before)
                .order_by(flow_runs.c.seq)
            )).fetchall()

        return [_to_run(r) for r in await self.db.read(select)]

    async def count_in_flight(self, pool_name: str, queue_name: str | None = None) -> int:
        query = (
            sa.select(sa.func.count())
            .select_from(flow_runs)
            .where(flow_runs.c.pool_name == pool_name)
            .where(flow_runs.c.status.in_(_IN_FLIGHT))
        )
        if queue_name is not None:
            query = query.where(flow_runs.c.queue_name == queue_name)

        async def select(conn):
            return (await conn.execute(query)).scalar_one()

        return await self.db.read(select)
