"""Work pool matcher: hands queued run requests to polling workers."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from core.errors import (
    ClaimConflictError,
    InvalidStateTransitionError,
    QueueFullError,
    UnknownPoolError,
)
from core.event_bus import EventBus
from core.state import FlowRun, FlowRunStatus, can_transition
from scheduler.models import RunRequest
from store.flow_run_store import FlowRunStore
from store.work_pool_store import WorkPoolStore
from workpools.models import (
    WorkPool,
    WorkPoolCreate,
    WorkQueue,
    WorkQueueCreate,
    WorkQueueUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT = timedelta(seconds=90)


class WorkPoolMatcher:
    """Queues run requests on work pools and lets workers claim them.

    Claims are per-run compare-and-swap updates; there is no lock spanning a
    queue, so many workers can poll the same pool at once.
    """

    def __init__(
        self,
        pools: WorkPoolStore,
        runs: FlowRunStore,
        event_bus: EventBus | None = None,
        heartbeat_timeout: timedelta = DEFAULT_HEARTBEAT_TIMEOUT,
    ):
        self.pools = pools
        self.runs = runs
        self.event_bus = event_bus
        self.heartbeat_timeout = heartbeat_timeout

    # ── Pools and queues ─────────────────────────────────────────────────────

    async def create_pool(self, spec: WorkPoolCreate) -> WorkPool:
        """Create a pool along with its default queue."""
        pool = WorkPool(**spec.model_dump())
        default_queue = WorkQueue(name=pool.default_queue_name, pool_name=pool.name)
        await self.pools.create_pool(pool, default_queue)
        logger.info("Work pool created", extra={"pool": pool.name, "type": pool.type})
        return pool

    async def get_pool(self, name: str) -> WorkPool:
        return await self.pools.get_pool(name)

    async def list_pools(self) -> list[WorkPool]:
        return await self.pools.list_pools()

    async def create_queue(self, pool_name: str, spec: WorkQueueCreate) -> WorkQueue:
        await self.pools.get_pool(pool_name)
        queue = WorkQueue(**spec.model_dump(), pool_name=pool_name)
        await self.pools.create_queue(queue)
        logger.info("Work queue created", extra={"pool": pool_name, "queue": queue.name})
        return queue

    async def get_queue(self, pool_name: str, name: str) -> WorkQueue:
        await self.pools.get_pool(pool_name)
        return await self.pools.get_queue(pool_name, name)

    async def list_queues(self, pool_name: str) -> list[WorkQueue]:
        await self.pools.get_pool(pool_name)
        return await self.pools.list_queues(pool_name)

    async def update_queue(
        self,
        pool_name: str,
        name: str,
        changes: WorkQueueUpdate,
    ) -> WorkQueue:
        await self.pools.get_pool(pool_name)
        return await self.pools.update_queue(
            pool_name, name, changes.model_dump(exclude_unset=True)
        )

    # ── Enqueue / claim ──────────────────────────────────────────────────────

    async def enqueue(self, request: RunRequest) -> str:
        """Place *request* on its target queue and return the flow run ID.

        Raises UnknownPoolError / UnknownQueueError for a bad target and
        QueueFullError when the queue is at capacity.
        """
        if not request.work_pool_name:
            raise UnknownPoolError(
                f"Run request for deployment '{request.deployment_name}' has no work pool",
                deployment_id=request.deployment_id,
            )
        pool = await self.pools.get_pool(request.work_pool_name)
        queue = await self.pools.get_queue(
            pool.name, request.work_queue_name or pool.default_queue_name
        )

        if pool.base_job_variables:
            request = request.model_copy(update={
                "job_variables": {**pool.base_job_variables, **request.job_variables},
            })
        run = FlowRun(
            request=request,
            pool_name=pool.name,
            queue_name=queue.name,
        )
        if not await self.runs.insert(run, capacity=queue.capacity):
            logger.warning(
                "Work queue full",
                extra={"pool": pool.name, "queue": queue.name, "capacity": queue.capacity},
            )
            raise QueueFullError(
                f"Work queue '{queue.name}' in pool '{pool.name}' is at capacity "
                f"({queue.capacity})",
                pool=pool.name, queue=queue.name,
            )
        logger.info(
            "Run enqueued",
            extra={"flow_run_id": run.id, "deployment_id": request.deployment_id,
                   "pool": pool.name, "queue": queue.name,
                   "scheduled_time": request.scheduled_time.isoformat()},
        )
        await self._publish(run)
        return run.id

    async def claim(
        self,
        worker: str,
        pool_name: str,
        queue_names: set[str] | list[str] | None = None,
        max_runs: int = 1,
        now: datetime | None = None,
    ) -> list[FlowRun]:
        """Claim up to *max_runs* due runs from the given queues of a pool.

        Empty *queue_names* means every queue of the pool. Queues at their
        concurrency limit, or in a pool at its limit, yield nothing until an
        in-flight run finishes.
        """
        if max_runs <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        pool = await self.pools.get_pool(pool_name)
        queues = {q.name: q for q in await self.pools.list_queues(pool_name)}
        names = sorted(queue_names or [])
        for name in names:
            if name not in queues:
                await self.pools.get_queue(pool_name, name)   # raises UnknownQueueError

        claimed: list[FlowRun] = []
        saturated: set[str] = set()
        for run_id, queue_name in await self.runs.claim_candidates(pool_name, names, now):
            if len(claimed) >= max_runs:
                break
            queue = queues.get(queue_name)
            if queue is None or queue_name in saturated:
                continue
            try:
                await self._claim_one(run_id, pool, queue, worker, now)
            except ClaimConflictError:
                # lost the race (or hit a limit); move on to the next candidate
                if await self._queue_at_limit(pool, queue):
                    saturated.add(queue_name)
                continue
            run = await self.runs.get(run_id)
            claimed.append(run)
            await self._publish(run)

        if claimed:
            logger.info(
                "Runs claimed",
                extra={"worker": worker, "pool": pool_name, "count": len(claimed),
                       "flow_run_ids": [r.id for r in claimed]},
            )
        return claimed

    async def _claim_one(
        self,
        run_id: str,
        pool: WorkPool,
        queue: WorkQueue,
        worker: str,
        now: datetime,
    ) -> None:
        won = await self.runs.claim(
            run_id, pool.name, queue.name, worker, now,
            queue_limit=queue.concurrency_limit,
            pool_limit=pool.concurrency_limit,
        )
        if not won:
            raise ClaimConflictError(
                f"Flow run '{run_id}' could not be claimed", flow_run_id=run_id,
            )

    async def _queue_at_limit(self, pool: WorkPool, queue: WorkQueue) -> bool:
        if queue.concurrency_limit is not None:
            if await self.runs.count_in_flight(pool.name, queue.name) >= queue.concurrency_limit:
                return True
        if pool.concurrency_limit is not None:
            if await self.runs.count_in_flight(pool.name) >= pool.concurrency_limit:
                return True
        return False

    # ── Worker reports ───────────────────────────────────────────────────────

    async def mark_running(self, run_id: str, worker: str, now: datetime | None = None) -> FlowRun:
        """Pending → Running, reported by the worker holding the run."""
        now = now or datetime.now(timezone.utc)
        return await self._transition(
            run_id, FlowRunStatus.RUNNING,
            {"started_at": now, "last_heartbeat_at": now},
            worker=worker,
        )

    async def heartbeat(self, run_id: str, worker: str, now: datetime | None = None) -> FlowRun:
        """Record a heartbeat and return the run's current state.

        A worker learns about cancellation from the status it gets back.
        """
        now = now or datetime.now(timezone.utc)
        if not await self.runs.touch_heartbeat(run_id, worker, now):
            run = await self.runs.get(run_id)
            if run.worker != worker:
                raise ClaimConflictError(
                    f"Flow run '{run_id}' is held by another worker",
                    flow_run_id=run_id, worker=worker,
                )
            return run
        return await self.runs.get(run_id)

    async def complete(self, run_id: str, worker: str | None = None) -> FlowRun:
        return await self._finish(run_id, FlowRunStatus.COMPLETED, None, worker)

    async def fail(self, run_id: str, message: str = "", worker: str | None = None) -> FlowRun:
        return await self._finish(run_id, FlowRunStatus.FAILED, message, worker)

    async def cancel(self, run_id: str, message: str = "Cancelled by request") -> FlowRun:
        """Mark a non-terminal run Cancelled. The executing worker must stop on
        its own once it observes the new status.
        """
        run = await self._finish(run_id, FlowRunStatus.CANCELLED, message, None)
        logger.info("Run cancelled", extra={"flow_run_id": run_id})
        return run

    async def reap_crashed(self, now: datetime | None = None) -> list[str]:
        """Running runs without a heartbeat within the timeout become Crashed.

        Pending runs claimed longer ago than the timeout are only logged.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.heartbeat_timeout
        crashed: list[str] = []
        for run_id in await self.runs.stale_running(cutoff):
            moved = await self.runs.transition(
                run_id, FlowRunStatus.CRASHED,
                {"finished_at": now, "message": "Worker heartbeat timed out"},
                heartbeat_before=cutoff,
            )
            if not moved:
                continue   # a heartbeat or report arrived in between
            run = await self.runs.get(run_id)
            crashed.append(run_id)
            logger.warning(
                "Run crashed: heartbeat timed out",
                extra={"flow_run_id": run_id, "worker": run.worker,
                       "last_heartbeat_at": run.last_heartbeat_at.isoformat()
                       if run.last_heartbeat_at else None},
            )
            await self._publish(run)
        for run in await self.runs.stale_pending(cutoff):
            # Pending cannot become Crashed; the run holds its slot until handled
            logger.warning(
                "Run claimed but never started",
                extra={"flow_run_id": run.id, "worker": run.worker,
                       "pool": run.pool_name, "queue": run.queue_name,
                       "claimed_at": run.claimed_at.isoformat()},
            )
        return crashed

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get_run(self, run_id: str) -> FlowRun:
        return await self.runs.get(run_id)

    async def list_runs(self, **filters) -> list[FlowRun]:
        return await self.runs.list(**filters)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _finish(
        self,
        run_id: str,
        target: FlowRunStatus,
        message: str | None,
        worker: str | None,
    ) -> FlowRun:
        values = {"finished_at": datetime.now(timezone.utc)}
        if message is not None:
            values["message"] = message
        return await self._transition(run_id, target, values, worker=worker)

    async def _transition(
        self,
        run_id: str,
        target: FlowRunStatus,
        values: dict,
        worker: str | None = None,
    ) -> FlowRun:
        if not await self.runs.transition(run_id, target, values, worker=worker):
            run = await self.runs.get(run_id)   # raises NotFoundError
            if worker is not None and run.worker != worker and can_transition(run.status, target):
                raise ClaimConflictError(
                    f"Flow run '{run_id}' is held by another worker",
                    flow_run_id=run_id, worker=worker,
                )
            raise InvalidStateTransitionError(
                f"Flow run '{run_id}' cannot move from {run.status.value} to {target.value}",
                flow_run_id=run_id, current=run.status.value, target=target.value,
            )
        run = await self.runs.get(run_id)
        logger.info(
            "Run state changed",
            extra={"flow_run_id": run_id, "status": target.value, "worker": run.worker},
        )
        await self._publish(run)
        return run

    async def _publish(self, run: FlowRun) -> None:
        if self.event_bus:
            await self.event_bus.publish(run.id, make_event(run))


def make_event(run: FlowRun) -> dict:
    """Serialise a FlowRun into an SSE-friendly dict."""
    return {
        "type": "state_change",
        "flow_run_id": run.id,
        "deployment_id": run.deployment_id,
        "status": run.status.value,
        "pool": run.pool_name,
        "queue": run.queue_name,
        "worker": run.worker,
        "message": run.message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
