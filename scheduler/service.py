"""APScheduler-backed deployment scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.errors import (
    EngineError,
    QueueFullError,
    StoreUnavailableError,
    UnknownPoolError,
    UnknownQueueError,
)
from core.logging_config import set_trace_id
from deployments.models import DeploymentFilter
from scheduler.models import RunOverrides, RunRequest

if TYPE_CHECKING:
    from core.config import Settings
    from scheduler.dispatcher import RunDispatcher
    from store.deployment_store import DeploymentStore
    from workpools.matcher import WorkPoolMatcher

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "deployment-scheduler-tick"


@dataclass
class TickReport:
    trace_id: str
    enqueued: list[str] = field(default_factory=list)        # flow run ids
    backlogged: list[str] = field(default_factory=list)      # run request ids
    rejected: list[str] = field(default_factory=list)        # run request ids
    schema_errors: int = 0
    crashed: list[str] = field(default_factory=list)         # flow run ids


class DeploymentScheduler:
    """Periodically dispatches due deployment runs onto their work pools.

    Each tick looks ``lookahead`` ahead, so runs sit in their queues as
    Scheduled before they are due and workers can claim them on time.
    """

    def __init__(
        self,
        deployments: DeploymentStore,
        dispatcher: RunDispatcher,
        matcher: WorkPoolMatcher,
        interval: timedelta = timedelta(seconds=10),
        lookahead: timedelta = timedelta(hours=1),
        backlog_limit: int = 1000,
    ):
        self._deployments = deployments
        self._dispatcher = dispatcher
        self._matcher = matcher
        self.interval = interval
        self.lookahead = lookahead
        self.backlog_limit = backlog_limit
        self._aps = AsyncIOScheduler(timezone=timezone.utc)
        # requests turned away by full queues or an unavailable store,
        # retried on the next tick
        self._backlog: list[RunRequest] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        deployments: DeploymentStore,
        dispatcher: RunDispatcher,
        matcher: WorkPoolMatcher,
    ) -> DeploymentScheduler:
        return cls(
            deployments, dispatcher, matcher,
            interval=timedelta(seconds=settings.scheduler_interval_seconds),
            lookahead=timedelta(seconds=settings.scheduler_lookahead_seconds),
            backlog_limit=settings.scheduler_backlog_limit,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._aps.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
            id=_TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._aps.start()
        logger.info("DeploymentScheduler started",
                    extra={"interval_s": self.interval.total_seconds(),
                           "lookahead_s": self.lookahead.total_seconds()})

    async def shutdown(self) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=False)
        # cursors already moved past these occurrences
        for request in self._backlog:
            logger.error(
                "Backlogged run request dropped at shutdown",
                extra={"deployment_id": request.deployment_id, "run_request_id": request.id,
                       "schedule_id": request.schedule_id,
                       "scheduled_time": request.scheduled_time.isoformat()},
            )
        logger.info("DeploymentScheduler stopped", extra={"dropped": len(self._backlog)})

    @property
    def backlog(self) -> list[RunRequest]:
        return list(self._backlog)

    # ── Tick ─────────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Dispatch, enqueue, retry the backlog and reap crashed runs."""
        now = now or datetime.now(timezone.utc)
        report = TickReport(trace_id=set_trace_id())

        pending, self._backlog = self._backlog, []
        for request in pending:
            await self._enqueue(request, report)

        for deployment in await self._deployments.list(DeploymentFilter(paused=False)):
            if not deployment.work_pool_name or not deployment.schedules:
                continue
            try:
                result = await self._dispatcher.dispatch_due(deployment, now, now + self.lookahead)
            except EngineError as e:
                logger.error(
                    "Dispatch failed",
                    extra={"deployment_id": deployment.id, "error": str(e)},
                )
                continue
            report.schema_errors += len(result.errors)
            for request in result.run_requests:
                await self._enqueue(request, report)

        report.crashed = await self._matcher.reap_crashed(now)

        logger.info(
            "Scheduler tick",
            extra={"enqueued": len(report.enqueued), "backlogged": len(report.backlogged),
                   "rejected": len(report.rejected), "schema_errors": report.schema_errors,
                   "crashed": len(report.crashed)},
        )
        return report

    async def trigger_now(
        self,
        deployment_id: str,
        overrides: RunOverrides | None = None,
    ) -> str:
        """Dispatch and enqueue one out-of-schedule run. Returns the flow run ID."""
        set_trace_id()
        deployment = await self._deployments.get(deployment_id)
        request = self._dispatcher.create_run_request(deployment, overrides=overrides)
        run_id = await self._matcher.enqueue(request)
        logger.info("Run triggered", extra={"deployment_id": deployment_id, "flow_run_id": run_id})
        return run_id

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _enqueue(self, request: RunRequest, report: TickReport) -> None:
        try:
            report.enqueued.append(await self._matcher.enqueue(request))
        except QueueFullError:
            self._defer(request, report)
        except StoreUnavailableError as e:
            logger.warning(
                "Store unavailable, run request deferred",
                extra={"deployment_id": request.deployment_id, "run_request_id": request.id,
                       "error": str(e)},
            )
            self._defer(request, report)
        except (UnknownPoolError, UnknownQueueError) as e:
            report.rejected.append(request.id)
            logger.error(
                "Run request targets a missing work pool or queue",
                extra={"deployment_id": request.deployment_id, "run_request_id": request.id,
                       "error": str(e)},
            )

    def _defer(self, request: RunRequest, report: TickReport) -> None:
        if len(self._backlog) >= self.backlog_limit:
            report.rejected.append(request.id)
            logger.error(
                "Backlog full, run request dropped",
                extra={"deployment_id": request.deployment_id, "run_request_id": request.id,
                       "scheduled_time": request.scheduled_time.isoformat(),
                       "backlog_limit": self.backlog_limit},
            )
            return
        self._backlog.append(request)
        report.backlogged.append(request.id)
