"""Run dispatcher: turns due schedule occurrences into run requests."""

from __future__ import annotations

import asyncio
import copy
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping

from jsonschema import Draft202012Validator

from core.errors import ConflictError, SchemaValidationError
from deployments.models import Deployment, DeploymentSchedule, as_utc
from scheduler.evaluator import occurrences_between
from scheduler.models import RunOverrides, RunRequest, ScheduleCursor
from store.cursor_store import CursorStore

logger = logging.getLogger(__name__)


@dataclass
class OccurrenceError:
    """One occurrence that could not become a run request."""
    schedule_id: str
    scheduled_time: datetime
    error: SchemaValidationError


@dataclass
class DispatchResult:
    run_requests: list[RunRequest] = field(default_factory=list)
    errors: list[OccurrenceError] = field(default_factory=list)

    def extend(self, other: DispatchResult) -> None:
        self.run_requests.extend(other.run_requests)
        self.errors.extend(other.errors)


class RunDispatcher:
    """Builds run requests for due occurrences, at most once per occurrence.

    Each (deployment, schedule) pair has a cursor holding the last dispatched
    occurrence. Only strictly later occurrences are emitted, and the cursor
    moves by compare-and-swap, so two dispatchers racing on the same window
    cannot both emit it.
    """

    def __init__(self, cursors: CursorStore, cas_attempts: int = 5):
        self.cursors = cursors
        self.cas_attempts = max(1, cas_attempts)
        # entries vanish once no dispatch holds the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ── Public API ───────────────────────────────────────────────────────────

    async def dispatch_due(
        self,
        deployment: Deployment,
        start: datetime,
        end: datetime,
        *,
        overrides: RunOverrides | None = None,
        occurrence_overrides: Mapping[datetime, RunOverrides] | None = None,
    ) -> DispatchResult:
        """Run requests for every not-yet-dispatched occurrence in ``(start, end]``.

        Args:
            deployment:           The deployment whose schedules are evaluated.
            start, end:           The dispatch window.
            overrides:            Trigger-supplied values applied to every occurrence.
            occurrence_overrides: Values for individual occurrences, keyed by
                                  scheduled time; applied after *overrides*.

        A parameter-schema failure is recorded in ``errors`` for that single
        occurrence; the remaining occurrences are still dispatched.
        """
        result = DispatchResult()
        if deployment.paused:
            return result
        start, end = as_utc(start), as_utc(end)
        per_occurrence = {as_utc(ts): o for ts, o in (occurrence_overrides or {}).items()}

        await self._prune_stale_cursors(deployment)
        for schedule in deployment.schedules:
            async with self._lock_for(deployment.id, schedule.id):
                result.extend(await self._dispatch_schedule(
                    deployment, schedule, start, end, overrides, per_occurrence,
                ))

        if result.run_requests or result.errors:
            logger.info(
                "Deployment dispatched",
                extra={"deployment_id": deployment.id, "deployment": deployment.name,
                       "runs": len(result.run_requests), "errors": len(result.errors),
                       "window_start": start.isoformat(), "window_end": end.isoformat()},
            )
        return result

    def create_run_request(
        self,
        deployment: Deployment,
        *,
        scheduled_time: datetime | None = None,
        overrides: RunOverrides | None = None,
        schedule_id: str | None = None,
    ) -> RunRequest:
        """Build one run request. Raises SchemaValidationError on bad parameters.

        Out-of-schedule callers (trigger-now, automations) use this directly;
        no cursor is involved.
        """
        scheduled_time = as_utc(scheduled_time or datetime.now(timezone.utc))
        layers = [o for o in (overrides,) if o is not None]
        return self._build(deployment, schedule_id, scheduled_time, layers)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _dispatch_schedule(
        self,
        deployment: Deployment,
        schedule: DeploymentSchedule,
        start: datetime,
        end: datetime,
        overrides: RunOverrides | None,
        per_occurrence: dict[datetime, RunOverrides],
    ) -> DispatchResult:
        for _ in range(self.cas_attempts):
            cursor = await self.cursors.get(deployment.id, schedule.id)
            floor = start
            if cursor.last_dispatched_at is not None and cursor.last_dispatched_at > floor:
                floor = cursor.last_dispatched_at
            occurrences = occurrences_between(schedule, floor, end, paused=deployment.paused)
            if not occurrences:
                return DispatchResult()

            batch = DispatchResult()
            for ts in occurrences:
                layers = [o for o in (overrides, per_occurrence.get(ts)) if o is not None]
                try:
                    batch.run_requests.append(self._build(deployment, schedule.id, ts, layers))
                except SchemaValidationError as e:
                    logger.warning(
                        "Occurrence rejected by parameter schema",
                        extra={"deployment_id": deployment.id, "schedule_id": schedule.id,
                               "scheduled_time": ts.isoformat(), "errors": e.errors},
                    )
                    batch.errors.append(OccurrenceError(schedule.id, ts, e))

            if await self._advance(cursor, occurrences[-1], deployment.revision):
                return batch
            logger.debug(
                "Schedule cursor moved concurrently, re-evaluating",
                extra={"deployment_id": deployment.id, "schedule_id": schedule.id},
            )

        raise ConflictError(
            f"Schedule '{schedule.id}' of deployment '{deployment.id}' is being "
            "dispatched concurrently",
            deployment_id=deployment.id, schedule_id=schedule.id,
        )

    def _lock_for(self, deployment_id: str, schedule_id: str) -> asyncio.Lock:
        key = (deployment_id, schedule_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _advance(self, cursor: ScheduleCursor, last: datetime, revision: int) -> bool:
        return await self.cursors.advance(cursor, last, revision) is not None

    async def _prune_stale_cursors(self, deployment: Deployment) -> None:
        """After an edit, forget cursors of schedules the deployment no longer has."""
        cursors = await self.cursors.list_for(deployment.id)
        if any(c.deployment_revision != deployment.revision for c in cursors):
            keep = {s.id for s in deployment.schedules}
            if any(c.schedule_id not in keep for c in cursors):
                removed = await self.cursors.prune(deployment.id, keep)
                logger.info(
                    "Pruned schedule cursors",
                    extra={"deployment_id": deployment.id, "removed": removed},
                )

    def _build(
        self,
        deployment: Deployment,
        schedule_id: str | None,
        scheduled_time: datetime,
        layers: list[RunOverrides],
    ) -> RunRequest:
        parameters = copy.deepcopy(deployment.parameters)
        job_variables = copy.deepcopy(deployment.job_variables)
        for layer in layers:
            parameters.update(copy.deepcopy(layer.parameters))
            job_variables.update(copy.deepcopy(layer.job_variables))

        if deployment.enforce_parameter_schema and deployment.parameter_schema:
            _validate_parameters(parameters, deployment.parameter_schema, deployment.id)

        return RunRequest(
            deployment_id=deployment.id,
            flow_id=deployment.flow_id,
            deployment_name=deployment.name,
            deployment_version=deployment.version,
            schedule_id=schedule_id,
            scheduled_time=scheduled_time,
            entrypoint=deployment.entrypoint,
            path=deployment.path,
            parameters=parameters,
            job_variables=job_variables,
            pull_steps=[s.model_copy(deep=True) for s in deployment.pull_steps],
            tags=sorted(deployment.tags),
            work_pool_name=deployment.work_pool_name,
            work_queue_name=deployment.work_queue_name,
            idempotency_key=(
                f"scheduled {deployment.id} {schedule_id} {scheduled_time.isoformat()}"
                if schedule_id else None
            ),
        )


def _validate_parameters(parameters: dict, schema: dict, deployment_id: str) -> None:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(parameters), key=lambda e: [str(p) for p in e.path])
    if errors:
        messages = [
            f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in errors
        ]
        raise SchemaValidationError(
            f"Parameters do not match schema: {'; '.join(messages)}",
            errors=messages,
            deployment_id=deployment_id,
        )
