"""Flow run state machine types."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from scheduler.models import RunRequest


class FlowRunStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    FlowRunStatus.COMPLETED,
    FlowRunStatus.FAILED,
    FlowRunStatus.CRASHED,
    FlowRunStatus.CANCELLED,
})

# Statuses that occupy a concurrency slot on their queue and pool
IN_FLIGHT_STATUSES = frozenset({FlowRunStatus.PENDING, FlowRunStatus.RUNNING})

# target status → statuses it may be entered from
ALLOWED_SOURCES: dict[FlowRunStatus, frozenset[FlowRunStatus]] = {
    FlowRunStatus.PENDING:   frozenset({FlowRunStatus.SCHEDULED}),
    FlowRunStatus.RUNNING:   frozenset({FlowRunStatus.PENDING}),
    FlowRunStatus.COMPLETED: frozenset({FlowRunStatus.RUNNING}),
    FlowRunStatus.FAILED:    frozenset({FlowRunStatus.PENDING, FlowRunStatus.RUNNING}),
    FlowRunStatus.CRASHED:   frozenset({FlowRunStatus.RUNNING}),
    FlowRunStatus.CANCELLED: frozenset({
        FlowRunStatus.SCHEDULED, FlowRunStatus.PENDING, FlowRunStatus.RUNNING,
    }),
}


def can_transition(current: FlowRunStatus, target: FlowRunStatus) -> bool:
    return current in ALLOWED_SOURCES.get(target, frozenset())


class FlowRun(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request: RunRequest
    status: FlowRunStatus = FlowRunStatus.SCHEDULED
    pool_name: str
    queue_name: str
    worker: str | None = None
    message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_heartbeat_at: datetime | None = None

    @property
    def deployment_id(self) -> str:
        return self.request.deployment_id

    @property
    def scheduled_time(self) -> datetime:
        return self.request.scheduled_time

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None
