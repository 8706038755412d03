"""Scheduler data models."""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from deployments.models import PullStep


class RunOverrides(BaseModel):
    """Values a trigger (or a trigger-now call) lays over deployment defaults."""

    parameters: dict[str, Any] = {}
    job_variables: dict[str, Any] = {}


class RunRequest(BaseModel):
    """Instruction to start one execution. Never mutated once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    deployment_id: str
    flow_id: str
    deployment_name: str
    deployment_version: str | None = None
    schedule_id: str | None = None          # None for out-of-schedule runs
    scheduled_time: datetime
    entrypoint: str
    path: str | None = None
    parameters: dict[str, Any] = {}
    job_variables: dict[str, Any] = {}
    pull_steps: list[PullStep] = []
    tags: list[str] = []
    work_pool_name: str | None = None
    work_queue_name: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ScheduleCursor(BaseModel):
    """Last dispatched occurrence for one (deployment, schedule) pair.

    ``version`` 0 means no row exists yet; every successful advance bumps it.
    """

    deployment_id: str
    schedule_id: str
    last_dispatched_at: datetime | None = None
    deployment_revision: int = 0
    version: int = 0
