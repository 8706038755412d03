"""Work pool and work queue models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_QUEUE_NAME = "default"


class WorkQueueCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    priority: int = Field(1, ge=1)                      # lower claims first
    concurrency_limit: int | None = Field(None, ge=0)   # max in-flight runs
    capacity: int | None = Field(None, ge=1)            # max queued, unclaimed runs
    paused: bool = False


class WorkQueueUpdate(BaseModel):
    description: str | None = None
    priority: int | None = Field(None, ge=1)
    concurrency_limit: int | None = Field(None, ge=0)
    capacity: int | None = Field(None, ge=1)
    paused: bool | None = None


class WorkQueue(WorkQueueCreate):
    pool_name: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkPoolCreate(BaseModel):
    name: str = Field(min_length=1)
    type: str = "process"
    description: str = ""
    concurrency_limit: int | None = Field(None, ge=0)
    base_job_variables: dict[str, Any] = {}


class WorkPool(WorkPoolCreate):
    default_queue_name: str = DEFAULT_QUEUE_NAME
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
