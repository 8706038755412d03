"""Deployment records and their schedule definitions."""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from dateutil.rrule import rrulestr
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, Field, field_validator, model_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone '{name}'") from e
    return name


# ── Schedule rules (tagged on `kind`) ─────────────────────────────────────────

class CronRule(BaseModel):
    kind: Literal["cron"] = "cron"
    cron: str
    timezone: str = "UTC"

    check_tz = field_validator("timezone")(_check_timezone)

    @model_validator(mode="after")
    def check_expression(self):
        # from_crontab raises ValueError on a bad field count or field value
        CronTrigger.from_crontab(self.cron, timezone=self.timezone)
        return self


class IntervalRule(BaseModel):
    kind: Literal["interval"] = "interval"
    interval: timedelta
    anchor_date: datetime = EPOCH

    @field_validator("interval")
    @classmethod
    def check_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("interval must be positive")
        return v

    @field_validator("anchor_date")
    @classmethod
    def anchor_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class RRuleRule(BaseModel):
    kind: Literal["rrule"] = "rrule"
    rrule: str
    dtstart: datetime
    timezone: str = "UTC"

    check_tz = field_validator("timezone")(_check_timezone)

    @model_validator(mode="after")
    def check_expression(self):
        self.dtstart = as_utc(self.dtstart).astimezone(ZoneInfo(self.timezone))
        rrulestr(self.rrule, dtstart=self.dtstart, forceset=True)
        return self


ScheduleRule = Annotated[
    Union[CronRule, IntervalRule, RRuleRule],
    Field(discriminator="kind"),
]


class DeploymentSchedule(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rule: ScheduleRule
    active: bool = True


# ── Deployment ────────────────────────────────────────────────────────────────

class PullStep(BaseModel):
    """Declarative retrieval action run by the worker before execution."""

    action: str
    inputs: dict[str, Any] = {}


class DeploymentFields(BaseModel):
    """Mutable deployment fields shared by create and update payloads."""

    entrypoint: str = Field(min_length=1)
    path: str | None = None
    description: str = ""
    parameters: dict[str, Any] = {}
    parameter_schema: dict[str, Any] | None = None
    enforce_parameter_schema: bool = True
    schedules: list[DeploymentSchedule] = []
    paused: bool = False
    trigger: str | None = None
    version: str | None = None
    tags: set[str] = set()
    work_pool_name: str | None = None
    work_queue_name: str | None = None
    job_variables: dict[str, Any] = {}
    pull_steps: list[PullStep] = []

    @field_validator("parameter_schema")
    @classmethod
    def check_schema(cls, v: dict | None) -> dict | None:
        if v is not None:
            try:
                Draft202012Validator.check_schema(v)
            except SchemaError as e:
                raise ValueError(f"Invalid parameter_schema: {e.message}") from e
        return v

    @model_validator(mode="after")
    def check_schedule_ids(self):
        ids = [s.id for s in self.schedules]
        if len(ids) != len(set(ids)):
            raise ValueError("Schedule ids must be unique within a deployment")
        return self


class DeploymentCreate(DeploymentFields):
    flow_id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class DeploymentUpdate(BaseModel):
    """Partial update. Only fields explicitly set are replaced."""

    entrypoint: str | None = Field(None, min_length=1)
    path: str | None = None
    description: str | None = None
    parameters: dict[str, Any] | None = None
    parameter_schema: dict[str, Any] | None = None
    enforce_parameter_schema: bool | None = None
    schedules: list[DeploymentSchedule] | None = None
    paused: bool | None = None
    trigger: str | None = None
    version: str | None = None
    tags: set[str] | None = None
    work_pool_name: str | None = None
    work_queue_name: str | None = None
    job_variables: dict[str, Any] | None = None
    pull_steps: list[PullStep] | None = None


class Deployment(DeploymentCreate):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    revision: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identity(self) -> tuple[str, str]:
        return self.flow_id, self.name

    def schedule(self, schedule_id: str) -> DeploymentSchedule | None:
        return next((s for s in self.schedules if s.id == schedule_id), None)


class DeploymentFilter(BaseModel):
    flow_id: str | None = None
    name: str | None = None
    paused: bool | None = None
    work_pool_name: str | None = None
    tags: set[str] = set()
    limit: int | None = Field(None, ge=1)
    offset: int = Field(0, ge=0)


# Fields that change what a run executes; the derived version hashes these.
_CONTENT_FIELDS = (
    "flow_id", "entrypoint", "path", "parameters", "parameter_schema",
    "job_variables", "pull_steps",
)


def content_version(deployment: DeploymentCreate) -> str:
    """Short SHA-256 over the execution-relevant fields."""
    payload = deployment.model_dump(mode="json", include=set(_CONTENT_FIELDS))
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    )
    return digest.hexdigest()[:12]
