"""API request and response models."""

from pydantic import BaseModel, Field

from scheduler.models import RunOverrides


class TriggerRunRequest(BaseModel):
    overrides: RunOverrides = RunOverrides()


class TriggerRunResponse(BaseModel):
    flow_run_id: str
    status: str


class ClaimRequest(BaseModel):
    worker: str = Field(min_length=1)
    queue_names: list[str] = []
    max_runs: int = Field(1, ge=1)


class WorkerReport(BaseModel):
    worker: str = Field(min_length=1)


class FinishReport(BaseModel):
    worker: str | None = None
    message: str = ""


class CancelRequest(BaseModel):
    message: str = "Cancelled by request"
