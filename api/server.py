"""FastAPI service layer for the deployment engine."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from api.models import (
    CancelRequest,
    ClaimRequest,
    FinishReport,
    TriggerRunRequest,
    TriggerRunResponse,
    WorkerReport,
)
from core.config import get_settings
from core.errors import EngineError, SchemaValidationError
from core.event_bus import EventBus
from core.state import TERMINAL_STATUSES, FlowRun, FlowRunStatus
from deployments.loader import load_deployment_file
from deployments.models import Deployment, DeploymentCreate, DeploymentFilter, DeploymentUpdate
from scheduler.dispatcher import RunDispatcher
from scheduler.service import DeploymentScheduler
from store.cursor_store import CursorStore
from store.database import Database
from store.deployment_store import DeploymentStore
from store.flow_run_store import FlowRunStore
from store.work_pool_store import WorkPoolStore
from workpools.matcher import WorkPoolMatcher, make_event
from workpools.models import WorkPool, WorkPoolCreate, WorkQueue, WorkQueueCreate, WorkQueueUpdate

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at import time so routes work even when ASGITransport doesn't trigger
# the lifespan (e.g. in tests, which swap these out per test).

_settings = get_settings()
_db = Database.from_settings(_settings)
_deployments = DeploymentStore(_db)
_event_bus = EventBus()
_matcher = WorkPoolMatcher(
    WorkPoolStore(_db),
    FlowRunStore(_db),
    event_bus=_event_bus,
    heartbeat_timeout=timedelta(seconds=_settings.heartbeat_timeout_seconds),
)
_dispatcher = RunDispatcher(CursorStore(_db), cas_attempts=_settings.cursor_cas_attempts)
_scheduler = DeploymentScheduler.from_settings(_settings, _deployments, _dispatcher, _matcher)


async def apply_deployment_file(path: str) -> list[Deployment]:
    """Create or update every deployment declared in *path*."""
    applied = [await _deployments.upsert(spec) for spec in load_deployment_file(path)]
    logger.info("Deployment file applied", extra={"path": path, "deployments": len(applied)})
    return applied


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _db.init()
    if _settings.deployments_file:
        await apply_deployment_file(_settings.deployments_file)
    if _settings.scheduler_enabled:
        await _scheduler.start()
    yield
    await _scheduler.shutdown()
    await _db.dispose()


app = FastAPI(
    title="Deployment Engine API",
    description="Deployments, schedules and work pools for flow runs.",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error mapping ─────────────────────────────────────────────────────────────

@app.exception_handler(EngineError)
async def engine_error(request: Request, exc: EngineError):
    body: dict = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, SchemaValidationError):
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(ValidationError)
async def model_validation_error(request: Request, exc: ValidationError):
    # partial updates are validated against the merged record inside the store
    return JSONResponse(status_code=422, content={"detail": str(exc), "error": "ValidationError"})


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok"}


# ── Deployments ───────────────────────────────────────────────────────────────

@app.post("/deployments", response_model=Deployment, status_code=201)
async def create_deployment(req: DeploymentCreate):
    """Create a deployment. 409 if the flow already has one with this name."""
    return await _deployments.create(req)


@app.get("/deployments", response_model=list[Deployment])
async def list_deployments(
    flow_id: str | None = None,
    name: str | None = None,
    paused: bool | None = None,
    work_pool_name: str | None = None,
    tag: list[str] = Query(default=[]),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
):
    return await _deployments.list(DeploymentFilter(
        flow_id=flow_id, name=name, paused=paused, work_pool_name=work_pool_name,
        tags=set(tag), limit=limit, offset=offset,
    ))


@app.get("/deployments/{deployment_id}", response_model=Deployment)
async def get_deployment(deployment_id: str):
    return await _deployments.get(deployment_id)


@app.patch("/deployments/{deployment_id}", response_model=Deployment)
async def update_deployment(deployment_id: str, req: DeploymentUpdate):
    """Replace the fields present in the body; others are left untouched."""
    return await _deployments.update(deployment_id, req)


@app.delete("/deployments/{deployment_id}", status_code=204)
async def delete_deployment(deployment_id: str):
    await _deployments.delete(deployment_id)


@app.post("/deployments/{deployment_id}/pause", response_model=Deployment)
async def pause_deployment(deployment_id: str):
    """Stop scheduling new runs. Runs already queued are left alone."""
    return await _deployments.set_paused(deployment_id, True)


@app.post("/deployments/{deployment_id}/resume", response_model=Deployment)
async def resume_deployment(deployment_id: str):
    return await _deployments.set_paused(deployment_id, False)


@app.post("/deployments/{deployment_id}/runs", response_model=TriggerRunResponse, status_code=201)
async def trigger_run(deployment_id: str, req: TriggerRunRequest | None = None):
    """Queue one run now, outside the deployment's schedules."""
    overrides = req.overrides if req else None
    run_id = await _scheduler.trigger_now(deployment_id, overrides)
    return TriggerRunResponse(flow_run_id=run_id, status=FlowRunStatus.SCHEDULED.value)


@app.get("/deployments/{deployment_id}/runs", response_model=list[FlowRun])
async def list_deployment_runs(deployment_id: str):
    await _deployments.get(deployment_id)
    return await _matcher.list_runs(deployment_id=deployment_id)


# ── Work pools ────────────────────────────────────────────────────────────────

@app.post("/work_pools", response_model=WorkPool, status_code=201)
async def create_work_pool(req: WorkPoolCreate):
    return await _matcher.create_pool(req)


@app.get("/work_pools", response_model=list[WorkPool])
async def list_work_pools():
    return await _matcher.list_pools()


@app.get("/work_pools/{pool_name}", response_model=WorkPool)
async def get_work_pool(pool_name: str):
    return await _matcher.get_pool(pool_name)


@app.post("/work_pools/{pool_name}/queues", response_model=WorkQueue, status_code=201)
async def create_work_queue(pool_name: str, req: WorkQueueCreate):
    return await _matcher.create_queue(pool_name, req)


@app.get("/work_pools/{pool_name}/queues", response_model=list[WorkQueue])
async def list_work_queues(pool_name: str):
    return await _matcher.list_queues(pool_name)


@app.get("/work_pools/{pool_name}/queues/{queue_name}", response_model=WorkQueue)
async def get_work_queue(pool_name: str, queue_name: str):
    return await _matcher.get_queue(pool_name, queue_name)


@app.patch("/work_pools/{pool_name}/queues/{queue_name}", response_model=WorkQueue)
async def update_work_queue(pool_name: str, queue_name: str, req: WorkQueueUpdate):
    return await _matcher.update_queue(pool_name, queue_name, req)


@app.post("/work_pools/{pool_name}/claim", response_model=list[FlowRun])
async def claim_runs(pool_name: str, req: ClaimRequest):
    """Worker poll: claim up to max_runs due runs from the given queues."""
    return await _matcher.claim(req.worker, pool_name, req.queue_names, req.max_runs)


# ── Flow runs ─────────────────────────────────────────────────────────────────

@app.get("/flow_runs", response_model=list[FlowRun])
async def list_flow_runs(
    pool_name: str | None = None,
    queue_name: str | None = None,
    deployment_id: str | None = None,
    status: FlowRunStatus | None = None,
    limit: int | None = Query(default=None, ge=1),
):
    return await _matcher.list_runs(
        pool_name=pool_name, queue_name=queue_name,
        deployment_id=deployment_id, status=status, limit=limit,
    )


@app.get("/flow_runs/{run_id}", response_model=FlowRun)
async def get_flow_run(run_id: str):
    return await _matcher.get_run(run_id)


@app.post("/flow_runs/{run_id}/start", response_model=FlowRun)
async def start_flow_run(run_id: str, req: WorkerReport):
    return await _matcher.mark_running(run_id, req.worker)


@app.post("/flow_runs/{run_id}/heartbeat", response_model=FlowRun)
async def heartbeat_flow_run(run_id: str, req: WorkerReport):
    """Keep a run alive. The returned status tells the worker about cancellation."""
    return await _matcher.heartbeat(run_id, req.worker)


@app.post("/flow_runs/{run_id}/complete", response_model=FlowRun)
async def complete_flow_run(run_id: str, req: FinishReport):
    return await _matcher.complete(run_id, worker=req.worker)


@app.post("/flow_runs/{run_id}/fail", response_model=FlowRun)
async def fail_flow_run(run_id: str, req: FinishReport):
    return await _matcher.fail(run_id, req.message, worker=req.worker)


@app.post("/flow_runs/{run_id}/cancel", response_model=FlowRun)
async def cancel_flow_run(run_id: str, req: CancelRequest | None = None):
    return await _matcher.cancel(run_id, (req or CancelRequest()).message)


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@app.get("/flow_runs/{run_id}/stream")
async def stream_flow_run(run_id: str):
    """Stream flow run state changes as Server-Sent Events.

    Sends the current snapshot first, then every subsequent change until the
    run reaches a terminal status or the client disconnects. A comment line
    (``: heartbeat``) goes out every 30 s to keep the connection alive.
    """
    run = await _matcher.get_run(run_id)

    async def generator():
        snapshot = make_event(run)
        yield f"data: {json.dumps(snapshot)}\n\n"
        if run.is_terminal:
            return

        q = _event_bus.subscribe(run_id)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield f"data: {json.dumps(event)}\n\n"
                    if FlowRunStatus(event["status"]) in TERMINAL_STATUSES:
                        return
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            _event_bus.unsubscribe(run_id, q)

    return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)
