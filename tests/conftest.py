"""Shared fixtures: per-test SQLite database and an isolated API server."""

from datetime import timedelta

import pytest

import api.server as server_module
from core.event_bus import EventBus
from deployments.models import DeploymentCreate, DeploymentSchedule, IntervalRule
from scheduler.dispatcher import RunDispatcher
from scheduler.service import DeploymentScheduler
from store.cursor_store import CursorStore
from store.database import Database
from store.deployment_store import DeploymentStore
from store.flow_run_store import FlowRunStore
from store.work_pool_store import WorkPoolStore
from workpools.matcher import WorkPoolMatcher


# ── Store fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/engine.db", retry_delay=0)
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def deployments(db):
    return DeploymentStore(db)


@pytest.fixture
def cursors(db):
    return CursorStore(db)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def matcher(db, event_bus):
    return WorkPoolMatcher(WorkPoolStore(db), FlowRunStore(db), event_bus=event_bus)


@pytest.fixture
def dispatcher(cursors):
    return RunDispatcher(cursors)


# ── Builders ──────────────────────────────────────────────────────────────────


@pytest.fixture
def make_spec():
    """Factory for DeploymentCreate payloads with a 60 s interval schedule."""
    def _make(**overrides) -> DeploymentCreate:
        data = {
            "flow_id": "etl",
            "name": "nightly",
            "entrypoint": "flows/etl.py:etl",
            "schedules": [
                DeploymentSchedule(rule=IntervalRule(interval=timedelta(seconds=60)))
            ],
            "work_pool_name": "pool",
        }
        data.update(overrides)
        return DeploymentCreate(**data)

    return _make


# ── API server ────────────────────────────────────────────────────────────────


@pytest.fixture
async def engine_server(db, deployments, cursors, event_bus, matcher):
    """Wire per-test stores into the server module's singletons."""
    saved = {
        name: getattr(server_module, name)
        for name in ("_db", "_deployments", "_event_bus", "_matcher", "_dispatcher", "_scheduler")
    }
    dispatcher = RunDispatcher(cursors)
    server_module._db = db
    server_module._deployments = deployments
    server_module._event_bus = event_bus
    server_module._matcher = matcher
    server_module._dispatcher = dispatcher
    server_module._scheduler = DeploymentScheduler(deployments, dispatcher, matcher)
    yield server_module
    for name, value in saved.items():
        setattr(server_module, name, value)
