"""Tests for the work pool matcher: enqueue, claim, limits and run states."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from core.errors import (
    ClaimConflictError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    QueueFullError,
    UnknownPoolError,
    UnknownQueueError,
)
from core.event_bus import ALL_EVENTS
from core.state import FlowRunStatus, can_transition
from scheduler.models import RunRequest
from workpools.models import WorkPoolCreate, WorkQueueCreate, WorkQueueUpdate

UTC = timezone.utc
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def make_request(
    pool: str | None = "pool",
    queue: str | None = None,
    scheduled_time: datetime = T0 - timedelta(minutes=5),
    **kwargs,
) -> RunRequest:
    return RunRequest(
        deployment_id="dep-1",
        flow_id="etl",
        deployment_name="nightly",
        scheduled_time=scheduled_time,
        entrypoint="flows/etl.py:etl",
        work_pool_name=pool,
        work_queue_name=queue,
        **kwargs,
    )


@pytest.fixture
async def pool(matcher):
    return await matcher.create_pool(WorkPoolCreate(name="pool"))


# ── Pools and queues ──────────────────────────────────────────────────────────


async def test_create_pool_creates_default_queue(matcher, pool):
    queues = await matcher.list_queues("pool")
    assert [q.name for q in queues] == ["default"]
    assert pool.default_queue_name == "default"


async def test_duplicate_pool_conflicts(matcher, pool):
    with pytest.raises(ConflictError):
        await matcher.create_pool(WorkPoolCreate(name="pool"))


async def test_duplicate_queue_conflicts(matcher, pool):
    with pytest.raises(ConflictError):
        await matcher.create_queue("pool", WorkQueueCreate(name="default"))


async def test_queue_on_unknown_pool(matcher):
    with pytest.raises(UnknownPoolError):
        await matcher.create_queue("ghost", WorkQueueCreate(name="q"))


async def test_update_queue(matcher, pool):
    queue = await matcher.update_queue("pool", "default", WorkQueueUpdate(priority=5, paused=True))
    assert queue.priority == 5
    assert queue.paused is True
    with pytest.raises(UnknownQueueError):
        await matcher.update_queue("pool", "ghost", WorkQueueUpdate(priority=2))


# ── Enqueue ───────────────────────────────────────────────────────────────────


async def test_enqueue_defaults_to_pool_default_queue(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    run = await matcher.get_run(run_id)
    assert run.status == FlowRunStatus.SCHEDULED
    assert run.queue_name == "default"
    assert run.pool_name == "pool"


async def test_enqueue_unknown_targets(matcher, pool):
    with pytest.raises(UnknownPoolError):
        await matcher.enqueue(make_request(pool="ghost"))
    with pytest.raises(UnknownPoolError):
        await matcher.enqueue(make_request(pool=None))
    with pytest.raises(UnknownQueueError):
        await matcher.enqueue(make_request(queue="ghost"))
    assert await matcher.list_runs() == []


async def test_enqueue_overlays_pool_job_variables(matcher):
    await matcher.create_pool(WorkPoolCreate(
        name="pool", base_job_variables={"image": "base", "cpu": 1},
    ))
    run_id = await matcher.enqueue(make_request(job_variables={"image": "etl:2"}))
    run = await matcher.get_run(run_id)
    assert run.request.job_variables == {"image": "etl:2", "cpu": 1}


async def test_full_queue_rejects_with_backpressure(matcher, pool):
    await matcher.update_queue("pool", "default", WorkQueueUpdate(capacity=1))
    await matcher.enqueue(make_request())
    with pytest.raises(QueueFullError) as exc:
        await matcher.enqueue(make_request())
    assert exc.value.status_code == 429

    # claimed runs no longer count against capacity
    await matcher.claim("w1", "pool", now=T0)
    await matcher.enqueue(make_request())


# ── Claim ─────────────────────────────────────────────────────────────────────


async def test_claim_moves_run_to_pending(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    [run] = await matcher.claim("w1", "pool", now=T0)
    assert run.id == run_id
    assert run.status == FlowRunStatus.PENDING
    assert run.worker == "w1"
    assert run.claimed_at == T0


async def test_future_runs_are_not_claimable(matcher, pool):
    await matcher.enqueue(make_request(scheduled_time=T0 + timedelta(minutes=1)))
    assert await matcher.claim("w1", "pool", now=T0) == []
    assert len(await matcher.claim("w1", "pool", now=T0 + timedelta(minutes=1))) == 1


async def test_claim_order_priority_then_time(matcher, pool):
    await matcher.create_queue("pool", WorkQueueCreate(name="urgent", priority=1))
    await matcher.update_queue("pool", "default", WorkQueueUpdate(priority=2))
    late = await matcher.enqueue(make_request(scheduled_time=T0 - timedelta(minutes=1)))
    early = await matcher.enqueue(make_request(scheduled_time=T0 - timedelta(minutes=9)))
    urgent = await matcher.enqueue(make_request(queue="urgent"))

    claimed = await matcher.claim("w1", "pool", max_runs=3, now=T0)
    assert [r.id for r in claimed] == [urgent, early, late]


async def test_claim_restricted_to_named_queues(matcher, pool):
    await matcher.create_queue("pool", WorkQueueCreate(name="gpu"))
    await matcher.enqueue(make_request())
    gpu = await matcher.enqueue(make_request(queue="gpu"))
    claimed = await matcher.claim("w1", "pool", queue_names=["gpu"], max_runs=5, now=T0)
    assert [r.id for r in claimed] == [gpu]


async def test_claim_unknown_queue_or_pool(matcher, pool):
    with pytest.raises(UnknownQueueError):
        await matcher.claim("w1", "pool", queue_names=["ghost"], now=T0)
    with pytest.raises(UnknownPoolError):
        await matcher.claim("w1", "ghost", now=T0)


async def test_paused_queue_is_skipped(matcher, pool):
    await matcher.enqueue(make_request())
    await matcher.update_queue("pool", "default", WorkQueueUpdate(paused=True))
    assert await matcher.claim("w1", "pool", now=T0) == []


async def test_queue_concurrency_limit(matcher, pool):
    await matcher.update_queue("pool", "default", WorkQueueUpdate(concurrency_limit=1))
    await matcher.enqueue(make_request())
    await matcher.enqueue(make_request())

    [first] = await matcher.claim("w1", "pool", max_runs=2, now=T0)
    assert await matcher.claim("w2", "pool", now=T0) == []

    await matcher.mark_running(first.id, "w1", now=T0)
    assert await matcher.claim("w2", "pool", now=T0) == []

    await matcher.complete(first.id, worker="w1")
    assert len(await matcher.claim("w2", "pool", now=T0)) == 1


async def test_pool_concurrency_limit(matcher):
    await matcher.create_pool(WorkPoolCreate(name="pool", concurrency_limit=1))
    await matcher.create_queue("pool", WorkQueueCreate(name="other"))
    await matcher.enqueue(make_request())
    await matcher.enqueue(make_request(queue="other"))

    assert len(await matcher.claim("w1", "pool", max_runs=2, now=T0)) == 1
    assert await matcher.claim("w2", "pool", now=T0) == []


async def test_zero_limit_blocks_claims(matcher, pool):
    await matcher.update_queue("pool", "default", WorkQueueUpdate(concurrency_limit=0))
    await matcher.enqueue(make_request())
    assert await matcher.claim("w1", "pool", now=T0) == []


async def test_concurrent_claims_have_one_winner(matcher, pool):
    await matcher.enqueue(make_request())
    results = await asyncio.gather(
        matcher.claim("w1", "pool", now=T0),
        matcher.claim("w2", "pool", now=T0),
    )
    winners = [runs for runs in results if runs]
    assert len(winners) == 1
    assert len(winners[0]) == 1


# ── Run states ────────────────────────────────────────────────────────────────


async def test_full_lifecycle(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    running = await matcher.mark_running(run_id, "w1", now=T0)
    assert running.status == FlowRunStatus.RUNNING
    assert running.started_at == T0
    done = await matcher.complete(run_id, worker="w1")
    assert done.status == FlowRunStatus.COMPLETED
    assert done.is_terminal
    assert done.finished_at is not None


async def test_pending_run_can_fail(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    failed = await matcher.fail(run_id, "image pull failed", worker="w1")
    assert failed.status == FlowRunStatus.FAILED
    assert failed.message == "image pull failed"


async def test_complete_requires_running(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    with pytest.raises(InvalidStateTransitionError):
        await matcher.complete(run_id)


async def test_terminal_state_is_immutable(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    await matcher.cancel(run_id)
    with pytest.raises(InvalidStateTransitionError):
        await matcher.cancel(run_id)
    assert (await matcher.get_run(run_id)).status == FlowRunStatus.CANCELLED


async def test_other_worker_cannot_report(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    with pytest.raises(ClaimConflictError):
        await matcher.mark_running(run_id, "w2")
    with pytest.raises(ClaimConflictError):
        await matcher.heartbeat(run_id, "w2")


async def test_heartbeat_reports_cancellation(matcher, pool):
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    await matcher.mark_running(run_id, "w1", now=T0)

    alive = await matcher.heartbeat(run_id, "w1", now=T0 + timedelta(seconds=30))
    assert alive.status == FlowRunStatus.RUNNING
    assert alive.last_heartbeat_at == T0 + timedelta(seconds=30)

    await matcher.cancel(run_id, "stop")
    seen = await matcher.heartbeat(run_id, "w1")
    assert seen.status == FlowRunStatus.CANCELLED


async def test_unknown_run(matcher, pool):
    with pytest.raises(NotFoundError):
        await matcher.get_run("nope")
    with pytest.raises(NotFoundError):
        await matcher.cancel("nope")


def test_transition_table():
    assert can_transition(FlowRunStatus.SCHEDULED, FlowRunStatus.PENDING)
    assert can_transition(FlowRunStatus.PENDING, FlowRunStatus.FAILED)
    assert not can_transition(FlowRunStatus.SCHEDULED, FlowRunStatus.RUNNING)
    assert not can_transition(FlowRunStatus.COMPLETED, FlowRunStatus.CANCELLED)
    assert not can_transition(FlowRunStatus.PENDING, FlowRunStatus.CRASHED)


# ── Crash detection ───────────────────────────────────────────────────────────


async def _running(matcher, now=T0) -> str:
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=now)
    await matcher.mark_running(run_id, "w1", now=now)
    return run_id


async def test_silent_run_is_reaped(matcher, pool):
    await matcher.update_queue("pool", "default", WorkQueueUpdate(concurrency_limit=1))
    run_id = await _running(matcher)

    crashed = await matcher.reap_crashed(now=T0 + timedelta(seconds=91))
    assert crashed == [run_id]
    run = await matcher.get_run(run_id)
    assert run.status == FlowRunStatus.CRASHED
    assert await matcher.runs.count_in_flight("pool", "default") == 0


async def test_heartbeat_keeps_run_alive(matcher, pool):
    run_id = await _running(matcher)
    await matcher.heartbeat(run_id, "w1", now=T0 + timedelta(seconds=60))
    assert await matcher.reap_crashed(now=T0 + timedelta(seconds=100)) == []
    assert (await matcher.get_run(run_id)).status == FlowRunStatus.RUNNING


async def test_pending_runs_are_not_reaped(matcher, pool):
    await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    assert await matcher.reap_crashed(now=T0 + timedelta(hours=1)) == []


async def test_stale_pending_run_is_logged(matcher, pool, caplog):
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    with caplog.at_level(logging.WARNING, logger="workpools.matcher"):
        assert await matcher.reap_crashed(now=T0 + timedelta(seconds=91)) == []
    [record] = [r for r in caplog.records if r.getMessage() == "Run claimed but never started"]
    assert record.flow_run_id == run_id
    assert record.worker == "w1"
    assert (await matcher.get_run(run_id)).status == FlowRunStatus.PENDING


async def test_recently_claimed_run_is_not_logged(matcher, pool, caplog):
    await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    with caplog.at_level(logging.WARNING, logger="workpools.matcher"):
        await matcher.reap_crashed(now=T0 + timedelta(seconds=30))
    assert "Run claimed but never started" not in caplog.text


# ── Events ────────────────────────────────────────────────────────────────────


async def test_state_changes_are_published(matcher, event_bus, pool):
    q = event_bus.subscribe(ALL_EVENTS)
    run_id = await matcher.enqueue(make_request())
    await matcher.claim("w1", "pool", now=T0)
    await matcher.cancel(run_id)

    statuses = []
    while not q.empty():
        event = q.get_nowait()
        assert event["flow_run_id"] == run_id
        statuses.append(event["status"])
    assert statuses == ["scheduled", "pending", "cancelled"]
