"""Tests for schedule rules and the schedule evaluator."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from deployments.models import CronRule, DeploymentSchedule, IntervalRule, RRuleRule
from scheduler.evaluator import iter_occurrences, next_occurrences, occurrences_between

UTC = timezone.utc
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def every(seconds: int, anchor: datetime | None = None, active: bool = True) -> DeploymentSchedule:
    rule = IntervalRule(interval=timedelta(seconds=seconds))
    if anchor is not None:
        rule = IntervalRule(interval=timedelta(seconds=seconds), anchor_date=anchor)
    return DeploymentSchedule(rule=rule, active=active)


# ── Interval ──────────────────────────────────────────────────────────────────


def test_interval_window_excludes_start():
    got = occurrences_between(every(60), EPOCH, EPOCH + timedelta(seconds=125))
    assert got == [EPOCH + timedelta(seconds=60), EPOCH + timedelta(seconds=120)]


def test_paused_deployment_yields_nothing():
    assert occurrences_between(every(60), EPOCH, EPOCH + timedelta(seconds=125), paused=True) == []
    assert next_occurrences(every(60), EPOCH, 5, paused=True) == []


def test_inactive_schedule_yields_nothing():
    schedule = every(60, active=False)
    assert occurrences_between(schedule, EPOCH, EPOCH + timedelta(hours=1)) == []


def test_interval_follows_anchor():
    anchor = datetime(2024, 1, 1, 0, 0, 30, tzinfo=UTC)
    got = next_occurrences(every(60, anchor), datetime(2024, 1, 1, 0, 1, tzinfo=UTC), 2)
    assert got == [
        datetime(2024, 1, 1, 0, 1, 30, tzinfo=UTC),
        datetime(2024, 1, 1, 0, 2, 30, tzinfo=UTC),
    ]


def test_interval_before_anchor_starts_at_anchor():
    anchor = datetime(2030, 1, 1, tzinfo=UTC)
    assert next_occurrences(every(3600, anchor), EPOCH, 1) == [anchor]


def test_occurrence_on_after_boundary_is_excluded():
    after = EPOCH + timedelta(seconds=120)
    assert next_occurrences(every(60), after, 1) == [EPOCH + timedelta(seconds=180)]


def test_naive_input_treated_as_utc():
    got = next_occurrences(every(60), datetime(1970, 1, 1), 1)
    assert got == [EPOCH + timedelta(seconds=60)]
    assert got[0].tzinfo is not None


def test_before_bound_is_inclusive():
    got = next_occurrences(every(60), EPOCH, 10, before=EPOCH + timedelta(seconds=180))
    assert len(got) == 3
    assert got[-1] == EPOCH + timedelta(seconds=180)


def test_limit_zero_is_empty():
    assert next_occurrences(every(60), EPOCH, 0) == []


def test_empty_or_reversed_window():
    assert occurrences_between(every(60), EPOCH, EPOCH) == []
    assert occurrences_between(every(60), EPOCH + timedelta(hours=1), EPOCH) == []


def test_interval_must_be_positive():
    with pytest.raises(ValidationError):
        IntervalRule(interval=timedelta(0))


# ── Cron ──────────────────────────────────────────────────────────────────────


def test_cron_hourly_strictly_after():
    schedule = DeploymentSchedule(rule=CronRule(cron="0 * * * *"))
    after = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    got = next_occurrences(schedule, after, 3)
    assert got == [
        datetime(2024, 1, 1, 11, 0, tzinfo=UTC),
        datetime(2024, 1, 1, 12, 0, tzinfo=UTC),
        datetime(2024, 1, 1, 13, 0, tzinfo=UTC),
    ]


def test_cron_uses_its_timezone():
    schedule = DeploymentSchedule(rule=CronRule(cron="0 2 * * *", timezone="Europe/Berlin"))
    got = next_occurrences(schedule, datetime(2024, 1, 1, tzinfo=UTC), 1)
    # Berlin is UTC+1 in winter
    assert got == [datetime(2024, 1, 1, 1, 0, tzinfo=UTC)]


def test_cron_occurrences_strictly_increasing():
    rule = CronRule(cron="*/15 * * * *")
    it = iter_occurrences(rule, datetime(2024, 3, 1, tzinfo=UTC))
    times = [next(it) for _ in range(10)]
    assert all(a < b for a, b in zip(times, times[1:]))


@pytest.mark.parametrize("expr", ["61 * * * *", "* * *", "not a cron"])
def test_invalid_cron_rejected(expr):
    with pytest.raises(ValidationError):
        CronRule(cron=expr)


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        CronRule(cron="0 * * * *", timezone="Mars/Olympus")


# ── RRule ─────────────────────────────────────────────────────────────────────


def test_rrule_count_is_finite():
    schedule = DeploymentSchedule(rule=RRuleRule(
        rrule="FREQ=DAILY;COUNT=3",
        dtstart=datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
    ))
    got = next_occurrences(schedule, datetime(2023, 12, 31, tzinfo=UTC), 10)
    assert got == [
        datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
        datetime(2024, 1, 2, 9, 0, tzinfo=UTC),
        datetime(2024, 1, 3, 9, 0, tzinfo=UTC),
    ]


def test_rrule_after_is_exclusive():
    schedule = DeploymentSchedule(rule=RRuleRule(
        rrule="FREQ=DAILY;COUNT=3",
        dtstart=datetime(2024, 1, 1, 9, 0, tzinfo=UTC),
    ))
    got = next_occurrences(schedule, datetime(2024, 1, 1, 9, 0, tzinfo=UTC), 10)
    assert len(got) == 2


def test_invalid_rrule_rejected():
    with pytest.raises(ValidationError):
        RRuleRule(rrule="FREQ=SOMETIMES", dtstart=datetime(2024, 1, 1, tzinfo=UTC))


def test_schedule_rule_discriminated_on_kind():
    schedule = DeploymentSchedule.model_validate(
        {"rule": {"kind": "interval", "interval": 300}}
    )
    assert isinstance(schedule.rule, IntervalRule)
    assert schedule.rule.interval == timedelta(minutes=5)
