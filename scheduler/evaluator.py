"""Schedule evaluation — pure functions from (rule, instant) to future run times.

Nothing here caches: every call rebuilds the trigger from the rule, so a
pause, resume or edit takes effect on the very next evaluation.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Iterator
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger
from dateutil.rrule import rrulestr

from deployments.models import (
    CronRule,
    DeploymentSchedule,
    IntervalRule,
    RRuleRule,
    ScheduleRule,
    as_utc,
)

# CronTrigger treats `now` as inclusive; nudging past `after` makes it exclusive.
_EPSILON = timedelta(microseconds=1)


def iter_occurrences(rule: ScheduleRule, after: datetime) -> Iterator[datetime]:
    """Yield every occurrence of *rule* strictly after *after*, in UTC, forever."""
    after = as_utc(after)
    if rule.kind == "cron":
        return _iter_cron(rule, after)
    if rule.kind == "interval":
        return _iter_interval(rule, after)
    if rule.kind == "rrule":
        return _iter_rrule(rule, after)
    raise ValueError(f"Unknown schedule rule kind: {rule.kind}")


def next_occurrences(
    schedule: DeploymentSchedule,
    after: datetime,
    limit: int,
    *,
    paused: bool = False,
    before: datetime | None = None,
) -> list[datetime]:
    """Up to *limit* occurrences in ``(after, before]``, strictly increasing.

    A paused deployment or an inactive schedule yields nothing.
    """
    if paused or not schedule.active or limit <= 0:
        return []
    occurrences = iter_occurrences(schedule.rule, after)
    if before is not None:
        before = as_utc(before)
        occurrences = _until(occurrences, before)
    return list(islice(occurrences, limit))


def occurrences_between(
    schedule: DeploymentSchedule,
    start: datetime,
    end: datetime,
    *,
    paused: bool = False,
) -> list[datetime]:
    """Every occurrence in ``(start, end]``."""
    if paused or not schedule.active or as_utc(end) <= as_utc(start):
        return []
    return list(_until(iter_occurrences(schedule.rule, start), as_utc(end)))


# ── Rule kinds ────────────────────────────────────────────────────────────────

def _iter_cron(rule: CronRule, after: datetime) -> Iterator[datetime]:
    trigger = CronTrigger.from_crontab(rule.cron, timezone=rule.timezone)
    current = after
    while True:
        fire = trigger.get_next_fire_time(None, current + _EPSILON)
        if fire is None:
            return
        fire = fire.astimezone(timezone.utc)
        yield fire
        current = fire


def _iter_interval(rule: IntervalRule, after: datetime) -> Iterator[datetime]:
    anchor = rule.anchor_date
    if after < anchor:
        current = anchor
    else:
        # timedelta // timedelta floors exactly, no float drift
        current = anchor + rule.interval * ((after - anchor) // rule.interval + 1)
    while True:
        yield current
        current = current + rule.interval


def _iter_rrule(rule: RRuleRule, after: datetime) -> Iterator[datetime]:
    tz = ZoneInfo(rule.timezone)
    recurrence = rrulestr(rule.rrule, dtstart=rule.dtstart, forceset=True)
    current = after.astimezone(tz)
    while True:
        fire = recurrence.after(current, inc=False)
        if fire is None:
            return
        yield fire.astimezone(timezone.utc)
        current = fire


def _until(occurrences: Iterator[datetime], end: datetime) -> Iterator[datetime]:
    for ts in occurrences:
        if ts > end:
            return
        yield ts
