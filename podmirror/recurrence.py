"""Recurrence calculation for feed schedules.

Every function here is pure: the same rule, time and cycle position always
produce the same answer, which is what lets the engine replay schedules from
durable state after a restart. Occurrences are anchored on fixed epochs
rather than on process start time. All times are UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional, Tuple

from .errors import ScheduleRuleInvalid
from .models import (
    AT_BASE,
    DAY_NAMES,
    FIXED_UNITS,
    BurstPolicy,
    CyclePosition,
    ScheduleRule,
    Unit,
    ensure_utc,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# First Monday after the epoch; week-based cadences align on it.
_WEEK_EPOCH = datetime(1970, 1, 5, tzinfo=timezone.utc)
_TICK = timedelta(microseconds=1)
_DAY = timedelta(days=1)
_WEEK = timedelta(weeks=1)

_SUB_DAY_UNITS = (Unit.SECONDS, Unit.MINUTES, Unit.HOURS)


def _time_of_day(at: Optional[time]) -> timedelta:
    if at is None:
        return timedelta(0)
    return timedelta(hours=at.hour, minutes=at.minute, seconds=at.second)


def base_period(rule: ScheduleRule) -> timedelta:
    """Return the shortest gap between two base fires of ``rule``."""
    unit = rule.base.unit
    if unit in FIXED_UNITS:
        return FIXED_UNITS[unit] * rule.base.count
    if unit in DAY_NAMES:
        return _WEEK
    return _DAY


def validate_rule(rule: ScheduleRule) -> ScheduleRule:
    """Check a rule's invariants, raising ScheduleRuleInvalid on violation."""
    unit = rule.base.unit
    if rule.base.count < 1:
        raise ScheduleRuleInvalid("Base interval count must be at least 1.")
    if (unit in DAY_NAMES or unit is Unit.WEEKDAY) and rule.base.count != 1:
        raise ScheduleRuleInvalid(f"'{unit.value}' cadences cannot repeat a count.")
    if rule.at is not None and unit in _SUB_DAY_UNITS:
        raise ScheduleRuleInvalid(
            f"A time of day cannot be combined with a '{unit.value}' cadence."
        )

    previous = timedelta(0)
    for offset in rule.offsets:
        if offset <= previous:
            raise ScheduleRuleInvalid(
                "Follow-up offsets must be positive and strictly increasing."
            )
        # Rules are persisted with whole-second offsets.
        if offset % timedelta(seconds=1):
            raise ScheduleRuleInvalid(
                f"Follow-up offset {offset} is not a whole number of seconds."
            )
        previous = offset

    period = base_period(rule)
    if rule.offsets and rule.offsets[-1] >= period:
        raise ScheduleRuleInvalid(
            f"Follow-up offset {rule.offsets[-1]} does not fit inside the base period {period}."
        )
    return rule


def _align(anchor: datetime, period: timedelta, now: datetime) -> datetime:
    if now <= anchor:
        return anchor
    steps = -((anchor - now) // period)
    return anchor + steps * period


def next_occurrence(rule: ScheduleRule, now: datetime) -> datetime:
    """Return the first base fire of ``rule`` at or after ``now``."""
    now = ensure_utc(now)
    unit = rule.base.unit
    at = _time_of_day(rule.at)

    if unit is Unit.WEEKDAY:
        candidate = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + at
        while candidate < now or candidate.weekday() >= 5:
            candidate += _DAY
        return candidate

    if unit in DAY_NAMES:
        anchor = _WEEK_EPOCH + timedelta(days=DAY_NAMES.index(unit)) + at
    elif unit is Unit.WEEKS:
        anchor = _WEEK_EPOCH + at
    else:
        anchor = _EPOCH + at
    return _align(anchor, base_period(rule), now)


def next_due(
    rule: ScheduleRule,
    now: datetime,
    position: CyclePosition,
    found_new_items: bool = False,
    policy: BurstPolicy = BurstPolicy.STOP_ON_NEW_ITEMS,
) -> Tuple[datetime, CyclePosition]:
    """Compute the next fire time and the cycle position that follows it.

    ``position`` is the feed's stored position, i.e. the step the next fire
    belongs to. ``found_new_items`` reports whether the run that just
    finished stored anything new; under ``STOP_ON_NEW_ITEMS`` that ends the
    current burst.
    """
    now = ensure_utc(now)

    if not position.at_base and found_new_items and policy is BurstPolicy.STOP_ON_NEW_ITEMS:
        logger.debug("New items found; ending burst at %s", position.describe())
        position = AT_BASE

    if not position.at_base:
        index = position.offset_index
        base_fire = ensure_utc(position.base_fire)
        if base_fire is None or index >= len(rule.offsets) or index < 0:
            logger.info(
                "Cycle position %s no longer matches the rule; resetting to base",
                position.describe(),
            )
        elif now >= next_occurrence(rule, base_fire + _TICK):
            logger.info(
                "Burst anchored at %s is stale at %s; resetting to base",
                base_fire,
                now,
            )
        else:
            fire = base_fire + rule.offsets[index]
            if index == len(rule.offsets) - 1:
                return fire, AT_BASE
            return fire, CyclePosition(offset_index=index + 1, base_fire=base_fire)

    fire = next_occurrence(rule, now)
    if rule.offsets:
        return fire, CyclePosition(offset_index=0, base_fire=fire)
    return fire, AT_BASE
