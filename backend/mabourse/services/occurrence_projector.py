"""
Occurrence projection for recurring transactions.

Expands a ScheduleRule into the dated occurrences that fall inside a window.
Everything here is a pure function of its arguments: the rule is never
mutated and no state survives between calls, so projecting twice with the
same inputs yields the same sequence.

Month-based cadences are computed from the rule's anchor day rather than
from the previous (possibly clamped) occurrence, so a rule on the 31st gives
Jan 31, Feb 29, Mar 31, Apr 30 instead of drifting to the 29th.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Iterable

from mabourse.core.logging import get_logger
from mabourse.schemas.models import Frequency, Occurrence, ScheduleRule

logger = get_logger("mabourse.services.projector")

DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


def clamp_day_to_month(year: int, month: int, day: int) -> int:
    """Clamp day to valid range for the given year/month."""
    max_day = calendar.monthrange(year, month)[1]
    return min(day, max_day)


def add_months(d: date, n: int, anchor_day: int | None = None) -> date:
    """Add n months to d, aiming for anchor_day (default d.day) and clamping to month end."""
    month = d.month - 1 + n
    year = d.year + month // 12
    month = month % 12 + 1
    day = clamp_day_to_month(year, month, anchor_day or d.day)
    return date(year, month, day)


def resolve_frequency(rule: ScheduleRule) -> Frequency:
    """Map the rule's frequency to a known cadence, falling back to monthly."""
    try:
        return Frequency(rule.frequency)
    except ValueError:
        logger.warning(
            f"Rule {rule.id} has unrecognized frequency {rule.frequency!r}; using monthly"
        )
        return Frequency.MONTHLY


def occurrence_date(rule: ScheduleRule, index: int, frequency: Frequency | None = None) -> date:
    """Return the index-th occurrence date counted from rule.next_execution.

    Index 0 is next_execution itself, so projection never starts before it.
    """
    if index <= 0:
        return rule.next_execution

    frequency = frequency or resolve_frequency(rule)
    if frequency in DAY_STEPS:
        return rule.next_execution + timedelta(days=DAY_STEPS[frequency] * index)
    return add_months(rule.next_execution, MONTH_STEPS[frequency] * index, rule.anchor_day)


def _first_index_on_or_after(rule: ScheduleRule, frequency: Frequency, start: date) -> int:
    """Smallest occurrence index whose date is >= start, without walking skipped dates."""
    anchor = rule.next_execution
    if start <= anchor:
        return 0

    if frequency in DAY_STEPS:
        step = DAY_STEPS[frequency]
        return -(-(start - anchor).days // step)

    step = MONTH_STEPS[frequency]
    months_apart = (start.year - anchor.year) * 12 + (start.month - anchor.month)
    index = max(0, months_apart // step - 1)
    while occurrence_date(rule, index, frequency) < start:
        index += 1
    return index


def _to_occurrence(rule: ScheduleRule, when: date) -> Occurrence:
    return Occurrence(
        rule_id=rule.id,
        date=when,
        account_id=rule.account_id,
        to_account_id=rule.to_account_id,
        type=rule.type,
        amount=rule.amount,
        signed_amount=rule.signed_amount,
        category=rule.category,
        description=rule.description,
        frequency=rule.frequency,
    )


def project(rule: ScheduleRule, window_start: date, window_end: date) -> list[Occurrence]:
    """Project a rule's occurrences inside [window_start, window_end], ascending by date.

    Disabled rules and inverted windows yield an empty list. Occurrences after
    the rule's end_date are never produced.
    """
    if rule.is_disabled:
        return []
    if window_start > window_end:
        logger.debug(f"Empty projection window {window_start} > {window_end} for rule {rule.id}")
        return []

    frequency = resolve_frequency(rule)
    last = min(window_end, rule.end_date) if rule.end_date else window_end

    occurrences: list[Occurrence] = []
    index = _first_index_on_or_after(rule, frequency, window_start)
    cursor = occurrence_date(rule, index, frequency)
    while cursor <= last:
        occurrences.append(_to_occurrence(rule, cursor))
        index += 1
        cursor = occurrence_date(rule, index, frequency)
    return occurrences


def project_many(
    rules: Iterable[ScheduleRule],
    window_start: date,
    window_end: date,
) -> list[Occurrence]:
    """Project several rules and merge them ordered by (date, rule id, insertion order)."""
    combined: list[tuple[date, str, int, Occurrence]] = []
    for rule in rules:
        for occurrence in project(rule, window_start, window_end):
            combined.append((occurrence.date, occurrence.rule_id, len(combined), occurrence))
    combined.sort(key=lambda item: item[:3])
    return [item[3] for item in combined]
