"""
Recurring Trigger Rules

Validation of RecurrenceRule and computation of the most recent due
occurrence, used by the trigger listener to catch up missed ticks.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .models import RecurrenceFrequency, RecurrenceRule
from .protocols import ValidationError
from .wait_schedule import parse_hhmm


def validate_recurrence(rule: RecurrenceRule) -> None:
    """Raise ValidationError for a malformed rule"""
    parse_hhmm(rule.time_of_day, field="recurrence.time_of_day")

    if rule.frequency == RecurrenceFrequency.WEEKLY:
        if not rule.days_of_week:
            raise ValidationError("Weekly recurrence needs days_of_week", field="recurrence.days_of_week")
        if any(day < 0 or day > 6 for day in rule.days_of_week):
            raise ValidationError("days_of_week must be 0 (Monday) to 6 (Sunday)", field="recurrence.days_of_week")

    if rule.frequency == RecurrenceFrequency.MONTHLY:
        if not rule.days_of_month:
            raise ValidationError("Monthly recurrence needs days_of_month", field="recurrence.days_of_month")
        if any(day < 1 or day > 31 for day in rule.days_of_month):
            raise ValidationError("days_of_month must be 1 to 31", field="recurrence.days_of_month")


def _matches_day(rule: RecurrenceRule, local: datetime) -> bool:
    if rule.frequency == RecurrenceFrequency.DAILY:
        return True
    if rule.frequency == RecurrenceFrequency.WEEKLY:
        return local.weekday() in rule.days_of_week
    return local.day in rule.days_of_month


def latest_occurrence(
    rule: RecurrenceRule, tz: ZoneInfo, now: datetime
) -> Optional[datetime]:
    """
    Most recent occurrence at or before now, in UTC.

    Looks back far enough to cover a monthly rule whose only day is the 31st.
    """
    wall = parse_hhmm(rule.time_of_day, field="recurrence.time_of_day")
    local_now = now.astimezone(tz)

    for days_back in range(0, 63):
        day = (local_now - timedelta(days=days_back)).date()
        candidate = datetime.combine(day, wall, tzinfo=tz)
        if candidate > local_now:
            continue
        if _matches_day(rule, candidate):
            return candidate.astimezone(timezone.utc)
    return None
