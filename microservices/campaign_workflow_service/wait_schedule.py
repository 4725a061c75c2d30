"""
WAIT Step Scheduling

Parses anchor expressions and computes the instant a WAIT step is due.

Supported anchor grammar:
    <n><unit> before|after <field> [at HH:MM]
        units: m, min, minute(s), h, hr, hour(s), d, day(s)
        e.g. "48h before appointment.start", "2 days after treatment.completed_at"
    day of <field> at HH:MM
        e.g. "day of appointment.start at 08:00"

"at HH:MM" snaps the shifted instant to that wall-clock time on the same
local date, in the recipient's timezone.
"""

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import WaitStep
from .predicates import lookup_path, parse_timestamp
from .protocols import ValidationError


_UNIT_MINUTES = {
    "m": 1, "min": 1, "mins": 1, "minute": 1, "minutes": 1,
    "h": 60, "hr": 60, "hrs": 60, "hour": 60, "hours": 60,
    "d": 1440, "day": 1440, "days": 1440,
}

_RELATIVE = re.compile(
    r"^\s*(?P<amount>\d+)\s*(?P<unit>[a-z]+)\s+(?P<direction>before|after)\s+"
    r"(?P<field>[A-Za-z_][\w.]*)(?:\s+at\s+(?P<at>\d{1,2}:\d{2}))?\s*$",
    re.IGNORECASE,
)
_DAY_OF = re.compile(
    r"^\s*day\s+of\s+(?P<field>[A-Za-z_][\w.]*)\s+at\s+(?P<at>\d{1,2}:\d{2})\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class AnchorExpression:
    field: str
    offset: timedelta
    at_time: Optional[time] = None


def parse_hhmm(value: str, field: str = "time") -> time:
    """Parse HH:MM; raises ValidationError"""
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", (value or "").strip())
    if not match:
        raise ValidationError(f"Invalid time of day: {value!r}", field=field)
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid time of day: {value!r}", field=field)
    return time(hour, minute)


def resolve_zone(name: Optional[str], fallback: str = "UTC") -> ZoneInfo:
    """ZoneInfo for name, falling back when unset or unknown"""
    for candidate in (name, fallback, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def at_local_time(instant: datetime, wall_time: time, tz: ZoneInfo) -> datetime:
    """Same local date as instant, at wall_time, returned in UTC"""
    local_date = instant.astimezone(tz).date()
    return datetime.combine(local_date, wall_time, tzinfo=tz).astimezone(timezone.utc)


def parse_anchor(expression: str) -> AnchorExpression:
    """Parse an anchor expression; raises ValidationError when malformed"""
    match = _DAY_OF.match(expression or "")
    if match:
        return AnchorExpression(
            field=match.group("field"),
            offset=timedelta(0),
            at_time=parse_hhmm(match.group("at"), field="anchor"),
        )

    match = _RELATIVE.match(expression or "")
    if not match:
        raise ValidationError(f"Malformed anchor expression: {expression!r}", field="anchor")

    unit = match.group("unit").lower()
    if unit not in _UNIT_MINUTES:
        raise ValidationError(f"Unknown unit {unit!r} in anchor {expression!r}", field="anchor")

    minutes = int(match.group("amount")) * _UNIT_MINUTES[unit]
    if match.group("direction").lower() == "before":
        minutes = -minutes

    at = match.group("at")
    return AnchorExpression(
        field=match.group("field"),
        offset=timedelta(minutes=minutes),
        at_time=parse_hhmm(at, field="anchor") if at else None,
    )


def resolve_anchor(
    expression: str, context: Dict[str, Any], tz: ZoneInfo
) -> Optional[datetime]:
    """
    Compute the instant an anchored wait is due.

    Returns None when the anchor field is absent from the context.
    """
    anchor = parse_anchor(expression)
    base = parse_timestamp(lookup_path(context, anchor.field))
    if base is None:
        return None

    target = base + anchor.offset
    if anchor.at_time is not None:
        target = at_local_time(target, anchor.at_time, tz)
    return target


def wait_target(
    step: WaitStep,
    step_entered_at: datetime,
    context: Dict[str, Any],
    tz: ZoneInfo,
) -> Optional[datetime]:
    """Due instant for a WAIT step, recomputed from the current context"""
    if step.duration_minutes is not None:
        return step_entered_at + timedelta(minutes=step.duration_minutes)
    return resolve_anchor(step.anchor, context, tz)
