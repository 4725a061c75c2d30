"""
Predicate Evaluation

Pure evaluation of CONDITION / BRANCH predicates over an enrollment context.
The evaluation data is the enrollment context with the recipient's
attributes under the "recipient" key.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .models import (
    ComparisonOperator,
    FieldComparison,
    HasOpenBalance,
    TimeComparison,
    TimeOperator,
)

logger = logging.getLogger(__name__)

_MISSING = object()


# ====================
# Context helpers
# ====================


def lookup_path(data: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns None when any segment is missing"""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return base updated with patch, merging nested dicts"""
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a datetime or ISO-8601 string to an aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _coerce_pair(actual: Any, expected: Any):
    """Bring actual to the type of expected where that is unambiguous"""
    if isinstance(expected, bool) or isinstance(actual, bool):
        return actual, expected
    if isinstance(expected, (int, float)) and isinstance(actual, str):
        try:
            return float(actual), expected
        except ValueError:
            return actual, expected
    if isinstance(expected, str) and isinstance(actual, datetime):
        other = parse_timestamp(expected)
        if other is not None:
            return parse_timestamp(actual), other
    return actual, expected


# ====================
# Evaluation
# ====================


def _eval_field(predicate: FieldComparison, data: Dict[str, Any]) -> bool:
    actual = lookup_path(data, predicate.field)
    op = predicate.op

    if op == ComparisonOperator.EXISTS:
        return actual is not None
    if op == ComparisonOperator.NOT_EXISTS:
        return actual is None
    if actual is None:
        return op == ComparisonOperator.NE and predicate.value is not None

    if op == ComparisonOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set)):
            return predicate.value in actual
        return str(predicate.value) in str(actual)
    if op == ComparisonOperator.IN:
        if not isinstance(predicate.value, (list, tuple, set)):
            return False
        return actual in predicate.value

    left, right = _coerce_pair(actual, predicate.value)
    try:
        if op == ComparisonOperator.EQ:
            return left == right
        if op == ComparisonOperator.NE:
            return left != right
        if op == ComparisonOperator.GT:
            return left > right
        if op == ComparisonOperator.GTE:
            return left >= right
        if op == ComparisonOperator.LT:
            return left < right
        if op == ComparisonOperator.LTE:
            return left <= right
    except TypeError:
        logger.debug(f"Incomparable values for {predicate.field}: {actual!r} {op.value} {predicate.value!r}")
        return False
    return False


def _eval_time(predicate: TimeComparison, data: Dict[str, Any], now: datetime) -> bool:
    actual = parse_timestamp(lookup_path(data, predicate.field))
    if actual is None:
        return False
    reference = now + timedelta(minutes=predicate.offset_minutes)
    if predicate.op == TimeOperator.BEFORE:
        return actual < reference
    return actual > reference


def _eval_balance(predicate: HasOpenBalance, data: Dict[str, Any]) -> bool:
    balance = lookup_path(data, "recipient.open_balance")
    try:
        return float(balance or 0) > predicate.min_amount
    except (TypeError, ValueError):
        return False


def evaluate(predicate, data: Dict[str, Any], now: datetime) -> bool:
    """Evaluate a predicate against context data at a point in time"""
    if isinstance(predicate, FieldComparison):
        return _eval_field(predicate, data)
    if isinstance(predicate, TimeComparison):
        return _eval_time(predicate, data, now)
    if isinstance(predicate, HasOpenBalance):
        return _eval_balance(predicate, data)
    raise TypeError(f"Unknown predicate: {type(predicate).__name__}")


def needs_live_recipient(predicate) -> bool:
    """Predicates that must see current directory data, not the snapshot"""
    if isinstance(predicate, HasOpenBalance):
        return True
    field = getattr(predicate, "field", "")
    return field == "recipient" or field.startswith("recipient.")
