"""Rules engine for matching follow-ups against automation trigger conditions."""

import logging
import math
import re
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Sequence

from app.models.follow_up import FollowUp

logger = logging.getLogger(__name__)

# Evaluation order; every kind is optional and results are AND-combined
CONDITION_KINDS = (
    "status_types",
    "priority_levels",
    "days_overdue",
    "recipient_patterns",
    "time_of_day",
    "days_of_week",
)

_SECONDS_PER_DAY = 86400


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, (list, tuple, set)) and len(value) == 0)


def days_overdue(due_at: datetime, now: datetime) -> int:
    """Whole days elapsed since ``due_at``; negative when not yet due."""
    if due_at.tzinfo is None:
        due_at = due_at.replace(tzinfo=timezone.utc)
    return math.floor((now - due_at).total_seconds() / _SECONDS_PER_DAY)


def sunday_based_weekday(moment: datetime) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (moment.weekday() + 1) % 7


def _recipient_matches(patterns: Iterable[str], recipients: Iterable[str]) -> bool:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.warning("Invalid recipient pattern %r: %s", pattern, e)
    return any(rx.search(recipient) for recipient in recipients for rx in compiled)


def _match_condition(kind: str, value: Any, follow_up: FollowUp, local_now: datetime) -> bool:
    """Evaluate a single trigger condition against a follow-up."""
    if kind == "status_types":
        return _value(follow_up.status) in {_value(v) for v in value}

    elif kind == "priority_levels":
        return _value(follow_up.priority) in {_value(v) for v in value}

    elif kind == "days_overdue":
        return days_overdue(follow_up.follow_up_due_at, local_now) >= int(value)

    elif kind == "recipient_patterns":
        return _recipient_matches(value, follow_up.original_recipients or [])

    elif kind == "time_of_day":
        try:
            target_hour = int(str(value).split(":")[0])
        except ValueError:
            logger.warning("Invalid time_of_day condition: %s", value)
            return False
        return abs(local_now.hour - target_hour) <= 1

    elif kind == "days_of_week":
        return sunday_based_weekday(local_now) in {int(d) for d in value}

    else:
        logger.warning("Unknown condition type: %s", kind)
        return False


def evaluate_trigger_conditions(
    conditions: dict[str, Any],
    follow_up: FollowUp,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> bool:
    """Evaluate a rule's trigger conditions against one follow-up.

    Args:
        conditions: The rule's ``trigger_conditions`` mapping. Absent or empty
            entries are vacuously satisfied.
        follow_up: The candidate follow-up.
        now: Current instant (timezone-aware).
        tz: Zone whose wall clock drives ``time_of_day`` and ``days_of_week``.

    Returns:
        True if every present condition holds.
    """
    local_now = now.astimezone(tz)
    for kind in CONDITION_KINDS:
        value = conditions.get(kind)
        if _is_absent(value):
            continue
        if not _match_condition(kind, value, follow_up, local_now):
            return False

    unknown = set(conditions) - set(CONDITION_KINDS)
    if unknown:
        logger.debug("Ignoring unknown trigger condition keys: %s", sorted(unknown))
    return True


def match_follow_ups(
    conditions: dict[str, Any],
    follow_ups: Sequence[FollowUp],
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> list[FollowUp]:
    """Filter follow-ups down to those satisfying the rule's trigger conditions."""
    return [f for f in follow_ups if evaluate_trigger_conditions(conditions, f, now, tz)]
