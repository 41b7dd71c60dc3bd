"""Delivery policy for a single recipient: opt-in, quiet hours, daily cap.

Evaluation is pure; callers pass the recipient's preference row, the number
of messages already created today and the current reference-zone time.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

NOT_OPTED_IN = 'NOT_OPTED_IN'
QUIET_HOURS = 'QUIET_HOURS'
THROTTLED = 'THROTTLED'

DEFAULT_MAX_PER_DAY = 20


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> 'PolicyDecision':
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> 'PolicyDecision':
        return cls(False, reason)


def parse_time_of_day(value) -> Optional[time]:
    """Accept ``time`` objects or ``HH:MM[:SS]`` strings."""
    if value is None or value == '':
        return None
    if isinstance(value, time):
        return value
    parts = str(value).strip().split(':')
    try:
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
        second = int(parts[2]) if len(parts) > 2 else 0
        return time(hour, minute, second)
    except (ValueError, IndexError):
        raise ValueError(f"Invalid time of day: {value!r}")


def in_quiet_hours(now: time, start: time, end: time) -> bool:
    """``[start, end)`` membership; ``start > end`` wraps past midnight."""
    if start > end:
        return now >= start or now < end
    return start <= now < end


def is_opted_in(preference) -> bool:
    if preference is None:
        return False
    return bool(preference.opt_in) and preference.opted_out_at is None


def evaluate(preference, sent_today: int, now: datetime, default_max_per_day: int = DEFAULT_MAX_PER_DAY) -> PolicyDecision:
    """Evaluate policy for one recipient.

    Args:
        preference: RecipientPreference row (or None when missing)
        sent_today: messages created for the recipient since the start of
            the current reference-zone day
        now: current time in the reference zone
        default_max_per_day: cap used when the preference leaves it unset
    """
    if not is_opted_in(preference):
        return PolicyDecision.deny(NOT_OPTED_IN)

    start = parse_time_of_day(preference.quiet_hours_start)
    end = parse_time_of_day(preference.quiet_hours_end)
    if start is not None and end is not None:
        if in_quiet_hours(now.time().replace(tzinfo=None), start, end):
            return PolicyDecision.deny(QUIET_HOURS)

    cap = preference.max_messages_per_day
    if cap is None:
        cap = default_max_per_day
    if sent_today >= cap:
        return PolicyDecision.deny(THROTTLED)

    return PolicyDecision.allow()
