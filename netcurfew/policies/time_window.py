"""Time-of-day window matching.

Windows are half-open: the start minute is blocked, the end minute is not.
Back-to-back rules (08:00-12:00, 12:00-18:00) therefore never both claim the
boundary minute.
"""

import re
from datetime import datetime

from netcurfew.models.errors import ConfigurationError
from netcurfew.models.rules import Rule
from netcurfew.policies.weekdays import WeekdaySet

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> int:
    """Convert an ``HH:MM`` string to minutes since midnight.

    Raises:
        ConfigurationError: If the string is not a valid 24-hour time
    """
    match = TIME_PATTERN.match((value or "").strip())
    if not match:
        raise ConfigurationError(f"invalid time {value!r}, expected HH:MM")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"time out of range: {value!r}")
    return hour * 60 + minute


def minutes_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


def in_window(now_minutes: int, start_minutes: int, end_minutes: int) -> bool:
    """Check whether a minute of the day falls inside ``[start, end)``.

    A window whose start is after its end crosses midnight. Equal start and
    end is a zero-width window that never matches.
    """
    if start_minutes == end_minutes:
        return False
    if start_minutes < end_minutes:
        return start_minutes <= now_minutes < end_minutes
    return now_minutes >= start_minutes or now_minutes < end_minutes


def is_time_blocked(rule: Rule, now: datetime) -> bool:
    """Check whether a rule's weekly window covers ``now``.

    The weekday gate is applied first and uses the weekday of ``now`` itself,
    so the after-midnight half of a cross-midnight window belongs to the
    following day.

    Raises:
        ConfigurationError: If the rule's times or weekdays are malformed
    """
    weekdays = WeekdaySet.parse(rule.week)
    start = parse_hhmm(rule.time_start)
    end = parse_hhmm(rule.time_end)

    if not weekdays.matches(now.isoweekday()):
        return False

    return in_window(minutes_of_day(now), start, end)
