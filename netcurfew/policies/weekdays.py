"""Weekly recurrence sets.

Weekdays are numbered 1 (Monday) to 7 (Sunday), matching
``datetime.isoweekday()``. The persisted form collapses the full week to the
sentinel ``"0"``; the sentinel never leaves this module.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union

from netcurfew.models.errors import ConfigurationError

ALL_DAYS_SENTINEL = "0"
ALL_DAYS = frozenset(range(1, 8))

DAY_ABBREVIATIONS = {
    1: "Mon",
    2: "Tue",
    3: "Wed",
    4: "Thu",
    5: "Fri",
    6: "Sat",
    7: "Sun",
}

# Also accept the day names used by other router configs
DAY_NAMES = {name.lower(): number for number, name in DAY_ABBREVIATIONS.items()}

RawWeekdays = Union[None, int, str, Iterable[Union[int, str]]]


@dataclass(frozen=True)
class WeekdaySet:
    """A canonical set of weekday numbers.

    An empty set means "every day". Callers must reject an explicit empty
    selection at the editing boundary instead of building one here.
    """

    days: frozenset[int] = frozenset()

    @classmethod
    def parse(cls, raw: RawWeekdays) -> "WeekdaySet":
        """Build a set from any persisted or configured form.

        Accepts the sentinel, an empty value, a comma/space separated string,
        or an iterable of numbers or day names. Numbers outside 1-7 are
        dropped.

        Raises:
            ConfigurationError: If a value is neither a number nor a day name
        """
        days = selected_days(raw)
        if days is None or days == ALL_DAYS:
            return cls()
        return cls(days)

    @classmethod
    def canonicalize(cls, raw: RawWeekdays) -> str:
        """Return the persisted form of ``raw``. Idempotent."""
        return cls.parse(raw).to_persisted()

    def effective(self) -> frozenset[int]:
        return self.days or ALL_DAYS

    def is_every_day(self) -> bool:
        return self.effective() == ALL_DAYS

    def matches(self, day: int) -> bool:
        """True if ``day`` (1=Monday .. 7=Sunday) is in the set."""
        return not self.days or day in self.days

    def to_persisted(self) -> str:
        if self.is_every_day():
            return ALL_DAYS_SENTINEL
        return ",".join(str(day) for day in sorted(self.days))

    def describe(self) -> str:
        """Human-readable summary, e.g. ``Mon, Wed, Fri`` or ``Every day``."""
        if self.is_every_day():
            return "Every day"
        if self.days == frozenset(range(1, 6)):
            return "Weekdays"
        if self.days == frozenset({6, 7}):
            return "Weekends"
        return ", ".join(DAY_ABBREVIATIONS[day] for day in sorted(self.days))

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self.effective()))

    def __contains__(self, day: object) -> bool:
        return isinstance(day, int) and self.matches(day)


def _to_day_number(token: Union[int, str]) -> int:
    if isinstance(token, bool):
        raise ConfigurationError(f"invalid weekday value: {token!r}")
    if isinstance(token, int):
        return token

    text = str(token).strip().lower()
    if text[:3] in DAY_NAMES and text.isalpha():
        return DAY_NAMES[text[:3]]
    try:
        return int(text)
    except ValueError:
        raise ConfigurationError(f"invalid weekday value: {token!r}") from None


def selected_days(raw: RawWeekdays) -> Optional[frozenset[int]]:
    """Return the days 1-7 named by ``raw``, before the full week collapses.

    Returns None for the sentinel or an empty value. A selection whose values
    are all out of range gives an empty set.

    Raises:
        ConfigurationError: If a value is neither a number nor a day name
    """
    if raw is None:
        return None

    if isinstance(raw, bool):
        raise ConfigurationError(f"invalid weekday value: {raw!r}")

    if isinstance(raw, int):
        tokens: list[Union[int, str]] = [raw]
    elif isinstance(raw, str):
        tokens = [t for t in raw.replace(",", " ").split() if t]
    else:
        tokens = list(raw)

    if not tokens:
        return None
    if len(tokens) == 1 and str(tokens[0]).strip() == ALL_DAYS_SENTINEL:
        return None

    days = set()
    for token in tokens:
        day = _to_day_number(token)
        if day in ALL_DAYS:
            days.add(day)
    return frozenset(days)
