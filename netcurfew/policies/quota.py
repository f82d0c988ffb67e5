"""Daily quota accounting.

The ledger tracks, per rule ``uid``, how many wall-clock minutes a device has
spent online (and not already blocked by its time window) since the last
daily reset. The evaluator owns the only ledger instance; all mutation goes
through one lock so accumulate and reset stay atomic per uid.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from netcurfew.models import ClockAnomalyError, ConfigurationError, QuotaStatus

logger = logging.getLogger(__name__)

# A device cannot be online for more than a day between two resets
MAX_CONSUMED_MINUTES = 24 * 60.0


def validate_reset_hour(reset_hour: int) -> int:
    if isinstance(reset_hour, bool) or not isinstance(reset_hour, int) or not 0 <= reset_hour <= 23:
        raise ConfigurationError(f"quota reset hour must be 0-23, got {reset_hour!r}")
    return reset_hour


def most_recent_reset(now: datetime, reset_hour: int) -> datetime:
    """Return the latest reset boundary at or before ``now``."""
    boundary = now.replace(hour=reset_hour, minute=0, second=0, microsecond=0)
    if boundary > now:
        boundary -= timedelta(days=1)
    return boundary


def next_reset(now: datetime, reset_hour: int) -> datetime:
    return most_recent_reset(now, reset_hour) + timedelta(days=1)


@dataclass
class LedgerEntry:
    """Quota consumption for one rule uid."""

    uid: str
    consumed_minutes: float
    last_reset_at: datetime


class QuotaLedger:
    """In-memory quota ledger with dirty tracking for persistence.

    Usage per tick, for each quota-eligible enabled rule:
        ledger.ensure(uid, now, reset_hour)
        ledger.maybe_reset(uid, now, reset_hour)
        ledger.accumulate(uid, online_and_unblocked, elapsed_minutes)
    """

    def __init__(self, max_elapsed_minutes: float = 10.0) -> None:
        """Initialize ledger.

        Args:
            max_elapsed_minutes: Largest believable gap between two accruals.
                Anything larger is treated as a clock jump.
        """
        self.max_elapsed_minutes = max_elapsed_minutes
        self._entries: dict[str, LedgerEntry] = {}
        self._dirty: set[str] = set()
        self._lock = threading.Lock()

    def load(self, entries: Iterable[LedgerEntry]) -> None:
        """Replace in-memory state with persisted entries."""
        with self._lock:
            self._entries = {entry.uid: entry for entry in entries}
            self._dirty.clear()

    def get(self, uid: str) -> Optional[LedgerEntry]:
        return self._entries.get(uid)

    def ensure(self, uid: str, now: datetime, reset_hour: int) -> LedgerEntry:
        """Return the entry for ``uid``, creating a fresh one if needed."""
        with self._lock:
            entry = self._entries.get(uid)
            if entry is None:
                entry = LedgerEntry(
                    uid=uid,
                    consumed_minutes=0.0,
                    last_reset_at=most_recent_reset(now, reset_hour),
                )
                self._entries[uid] = entry
                self._dirty.add(uid)
                logger.debug(f"Created quota ledger entry for {uid}")
            return entry

    def check_elapsed(self, elapsed_minutes: float) -> float:
        """Validate an accrual interval.

        Raises:
            ClockAnomalyError: On a backward jump or an implausibly long gap
        """
        if elapsed_minutes < 0:
            raise ClockAnomalyError(f"clock moved backwards by {-elapsed_minutes:.1f} minutes")
        if elapsed_minutes > self.max_elapsed_minutes:
            raise ClockAnomalyError(
                f"{elapsed_minutes:.1f} minutes since last accrual exceeds "
                f"{self.max_elapsed_minutes:g} minute limit"
            )
        return elapsed_minutes

    def accumulate(self, uid: str, online_and_unblocked: bool, elapsed_minutes: float) -> float:
        """Charge elapsed online time to ``uid``.

        Nothing is charged while the device is offline or already blocked by
        its time window.

        Returns:
            Consumed minutes after this call

        Raises:
            ClockAnomalyError: If ``elapsed_minutes`` is not believable
            KeyError: If ``ensure`` was never called for ``uid``
        """
        self.check_elapsed(elapsed_minutes)

        with self._lock:
            entry = self._entries[uid]
            if online_and_unblocked and elapsed_minutes > 0:
                entry.consumed_minutes = min(
                    entry.consumed_minutes + elapsed_minutes, MAX_CONSUMED_MINUTES
                )
                self._dirty.add(uid)
            return entry.consumed_minutes

    def maybe_reset(self, uid: str, now: datetime, reset_hour: int) -> bool:
        """Zero the entry if ``now`` has crossed a reset boundary.

        Idempotent within a day: the entry remembers the boundary it was reset
        at, so repeated calls before the next boundary do nothing.

        Returns:
            True if the entry was reset
        """
        boundary = most_recent_reset(now, reset_hour)

        with self._lock:
            entry = self._entries[uid]
            if entry.last_reset_at >= boundary:
                return False

            logger.info(
                f"Quota reset for {uid} ({entry.consumed_minutes:.0f} minutes used since "
                f"{entry.last_reset_at:%Y-%m-%d %H:%M})"
            )
            entry.consumed_minutes = 0.0
            entry.last_reset_at = boundary
            self._dirty.add(uid)
            return True

    def reset(self, uid: Optional[str], now: datetime) -> int:
        """Operator override: zero one entry, or all of them when ``uid`` is None.

        Returns:
            Number of entries reset
        """
        with self._lock:
            uids = list(self._entries) if uid is None else [u for u in (uid,) if u in self._entries]
            for key in uids:
                self._entries[key].consumed_minutes = 0.0
                self._entries[key].last_reset_at = now
                self._dirty.add(key)
            return len(uids)

    def consumed_minutes(self, uid: str) -> float:
        entry = self._entries.get(uid)
        return entry.consumed_minutes if entry else 0.0

    def remaining_minutes(self, uid: str, quota_minutes: int) -> int:
        """Minutes left today, rounded up so partial minutes still count."""
        remaining = max(0.0, quota_minutes - self.consumed_minutes(uid))
        return math.ceil(remaining)

    def is_exhausted(self, uid: str, quota_minutes: int) -> bool:
        return quota_minutes > 0 and self.consumed_minutes(uid) >= quota_minutes

    def status(self, uid: str, quota_minutes: int) -> QuotaStatus:
        return QuotaStatus(
            remaining_minutes=self.remaining_minutes(uid, quota_minutes),
            exhausted=self.is_exhausted(uid, quota_minutes),
            consumed_minutes=self.consumed_minutes(uid),
        )

    def dirty_entries(self) -> list[LedgerEntry]:
        """Entries changed since the last successful save."""
        with self._lock:
            entries = []
            for uid in sorted(self._dirty):
                entry = self._entries.get(uid)
                if entry is not None:
                    entries.append(LedgerEntry(entry.uid, entry.consumed_minutes, entry.last_reset_at))
            return entries

    def mark_clean(self, entries: Iterable[LedgerEntry]) -> None:
        """Clear dirty flags for entries that were saved unchanged."""
        with self._lock:
            for saved in entries:
                current = self._entries.get(saved.uid)
                if (
                    current is not None
                    and current.consumed_minutes == saved.consumed_minutes
                    and current.last_reset_at == saved.last_reset_at
                ):
                    self._dirty.discard(saved.uid)

    def __contains__(self, uid: object) -> bool:
        return uid in self._entries

    def __len__(self) -> int:
        return len(self._entries)
