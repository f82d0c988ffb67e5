"""Value objects produced by an evaluation tick."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Action(str, Enum):
    """Enforcement directive action."""

    BLOCK = "block"
    UNBLOCK = "unblock"


@dataclass(frozen=True)
class Directive:
    """An instruction for the firewall layer.

    Receivers must treat directives as idempotent: blocking an already
    blocked target is a no-op.
    """

    action: Action
    rule_id: int
    target: str
    uid: Optional[str] = None
    chain: str = "forward"
    reason: str = ""


@dataclass(frozen=True)
class QuotaStatus:
    """Per-uid quota state at the end of a tick."""

    remaining_minutes: int
    exhausted: bool
    consumed_minutes: float = 0.0


@dataclass
class RuleOutcome:
    """Blocking decision for a single rule.

    Attributes:
        rule_id: Storage id of the rule
        time_blocked: Inside its weekday + time window right now
        quota_exhausted: Daily budget used up
        error: Why the rule was skipped (fail-open), if it was
    """

    rule_id: int
    time_blocked: bool = False
    quota_exhausted: bool = False
    error: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.error is None and (self.time_blocked or self.quota_exhausted)

    @property
    def reason(self) -> str:
        if self.time_blocked:
            return "time window"
        if self.quota_exhausted:
            return "quota exhausted"
        return ""


@dataclass
class DeviceRollup:
    """Per-device result of folding rule outcomes by MAC."""

    per_device_blocked: dict[str, bool] = field(default_factory=dict)

    @property
    def total_count(self) -> int:
        return len(self.per_device_blocked)

    @property
    def blocked_count(self) -> int:
        return sum(1 for blocked in self.per_device_blocked.values() if blocked)


@dataclass
class StatusSnapshot:
    """Queryable status for monitoring and UI layers."""

    timestamp: datetime
    blocked_count: int
    total_count: int
    next_reset_time: datetime
    per_uid: dict[str, QuotaStatus] = field(default_factory=dict)
    blocked_rules: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON shape consumed by the status page."""
        return {
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "blocked_count": self.blocked_count,
            "total_count": self.total_count,
            "next_reset": self.next_reset_time.strftime("%Y-%m-%d %H:%M"),
            "blocked_rules": list(self.blocked_rules),
            "devices": {
                uid: {
                    "remaining_minutes": status.remaining_minutes,
                    "exhausted": status.exhausted,
                    "consumed_minutes": round(status.consumed_minutes, 2),
                }
                for uid, status in self.per_uid.items()
            },
            "errors": {str(rule_id): message for rule_id, message in self.errors.items()},
        }


@dataclass
class TickResult:
    """Everything one evaluation tick decided."""

    outcomes: dict[int, RuleOutcome]
    devices: DeviceRollup
    snapshot: StatusSnapshot
    accrued: bool = False

    @property
    def blocked_rule_ids(self) -> list[int]:
        return sorted(rule_id for rule_id, outcome in self.outcomes.items() if outcome.blocked)
