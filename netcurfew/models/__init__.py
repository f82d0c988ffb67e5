"""Data models for netcurfew."""

from netcurfew.models.errors import (
    ClockAnomalyError,
    ConfigurationError,
    NetcurfewError,
    PersistenceError,
    ProviderUnavailable,
)
from netcurfew.models.rules import Rule, Target, TargetKind, generate_uid
from netcurfew.models.status import (
    Action,
    DeviceRollup,
    Directive,
    QuotaStatus,
    RuleOutcome,
    StatusSnapshot,
    TickResult,
)

__all__ = [
    "Action",
    "ClockAnomalyError",
    "ConfigurationError",
    "DeviceRollup",
    "Directive",
    "NetcurfewError",
    "PersistenceError",
    "ProviderUnavailable",
    "QuotaStatus",
    "Rule",
    "RuleOutcome",
    "StatusSnapshot",
    "Target",
    "TargetKind",
    "TickResult",
    "generate_uid",
]
