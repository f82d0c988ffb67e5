"""Blocking policies: weekly windows, daily quotas and device roll-up."""

from netcurfew.policies.weekdays import WeekdaySet
from netcurfew.policies.time_window import in_window, is_time_blocked, parse_hhmm
from netcurfew.policies.quota import LedgerEntry, QuotaLedger, most_recent_reset, next_reset
from netcurfew.policies.device_aggregator import DeviceAggregator, rule_outcome
from netcurfew.policies.validation import validate_rule

__all__ = [
    "WeekdaySet",
    "in_window",
    "is_time_blocked",
    "parse_hhmm",
    "LedgerEntry",
    "QuotaLedger",
    "most_recent_reset",
    "next_reset",
    "DeviceAggregator",
    "rule_outcome",
    "validate_rule",
]
