"""Fold per-rule blocking decisions into per-device state.

Several rules can name the same physical device. A device is blocked when
any enabled rule for its MAC is blocked; the roll-up counts each MAC once.
"""

import logging
from datetime import datetime
from typing import Iterable, Mapping, Optional

from netcurfew.models import ConfigurationError, DeviceRollup, QuotaStatus, Rule, RuleOutcome
from netcurfew.models.rules import normalize_mac
from netcurfew.policies.time_window import is_time_blocked

logger = logging.getLogger(__name__)


def rule_outcome(
    rule: Rule,
    now: datetime,
    quota_snapshot: Mapping[str, QuotaStatus],
) -> RuleOutcome:
    """Decide whether one rule blocks at ``now``.

    Malformed rules fail open: the outcome carries the error and is not
    blocked.
    """
    outcome = RuleOutcome(rule_id=rule.id)
    try:
        outcome.time_blocked = is_time_blocked(rule, now)
    except ConfigurationError as e:
        outcome.error = str(e)
        return outcome

    if rule.quota_enabled and rule.uid:
        status = quota_snapshot.get(rule.uid)
        outcome.quota_exhausted = bool(status and status.exhausted)
    return outcome


class DeviceAggregator:
    """Groups rules by device MAC.

    IP-only rules are folded in when ``resolve_ip_targets`` is set and the
    IP can be mapped to a MAC through the network's identity table. Ranges,
    CIDR blocks and lists never join the roll-up.
    """

    def __init__(self, resolve_ip_targets: bool = True) -> None:
        self.resolve_ip_targets = resolve_ip_targets

    def device_mac(self, rule: Rule, ip_to_mac: Optional[Mapping[str, str]] = None) -> Optional[str]:
        """Return the MAC a rule applies to, or None if it has no single device."""
        try:
            target = rule.parsed_target()
        except ConfigurationError:
            return None

        if target.mac:
            return target.mac

        address = target.single_address
        if address and self.resolve_ip_targets and ip_to_mac:
            mac = ip_to_mac.get(address)
            if mac:
                return normalize_mac(mac)
        return None

    def fold(
        self,
        rules: Iterable[Rule],
        outcomes: Mapping[int, RuleOutcome],
        ip_to_mac: Optional[Mapping[str, str]] = None,
    ) -> DeviceRollup:
        """Fold already computed rule outcomes by device."""
        rollup = DeviceRollup()
        per_device = rollup.per_device_blocked

        for rule in rules:
            if not rule.enabled:
                continue

            mac = self.device_mac(rule, ip_to_mac)
            if mac is None:
                continue

            if per_device.get(mac):
                continue  # already blocked, can only stay blocked

            outcome = outcomes.get(rule.id)
            per_device[mac] = bool(outcome and outcome.blocked)

        return rollup

    def aggregate(
        self,
        rules: Iterable[Rule],
        quota_snapshot: Mapping[str, QuotaStatus],
        now: datetime,
        ip_to_mac: Optional[Mapping[str, str]] = None,
    ) -> DeviceRollup:
        """Evaluate and fold rules in one pass.

        Args:
            rules: All rules (disabled ones are ignored)
            quota_snapshot: Quota status keyed by rule uid
            now: Evaluation time
            ip_to_mac: Optional IP -> MAC identity map

        Returns:
            Per-device blocked flags with blocked/total counts
        """
        rules = list(rules)
        outcomes = {}
        for rule in rules:
            if not rule.enabled:
                continue
            outcome = rule_outcome(rule, now, quota_snapshot)
            if outcome.error:
                logger.warning(f"Rule {rule.id} ({rule.display_name}) skipped: {outcome.error}")
            outcomes[rule.id] = outcome

        return self.fold(rules, outcomes, ip_to_mac)
