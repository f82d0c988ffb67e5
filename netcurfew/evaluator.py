"""Rule evaluation engine.

Each tick:
1. Snapshot the current time once
2. Check every enabled rule's weekday + time window
3. Reset and charge quota for quota-eligible rules
4. Fold rule outcomes into per-device state
5. Return the result as a value (no ambient "currently blocked" state)

A rule that fails to evaluate is reported and treated as not blocked, so a
typo in one rule never cuts off unrelated devices.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from netcurfew.collectors import OnlineDevices
from netcurfew.models import (
    ClockAnomalyError,
    ConfigurationError,
    QuotaStatus,
    Rule,
    RuleOutcome,
    StatusSnapshot,
    TickResult,
)
from netcurfew.models.rules import MAX_QUOTA_MINUTES
from netcurfew.policies import DeviceAggregator, QuotaLedger, is_time_blocked, next_reset
from netcurfew.policies.quota import validate_reset_hour

logger = logging.getLogger(__name__)


@dataclass
class EvaluatorConfig:
    """Configuration for the evaluation engine."""

    # Hour of day (0-23) at which daily quotas start over
    reset_hour: int = 0

    # Largest believable gap between two quota accruals (minutes)
    max_elapsed_minutes: float = 10.0

    # Map IP-only rules to a MAC for the device roll-up
    resolve_ip_targets: bool = True


class Evaluator:
    """Decides blocked/unblocked state per rule and per device."""

    def __init__(
        self,
        config: Optional[EvaluatorConfig] = None,
        ledger: Optional[QuotaLedger] = None,
    ) -> None:
        self.config = config or EvaluatorConfig()
        validate_reset_hour(self.config.reset_hour)
        self.ledger = ledger or QuotaLedger(self.config.max_elapsed_minutes)
        self.aggregator = DeviceAggregator(self.config.resolve_ip_targets)
        self._last_accrual_at: Optional[datetime] = None

    @property
    def last_accrual_at(self) -> Optional[datetime]:
        return self._last_accrual_at

    def tick(
        self,
        rules: Iterable[Rule],
        online: OnlineDevices,
        now: Optional[datetime] = None,
        accrue: bool = True,
    ) -> TickResult:
        """Run one evaluation.

        Args:
            rules: Snapshot of the rule store
            online: Devices currently online
            now: Evaluation time (defaults to local wall-clock time)
            accrue: Charge quota for the wall-clock time since the last
                accruing tick. Status-only ticks pass False.

        Returns:
            Per-rule outcomes, device roll-up and status snapshot
        """
        now = now or datetime.now()
        rules = [rule for rule in rules if rule.enabled]
        elapsed = self._elapsed_minutes(now) if accrue else 0.0

        outcomes: dict[int, RuleOutcome] = {}
        per_uid: dict[str, QuotaStatus] = {}

        for rule in rules:
            outcome = RuleOutcome(rule_id=rule.id)
            try:
                self._evaluate_rule(rule, online, now, accrue, elapsed, outcome, per_uid)
            except ConfigurationError as e:
                outcome = RuleOutcome(rule_id=rule.id, error=str(e))
                logger.warning(f"Rule {rule.id} ({rule.display_name}) not enforced: {e}")
            except Exception as e:
                outcome = RuleOutcome(rule_id=rule.id, error=f"internal error: {e}")
                logger.exception(f"Rule {rule.id} ({rule.display_name}) evaluation failed")
            outcomes[rule.id] = outcome

        devices = self.aggregator.fold(rules, outcomes, online.ip_to_mac)

        snapshot = StatusSnapshot(
            timestamp=now,
            blocked_count=devices.blocked_count,
            total_count=devices.total_count,
            next_reset_time=next_reset(now, self.config.reset_hour),
            per_uid=per_uid,
            blocked_rules=sorted(rule_id for rule_id, o in outcomes.items() if o.blocked),
            errors={rule_id: o.error for rule_id, o in outcomes.items() if o.error},
        )

        return TickResult(outcomes=outcomes, devices=devices, snapshot=snapshot, accrued=accrue)

    def _elapsed_minutes(self, now: datetime) -> float:
        """Wall-clock minutes since the previous accruing tick.

        The first tick only sets the baseline. A clock anomaly charges
        nothing and re-baselines on ``now``.
        """
        previous = self._last_accrual_at
        self._last_accrual_at = now
        if previous is None:
            return 0.0

        elapsed = (now - previous).total_seconds() / 60
        try:
            return self.ledger.check_elapsed(elapsed)
        except ClockAnomalyError as e:
            logger.warning(f"Skipping quota accrual this tick: {e}")
            return 0.0

    def _evaluate_rule(
        self,
        rule: Rule,
        online: OnlineDevices,
        now: datetime,
        accrue: bool,
        elapsed: float,
        outcome: RuleOutcome,
        per_uid: dict[str, QuotaStatus],
    ) -> None:
        target = rule.parsed_target()
        outcome.time_blocked = is_time_blocked(rule, now)

        if not rule.quota_enabled or not target.quota_eligible:
            return

        quota = rule.quota_minutes
        if isinstance(quota, bool) or not isinstance(quota, int) or not 1 <= quota <= MAX_QUOTA_MINUTES:
            raise ConfigurationError(f"quota must be between 1-{MAX_QUOTA_MINUTES} minutes, got {quota!r}")

        if not rule.uid:
            logger.debug(f"Rule {rule.id} has no uid yet, quota not tracked")
            return

        reset_hour = self.config.reset_hour
        self.ledger.ensure(rule.uid, now, reset_hour)
        self.ledger.maybe_reset(rule.uid, now, reset_hour)

        if rule.uid in per_uid:
            # A uid is charged at most once per tick
            logger.warning(f"Rule {rule.id} shares uid {rule.uid} with another rule, charged once")
        elif accrue:
            is_online = online.is_online(target.single_address)
            self.ledger.accumulate(rule.uid, is_online and not outcome.time_blocked, elapsed)

        status = self.ledger.status(rule.uid, quota)
        outcome.quota_exhausted = status.exhausted
        per_uid[rule.uid] = status
