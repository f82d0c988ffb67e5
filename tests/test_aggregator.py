"""Tests for folding rule outcomes by device."""

from datetime import datetime

from netcurfew.models import QuotaStatus, Rule, RuleOutcome
from netcurfew.policies import DeviceAggregator, rule_outcome

MAC = "AA:BB:CC:DD:EE:FF"
OTHER_MAC = "11:22:33:44:55:66"

# Monday 10:00
NOW = datetime(2024, 1, 1, 10, 0)


def blocking_rule(rule_id: int, target: str = MAC, **kwargs: object) -> Rule:
    return Rule(id=rule_id, target=target, time_start="09:00", time_end="11:00", **kwargs)  # type: ignore[arg-type]


def idle_rule(rule_id: int, target: str = MAC, **kwargs: object) -> Rule:
    return Rule(id=rule_id, target=target, time_start="20:00", time_end="22:00", **kwargs)  # type: ignore[arg-type]


class TestAggregate:
    def test_shared_mac_counted_once(self) -> None:
        rules = [blocking_rule(0), idle_rule(1, target=MAC.lower())]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)

        assert rollup.per_device_blocked == {MAC: True}
        assert rollup.blocked_count == 1
        assert rollup.total_count == 1

    def test_order_does_not_matter(self) -> None:
        rules = [idle_rule(0), blocking_rule(1)]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)
        assert rollup.per_device_blocked == {MAC: True}

    def test_two_devices(self) -> None:
        rules = [blocking_rule(0), idle_rule(1, target=OTHER_MAC)]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)
        assert rollup.blocked_count == 1
        assert rollup.total_count == 2

    def test_disabled_rules_ignored(self) -> None:
        rules = [blocking_rule(0, enabled=False)]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)
        assert rollup.total_count == 0

    def test_quota_exhausted_blocks(self) -> None:
        rule = idle_rule(0, quota_enabled=True, quota_minutes=60, uid="dev_a")
        snapshot = {"dev_a": QuotaStatus(remaining_minutes=0, exhausted=True)}
        rollup = DeviceAggregator().aggregate([rule], snapshot, NOW)
        assert rollup.per_device_blocked == {MAC: True}

    def test_multi_and_cidr_targets_excluded(self) -> None:
        rules = [
            blocking_rule(0, target="192.168.1.0/24"),
            blocking_rule(1, target=f"{MAC}, {OTHER_MAC}"),
            blocking_rule(2, target="192.168.1.10-192.168.1.20"),
        ]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)
        assert rollup.total_count == 0

    def test_ip_rule_resolved_through_identity_map(self) -> None:
        rules = [blocking_rule(0, target="192.168.1.50"), idle_rule(1)]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW, ip_to_mac={"192.168.1.50": MAC.lower()})
        assert rollup.per_device_blocked == {MAC: True}
        assert rollup.total_count == 1

    def test_ip_rule_without_mapping_excluded(self) -> None:
        rules = [blocking_rule(0, target="192.168.1.50")]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW, ip_to_mac={})
        assert rollup.total_count == 0

    def test_ip_resolution_disabled(self) -> None:
        rules = [blocking_rule(0, target="192.168.1.50")]
        aggregator = DeviceAggregator(resolve_ip_targets=False)
        rollup = aggregator.aggregate(rules, {}, NOW, ip_to_mac={"192.168.1.50": MAC})
        assert rollup.total_count == 0

    def test_malformed_rule_fails_open(self) -> None:
        rules = [Rule(id=0, target=MAC, time_start="bogus", time_end="11:00"), blocking_rule(1, target=OTHER_MAC)]
        rollup = DeviceAggregator().aggregate(rules, {}, NOW)
        assert rollup.per_device_blocked == {MAC: False, OTHER_MAC: True}


class TestFold:
    def test_uses_given_outcomes(self) -> None:
        rules = [idle_rule(0), idle_rule(1)]
        outcomes = {0: RuleOutcome(0), 1: RuleOutcome(1, quota_exhausted=True)}
        rollup = DeviceAggregator().fold(rules, outcomes)
        assert rollup.per_device_blocked == {MAC: True}

    def test_error_outcome_not_blocked(self) -> None:
        outcomes = {0: RuleOutcome(0, time_blocked=True, error="bad")}
        rollup = DeviceAggregator().fold([idle_rule(0)], outcomes)
        assert rollup.per_device_blocked == {MAC: False}


class TestRuleOutcome:
    def test_reason(self) -> None:
        outcome = rule_outcome(blocking_rule(0), NOW, {})
        assert outcome.blocked
        assert outcome.reason == "time window"

    def test_quota_without_uid_is_inert(self) -> None:
        rule = idle_rule(0, quota_enabled=True)
        outcome = rule_outcome(rule, NOW, {"dev_x": QuotaStatus(0, True)})
        assert not outcome.blocked
