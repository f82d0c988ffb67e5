"""Tests for the per-tick evaluation engine."""

from datetime import datetime, timedelta

import pytest

from netcurfew.collectors import OnlineDevices
from netcurfew.evaluator import Evaluator, EvaluatorConfig
from netcurfew.models import ConfigurationError, Rule

MAC = "AA:BB:CC:DD:EE:FF"
UID = "dev_phone001"

# Monday 09:00
START = datetime(2024, 1, 1, 9, 0)


def quota_rule(**kwargs: object) -> Rule:
    values = dict(
        id=0,
        target=MAC,
        time_start="22:00",
        time_end="23:00",
        quota_enabled=True,
        quota_minutes=120,
        uid=UID,
    )
    values.update(kwargs)
    return Rule(**values)  # type: ignore[arg-type]


def online(*macs: str) -> OnlineDevices:
    return OnlineDevices(macs=set(macs))


def run_minutes(evaluator: Evaluator, rules: list[Rule], devices: OnlineDevices, minutes: int,
                start: datetime = START):
    """Tick once per minute; the first tick only sets the accrual baseline."""
    result = None
    for minute in range(minutes + 1):
        result = evaluator.tick(rules, devices, now=start + timedelta(minutes=minute))
    return result


class TestTimeWindows:
    def test_rule_inside_window_blocks(self) -> None:
        rule = Rule(id=3, target=MAC, time_start="08:00", time_end="18:00")
        result = Evaluator().tick([rule], online(), now=START, accrue=False)

        assert result.outcomes[3].time_blocked
        assert result.blocked_rule_ids == [3]
        assert result.snapshot.blocked_count == 1
        assert result.snapshot.total_count == 1

    def test_disabled_rule_ignored(self) -> None:
        rule = Rule(id=3, target=MAC, time_start="08:00", time_end="18:00", enabled=False)
        result = Evaluator().tick([rule], online(), now=START)

        assert result.outcomes == {}
        assert result.snapshot.total_count == 0

    def test_malformed_rule_fails_open(self) -> None:
        bad = Rule(id=0, target=MAC, time_start="8am", time_end="18:00")
        good = Rule(id=1, target="11:22:33:44:55:66", time_start="08:00", time_end="18:00")
        result = Evaluator().tick([bad, good], online(), now=START)

        assert not result.outcomes[0].blocked
        assert result.outcomes[0].error
        assert result.outcomes[1].blocked
        assert 0 in result.snapshot.errors
        assert result.snapshot.blocked_rules == [1]


class TestQuotaAccrual:
    def test_first_tick_sets_baseline(self) -> None:
        evaluator = Evaluator()
        result = evaluator.tick([quota_rule()], online(MAC), now=START)

        assert evaluator.last_accrual_at == START
        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0
        assert result.snapshot.per_uid[UID].remaining_minutes == 120

    def test_online_device_is_charged(self) -> None:
        evaluator = Evaluator()
        result = run_minutes(evaluator, [quota_rule()], online(MAC), 30)

        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(30.0)
        assert result.snapshot.per_uid[UID].remaining_minutes == 90

    def test_offline_device_not_charged(self) -> None:
        evaluator = Evaluator()
        result = run_minutes(evaluator, [quota_rule()], online(), 30)
        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0

    def test_unavailable_provider_not_charged(self) -> None:
        evaluator = Evaluator()
        result = run_minutes(evaluator, [quota_rule()], OnlineDevices.unavailable(), 5)
        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0

    def test_no_charge_while_time_blocked(self) -> None:
        evaluator = Evaluator()
        rule = quota_rule(time_start="08:00", time_end="18:00")
        result = run_minutes(evaluator, [rule], online(MAC), 30)

        assert result.outcomes[0].time_blocked
        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0

    def test_quota_exhaustion_blocks(self) -> None:
        evaluator = Evaluator()
        result = run_minutes(evaluator, [quota_rule()], online(MAC), 125)

        status = result.snapshot.per_uid[UID]
        assert status.exhausted
        assert status.remaining_minutes == 0
        assert result.outcomes[0].quota_exhausted
        assert result.outcomes[0].reason == "quota exhausted"
        assert result.snapshot.blocked_count == 1

    def test_ip_target_matched_by_ip(self) -> None:
        evaluator = Evaluator()
        rule = quota_rule(target="192.168.1.50")
        devices = OnlineDevices(ips={"192.168.1.50"})
        result = run_minutes(evaluator, [rule], devices, 10)
        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(10.0)

    def test_status_ticks_do_not_charge(self) -> None:
        evaluator = Evaluator()
        evaluator.tick([quota_rule()], online(MAC), now=START)
        result = evaluator.tick([quota_rule()], online(MAC), now=START + timedelta(minutes=5), accrue=False)

        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0
        assert evaluator.last_accrual_at == START

    def test_partial_minutes_round_remaining_up(self) -> None:
        evaluator = Evaluator()
        evaluator.tick([quota_rule()], online(MAC), now=START)
        result = evaluator.tick([quota_rule()], online(MAC), now=START + timedelta(seconds=90))

        status = result.snapshot.per_uid[UID]
        assert status.consumed_minutes == pytest.approx(1.5)
        assert status.remaining_minutes == 119

    def test_shared_uid_not_double_charged_by_other_rules(self) -> None:
        evaluator = Evaluator()
        rules = [quota_rule(), Rule(id=1, target=MAC, time_start="20:00", time_end="21:00")]
        result = run_minutes(evaluator, rules, online(MAC), 10)
        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(10.0)
        assert result.snapshot.total_count == 1

    def test_rules_sharing_uid_charged_once(self) -> None:
        evaluator = Evaluator()
        rules = [quota_rule(), quota_rule(id=1, time_start="20:00", time_end="21:00")]
        result = run_minutes(evaluator, rules, online(MAC), 5)

        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(5.0)
        assert result.snapshot.per_uid[UID].remaining_minutes == 115


class TestClockAnomalies:
    def test_backward_jump_charges_nothing(self) -> None:
        evaluator = Evaluator()
        evaluator.tick([quota_rule()], online(MAC), now=START)
        result = evaluator.tick([quota_rule()], online(MAC), now=START - timedelta(minutes=5))

        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0
        assert evaluator.last_accrual_at == START - timedelta(minutes=5)

    def test_long_gap_charges_nothing(self) -> None:
        evaluator = Evaluator(EvaluatorConfig(max_elapsed_minutes=10.0))
        evaluator.tick([quota_rule()], online(MAC), now=START)
        result = evaluator.tick([quota_rule()], online(MAC), now=START + timedelta(minutes=30))
        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0

        result = evaluator.tick([quota_rule()], online(MAC), now=START + timedelta(minutes=31))
        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(1.0)


class TestQuotaReset:
    def test_resets_at_configured_hour(self) -> None:
        evaluator = Evaluator(EvaluatorConfig(reset_hour=4))
        night = datetime(2024, 1, 1, 3, 50)
        result = run_minutes(evaluator, [quota_rule()], online(MAC), 9, start=night)
        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(9.0)

        result = evaluator.tick([quota_rule()], online(MAC), now=datetime(2024, 1, 1, 4, 0))
        assert result.snapshot.per_uid[UID].consumed_minutes == pytest.approx(1.0)
        assert result.snapshot.next_reset_time == datetime(2024, 1, 2, 4, 0)

    def test_invalid_reset_hour_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            Evaluator(EvaluatorConfig(reset_hour=24))


class TestQuotaRuleProblems:
    def test_quota_out_of_range_fails_open(self) -> None:
        evaluator = Evaluator()
        result = evaluator.tick([quota_rule(quota_minutes=0)], online(MAC), now=START)

        assert result.outcomes[0].error
        assert not result.outcomes[0].blocked
        assert UID not in evaluator.ledger

    def test_quota_on_range_target_ignored(self) -> None:
        evaluator = Evaluator()
        rule = quota_rule(target="192.168.1.0/24")
        result = evaluator.tick([rule], online(MAC), now=START)

        assert result.outcomes[0].error is None
        assert result.snapshot.per_uid == {}

    def test_quota_without_uid_not_tracked(self) -> None:
        evaluator = Evaluator()
        result = evaluator.tick([quota_rule(uid=None)], online(MAC), now=START)

        assert result.snapshot.per_uid == {}
        assert len(evaluator.ledger) == 0
