"""Tests for the daemon tick loop."""

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from netcurfew.collectors import OnlineDevices
from netcurfew.daemon import PERSIST_FAILURE_ESCALATION, Daemon
from netcurfew.enforcers import DirectiveEmitter, IdListWriter
from netcurfew.evaluator import Evaluator
from netcurfew.models import PersistenceError, ProviderUnavailable, Rule
from netcurfew.policies import LedgerEntry
from netcurfew.storage import StatusWriter, Store

MAC = "AA:BB:CC:DD:EE:FF"
UID = "dev_laptop01"

# Monday 09:00
START = datetime(2024, 1, 1, 9, 0)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeCollector:
    def __init__(self, macs: set[str] | None = None, fail: bool = False) -> None:
        self.macs = macs or set()
        self.fail = fail

    def collect(self) -> OnlineDevices:
        if self.fail:
            raise ProviderUnavailable("arp table unreadable")
        return OnlineDevices(macs=set(self.macs))


class FlakyStore(Store):
    """Store whose ledger writes fail while ``failing`` is set."""

    failing = False

    def save_ledger(self, entries):  # type: ignore[override]
        if self.failing:
            raise PersistenceError("disk full")
        return super().save_ledger(entries)


class FakeNotifier:
    def __init__(self) -> None:
        self.directives: list[str] = []
        self.exhausted: list[str] = []
        self.timestamps: list = []
        self.closed = False

    async def send_directive(self, directive, device_name: str, timestamp=None) -> bool:
        self.directives.append(f"{directive.action.value}:{device_name}")
        self.timestamps.append(timestamp)
        return True

    async def send_quota_exhausted(self, device_name: str, quota_minutes: int, timestamp=None) -> bool:
        self.exhausted.append(device_name)
        return True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def store():
    s = FlakyStore(Path(":memory:"))
    s.connect()
    yield s
    s.close()


def make_daemon(store: Store, tmp_path: Path, clock: FakeClock, collector=None, **kwargs) -> Daemon:
    return Daemon(
        store=store,
        evaluator=Evaluator(),
        collector=collector or FakeCollector({MAC}),
        emitter=DirectiveEmitter([IdListWriter(tmp_path / "idlist")]),
        status_writer=StatusWriter(tmp_path / "status.json"),
        clock=clock,
        **kwargs,
    )


def quota_rule(**kwargs: object) -> Rule:
    values = dict(id=0, target=MAC, time_start="22:00", time_end="23:00",
                  quota_enabled=True, quota_minutes=120, uid=UID, comment="laptop")
    values.update(kwargs)
    return Rule(**values)  # type: ignore[arg-type]


class TestRunOnce:
    def test_writes_idlist_status_and_ledger(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        store.upsert_rule(Rule(id=1, target="11:22:33:44:55:66", time_start="08:00", time_end="18:00"))
        daemon = make_daemon(store, tmp_path, FakeClock(START))

        result = daemon.run_once()

        assert result.blocked_rule_ids == [1]
        assert (tmp_path / "idlist").read_text() == "!1!\n"
        status = json.loads((tmp_path / "status.json").read_text())
        assert status["blocked_count"] == 1
        assert status["total_count"] == 2
        assert status["devices"][UID]["remaining_minutes"] == 120
        assert [e.uid for e in store.load_ledger()] == [UID]
        assert daemon.ticks == 1

    def test_assigns_uids_before_evaluating(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule(uid=None))
        daemon = make_daemon(store, tmp_path, FakeClock(START))

        result = daemon.run_once()

        uid = store.get_rule(0).uid
        assert uid and uid.startswith("dev_")
        assert uid in result.snapshot.per_uid

    def test_quota_charged_on_quota_cadence(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        clock = FakeClock(START)
        daemon = make_daemon(store, tmp_path, clock, status_interval=5.0, quota_interval=60.0)

        daemon.run_once()
        accrued = []
        for _ in range(12):
            clock.advance(5)
            accrued.append(daemon.run_once().accrued)

        assert accrued == [False] * 11 + [True]
        assert daemon.evaluator.ledger.consumed_minutes(UID) == pytest.approx(1.0)

    def test_late_tick_charges_real_elapsed_time(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        clock = FakeClock(START)
        daemon = make_daemon(store, tmp_path, clock)

        daemon.run_once()
        clock.advance(150)
        daemon.run_once()

        assert daemon.evaluator.ledger.consumed_minutes(UID) == pytest.approx(2.5)

    def test_provider_unavailable_counts_as_offline(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        clock = FakeClock(START)
        daemon = make_daemon(store, tmp_path, clock, collector=FakeCollector(fail=True))

        daemon.run_once()
        clock.advance(60)
        result = daemon.run_once()

        assert result.snapshot.per_uid[UID].consumed_minutes == 0.0

    def test_rule_read_failure_uses_previous_snapshot(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(Rule(id=1, target=MAC, time_start="08:00", time_end="18:00"))
        daemon = make_daemon(store, tmp_path, FakeClock(START))
        daemon.run_once()

        store.conn.execute("DROP TABLE rules")
        result = daemon.run_once()

        assert result.blocked_rule_ids == [1]


class TestPersistence:
    def test_failed_write_is_retried(self, store: FlakyStore, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        clock = FakeClock(START)
        daemon = make_daemon(store, tmp_path, clock)

        store.failing = True
        daemon.run_once()
        assert store.load_ledger() == []
        assert daemon.evaluator.ledger.dirty_entries()

        store.failing = False
        clock.advance(60)
        daemon.run_once()

        assert [e.uid for e in store.load_ledger()] == [UID]
        assert daemon.evaluator.ledger.dirty_entries() == []

    def test_repeated_failures_escalate(self, store: FlakyStore, tmp_path: Path, caplog) -> None:
        store.upsert_rule(quota_rule())
        daemon = make_daemon(store, tmp_path, FakeClock(START))
        store.failing = True

        for _ in range(PERSIST_FAILURE_ESCALATION):
            daemon.run_once()

        errors = [r for r in caplog.records if r.levelname == "ERROR" and "disk full" in r.getMessage()]
        assert len(errors) == 1

    def test_load_ledger_restores_state(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        store.save_ledger([LedgerEntry(UID, 100.0, datetime(2024, 1, 1, 0, 0))])
        daemon = make_daemon(store, tmp_path, FakeClock(START))

        assert daemon.load_ledger() == 1
        result = daemon.run_once()
        assert result.snapshot.per_uid[UID].remaining_minutes == 20


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_after_max_ticks(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(quota_rule())
        daemon = make_daemon(store, tmp_path, FakeClock(START), status_interval=0.0)

        await daemon.run_forever(max_ticks=3)

        assert daemon.ticks == 3
        assert [e.uid for e in store.load_ledger()] == [UID]

    @pytest.mark.asyncio
    async def test_stop(self, store: Store, tmp_path: Path) -> None:
        daemon = make_daemon(store, tmp_path, FakeClock(START), status_interval=30.0)

        task = asyncio.create_task(daemon.run_forever())
        await asyncio.sleep(0.05)
        daemon.stop()
        await asyncio.wait_for(task, timeout=5)

        assert daemon.ticks == 1

    @pytest.mark.asyncio
    async def test_notifications_sent(self, store: Store, tmp_path: Path) -> None:
        store.upsert_rule(Rule(id=1, target=MAC, time_start="08:00", time_end="18:00", comment="console"))
        store.upsert_rule(quota_rule(id=2, uid="dev_tv000000", quota_minutes=1, comment="tv"))
        store.save_ledger([LedgerEntry("dev_tv000000", 5.0, datetime(2024, 1, 1, 0, 0))])
        notifier = FakeNotifier()
        daemon = make_daemon(store, tmp_path, FakeClock(START), notifier=notifier, status_interval=0.0)

        await daemon.run_forever(max_ticks=2)

        assert "block:console" in notifier.directives
        assert set(notifier.timestamps) == {START}
        assert notifier.exhausted == ["tv"]
        assert notifier.closed
