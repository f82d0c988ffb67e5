"""The enforcement daemon loop.

Ticks every ``status_interval`` seconds. Time windows are checked on every
tick; quota is charged only when ``quota_interval`` seconds of wall-clock
time have passed since the last charge, and then for the real elapsed time,
so a late tick still charges the right number of minutes.

All I/O (rule reads, neighbour table, ledger writes, status file) happens at
tick boundaries. Nothing that goes wrong in a tick stops the loop.
"""

import asyncio
import logging
import signal
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from netcurfew.collectors import NeighborCollector, OnlineDevices
from netcurfew.enforcers import DirectiveEmitter
from netcurfew.evaluator import Evaluator
from netcurfew.models import PersistenceError, ProviderUnavailable, Rule, TickResult
from netcurfew.notifiers import SlackNotifier
from netcurfew.storage import StatusWriter, Store

logger = logging.getLogger(__name__)

# Consecutive ledger write failures before every further failure is an ERROR
PERSIST_FAILURE_ESCALATION = 3


class Daemon:
    """Runs the evaluator against live rules and network state."""

    def __init__(
        self,
        store: Store,
        evaluator: Evaluator,
        collector: NeighborCollector,
        emitter: DirectiveEmitter,
        status_writer: Optional[StatusWriter] = None,
        notifier: Optional[SlackNotifier] = None,
        status_interval: float = 5.0,
        quota_interval: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.collector = collector
        self.emitter = emitter
        self.status_writer = status_writer
        self.notifier = notifier
        self.status_interval = status_interval
        self.quota_interval = quota_interval
        self.clock = clock

        self.last_result: Optional[TickResult] = None
        self.ticks = 0
        self._rules: list[Rule] = []
        self._exhausted: set[str] = set()
        self._persist_failures = 0
        self._pending: set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None

    def load_ledger(self) -> int:
        """Restore quota state from the store. Starts fresh on failure."""
        try:
            entries = self.store.load_ledger()
        except PersistenceError as e:
            logger.warning(f"{e}; starting with an empty quota ledger")
            return 0

        self.evaluator.ledger.load(entries)
        logger.info(f"Loaded {len(entries)} quota ledger entries")
        return len(entries)

    def _read_rules(self) -> list[Rule]:
        """Snapshot rules, falling back to the previous snapshot on failure."""
        try:
            self.store.assign_missing_uids()
            self._rules = self.store.list_rules()
        except PersistenceError as e:
            logger.warning(f"{e}; using previous rule snapshot")
        return self._rules

    def _read_online(self) -> OnlineDevices:
        try:
            return self.collector.collect()
        except ProviderUnavailable as e:
            logger.warning(f"{e}; treating all devices as offline this tick")
            return OnlineDevices.unavailable()

    def _quota_due(self, now: datetime) -> bool:
        last = self.evaluator.last_accrual_at
        if last is None:
            return True
        # A backwards jump is due too, so the evaluator can re-baseline
        elapsed = (now - last).total_seconds()
        return elapsed >= self.quota_interval or elapsed < 0

    def run_once(self) -> TickResult:
        """Run a single tick."""
        now = self.clock()
        rules = self._read_rules()
        online = self._read_online()

        result = self.evaluator.tick(rules, online, now=now, accrue=self._quota_due(now))
        directives = self.emitter.emit(rules, result)

        self.persist()
        if self.status_writer:
            self.status_writer.write(result.snapshot)

        if self.notifier:
            names = {rule.id: rule.display_name for rule in rules}
            for directive in directives:
                name = names.get(directive.rule_id, directive.target)
                self._notify(self.notifier.send_directive(directive, name, result.snapshot.timestamp))
            self._notify_exhausted(rules, result)

        self.last_result = result
        self.ticks += 1
        return result

    def _notify_exhausted(self, rules: list[Rule], result: TickResult) -> None:
        exhausted = {uid for uid, status in result.snapshot.per_uid.items() if status.exhausted}
        by_uid = {rule.uid: rule for rule in rules if rule.uid}
        for uid in sorted(exhausted - self._exhausted):
            rule = by_uid.get(uid)
            if rule and self.notifier:
                self._notify(self.notifier.send_quota_exhausted(
                    rule.display_name, rule.quota_minutes, result.snapshot.timestamp
                ))
        self._exhausted = exhausted

    def _notify(self, coro) -> None:
        """Fire-and-forget a notification on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()  # no loop (one-shot use), drop the notification
            return
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def persist(self) -> bool:
        """Write changed ledger entries. Keeps in-memory state on failure."""
        ledger = self.evaluator.ledger
        entries = ledger.dirty_entries()
        if not entries:
            return True

        try:
            self.store.save_ledger(entries)
        except PersistenceError as e:
            self._persist_failures += 1
            if self._persist_failures >= PERSIST_FAILURE_ESCALATION:
                logger.error(f"{e} ({self._persist_failures} consecutive failures, will retry)")
            else:
                logger.warning(f"{e}; will retry next tick")
            return False

        if self._persist_failures:
            logger.info(f"Quota ledger persisted again after {self._persist_failures} failures")
        self._persist_failures = 0
        ledger.mark_clean(entries)
        return True

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self, max_ticks: Optional[int] = None) -> None:
        """Tick until stopped by a signal, ``stop()`` or ``max_ticks``."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            self.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

        self.load_ledger()

        try:
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("Tick failed")

                if max_ticks is not None and self.ticks >= max_ticks:
                    break

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.status_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError, RuntimeError):
                    pass
            await self.shutdown()

    async def shutdown(self) -> None:
        """Flush ledger state and close notifier resources."""
        if not self.persist():
            logger.error("Quota ledger could not be flushed on shutdown")

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self.notifier:
            await self.notifier.close()
