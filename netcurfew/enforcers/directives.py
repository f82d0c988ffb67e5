"""Translate tick results into block/unblock directives.

Only transitions produce directives, except right after start-up, when every
blocked rule is (re)announced so the firewall layer converges after a restart.
"""

import logging
from typing import Iterable, Optional, Protocol

from netcurfew.models import Action, Directive, Rule, TickResult

logger = logging.getLogger(__name__)

CHAINS = ("forward", "input")


class DirectiveSink(Protocol):
    """Receiver of enforcement output. Must tolerate repeated directives."""

    def apply(self, directives: list[Directive], blocked_rule_ids: list[int]) -> None:
        ...


class LoggingSink:
    """Logs every directive."""

    def apply(self, directives: list[Directive], blocked_rule_ids: list[int]) -> None:
        for directive in directives:
            logger.info(
                f"{directive.action.value.upper()} rule {directive.rule_id} "
                f"target={directive.target} chain={directive.chain}"
                + (f" ({directive.reason})" if directive.reason else "")
            )


class DirectiveEmitter:
    """Remembers what was blocked last tick and emits the difference."""

    def __init__(self, sinks: Iterable[DirectiveSink], chain: str = "forward") -> None:
        if chain not in CHAINS:
            raise ValueError(f"chain must be one of {', '.join(CHAINS)}, got {chain!r}")
        self.sinks = list(sinks)
        self.chain = chain
        self._blocked: Optional[dict[int, Directive]] = None

    @property
    def blocked(self) -> dict[int, Directive]:
        return dict(self._blocked or {})

    def plan(self, rules: Iterable[Rule], result: TickResult) -> list[Directive]:
        """Compute directives for this tick without applying them."""
        by_id = {rule.id: rule for rule in rules}
        now_blocked: dict[int, Directive] = {}

        for rule_id in result.blocked_rule_ids:
            rule = by_id.get(rule_id)
            if rule is None:
                continue
            now_blocked[rule_id] = Directive(
                action=Action.BLOCK,
                rule_id=rule_id,
                target=rule.target,
                uid=rule.uid,
                chain=self.chain,
                reason=result.outcomes[rule_id].reason,
            )

        previous = self._blocked
        directives = []

        for rule_id, directive in now_blocked.items():
            if previous is None or rule_id not in previous or previous[rule_id].target != directive.target:
                directives.append(directive)

        for rule_id, old in (previous or {}).items():
            replaced = rule_id in now_blocked and now_blocked[rule_id].target != old.target
            if rule_id not in now_blocked or replaced:
                directives.append(Directive(
                    action=Action.UNBLOCK,
                    rule_id=rule_id,
                    target=old.target,
                    uid=old.uid,
                    chain=self.chain,
                ))

        self._blocked = now_blocked
        return directives

    def emit(self, rules: Iterable[Rule], result: TickResult) -> list[Directive]:
        """Plan and hand directives to every sink.

        A failing sink is logged and does not stop the others.
        """
        directives = self.plan(rules, result)
        blocked_ids = sorted(self._blocked or {})

        for sink in self.sinks:
            try:
                sink.apply(directives, blocked_ids)
            except Exception as e:
                logger.warning(f"Enforcement sink {type(sink).__name__} failed: {e}")

        return directives

    def release_all(self) -> list[Directive]:
        """Unblock everything this emitter blocked (used by ``--release-on-exit``)."""
        directives = [
            Directive(action=Action.UNBLOCK, rule_id=d.rule_id, target=d.target, uid=d.uid, chain=self.chain)
            for d in (self._blocked or {}).values()
        ]
        self._blocked = {}
        for sink in self.sinks:
            try:
                sink.apply(directives, [])
            except Exception as e:
                logger.warning(f"Enforcement sink {type(sink).__name__} failed: {e}")
        return directives
