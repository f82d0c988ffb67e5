"""Blocked rule id list consumed by the firewall scripts.

Format, one line per blocked rule id:
    !0!
    !2!
"""

import logging
import re
from pathlib import Path

from netcurfew.models import Directive
from netcurfew.storage.status_file import atomic_write_text

logger = logging.getLogger(__name__)

ID_PATTERN = re.compile(r"!(\d+)!")


def format_idlist(rule_ids: list[int]) -> str:
    return "".join(f"!{rule_id}!\n" for rule_id in sorted(set(rule_ids)))


def parse_idlist(text: str) -> list[int]:
    return [int(match) for match in ID_PATTERN.findall(text)]


class IdListWriter:
    """Keeps the id list file in sync with the blocked rule set.

    The file is only rewritten when its content would change.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def apply(self, directives: list[Directive], blocked_rule_ids: list[int]) -> None:
        content = format_idlist(blocked_rule_ids)
        try:
            if self.path.read_text() == content:
                return
        except FileNotFoundError:
            pass

        atomic_write_text(self.path, content)
        logger.debug(f"Wrote {len(blocked_rule_ids)} blocked rule ids to {self.path}")

    def read(self) -> list[int]:
        try:
            return parse_idlist(self.path.read_text())
        except FileNotFoundError:
            return []
