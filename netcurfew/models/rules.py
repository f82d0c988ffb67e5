"""Rule and target models.

A rule is stored as the raw strings the configuration surface writes
(``"08:00"``, ``"1,2,3"``) and parsed at evaluation time, so one malformed
rule can be skipped without taking the others down with it.
"""

import ipaddress
import random
import re
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from netcurfew.models.errors import ConfigurationError

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")

# "192.168.1.10 - 192.168.1.20" -> "192.168.1.10-192.168.1.20"
RANGE_SEPARATOR = re.compile(r"\s*-\s*")
LIST_SEPARATOR = re.compile(r"[,\s]+")

DEFAULT_QUOTA_MINUTES = 120
MAX_QUOTA_MINUTES = 1440

UID_PREFIX = "dev_"
_UID_ALPHABET = string.ascii_lowercase + string.digits


def generate_uid() -> str:
    """Generate a new ledger key, e.g. ``dev_k3x9a0qz``."""
    return UID_PREFIX + "".join(random.choices(_UID_ALPHABET, k=8))


def normalize_mac(mac: str) -> str:
    """Return a MAC in upper-case colon form (``AA:BB:CC:DD:EE:FF``)."""
    return mac.strip().replace("-", ":").upper()


class TargetKind(str, Enum):
    """What a rule's target string resolves to."""

    MAC = "mac"
    IP = "ip"
    IP_RANGE = "ip_range"
    CIDR = "cidr"
    MULTI = "multi"


@dataclass(frozen=True)
class Target:
    """A parsed rule target.

    Attributes:
        raw: The string as configured
        kind: Classification of the target
        parts: Normalized addresses (one per list entry)
    """

    raw: str
    kind: TargetKind
    parts: tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> "Target":
        """Parse a target string.

        Raises:
            ConfigurationError: If any part is not a MAC, IPv4, range or CIDR
        """
        text = RANGE_SEPARATOR.sub("-", (raw or "").strip())
        tokens = [t for t in LIST_SEPARATOR.split(text) if t]
        if not tokens:
            raise ConfigurationError("target is empty")

        parsed = [_parse_single(token) for token in tokens]
        if len(parsed) > 1:
            return cls(raw=raw, kind=TargetKind.MULTI, parts=tuple(p for _, p in parsed))

        kind, value = parsed[0]
        return cls(raw=raw, kind=kind, parts=(value,))

    @property
    def single_address(self) -> Optional[str]:
        """The one MAC or IP this target names, or None for sets of hosts."""
        if self.kind in (TargetKind.MAC, TargetKind.IP):
            return self.parts[0]
        return None

    @property
    def mac(self) -> Optional[str]:
        return self.parts[0] if self.kind is TargetKind.MAC else None

    @property
    def quota_eligible(self) -> bool:
        return self.single_address is not None


def _parse_single(token: str) -> tuple[TargetKind, str]:
    if MAC_PATTERN.match(token):
        return TargetKind.MAC, normalize_mac(token)

    try:
        if "/" in token:
            network = ipaddress.IPv4Network(token, strict=False)
            return TargetKind.CIDR, str(network)

        if "-" in token:
            first, _, last = token.partition("-")
            start = ipaddress.IPv4Address(first)
            end = ipaddress.IPv4Address(last)
            if start > end:
                raise ConfigurationError(f"address range is reversed: {token}")
            return TargetKind.IP_RANGE, f"{start}-{end}"

        return TargetKind.IP, str(ipaddress.IPv4Address(token))
    except ValueError as e:
        raise ConfigurationError(
            f"invalid target {token!r}: use a MAC (00:11:22:33:44:55), "
            f"an IP (192.168.1.100), a range or a CIDR block"
        ) from e


@dataclass
class Rule:
    """A device access-restriction record.

    Attributes:
        id: Storage identifier, unique within the rule store
        target: MAC, IPv4, range, CIDR or a comma/space separated list
        time_start: Start of the blocked window, "HH:MM" (inclusive)
        time_end: End of the blocked window, "HH:MM" (exclusive)
        week: Persisted weekday form ("0" for every day, else "1,3,5")
        quota_enabled: Whether the daily quota applies (single targets only)
        quota_minutes: Daily online budget in minutes
        uid: Stable quota ledger key, assigned once and never changed
        comment: Human-readable device name
        enabled: Disabled rules never block and never consume quota
    """

    id: int
    target: str
    time_start: str = "00:00"
    time_end: str = "23:59"
    week: str = "0"
    quota_enabled: bool = False
    quota_minutes: int = DEFAULT_QUOTA_MINUTES
    uid: Optional[str] = None
    comment: str = ""
    enabled: bool = True

    def parsed_target(self) -> Target:
        return Target.parse(self.target)

    @property
    def display_name(self) -> str:
        return self.comment or self.target or f"rule {self.id}"
