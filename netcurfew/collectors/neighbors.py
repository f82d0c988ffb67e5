"""Online-device collection from the router's neighbour table.

Sources:
  /proc/net/arp (kernel neighbour table, which hosts are associated now):
    IP address       HW type     Flags       HW address            Mask     Device
    192.168.1.100    0x1         0x2         aa:bb:cc:dd:ee:ff     *        br-lan

  dnsmasq leases file (IP -> MAC identity, including hosts that are asleep):
    1706284335 aa:bb:cc:dd:ee:ff 192.168.1.100 alice-laptop 01:aa:bb:cc:dd:ee:ff
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from netcurfew.models import ProviderUnavailable
from netcurfew.models.rules import MAC_PATTERN, normalize_mac

logger = logging.getLogger(__name__)

ARP_LINE_PATTERN = re.compile(
    r"^(\d{1,3}(?:\.\d{1,3}){3})\s+"  # IP address
    r"(0x[0-9a-fA-F]+)\s+"             # HW type
    r"(0x[0-9a-fA-F]+)\s+"             # Flags
    r"([0-9a-fA-F:]{17})\s+"           # HW address
    r"\S+\s+"                          # Mask
    r"(\S+)"                           # Device
)

# ATF_COM: the entry has a resolved hardware address
ARP_FLAG_COMPLETE = 0x2

EMPTY_MAC = "00:00:00:00:00:00"


@dataclass
class NeighborConfig:
    """Configuration for the neighbour table collector."""

    arp_path: Path = Path("/proc/net/arp")

    # dnsmasq leases, None to skip identity lookup
    leases_path: Optional[Path] = Path("/tmp/dhcp.leases")

    # Only count neighbours on these interfaces (empty = all)
    interfaces: list[str] = field(default_factory=list)


@dataclass
class OnlineDevices:
    """Which devices are online right now, keyed by MAC and by IP.

    Absence from both sets means "not online".
    """

    macs: set[str] = field(default_factory=set)
    ips: set[str] = field(default_factory=set)
    ip_to_mac: dict[str, str] = field(default_factory=dict)
    available: bool = True

    @classmethod
    def unavailable(cls) -> "OnlineDevices":
        """Placeholder used when the provider could not be read."""
        return cls(available=False)

    def is_online(self, address: Optional[str]) -> bool:
        """Check a MAC or IPv4 address."""
        if not address:
            return False
        if MAC_PATTERN.match(address):
            return normalize_mac(address) in self.macs
        return address.strip() in self.ips


class NeighborCollector:
    """Reads online state from the kernel ARP table and DHCP leases."""

    def __init__(self, config: NeighborConfig) -> None:
        self.config = config

    def collect(self) -> OnlineDevices:
        """Snapshot online devices.

        Raises:
            ProviderUnavailable: If the neighbour table cannot be read
        """
        try:
            text = self.config.arp_path.read_text()
        except OSError as e:
            raise ProviderUnavailable(f"cannot read {self.config.arp_path}: {e}") from e

        online = OnlineDevices()
        for ip, mac in self._parse_arp(text):
            online.ips.add(ip)
            online.macs.add(mac)
            online.ip_to_mac[ip] = mac

        # Leases fill in identity for hosts that are not in the ARP cache
        for ip, mac in self._read_leases():
            online.ip_to_mac.setdefault(ip, mac)

        logger.debug(f"Neighbour table: {len(online.macs)} online devices")
        return online

    def _parse_arp(self, text: str) -> Iterator[tuple[str, str]]:
        for line in text.splitlines()[1:]:
            match = ARP_LINE_PATTERN.match(line.strip())
            if not match:
                continue

            ip, _hw_type, flags, mac, device = match.groups()
            if not int(flags, 16) & ARP_FLAG_COMPLETE:
                continue
            if mac == EMPTY_MAC:
                continue
            if self.config.interfaces and device not in self.config.interfaces:
                continue

            yield ip, normalize_mac(mac)

    def _read_leases(self) -> Iterator[tuple[str, str]]:
        path = self.config.leases_path
        if path is None:
            return

        try:
            text = path.read_text()
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Cannot read DHCP leases {path}: {e}")
            return

        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 3:
                continue
            mac, ip = parts[1], parts[2]
            if MAC_PATTERN.match(mac):
                yield ip, normalize_mac(mac)
