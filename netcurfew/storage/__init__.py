"""Persistence for rules, the quota ledger and status output."""

from netcurfew.storage.db import Store
from netcurfew.storage.status_file import StatusWriter, atomic_write_text, read_status

__all__ = [
    "Store",
    "StatusWriter",
    "atomic_write_text",
    "read_status",
]
