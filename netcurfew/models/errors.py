"""Error taxonomy for netcurfew.

None of these are fatal to the daemon: the evaluator catches each of them at
the point where it can degrade gracefully and keeps ticking.
"""


class NetcurfewError(Exception):
    """Base class for all netcurfew errors."""


class ConfigurationError(NetcurfewError):
    """A rule or setting is malformed (bad time, weekday, quota or target)."""


class ClockAnomalyError(NetcurfewError):
    """Wall-clock time jumped backwards or by an implausible amount."""


class PersistenceError(NetcurfewError):
    """Quota ledger or rule store could not be read or written."""


class ProviderUnavailable(NetcurfewError):
    """The online-device data source could not be read."""
