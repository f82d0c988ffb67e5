"""netcurfew - time-window and daily-quota network blocking for home routers."""

__version__ = "0.1.0"
