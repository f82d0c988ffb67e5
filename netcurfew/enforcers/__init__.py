"""Enforcement boundary: directives for the firewall layer."""

from netcurfew.enforcers.directives import DirectiveEmitter, DirectiveSink, LoggingSink
from netcurfew.enforcers.idlist import IdListWriter

__all__ = [
    "DirectiveEmitter",
    "DirectiveSink",
    "IdListWriter",
    "LoggingSink",
]
