"""Status snapshot file for monitoring and UI layers."""

import json
import logging
import os
import tempfile
from pathlib import Path

from netcurfew.models import StatusSnapshot

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file and rename.

    Readers never observe a half-written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


class StatusWriter:
    """Writes the latest status snapshot as JSON."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, snapshot: StatusSnapshot) -> bool:
        """Write the snapshot. Returns False (and logs) on failure."""
        try:
            atomic_write_text(self.path, json.dumps(snapshot.to_dict(), indent=2) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write status file {self.path}: {e}")
            return False
        return True


def read_status(path: Path) -> dict | None:
    """Read a status file written by the daemon, or None if unavailable."""
    try:
        return json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read status file {path}: {e}")
        return None
