"""DuckDB storage for rules and the quota ledger.

One single-file database holds:
- ``rules``: the rule store written by the configuration surface
- ``quota_ledger``: per-uid consumption that must survive restarts

The evaluator only ever writes derived rule fields (``uid`` and the
canonical ``week`` form) and ledger rows.
"""

import logging
import math
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

import duckdb

from netcurfew.models import ConfigurationError, PersistenceError, Rule, generate_uid
from netcurfew.policies.quota import LedgerEntry
from netcurfew.policies.weekdays import WeekdaySet

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

RULE_COLUMNS = [
    "id",
    "uid",
    "comment",
    "enabled",
    "target",
    "time_start",
    "time_end",
    "week",
    "quota_enabled",
    "quota_minutes",
]


class Store:
    """DuckDB-backed rule store and quota ledger persistence."""

    def __init__(self, db_path: Path, read_only: bool = False) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            read_only: If True, open in read-only mode (allows concurrent readers).
        """
        self.db_path = db_path
        self.read_only = read_only
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._temp_db_path: Optional[Path] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        db_str = str(self.db_path) if self.db_path != Path(":memory:") else ":memory:"

        if self.read_only and self.db_path != Path(":memory:"):
            # The daemon holds the write lock while running; read a copy instead
            try:
                self._conn = duckdb.connect(db_str, read_only=True)
            except duckdb.IOException:
                temp_dir = tempfile.mkdtemp(prefix="netcurfew_")
                self._temp_db_path = Path(temp_dir) / "netcurfew.db"
                shutil.copy2(self.db_path, self._temp_db_path)
                wal_path = Path(str(self.db_path) + ".wal")
                if wal_path.exists():
                    shutil.copy2(wal_path, Path(temp_dir) / "netcurfew.db.wal")
                self._conn = duckdb.connect(str(self._temp_db_path), read_only=True)
        else:
            try:
                self._conn = duckdb.connect(db_str, read_only=self.read_only)
            except duckdb.IOException as e:
                # Another process (normally the daemon) holds the write lock
                raise PersistenceError(f"cannot open {self.db_path} for writing: {e}") from e

        if not self.read_only:
            self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._temp_db_path and self._temp_db_path.exists():
            shutil.rmtree(self._temp_db_path.parent, ignore_errors=True)
            self._temp_db_path = None

    def __enter__(self) -> "Store":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        result = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current_version = result[0] if result and result[0] else 0

        if current_version < SCHEMA_VERSION:
            self._apply_schema()
            self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                [SCHEMA_VERSION]
            )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        # uid uniqueness is enforced in assign_missing_uids(); DuckDB handles
        # updates on secondary unique indexes poorly
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rules (
                id INTEGER PRIMARY KEY,
                uid VARCHAR,
                comment VARCHAR DEFAULT '',
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                target VARCHAR NOT NULL,
                time_start VARCHAR NOT NULL DEFAULT '00:00',
                time_end VARCHAR NOT NULL DEFAULT '23:59',
                week VARCHAR NOT NULL DEFAULT '0',
                quota_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                quota_minutes INTEGER NOT NULL DEFAULT 120,

                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS quota_ledger (
                uid VARCHAR PRIMARY KEY,
                consumed_minutes DOUBLE NOT NULL DEFAULT 0,
                last_reset_at TIMESTAMP,

                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    # -- Rule store ---------------------------------------------------------

    def list_rules(self) -> list[Rule]:
        """Read every rule in one statement (a consistent snapshot).

        Raises:
            PersistenceError: If the rules table cannot be read
        """
        try:
            rows = self.conn.execute(f"""
                SELECT {", ".join(RULE_COLUMNS)} FROM rules ORDER BY id
            """).fetchall()
        except duckdb.Error as e:
            raise PersistenceError(f"failed to read rules: {e}") from e
        return [_row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: int) -> Optional[Rule]:
        row = self.conn.execute(f"""
            SELECT {", ".join(RULE_COLUMNS)} FROM rules WHERE id = ?
        """, [rule_id]).fetchone()
        return _row_to_rule(row) if row else None

    def next_rule_id(self) -> int:
        result = self.conn.execute("SELECT MAX(id) FROM rules").fetchone()
        return 0 if result is None or result[0] is None else result[0] + 1

    def upsert_rule(self, rule: Rule) -> int:
        """Insert or replace a rule by id.

        An existing uid is never overwritten: a rule saved without a uid keeps
        the one already stored for its id.

        Raises:
            ConfigurationError: If another rule already holds ``rule.uid``
        """
        if rule.uid:
            holder = self.conn.execute(
                "SELECT id FROM rules WHERE uid = ? AND id <> ?", [rule.uid, rule.id]
            ).fetchone()
            if holder:
                raise ConfigurationError(f"uid {rule.uid} already belongs to rule {holder[0]}")

        self.conn.execute("""
            INSERT INTO rules (
                id, uid, comment, enabled, target, time_start, time_end,
                week, quota_enabled, quota_minutes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                uid = COALESCE(uid, EXCLUDED.uid),
                comment = EXCLUDED.comment,
                enabled = EXCLUDED.enabled,
                target = EXCLUDED.target,
                time_start = EXCLUDED.time_start,
                time_end = EXCLUDED.time_end,
                week = EXCLUDED.week,
                quota_enabled = EXCLUDED.quota_enabled,
                quota_minutes = EXCLUDED.quota_minutes,
                updated_at = now()
        """, [
            rule.id,
            rule.uid or None,
            rule.comment,
            rule.enabled,
            rule.target,
            rule.time_start,
            rule.time_end,
            rule.week,
            rule.quota_enabled,
            rule.quota_minutes,
        ])
        return rule.id

    def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule and its ledger entry. Returns True if it existed."""
        rule = self.get_rule(rule_id)
        if rule is None:
            return False

        self.conn.execute("DELETE FROM rules WHERE id = ?", [rule_id])
        if rule.uid:
            self.conn.execute("DELETE FROM quota_ledger WHERE uid = ?", [rule.uid])
        return True

    def assign_missing_uids(
        self,
        uid_factory: Callable[[], str] = generate_uid,
    ) -> list[int]:
        """Write the derived rule fields: a uid where missing, canonical weeks.

        Rules with an unparsable ``week`` keep their stored value; the
        evaluator reports them.

        Returns:
            Ids of rules that were updated
        """
        rules = self.list_rules()
        taken = {rule.uid for rule in rules if rule.uid}
        updated = []

        for rule in rules:
            uid = rule.uid
            if not uid:
                uid = uid_factory()
                while uid in taken:
                    uid = uid_factory()
                taken.add(uid)

            try:
                week = WeekdaySet.canonicalize(rule.week)
            except ConfigurationError:
                week = rule.week

            if uid == rule.uid and week == rule.week:
                continue

            try:
                self.conn.execute("""
                    UPDATE rules SET uid = ?, week = ?, updated_at = now()
                    WHERE id = ?
                """, [uid, week, rule.id])
            except duckdb.Error as e:
                raise PersistenceError(f"failed to update rule {rule.id}: {e}") from e
            updated.append(rule.id)
            logger.debug(f"Rule {rule.id}: uid={uid} week={week}")

        return updated

    def import_rules(self, rules: Iterable[Rule], replace: bool = True) -> int:
        """Save configured rules into the store.

        Args:
            rules: Rules to save (ids decide which stored rule they replace)
            replace: Delete stored rules that are not in ``rules``

        Returns:
            Number of rules saved

        Raises:
            ConfigurationError: If two rules share a uid, or a uid belongs to
                a stored rule with another id
        """
        rules = list(rules)
        wanted = {rule.id for rule in rules}

        seen: dict[str, int] = {}
        for rule in rules:
            if rule.uid and seen.setdefault(rule.uid, rule.id) != rule.id:
                raise ConfigurationError(f"uid {rule.uid} is used by rules {seen[rule.uid]} and {rule.id}")

        # Check against the rules that will remain before writing anything
        stored = {
            existing.uid: existing.id
            for existing in self.list_rules()
            if existing.uid and (not replace or existing.id in wanted)
        }
        for rule in rules:
            if rule.uid and stored.get(rule.uid, rule.id) != rule.id:
                raise ConfigurationError(f"uid {rule.uid} already belongs to rule {stored[rule.uid]}")

        if replace:
            for existing in self.list_rules():
                if existing.id not in wanted:
                    self.delete_rule(existing.id)

        for rule in rules:
            self.upsert_rule(rule)
        return len(rules)

    # -- Quota ledger -------------------------------------------------------

    def load_ledger(self) -> list[LedgerEntry]:
        """Read persisted ledger entries.

        Corrupt rows are skipped so the ledger starts those uids fresh.

        Raises:
            PersistenceError: If the table cannot be read
        """
        try:
            rows = self.conn.execute("""
                SELECT uid, consumed_minutes, last_reset_at FROM quota_ledger
            """).fetchall()
        except duckdb.Error as e:
            raise PersistenceError(f"failed to load quota ledger: {e}") from e

        entries = []
        for uid, consumed, last_reset_at in rows:
            if (
                not uid
                or consumed is None
                or not math.isfinite(consumed)
                or consumed < 0
                or not isinstance(last_reset_at, datetime)
            ):
                logger.warning(f"Ignoring corrupt quota ledger record for {uid!r}")
                continue
            entries.append(LedgerEntry(uid=uid, consumed_minutes=float(consumed), last_reset_at=last_reset_at))
        return entries

    def save_ledger(self, entries: Iterable[LedgerEntry]) -> int:
        """Upsert ledger entries.

        Raises:
            PersistenceError: If the write fails
        """
        rows = [(e.uid, e.consumed_minutes, e.last_reset_at) for e in entries]
        if not rows:
            return 0

        try:
            self.conn.executemany("""
                INSERT INTO quota_ledger (uid, consumed_minutes, last_reset_at)
                VALUES (?, ?, ?)
                ON CONFLICT (uid) DO UPDATE SET
                    consumed_minutes = EXCLUDED.consumed_minutes,
                    last_reset_at = EXCLUDED.last_reset_at,
                    updated_at = now()
            """, rows)
        except duckdb.Error as e:
            raise PersistenceError(f"failed to save quota ledger: {e}") from e

        return len(rows)

    def purge_orphaned_ledger(self) -> int:
        """Delete ledger rows whose uid no longer belongs to any rule."""
        result = self.conn.execute("""
            DELETE FROM quota_ledger
            WHERE uid NOT IN (SELECT uid FROM rules WHERE uid IS NOT NULL)
        """).fetchone()
        return int(result[0]) if result else 0


def _row_to_rule(row: tuple) -> Rule:
    data = dict(zip(RULE_COLUMNS, row))
    return Rule(
        id=data["id"],
        uid=data["uid"] or None,
        comment=data["comment"] or "",
        enabled=bool(data["enabled"]),
        target=data["target"],
        time_start=data["time_start"],
        time_end=data["time_end"],
        week=data["week"],
        quota_enabled=bool(data["quota_enabled"]),
        quota_minutes=data["quota_minutes"],
    )
