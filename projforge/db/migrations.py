"""
Versioned schema migrations. Registered migrations are immutable definitions keyed
by id; applied state lives only in the schema_migrations ledger and is re-read on
every call. Pending migrations apply in ascending id order, each one (body plus
ledger row) inside a single transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from projforge.core.errors import ConfigError, NotFoundError, StorageError
from projforge.core.hashing import sha256_text
from projforge.store.manager import Store
from projforge.store.sqlite_session import execute_script, is_comment_only
from projforge.timeutils import now_utc_iso, parse_timestamp

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"

CREATE_LEDGER = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    id          TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at  TEXT NOT NULL,
    checksum    TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class Migration:
    id: str
    description: str
    up_sql: str
    down_sql: str

    @property
    def checksum(self) -> str:
        return compute_checksum(self.up_sql)

    @property
    def reversible(self) -> bool:
        return bool(self.down_sql.strip())


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    description: str
    applied_at: Optional[datetime]
    checksum: str


@dataclass(frozen=True)
class MigrationStatus:
    migration: Migration
    applied: bool
    applied_at: Optional[datetime] = None
    checksum_matches: Optional[bool] = None

    @property
    def id(self) -> str:
        return self.migration.id


def compute_checksum(up_sql: str) -> str:
    """SHA256 hex digest of the stripped forward body."""
    return sha256_text(up_sql.strip())


class MigrationEngine:
    """Registry of migrations plus the ledger-backed apply/rollback state machine."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self._registry: Dict[str, Migration] = {}

    @property
    def migrations(self) -> Dict[str, Migration]:
        return dict(self._registry)

    def register(self, id: str, description: str, up_sql: str, down_sql: str = "") -> Migration:
        """Add or replace the definition for id. Never touches the ledger."""
        migration = Migration(id=id, description=description, up_sql=up_sql or "", down_sql=down_sql or "")
        previous = self._registry.get(id)
        if previous is not None and (previous.up_sql != migration.up_sql or previous.down_sql != migration.down_sql):
            logger.warning("Migration %s re-registered with a different body; last registration wins", id)
        self._registry[id] = migration
        return migration

    def init_ledger(self) -> None:
        try:
            execute_script(self._store.connection, CREATE_LEDGER)
        except sqlite3.Error as e:
            raise StorageError(f"failed to create migration ledger: {e}") from e

    def get_applied(self) -> Dict[str, LedgerEntry]:
        self.init_ledger()
        try:
            cur = self._store.connection.execute(
                f"SELECT id, description, applied_at, checksum FROM {LEDGER_TABLE} ORDER BY applied_at, rowid"
            )
            rows = cur.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"failed to read migration ledger: {e}") from e
        return {
            row["id"]: LedgerEntry(
                id=row["id"],
                description=row["description"],
                applied_at=parse_timestamp(row["applied_at"]),
                checksum=row["checksum"],
            )
            for row in rows
        }

    def get_pending(self) -> List[Migration]:
        """Registered but not applied, sorted ascending by id (the application order)."""
        applied = self.get_applied()
        return [self._registry[mid] for mid in sorted(self._registry) if mid not in applied]

    def apply(self, migration: Migration) -> None:
        if not migration.up_sql.strip():
            raise ConfigError(f"migration {migration.id} has an empty forward body")
        self.init_ledger()
        try:
            with self._store.transaction() as conn:
                if not is_comment_only(migration.up_sql):
                    execute_script(conn, migration.up_sql)
                conn.execute(
                    f"INSERT INTO {LEDGER_TABLE} (id, description, applied_at, checksum) VALUES (?, ?, ?, ?)",
                    (migration.id, migration.description, now_utc_iso("microseconds"), migration.checksum),
                )
        except sqlite3.Error as e:
            raise StorageError(f"failed to apply migration {migration.id}: {e}") from e
        logger.info("Applied migration %s: %s", migration.id, migration.description)

    def apply_all(self) -> List[str]:
        """Apply every pending migration in order; stop at the first failure."""
        applied: List[str] = []
        for migration in self.get_pending():
            self.apply(migration)
            applied.append(migration.id)
        if not applied:
            logger.debug("No pending migrations")
        return applied

    def rollback(self, migration: Migration) -> None:
        if not migration.down_sql.strip():
            raise ConfigError(
                f"migration {migration.id} is irreversible (empty reverse body); "
                "restore a backup taken before it was applied"
            )
        self.init_ledger()
        try:
            with self._store.transaction() as conn:
                if not is_comment_only(migration.down_sql):
                    execute_script(conn, migration.down_sql)
                conn.execute(f"DELETE FROM {LEDGER_TABLE} WHERE id = ?", (migration.id,))
        except sqlite3.Error as e:
            raise StorageError(f"failed to roll back migration {migration.id}: {e}") from e
        logger.info("Rolled back migration %s", migration.id)

    def _last_applied_id(self) -> Optional[str]:
        self.init_ledger()
        try:
            row = self._store.connection.execute(
                f"SELECT id FROM {LEDGER_TABLE} ORDER BY applied_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"failed to read migration ledger: {e}") from e
        return row[0] if row else None

    def rollback_last(self) -> Optional[str]:
        """Roll back the most recently applied migration. None when nothing is applied."""
        last_id = self._last_applied_id()
        if last_id is None:
            logger.info("No applied migrations to roll back")
            return None
        migration = self._registry.get(last_id)
        if migration is None:
            raise NotFoundError(f"migration {last_id} is applied but not registered")
        self.rollback(migration)
        return last_id

    def rollback_many(self, count: int, on_rollback: Optional[Callable[[str], None]] = None) -> List[str]:
        """
        Roll back up to count migrations, newest first. on_rollback is called with each id
        right after its rollback commits, so callers see completed ids even if a later one fails.
        """
        if count < 1:
            raise ConfigError(f"rollback count must be at least 1, got {count}")
        rolled: List[str] = []
        for _ in range(count):
            mid = self.rollback_last()
            if mid is None:
                break
            rolled.append(mid)
            if on_rollback is not None:
                on_rollback(mid)
        return rolled

    def get_status(self) -> List[MigrationStatus]:
        applied = self.get_applied()
        out: List[MigrationStatus] = []
        for mid in sorted(self._registry):
            migration = self._registry[mid]
            entry = applied.get(mid)
            if entry is None:
                out.append(MigrationStatus(migration=migration, applied=False))
            else:
                out.append(
                    MigrationStatus(
                        migration=migration,
                        applied=True,
                        applied_at=entry.applied_at,
                        checksum_matches=entry.checksum == migration.checksum,
                    )
                )
        return out

    def verify_checksums(self) -> List[str]:
        """Ids whose registered forward body no longer matches the ledger checksum."""
        drifted = [s.id for s in self.get_status() if s.applied and s.checksum_matches is False]
        for mid in drifted:
            logger.warning("Migration %s was modified after it was applied", mid)
        return drifted

    def register_core_schemas(self) -> None:
        for mid, description, up_sql, down_sql in CORE_MIGRATIONS:
            self.register(mid, description, up_sql, down_sql)


_001_UP = """
-- Baseline schema (templates, blueprints, configs, hooks, plugins, audits)
-- is created when the store is opened. Recorded so the ledger has a starting point.
"""

_001_DOWN = """
-- The baseline schema is never dropped by a rollback.
"""

_002_UP = """
CREATE INDEX IF NOT EXISTS idx_templates_name ON templates(name);
CREATE INDEX IF NOT EXISTS idx_blueprints_name ON blueprints(name);
CREATE INDEX IF NOT EXISTS idx_blueprints_stack_name ON blueprints(stack, name);
"""

_002_DOWN = """
DROP INDEX IF EXISTS idx_templates_name;
DROP INDEX IF EXISTS idx_blueprints_name;
DROP INDEX IF EXISTS idx_blueprints_stack_name;
"""

_003_UP = """
CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY,
    table_name  TEXT NOT NULL,
    record_id   TEXT NOT NULL,
    action      TEXT NOT NULL,
    old_values  TEXT,
    new_values  TEXT,
    changed_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    changed_by  TEXT
);
CREATE INDEX IF NOT EXISTS idx_audit_log_table ON audit_log(table_name, record_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_changed_at ON audit_log(changed_at);
"""

_003_DOWN = """
DROP TABLE IF EXISTS audit_log;
"""

# SQLite cannot drop columns portably, so this one has no reverse body.
_004_UP = """
ALTER TABLE blueprints ADD COLUMN metadata_json TEXT NOT NULL DEFAULT '{}';
ALTER TABLE hooks ADD COLUMN created_at TEXT;
ALTER TABLE hooks ADD COLUMN updated_at TEXT;
ALTER TABLE plugins ADD COLUMN created_at TEXT;
ALTER TABLE plugins ADD COLUMN updated_at TEXT;
"""

CORE_MIGRATIONS = [
    ("001_initial_schema", "Initial database schema", _001_UP, _001_DOWN),
    ("002_add_indexes", "Add name and stack indexes", _002_UP, _002_DOWN),
    ("003_add_audit_trail", "Add audit trail table", _003_UP, _003_DOWN),
    ("004_add_metadata_columns", "Add metadata and timestamp columns", _004_UP, ""),
]
