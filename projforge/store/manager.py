"""
Storage handle: owns the single SQLite connection for one CLI invocation.
Opens with WAL journaling and synchronous=NORMAL, bootstraps the base schema,
and exposes explicit transactions. Managers borrow the connection for one call.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Union

from projforge.core.errors import StorageError
from projforge.store.schema import BASE_SCHEMA
from projforge.store.sqlite_session import connect, execute_script, quote_identifier, transaction

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class Store:
    """Single-connection handle to the projforge SQLite store."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = str(path)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def is_memory(self) -> bool:
        return self.path == MEMORY_PATH

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(f"store is not open: {self.path}")
        return self._conn

    def open(self) -> "Store":
        """Connect, apply durability pragmas, ping and create the base schema."""
        if self._conn is not None:
            return self
        if not self.is_memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = connect(self.path)
        except sqlite3.Error as e:
            raise StorageError(f"failed to open database {self.path}: {e}") from e
        try:
            conn.execute("SELECT 1").fetchone()
            with transaction(conn):
                for ddl in BASE_SCHEMA:
                    execute_script(conn, ddl)
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"failed to initialize schema in {self.path}: {e}") from e
        self._conn = conn
        logger.debug("Opened store %s", self.path)
        return self

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.warning("Failed to close database %s: %s", self.path, e)

    def __enter__(self) -> "Store":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit BEGIN/COMMIT on the store connection; ROLLBACK on any error."""
        with transaction(self.connection) as conn:
            yield conn

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            return self.connection.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise StorageError(f"query failed on {self.path}: {e}") from e

    def execute_script(self, script: str) -> int:
        """Run a multi-statement script statement by statement (no implicit commit)."""
        try:
            return execute_script(self.connection, script)
        except sqlite3.Error as e:
            raise StorageError(f"script failed on {self.path}: {e}") from e

    def list_tables(self) -> List[str]:
        """User tables sorted by name, excluding SQLite internal tables."""
        cur = self.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row[0] for row in cur.fetchall()]

    def table_exists(self, table: str) -> bool:
        cur = self.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table,))
        return cur.fetchone() is not None

    def table_columns(self, table: str) -> List[str]:
        cur = self.execute(f"PRAGMA table_info({quote_identifier(table)})")
        return [row[1] for row in cur.fetchall()]

    def row_count(self, table: str) -> int:
        cur = self.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}")
        return int(cur.fetchone()[0])

    def checkpoint(self) -> None:
        """Fold the WAL into the main file so a byte copy sees every committed page."""
        if self.is_memory:
            return
        self.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchall()


@contextmanager
def open_store(path: Union[str, Path]) -> Generator[Store, None, None]:
    """Yield an open Store that is always closed on exit."""
    store = Store(path).open()
    try:
        yield store
    finally:
        store.close()
