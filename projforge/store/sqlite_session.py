"""
SQLite connection lifecycle: durability pragmas, context manager with guaranteed
close, explicit transactions, and SQL script helpers.

Connections are opened in autocommit mode (isolation_level=None) so every
transaction is an explicit BEGIN/COMMIT pair. sqlite3.executescript() is never
used on a live transaction because it commits first.
"""

from __future__ import annotations

import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, List, Union

DURABILITY_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA cache_size = 1000",
)

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


def connect(db_path: Union[str, Path], *, read_only: bool = False, pragmas: bool = True) -> sqlite3.Connection:
    """
    Open a connection in autocommit mode with sqlite3.Row rows.
    read_only opens the file as an immutable mode=ro URI and skips the pragmas, so
    neither the file nor any -wal/-shm side file is touched (used to verify backup
    artifacts).
    """
    path = str(db_path)
    if read_only:
        uri = Path(path).resolve().as_uri() + "?mode=ro&immutable=1"
        conn = sqlite3.connect(uri, uri=True, isolation_level=None)
    else:
        conn = sqlite3.connect(path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    if pragmas and not read_only:
        for pragma in DURABILITY_PRAGMAS:
            conn.execute(pragma)
    return conn


@contextmanager
def sqlite_conn(
    db_path: Union[str, Path], *, read_only: bool = False, pragmas: bool = True
) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield a SQLite connection that is always closed on exit.
    """
    conn = connect(db_path, read_only=read_only, pragmas=pragmas)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """
    BEGIN ... COMMIT; ROLLBACK and re-raise on any exception, including a failed
    COMMIT (deferred foreign key violations surface only there).
    """
    conn.execute("BEGIN")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def is_comment_only(sql: str) -> bool:
    """True if sql holds nothing but whitespace, comments and semicolons."""
    stripped = _BLOCK_COMMENT.sub("", sql)
    stripped = _LINE_COMMENT.sub("", stripped)
    return not stripped.replace(";", "").strip()


def split_statements(script: str) -> List[str]:
    """
    Split a SQL script into statements on terminating semicolons.
    Semicolons inside string literals or comments do not split (sqlite3.complete_statement
    decides where a statement ends). Blank and comment-only fragments are dropped.
    A trailing fragment without a semicolon is kept if it holds SQL.
    """
    statements: List[str] = []
    buf = ""
    pieces = script.split(";")
    for i, piece in enumerate(pieces):
        is_last = i == len(pieces) - 1
        buf += piece if is_last else piece + ";"
        if is_last or sqlite3.complete_statement(buf):
            stmt = buf.strip()
            buf = ""
            if stmt and not is_comment_only(stmt):
                statements.append(stmt)
    return statements


def execute_script(conn: sqlite3.Connection, script: str) -> int:
    """Execute every statement of script on conn without an implicit commit. Returns count executed."""
    count = 0
    for stmt in split_statements(script):
        conn.execute(stmt)
        count += 1
    return count


def quote_identifier(name: str) -> str:
    """Quote a table/column name for SQL text."""
    return '"' + str(name).replace('"', '""') + '"'


def render_literal(value: Any) -> str:
    """Render a Python value as a SQLite literal for SQL dumps."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return "NULL"
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    return "'" + str(value).replace("'", "''") + "'"
