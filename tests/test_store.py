"""
Store handle: open with pragmas and base schema, explicit transactions, close semantics.
"""

from __future__ import annotations

import re

import pytest

from projforge.core.errors import StorageError
from projforge.store.manager import Store, open_store
from projforge.store.schema import BASE_TABLES


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "nested" / "projforge.db").open()
    yield s
    s.close()


def test_open_creates_parent_dir_and_base_schema(store, tmp_path):
    assert (tmp_path / "nested" / "projforge.db").is_file()
    assert store.list_tables() == sorted(BASE_TABLES)


def test_open_enables_wal(store):
    assert store.execute("PRAGMA journal_mode").fetchone()[0] == "wal"


def test_open_is_idempotent_on_existing_file(tmp_path):
    path = tmp_path / "p.db"
    with Store(path) as s:
        s.execute("INSERT INTO configs (scope, key, value) VALUES ('global', 'k', 'v')")
    with Store(path) as s:
        assert s.row_count("configs") == 1
        assert s.list_tables() == sorted(BASE_TABLES)


def test_close_is_idempotent_and_connection_raises_after(tmp_path):
    s = Store(tmp_path / "c.db").open()
    s.close()
    s.close()
    assert not s.is_open
    with pytest.raises(StorageError, match="not open"):
        _ = s.connection


def test_open_failure_raises_storage_error(tmp_path):
    with pytest.raises(StorageError, match=re.escape(str(tmp_path))):
        Store(tmp_path).open()


def test_transaction_rolls_back(store):
    with pytest.raises(ValueError):
        with store.transaction() as conn:
            conn.execute("INSERT INTO configs (scope, key, value) VALUES ('global', 'a', '1')")
            raise ValueError("abort")
    assert store.row_count("configs") == 0


def test_execute_wraps_sqlite_errors(store):
    with pytest.raises(StorageError, match="query failed"):
        store.execute("SELECT * FROM no_such_table")


def test_execute_script_runs_every_statement(store):
    n = store.execute_script("CREATE TABLE a (x INT); CREATE TABLE b (y INT);")
    assert n == 2
    assert store.table_exists("a") and store.table_exists("b")
    assert store.table_columns("a") == ["x"]


def test_checkpoint_truncates_wal(store, tmp_path):
    store.execute("INSERT INTO configs (scope, key, value) VALUES ('global', 'k', 'v')")
    store.checkpoint()
    wal = tmp_path / "nested" / "projforge.db-wal"
    assert not wal.exists() or wal.stat().st_size == 0


def test_memory_store():
    with open_store(":memory:") as s:
        assert s.is_memory
        assert "templates" in s.list_tables()
        s.checkpoint()
