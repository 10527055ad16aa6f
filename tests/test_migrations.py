"""
Migration engine: registration, ordered application, rollback, ledger state and core schemas.
"""

from __future__ import annotations

import logging

import pytest

from projforge.core.errors import ConfigError, NotFoundError, StorageError
from projforge.db.migrations import CORE_MIGRATIONS, LEDGER_TABLE, MigrationEngine, compute_checksum
from projforge.store.manager import Store

USERS_UP = "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL);"
USERS_DOWN = "DROP TABLE users;"
POSTS_UP = """
CREATE TABLE posts (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    title TEXT
);
CREATE INDEX idx_posts_user ON posts(user_id);
"""
POSTS_DOWN = "DROP TABLE posts;"


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "migrate.db").open()
    yield s
    s.close()


@pytest.fixture
def engine(store):
    return MigrationEngine(store)


def _ledger_count(store):
    return store.execute(f"SELECT COUNT(*) FROM {LEDGER_TABLE}").fetchone()[0]


def test_users_posts_apply_all_then_rollback_last(store, engine):
    """Both tables created with two ledger rows; rollback_last drops posts only."""
    engine.register("002_posts", "Create posts", POSTS_UP, POSTS_DOWN)
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)

    assert engine.apply_all() == ["001_users", "002_posts"]
    assert store.table_exists("users") and store.table_exists("posts")
    assert _ledger_count(store) == 2

    assert engine.rollback_last() == "002_posts"
    assert not store.table_exists("posts")
    assert store.table_exists("users")
    assert _ledger_count(store) == 1


def test_pending_is_n_minus_k_sorted(engine):
    ids = ["005_e", "003_c", "001_a", "004_d", "002_b"]
    for mid in ids:
        engine.register(mid, mid, f"CREATE TABLE t_{mid} (x INT);", f"DROP TABLE t_{mid};")
    migrations = engine.migrations
    engine.apply(migrations["001_a"])
    engine.apply(migrations["004_d"])
    assert [m.id for m in engine.get_pending()] == ["002_b", "003_c", "005_e"]


def test_apply_all_twice_writes_nothing_second_time(store, engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply_all()
    before = engine.get_applied()
    assert engine.apply_all() == []
    assert engine.get_pending() == []
    assert engine.get_applied() == before


def test_apply_then_rollback_restores_state(store, engine):
    m = engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply(m)
    assert "001_users" in engine.get_applied()
    engine.rollback(m)
    assert "001_users" not in engine.get_applied()
    assert not store.table_exists("users")
    assert [p.id for p in engine.get_pending()] == ["001_users"]


def test_rolled_back_migration_can_be_applied_again(store, engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply_all()
    engine.rollback_last()
    assert engine.apply_all() == ["001_users"]
    assert store.table_exists("users")


@pytest.mark.parametrize("body", ["", "   \n\t"])
def test_empty_forward_body_raises_config_error(store, engine, body):
    m = engine.register("001_empty", "Nothing", body, "")
    with pytest.raises(ConfigError, match="001_empty"):
        engine.apply(m)
    assert "001_empty" not in engine.get_applied()


def test_failed_apply_is_atomic(store, engine):
    m = engine.register("003_broken", "Half valid", "CREATE TABLE half (x INT); CREATE TABLE broken (;", "")
    with pytest.raises(StorageError, match="failed to apply migration 003_broken"):
        engine.apply(m)
    assert not store.table_exists("half")
    assert _ledger_count(store) == 0


def test_apply_all_is_fail_fast(store, engine):
    engine.register("001_ok", "ok", "CREATE TABLE ok1 (x INT);", "DROP TABLE ok1;")
    engine.register("002_bad", "bad", "CREATE TABLE ok1 (x INT);", "")
    engine.register("003_later", "later", "CREATE TABLE later (x INT);", "DROP TABLE later;")
    with pytest.raises(StorageError, match="002_bad"):
        engine.apply_all()
    assert list(engine.get_applied()) == ["001_ok"]
    assert [m.id for m in engine.get_pending()] == ["002_bad", "003_later"]
    assert not store.table_exists("later")


def test_rollback_with_empty_reverse_body_raises(engine):
    m = engine.register("001_users", "Create users", USERS_UP, "")
    engine.apply(m)
    with pytest.raises(ConfigError, match="irreversible"):
        engine.rollback(m)
    assert "001_users" in engine.get_applied()


def test_rollback_last_with_nothing_applied_is_noop(engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    assert engine.rollback_last() is None


def test_rollback_last_unregistered_raises_not_found(store, engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply_all()
    fresh = MigrationEngine(store)
    with pytest.raises(NotFoundError, match="001_users"):
        fresh.rollback_last()


def test_rollback_many_stops_when_nothing_left(engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.register("002_posts", "Create posts", POSTS_UP, POSTS_DOWN)
    engine.apply_all()
    assert engine.rollback_many(5) == ["002_posts", "001_users"]
    with pytest.raises(ConfigError):
        engine.rollback_many(0)


def test_status_is_sorted_and_reconciled(engine):
    engine.register("002_posts", "Create posts", POSTS_UP, POSTS_DOWN)
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply(engine.migrations["001_users"])
    status = engine.get_status()
    assert [s.id for s in status] == ["001_users", "002_posts"]
    assert status[0].applied and status[0].applied_at is not None and status[0].checksum_matches is True
    assert not status[1].applied and status[1].applied_at is None and status[1].checksum_matches is None


def test_ledger_checksum_is_sha256_of_forward_body(store, engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply_all()
    entry = engine.get_applied()["001_users"]
    assert len(entry.checksum) == 64
    assert entry.checksum == compute_checksum(USERS_UP)


def test_duplicate_registration_warns_and_last_wins(engine, caplog):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    with caplog.at_level(logging.WARNING, logger="projforge.db.migrations"):
        engine.register("001_users", "Create users v2", USERS_UP + "\n-- v2", USERS_DOWN)
    assert "001_users" in caplog.text
    assert engine.migrations["001_users"].description == "Create users v2"


def test_verify_checksums_reports_drift(engine):
    engine.register("001_users", "Create users", USERS_UP, USERS_DOWN)
    engine.apply_all()
    assert engine.verify_checksums() == []
    engine.register("001_users", "Create users", USERS_UP.replace("name", "full_name"), USERS_DOWN)
    assert engine.verify_checksums() == ["001_users"]
    assert engine.get_status()[0].checksum_matches is False


def test_comment_only_migration_records_ledger_row(engine):
    m = engine.register("001_noop", "No-op", "-- nothing to do\n", "-- nothing to undo\n")
    engine.apply(m)
    assert "001_noop" in engine.get_applied()
    engine.rollback(m)
    assert "001_noop" not in engine.get_applied()


def test_core_schemas_apply_and_metadata_rollback_is_irreversible(store, engine):
    engine.register_core_schemas()
    assert engine.apply_all() == [mid for mid, _, _, _ in CORE_MIGRATIONS]
    assert store.table_exists("audit_log")
    assert "metadata_json" in store.table_columns("blueprints")
    assert "created_at" in store.table_columns("plugins")
    with pytest.raises(ConfigError, match="004_add_metadata_columns"):
        engine.rollback_last()
    assert "004_add_metadata_columns" in engine.get_applied()


def test_core_audit_trail_rollback_drops_table(store, engine):
    engine.register_core_schemas()
    migrations = engine.migrations
    for mid in ("001_initial_schema", "002_add_indexes", "003_add_audit_trail"):
        engine.apply(migrations[mid])
    assert engine.rollback_last() == "003_add_audit_trail"
    assert not store.table_exists("audit_log")
    assert engine.rollback_last() == "002_add_indexes"
    idx = store.execute("SELECT name FROM sqlite_master WHERE type='index' AND name='idx_templates_name'").fetchone()
    assert idx is None
    assert engine.rollback_last() == "001_initial_schema"
    assert store.table_exists("templates")


def test_rollback_many_reports_each_completed_rollback_before_failing(engine):
    engine.register("001_users", "Create users", USERS_UP, "")
    engine.register("002_posts", "Create posts", POSTS_UP, POSTS_DOWN)
    engine.apply_all()
    seen = []
    with pytest.raises(ConfigError, match="001_users"):
        engine.rollback_many(2, on_rollback=seen.append)
    assert seen == ["002_posts"]
    assert list(engine.get_applied()) == ["001_users"]
