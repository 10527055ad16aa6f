"""
Health checker: probe battery, severity roll-up, recommendations, stats and maintenance.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from projforge.config import Config
from projforge.db.health import CheckResult, HealthChecker, HealthStatus, Status, worst
from projforge.store.manager import Store
from projforge.store.repositories import TemplateRepository
from projforge.timeutils import now_utc


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path / "health.db").open()
    yield s
    s.close()


def _config(tmp_path: Path, **kw) -> Config:
    return Config(db_path=tmp_path / "health.db", backup_dir=tmp_path / "backups", **kw)


def test_fresh_store_is_healthy(store):
    report = HealthChecker(store).check_health()
    assert report.status is Status.OK
    assert report.check("journal_mode").value == "wal"
    assert report.check("integrity").value == "ok"
    assert [c.name for c in report.checks] == [
        "connectivity",
        "integrity",
        "sqlite_version",
        "journal_mode",
        "tables",
        "row_counts",
        "free_space",
        "latency",
    ]
    assert report.integrity_ok and report.wal_mode
    assert report.sqlite_version == sqlite3.sqlite_version
    assert report.table_count == 6
    assert report.total_rows == 0
    assert report.recommendations == []


def test_row_count_probe_sums_tables(store):
    repo = TemplateRepository(store)
    for i in range(3):
        repo.upsert(f"t{i}", "go", "x")
    report = HealthChecker(store).check_health()
    assert report.total_rows == 3
    assert report.check("row_counts").value == "3"


def test_memory_store_warns_about_journal_mode():
    with Store(":memory:") as s:
        report = HealthChecker(s).check_health()
    assert report.status is Status.WARNING
    assert not report.wal_mode
    assert any("WAL" in r for r in report.recommendations)


def test_free_pages_warning_then_vacuum(store, tmp_path):
    store.execute_script("CREATE TABLE junk (id INTEGER PRIMARY KEY, payload BLOB);")
    with store.transaction() as conn:
        conn.executemany("INSERT INTO junk (payload) VALUES (?)", [(b"x" * 2000,) for _ in range(300)])
    store.execute("DELETE FROM junk")
    checker = HealthChecker(store, _config(tmp_path, free_pages_warn=10))
    report = checker.check_health()
    assert report.check("free_space").status is Status.WARNING
    assert report.status is Status.WARNING
    assert any("VACUUM" in r for r in report.recommendations)

    assert checker.vacuum() >= 0
    assert store.execute("PRAGMA freelist_count").fetchone()[0] == 0
    assert checker.check_health().check("free_space").status is Status.OK


def test_closed_store_short_circuits_on_connectivity(tmp_path):
    s = Store(tmp_path / "closed.db").open()
    checker = HealthChecker(s)
    s.close()
    report = checker.check_health()
    assert report.status is Status.ERROR
    assert [c.name for c in report.checks] == ["connectivity"]


def test_overall_status_is_worst_check():
    ts = now_utc()
    report = HealthStatus(database_path="x", checked_at=ts)
    report.checks.append(CheckResult("a", Status.OK, "fine"))
    assert report.status is Status.OK
    report.checks.append(CheckResult("b", Status.WARNING, "hmm"))
    assert report.status is Status.WARNING
    report.checks.append(CheckResult("c", Status.ERROR, "bad"))
    report.checks.append(CheckResult("d", Status.OK, "fine"))
    assert report.status is Status.ERROR
    assert report.to_dict()["status"] == "ERROR"


def test_worst_of_empty_is_ok():
    assert worst([]) is Status.OK
    assert worst([Status.WARNING, Status.OK]) is Status.WARNING


def test_get_stats(store):
    TemplateRepository(store).upsert("t", "go", "x")
    stats = HealthChecker(store).get_stats()
    assert stats.page_size > 0
    assert stats.page_count > 0
    assert stats.data_size == stats.page_count * stats.page_size
    assert stats.journal_mode == "wal"
    counts = {t.name: t.row_count for t in stats.tables}
    assert counts["templates"] == 1
    assert stats.total_rows == 1


def test_integrity_check_and_analyze(store):
    checker = HealthChecker(store)
    assert checker.integrity_check() == "ok"
    checker.analyze()
    assert checker.integrity_check() == "ok"
