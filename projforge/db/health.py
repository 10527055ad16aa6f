"""
Store health and maintenance.

HealthChecker runs read-only probes (connectivity, integrity, SQLite version,
journal mode, table and row counts, free pages, a latency probe) and derives
advisory recommendations. It also exposes VACUUM, ANALYZE and integrity_check.
Reports are recomputed on every call and never persisted.
"""

from __future__ import annotations

import enum
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from projforge.config import Config
from projforge.core.errors import IntegrityError, StorageError
from projforge.store.manager import Store
from projforge.store.sqlite_session import quote_identifier
from projforge.timeutils import now_utc

logger = logging.getLogger(__name__)

LARGE_DB_BYTES = 100 * 1024 * 1024
HIGH_ROW_COUNT = 10000


class Status(enum.Enum):
    """Check status, ordered by severity."""

    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {Status.OK: 0, Status.WARNING: 1, Status.ERROR: 2}


def worst(statuses: List[Status]) -> Status:
    return max(statuses, key=lambda s: s.severity, default=Status.OK)


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: Status
    message: str
    value: Optional[str] = None
    duration_ms: float = 0.0
    checked_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "value": self.value,
            "duration_ms": round(self.duration_ms, 3),
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


@dataclass
class HealthStatus:
    """Point-in-time report; status is the worst status among checks."""

    database_path: str
    checked_at: datetime
    checks: List[CheckResult] = field(default_factory=list)
    database_size: int = 0
    table_count: int = 0
    total_rows: int = 0
    integrity_ok: bool = False
    wal_mode: bool = False
    sqlite_version: str = ""
    recommendations: List[str] = field(default_factory=list)

    @property
    def status(self) -> Status:
        return worst([c.status for c in self.checks])

    def check(self, name: str) -> Optional[CheckResult]:
        for c in self.checks:
            if c.name == name:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "database_path": self.database_path,
            "database_size_bytes": self.database_size,
            "table_count": self.table_count,
            "total_rows": self.total_rows,
            "integrity_ok": self.integrity_ok,
            "wal_mode": self.wal_mode,
            "sqlite_version": self.sqlite_version,
            "checks": [c.to_dict() for c in self.checks],
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class TableStats:
    name: str
    row_count: int


@dataclass
class DatabaseStats:
    total_size: int = 0
    page_count: int = 0
    page_size: int = 0
    data_size: int = 0
    free_pages: int = 0
    wal_size: int = 0
    journal_mode: str = ""
    cache_size: int = 0
    temp_store: str = ""
    tables: List[TableStats] = field(default_factory=list)

    @property
    def free_space(self) -> int:
        return self.free_pages * self.page_size

    @property
    def total_rows(self) -> int:
        return sum(t.row_count for t in self.tables if t.row_count > 0)


def _file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def _as_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return None


class HealthChecker:
    """Diagnostics and maintenance for one open Store."""

    def __init__(self, store: Store, config: Optional[Config] = None) -> None:
        self._store = store
        self.slow_query_ms = config.slow_query_ms if config else 100.0
        self.free_pages_warn = config.free_pages_warn if config else 100

    @property
    def path(self) -> str:
        return self._store.path

    def _probe(self, name: str, fn: Callable[[sqlite3.Connection], CheckResult]) -> CheckResult:
        started = now_utc()
        t0 = time.perf_counter()
        try:
            result = fn(self._store.connection)
        except (sqlite3.Error, StorageError) as e:
            result = CheckResult(name=name, status=Status.ERROR, message=f"{name} failed: {e}")
        elapsed = (time.perf_counter() - t0) * 1000.0
        return CheckResult(
            name=result.name,
            status=result.status,
            message=result.message,
            value=result.value,
            duration_ms=elapsed,
            checked_at=started,
        )

    def _check_connectivity(self, conn: sqlite3.Connection) -> CheckResult:
        conn.execute("SELECT 1").fetchone()
        return CheckResult("connectivity", Status.OK, "Database connection successful")

    def _check_integrity(self, conn: sqlite3.Connection) -> CheckResult:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
        value = "; ".join(str(r[0]) for r in rows) or "no result"
        if value == "ok":
            return CheckResult("integrity", Status.OK, "Database integrity check passed", value)
        return CheckResult("integrity", Status.ERROR, f"Integrity check failed: {value}", value)

    def _check_version(self, conn: sqlite3.Connection) -> CheckResult:
        version = conn.execute("SELECT sqlite_version()").fetchone()[0]
        return CheckResult("sqlite_version", Status.OK, f"SQLite version {version}", str(version))

    def _check_journal_mode(self, conn: sqlite3.Connection) -> CheckResult:
        mode = str(conn.execute("PRAGMA journal_mode").fetchone()[0]).lower()
        if mode == "wal":
            return CheckResult("journal_mode", Status.OK, "WAL mode enabled", mode)
        return CheckResult("journal_mode", Status.WARNING, f"Journal mode is {mode}, WAL recommended", mode)

    def _check_tables(self, conn: sqlite3.Connection) -> CheckResult:
        count = conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ).fetchone()[0]
        if count == 0:
            return CheckResult("tables", Status.WARNING, "No tables found", "0")
        return CheckResult("tables", Status.OK, f"Found {count} tables", str(count))

    def _check_row_counts(self, conn: sqlite3.Connection) -> CheckResult:
        total = 0
        unreadable: List[str] = []
        for table in self._store.list_tables():
            try:
                total += int(conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}").fetchone()[0])
            except sqlite3.Error:
                unreadable.append(table)
        if unreadable:
            return CheckResult(
                "row_counts", Status.WARNING, f"Could not count rows in: {', '.join(unreadable)}", str(total)
            )
        return CheckResult("row_counts", Status.OK, f"Database contains {total} total rows", str(total))

    def _check_free_space(self, conn: sqlite3.Connection) -> CheckResult:
        free_pages = int(conn.execute("PRAGMA freelist_count").fetchone()[0])
        if free_pages > self.free_pages_warn:
            return CheckResult(
                "free_space", Status.WARNING, f"Database has {free_pages} free pages (consider VACUUM)", str(free_pages)
            )
        return CheckResult("free_space", Status.OK, f"Database has {free_pages} free pages", str(free_pages))

    def _check_latency(self, conn: sqlite3.Connection) -> CheckResult:
        t0 = time.perf_counter()
        conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
        ms = (time.perf_counter() - t0) * 1000.0
        value = f"{ms:.3f}ms"
        if ms > self.slow_query_ms:
            return CheckResult("latency", Status.WARNING, f"Slow query performance: {value}", value)
        return CheckResult("latency", Status.OK, f"Query performance: {value}", value)

    def check_health(self) -> HealthStatus:
        report = HealthStatus(database_path=self.path, checked_at=now_utc(), database_size=_file_size(self.path))
        connectivity = self._probe("connectivity", self._check_connectivity)
        report.checks.append(connectivity)
        if connectivity.status is Status.ERROR:
            return report

        probes = [
            ("integrity", self._check_integrity),
            ("sqlite_version", self._check_version),
            ("journal_mode", self._check_journal_mode),
            ("tables", self._check_tables),
            ("row_counts", self._check_row_counts),
            ("free_space", self._check_free_space),
            ("latency", self._check_latency),
        ]
        for name, fn in probes:
            report.checks.append(self._probe(name, fn))

        integrity = report.check("integrity")
        version = report.check("sqlite_version")
        journal = report.check("journal_mode")
        report.integrity_ok = integrity is not None and integrity.status is Status.OK
        report.sqlite_version = (version.value or "") if version else ""
        report.wal_mode = journal is not None and journal.value == "wal"
        report.table_count = _as_int(report.check("tables").value) or 0
        report.total_rows = _as_int(report.check("row_counts").value) or 0
        report.recommendations = self._recommendations(report)
        logger.debug("Health check for %s: %s", self.path, report.status.value)
        return report

    def _recommendations(self, report: HealthStatus) -> List[str]:
        recs: List[str] = []
        if not report.wal_mode:
            recs.append("Enable WAL mode for better concurrency: PRAGMA journal_mode=WAL")
        free = report.check("free_space")
        if free is not None and free.status is Status.WARNING:
            recs.append("Run VACUUM to reclaim free space and optimize the database")
        if report.database_size > LARGE_DB_BYTES:
            recs.append("Large database detected: run ANALYZE regularly for query optimization")
        if report.total_rows > HIGH_ROW_COUNT:
            recs.append("High row count: make sure frequently queried columns are indexed")
        return recs

    def get_stats(self) -> DatabaseStats:
        conn = self._store.connection
        stats = DatabaseStats(total_size=_file_size(self.path), wal_size=_file_size(self.path + "-wal"))
        try:
            stats.page_count = int(conn.execute("PRAGMA page_count").fetchone()[0])
            stats.page_size = int(conn.execute("PRAGMA page_size").fetchone()[0])
            stats.free_pages = int(conn.execute("PRAGMA freelist_count").fetchone()[0])
            stats.cache_size = int(conn.execute("PRAGMA cache_size").fetchone()[0])
            stats.journal_mode = str(conn.execute("PRAGMA journal_mode").fetchone()[0])
            stats.temp_store = str(conn.execute("PRAGMA temp_store").fetchone()[0])
        except sqlite3.Error as e:
            raise StorageError(f"failed to read database statistics for {self.path}: {e}") from e
        stats.data_size = stats.page_count * stats.page_size
        for table in self._store.list_tables():
            try:
                count = self._store.row_count(table)
            except StorageError:
                logger.warning("Could not count rows in %s", table)
                count = -1
            stats.tables.append(TableStats(name=table, row_count=count))
        return stats

    def vacuum(self) -> int:
        """Run VACUUM; return bytes reclaimed (never negative)."""
        before = _file_size(self.path)
        try:
            self._store.connection.execute("VACUUM")
        except sqlite3.Error as e:
            raise StorageError(f"vacuum failed on {self.path}: {e}") from e
        self._store.checkpoint()
        reclaimed = max(0, before - _file_size(self.path))
        logger.info("VACUUM on %s reclaimed %d bytes", self.path, reclaimed)
        return reclaimed

    def analyze(self) -> None:
        try:
            self._store.connection.execute("ANALYZE")
        except sqlite3.Error as e:
            raise StorageError(f"analyze failed on {self.path}: {e}") from e
        logger.info("ANALYZE completed on %s", self.path)

    def integrity_check(self) -> str:
        """Return the raw PRAGMA integrity_check result; IntegrityError unless it is 'ok'."""
        try:
            rows = self._store.connection.execute("PRAGMA integrity_check").fetchall()
        except sqlite3.Error as e:
            raise IntegrityError(f"integrity check could not run on {self.path}: {e}") from e
        result = "; ".join(str(r[0]) for r in rows)
        if result != "ok":
            raise IntegrityError(f"integrity check failed for {self.path}: {result}")
        return result
