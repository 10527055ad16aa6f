"""
Store maintenance: schema migrations, health checks, backup/restore, export/import.
"""

from __future__ import annotations

from .backup import BackupInfo, BackupManager, BackupOptions, RestoreOptions
from .export import ExportManager, ExportOptions, ExportResult, ImportOptions, ImportResult
from .health import HealthChecker, HealthStatus, Status
from .migrations import Migration, MigrationEngine, MigrationStatus

# Do not add exports without updating __all__.
__all__ = [
    "BackupInfo",
    "BackupManager",
    "BackupOptions",
    "ExportManager",
    "ExportOptions",
    "ExportResult",
    "HealthChecker",
    "HealthStatus",
    "ImportOptions",
    "ImportResult",
    "Migration",
    "MigrationEngine",
    "MigrationStatus",
    "RestoreOptions",
    "Status",
]
