"""
CLI for the projforge store: projforge db <subcommand> [args...].
Each command opens the store, constructs one manager, runs one operation and closes
the store. restore never opens the destination store before overwriting it.
Usage: projforge db init
       projforge db migrate [--status | --rollback [--count N]]
       projforge db backup [--output PATH] [--compress] [--verify]
       projforge db restore (--from PATH | PATH) [--verify] [--backup] [--force]
       projforge db export --output PATH [--format sql|json|csv] [--tables a,b] [--no-schema] [--no-data]
       projforge db import (--from PATH | PATH) [--format ...] [--no-validate] [--dry-run] [--replace]
       projforge db status [--detailed] [--json]
       projforge db vacuum | analyze | integrity | size [--breakdown]
"""

from __future__ import annotations

import argparse
import getpass
import json
import sys
from pathlib import Path
from typing import List, Optional

from projforge.cli.main import add_global_options, report_error, resolve_config
from projforge.config import Config
from projforge.core.errors import ConfigError, NotFoundError, ProjforgeError
from projforge.db.backup import BackupManager, BackupOptions, RestoreOptions
from projforge.db.export import ExportManager, ExportOptions, ImportOptions, format_for_path
from projforge.db.health import HealthChecker, Status
from projforge.db.migrations import MigrationEngine
from projforge.store.manager import Store
from projforge.store.repositories import AuditLog
from projforge.timeutils import now_utc

_STATUS_PREFIX = {Status.OK: "[OK]", Status.WARNING: "[WARN]", Status.ERROR: "[FAIL]"}


def _mb(n: int) -> str:
    return f"{n / 1024 / 1024:.2f} MB"


def _actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _open_store(config: Config, create: bool = False) -> Store:
    if not create and not config.db_path.is_file():
        raise NotFoundError(f"database not found: {config.db_path} (run 'projforge db init' first)")
    return Store(config.db_path).open()


def _engine(store: Store) -> MigrationEngine:
    engine = MigrationEngine(store)
    engine.register_core_schemas()
    return engine


def cmd_init(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config, create=True) as store:
        applied = _engine(store).apply_all()
    print(f"[OK] Initialized database: {config.db_path}")
    if applied:
        print(f"[OK] Applied {len(applied)} migration(s): {', '.join(applied)}")
    return 0


def _print_migration_status(engine: MigrationEngine) -> None:
    statuses = engine.get_status()
    print(f"{'ID':<30} {'STATUS':<10} {'APPLIED AT':<26} DESCRIPTION")
    for s in statuses:
        state = "applied" if s.applied else "pending"
        when = s.applied_at.strftime("%Y-%m-%d %H:%M:%S") if s.applied_at else "-"
        drift = "  (modified since applied)" if s.checksum_matches is False else ""
        print(f"{s.id:<30} {state:<10} {when:<26} {s.migration.description}{drift}")
    pending = sum(1 for s in statuses if not s.applied)
    print(f"\n{len(statuses) - pending} applied, {pending} pending")


def cmd_migrate(args: argparse.Namespace, config: Config) -> int:
    if args.count is not None and not args.rollback:
        raise ConfigError("--count is only valid with --rollback")
    with _open_store(config, create=True) as store:
        engine = _engine(store)
        if args.status:
            _print_migration_status(engine)
            return 0
        audit = AuditLog(store)
        if args.rollback:
            def _rolled_back(mid: str) -> None:
                audit.record(_actor(), "migrate.rollback", "schema_migrations", {"ids": [mid]})
                print(f"[OK] Rolled back {mid}")

            if not engine.rollback_many(args.count or 1, on_rollback=_rolled_back):
                print("[OK] No applied migrations to roll back")
            return 0
        applied = engine.apply_all()
        if not applied:
            print("[OK] Database is up to date")
            return 0
        audit.record(_actor(), "migrate.apply", "schema_migrations", {"ids": applied})
        for mid in applied:
            print(f"[OK] Applied {mid}")
    return 0


def cmd_backup(args: argparse.Namespace, config: Config) -> int:
    output = args.output
    if not output:
        stamp = now_utc().strftime("%Y%m%d-%H%M%S")
        output = config.backup_dir / f"projforge-{stamp}.db{'.gz' if args.compress else ''}"
    opts = BackupOptions(output_path=output, compress=args.compress, verify=args.verify)
    if not config.db_path.is_file():
        raise NotFoundError(f"source database does not exist: {config.db_path}")
    with Store(config.db_path) as store:
        info = BackupManager(config.db_path, store).backup(opts)
    print(f"[OK] Backup created: {info}")
    if args.verify:
        print("[OK] Backup verified")
    return 0


def cmd_restore(args: argparse.Namespace, config: Config) -> int:
    source = args.source or args.path
    if not source:
        raise ConfigError("restore needs a backup path (--from PATH or positional PATH)")
    opts = RestoreOptions(backup_path=source, verify=args.verify, create_backup=args.backup, force=args.force)
    safety = BackupManager(config.db_path).restore(opts)
    if safety is not None:
        print(f"[OK] Existing database saved to: {safety}")
    print(f"[OK] Database restored from: {source}")
    return 0


def _split_tables(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def cmd_export(args: argparse.Namespace, config: Config) -> int:
    fmt = format_for_path(args.output, args.format, config.export_format)
    opts = ExportOptions(
        output_path=args.output,
        format=fmt,
        tables=_split_tables(args.tables),
        include_schema=not args.no_schema,
        include_data=not args.no_data,
    )
    with _open_store(config) as store:
        result = ExportManager(store).export(opts)
    print(f"[OK] Exported {result.table_count} table(s), {result.row_count} row(s) to {result.path} ({result.format})")
    return 0


def cmd_import(args: argparse.Namespace, config: Config) -> int:
    source = args.source or args.path
    if not source:
        raise ConfigError("import needs an input path (--from PATH or positional PATH)")
    fmt = format_for_path(source, args.format, config.export_format)
    opts = ImportOptions(
        input_path=source,
        format=fmt,
        validate=not args.no_validate,
        dry_run=args.dry_run,
        replace_existing=args.replace,
    )
    if not Path(source).exists():
        raise NotFoundError(f"import file does not exist: {source}")
    is_new = not config.db_path.is_file()
    with _open_store(config, create=True) as store:
        if is_new:
            applied = _engine(store).apply_all()
            print(f"[OK] Initialized database: {config.db_path} ({len(applied)} migration(s) applied)")
        result = ExportManager(store).import_data(opts)
        if not result.dry_run:
            AuditLog(store).record(
                _actor(),
                "import",
                str(source),
                {"format": result.format, "tables": result.tables, "rows": result.row_count},
            )
    prefix = "[OK] Dry run: would import" if result.dry_run else "[OK] Imported"
    detail = f"{result.statements} statement(s)" if result.format == "sql" else f"{result.table_count} table(s)"
    print(f"{prefix} {result.row_count} row(s), {detail} from {source}")
    return 0


def _print_stats(checker: HealthChecker, breakdown: bool = True) -> None:
    stats = checker.get_stats()
    print(f"Total size:   {_mb(stats.total_size)}")
    print(f"Data size:    {_mb(stats.data_size)} ({stats.page_count} pages x {stats.page_size} bytes)")
    print(f"Free space:   {_mb(stats.free_space)} ({stats.free_pages} free pages)")
    if stats.wal_size:
        print(f"WAL size:     {_mb(stats.wal_size)}")
    print(f"Journal mode: {stats.journal_mode}")
    print(f"Cache size:   {stats.cache_size}")
    print(f"Temp store:   {stats.temp_store}")
    if breakdown:
        print()
        print(f"{'TABLE':<24} ROWS")
        for t in stats.tables:
            print(f"{t.name:<24} {t.row_count if t.row_count >= 0 else 'error'}")


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config) as store:
        checker = HealthChecker(store, config)
        report = checker.check_health()
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
            return 1 if report.status is Status.ERROR else 0
        print(f"Status:         {report.status.value}")
        print(f"Database:       {report.database_path}")
        print(f"Size:           {_mb(report.database_size)}")
        print(f"Tables:         {report.table_count}")
        print(f"Total rows:     {report.total_rows}")
        print(f"Integrity:      {'yes' if report.integrity_ok else 'no'}")
        print(f"WAL mode:       {'yes' if report.wal_mode else 'no'}")
        print(f"SQLite version: {report.sqlite_version}")
        print()
        for check in report.checks:
            print(f"{_STATUS_PREFIX[check.status]} {check.name:<16} {check.message}")
        if report.recommendations:
            print()
            print("Recommendations:")
            for rec in report.recommendations:
                print(f"  - {rec}")
        if args.detailed:
            print()
            _print_stats(checker)
    return 1 if report.status is Status.ERROR else 0


def cmd_vacuum(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config) as store:
        reclaimed = HealthChecker(store, config).vacuum()
    if reclaimed > 0:
        print(f"[OK] Vacuum completed, reclaimed {_mb(reclaimed)}")
    else:
        print("[OK] Vacuum completed, no space was reclaimed")
    return 0


def cmd_analyze(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config) as store:
        HealthChecker(store, config).analyze()
    print("[OK] Statistics updated (ANALYZE)")
    return 0


def cmd_integrity(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config) as store:
        result = HealthChecker(store, config).integrity_check()
    print(f"[OK] Integrity check: {result}")
    return 0


def cmd_size(args: argparse.Namespace, config: Config) -> int:
    with _open_store(config) as store:
        _print_stats(HealthChecker(store, config), breakdown=args.breakdown)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="projforge db", description="Manage the projforge SQLite store")
    add_global_options(ap, suppress=True)
    sub = ap.add_subparsers(dest="subcommand", required=True)

    p_init = sub.add_parser("init", help="Create/open the store and apply core migrations")
    p_init.set_defaults(run=cmd_init)

    p_migrate = sub.add_parser("migrate", help="Apply pending migrations, show status, or roll back")
    mode = p_migrate.add_mutually_exclusive_group()
    mode.add_argument("--status", action="store_true", help="Show migration status")
    mode.add_argument("--rollback", action="store_true", help="Roll back the most recent migration(s)")
    p_migrate.add_argument("--count", type=int, default=None, help="Number of migrations to roll back (default 1)")
    p_migrate.set_defaults(run=cmd_migrate)

    p_backup = sub.add_parser("backup", help="Back up the store file")
    p_backup.add_argument("--output", "-o", default=None, help="Backup path (default: <backup_dir>/projforge-<ts>.db)")
    p_backup.add_argument("--compress", action="store_true", help="gzip-compress the backup")
    p_backup.add_argument("--verify", action="store_true", help="Verify the backup after writing")
    p_backup.set_defaults(run=cmd_backup)

    p_restore = sub.add_parser("restore", help="Restore the store file from a backup")
    p_restore.add_argument("path", nargs="?", default=None, help="Backup path")
    p_restore.add_argument("--from", dest="source", default=None, help="Backup path")
    p_restore.add_argument("--verify", action="store_true", help="Verify the backup and the restored store")
    p_restore.add_argument("--backup", action="store_true", help="Save a safety copy of the existing store first")
    p_restore.add_argument("--force", action="store_true", help="Overwrite an existing store")
    p_restore.set_defaults(run=cmd_restore)

    p_export = sub.add_parser("export", help="Export store contents")
    p_export.add_argument("--output", "-o", required=True, help="Output path (csv: directory named after the stem)")
    p_export.add_argument("--format", "-f", default=None, help="sql, json or csv (default: from extension)")
    p_export.add_argument("--tables", default=None, help="Comma-separated tables (default: all)")
    p_export.add_argument("--no-schema", dest="no_schema", action="store_true", help="Skip CREATE statements")
    p_export.add_argument("--no-data", dest="no_data", action="store_true", help="Skip row data")
    p_export.set_defaults(run=cmd_export)

    p_import = sub.add_parser("import", help="Import an export file into the store")
    p_import.add_argument("path", nargs="?", default=None, help="Input path")
    p_import.add_argument("--from", dest="source", default=None, help="Input path")
    p_import.add_argument("--format", "-f", default=None, help="sql, json or csv (default: from extension)")
    p_import.add_argument("--no-validate", dest="no_validate", action="store_true", help="Skip bundle validation")
    p_import.add_argument("--dry-run", dest="dry_run", action="store_true", help="Parse and count, write nothing")
    p_import.add_argument("--replace", action="store_true", help="Replace rows that already exist")
    p_import.set_defaults(run=cmd_import)

    p_status = sub.add_parser("status", help="Health report")
    p_status.add_argument("--detailed", action="store_true", help="Include storage statistics")
    p_status.add_argument("--json", action="store_true", help="Print the report as JSON")
    p_status.set_defaults(run=cmd_status)

    sub.add_parser("vacuum", help="Reclaim free pages (VACUUM)").set_defaults(run=cmd_vacuum)
    sub.add_parser("analyze", help="Refresh query planner statistics (ANALYZE)").set_defaults(run=cmd_analyze)
    sub.add_parser("integrity", help="Run PRAGMA integrity_check").set_defaults(run=cmd_integrity)

    p_size = sub.add_parser("size", help="Storage statistics")
    p_size.add_argument("--breakdown", action="store_true", help="Per-table row counts")
    p_size.set_defaults(run=cmd_size)
    return ap


def main(argv: Optional[List[str]] = None, defaults: Optional[argparse.Namespace] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    for key in ("db_path", "config", "verbose"):
        if not hasattr(args, key):
            setattr(args, key, getattr(defaults, key, None) if defaults is not None else None)
    try:
        config = resolve_config(args)
        return args.run(args, config)
    except ProjforgeError as e:
        return report_error(e)


if __name__ == "__main__":
    raise SystemExit(main())
