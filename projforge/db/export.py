"""
Export and import of store contents.

Formats:
  sql   one CREATE TABLE IF NOT EXISTS per table plus one INSERT per row
  json  a self-describing bundle: metadata, rows per table, and denormalized
        template/blueprint views
  csv   a directory with one <table>.csv per table (pandas); NULL is written as \\N
        and text starting with a backslash gets one extra leading backslash, so a
        literal \\N string survives the round trip. Without data only headers are written.

Default table discovery leaves out the migration ledger; name it in tables to
export it. Every import validates before it writes and applies inside one
transaction with foreign key checks deferred to commit, so table order in the
file does not matter. Dry runs do the same parsing and validation and write nothing.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from projforge.core.errors import ConfigError, NotFoundError, StorageError, ValidationError
from projforge.db.migrations import LEDGER_TABLE, MigrationEngine
from projforge.store.manager import Store
from projforge.store.sqlite_session import quote_identifier, render_literal, split_statements
from projforge.timeutils import now_utc, now_utc_iso

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
CSV_NULL = "\\N"
BYTES_KEY = "__bytes__"
DEFER_FOREIGN_KEYS = "PRAGMA defer_foreign_keys = ON"

_FORMAT_ALIASES = {
    "sql": "sql",
    "json": "json",
    "structured": "json",
    "csv": "csv",
    "tabular": "csv",
}

_CREATE_TABLE = re.compile(r"^\s*CREATE\s+TABLE\s+(?!IF\s+NOT\s+EXISTS\b)", re.IGNORECASE)
_CREATE_INDEX = re.compile(r"^\s*CREATE\s+(UNIQUE\s+)?INDEX\s+(?!IF\s+NOT\s+EXISTS\b)", re.IGNORECASE)
_INSERT_INTO = re.compile(r"^\s*INSERT\s+INTO\b", re.IGNORECASE)
_INSERT_TARGET = re.compile(r'^\s*INSERT\s+(?:OR\s+\w+\s+)?INTO\s+("(?:[^"]|"")+"|\w+)', re.IGNORECASE)
_LEADING_COMMENTS = re.compile(r"^(?:\s*--[^\n]*(?:\n|$)|\s*/\*.*?\*/)+", re.DOTALL)


def normalize_format(fmt: str) -> str:
    key = (fmt or "").strip().lower()
    if key not in _FORMAT_ALIASES:
        raise ConfigError(f"unsupported format: {fmt!r} (expected sql, json or csv)")
    return _FORMAT_ALIASES[key]


def format_for_path(path: Union[str, Path], explicit: Optional[str] = None, default: str = "sql") -> str:
    """Explicit format wins, then the file extension, then the configured default."""
    if explicit:
        return normalize_format(explicit)
    suffix = Path(path).suffix.lower().lstrip(".")
    if suffix in _FORMAT_ALIASES:
        return _FORMAT_ALIASES[suffix]
    if Path(path).is_dir():
        return "csv"
    return normalize_format(default)


@dataclass
class ExportOptions:
    output_path: Union[str, Path]
    format: str = "sql"
    tables: List[str] = field(default_factory=list)
    include_schema: bool = True
    include_data: bool = True


@dataclass
class ImportOptions:
    input_path: Union[str, Path]
    format: str = "sql"
    validate: bool = True
    dry_run: bool = False
    replace_existing: bool = False


@dataclass(frozen=True)
class ExportResult:
    path: str
    format: str
    tables: List[str]
    row_count: int
    statements: int = 0

    @property
    def table_count(self) -> int:
        return len(self.tables)


@dataclass(frozen=True)
class ImportResult:
    format: str
    tables: List[str]
    row_count: int
    statements: int = 0
    dry_run: bool = False

    @property
    def table_count(self) -> int:
        return len(self.tables)


def encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_KEY: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {BYTES_KEY}:
        return base64.b64decode(value[BYTES_KEY])
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _csv_cell(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, str) and value.startswith("\\"):
        return "\\" + value
    return value


def _parse_json_column(text: Any) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {"value": data}


class ExportManager:
    """Serializes the store to sql/json/csv and loads those formats back."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def _resolve_tables(self, requested: Sequence[str]) -> List[str]:
        existing = self._store.list_tables()
        if not requested:
            return [t for t in existing if t != LEDGER_TABLE]
        missing = [t for t in requested if t not in existing]
        if missing:
            raise NotFoundError(f"table not found: {', '.join(missing)}")
        return list(dict.fromkeys(requested))

    def _select_all(self, table: str) -> Tuple[List[str], List[tuple]]:
        try:
            cur = self._store.connection.execute(f"SELECT * FROM {quote_identifier(table)} ORDER BY rowid")
        except sqlite3.OperationalError:
            cur = self._store.connection.execute(f"SELECT * FROM {quote_identifier(table)}")
        columns = [d[0] for d in cur.description]
        return columns, [tuple(r) for r in cur.fetchall()]

    def _schema_statements(self, table: str) -> List[str]:
        conn = self._store.connection
        row = conn.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)).fetchone()
        out: List[str] = []
        if row and row[0]:
            out.append(_CREATE_TABLE.sub("CREATE TABLE IF NOT EXISTS ", row[0], count=1))
        cur = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='index' AND tbl_name = ? AND sql IS NOT NULL ORDER BY name",
            (table,),
        )
        for (sql,) in cur.fetchall():
            out.append(_CREATE_INDEX.sub(lambda m: f"CREATE {m.group(1) or ''}INDEX IF NOT EXISTS ", sql, count=1))
        return out

    def export(self, opts: ExportOptions) -> ExportResult:
        fmt = normalize_format(opts.format)
        if not opts.include_schema and not opts.include_data:
            raise ConfigError("nothing to export: both schema and data are excluded")
        tables = self._resolve_tables(opts.tables)
        out = Path(opts.output_path)
        try:
            if fmt == "sql":
                result = self._export_sql(out, tables, opts)
            elif fmt == "json":
                result = self._export_json(out, tables, opts)
            else:
                result = self._export_csv(out, tables, opts)
        except sqlite3.Error as e:
            raise StorageError(f"export to {out} failed: {e}") from e
        logger.info("Exported %d tables (%d rows) to %s", result.table_count, result.row_count, result.path)
        return result

    def _export_sql(self, out: Path, tables: List[str], opts: ExportOptions) -> ExportResult:
        out.parent.mkdir(parents=True, exist_ok=True)
        rows_total = 0
        statements = 0
        with open(out, "w", encoding="utf-8") as f:
            f.write("-- projforge database export\n")
            f.write(f"-- Generated on: {now_utc().strftime('%Y-%m-%d %H:%M:%S')} UTC\n")
            f.write("-- Format: SQL\n\n")
            for table in tables:
                if opts.include_schema:
                    f.write(f"-- Schema for table {table}\n")
                    for ddl in self._schema_statements(table):
                        f.write(ddl.rstrip().rstrip(";") + ";\n")
                        statements += 1
                    f.write("\n")
                if opts.include_data:
                    columns, rows = self._select_all(table)
                    f.write(f"-- Data for table {table}\n")
                    col_sql = ", ".join(quote_identifier(c) for c in columns)
                    for row in rows:
                        values = ", ".join(render_literal(v) for v in row)
                        f.write(f"INSERT INTO {quote_identifier(table)} ({col_sql}) VALUES ({values});\n")
                    rows_total += len(rows)
                    statements += len(rows)
                    f.write("\n")
        return ExportResult(str(out), "sql", tables, rows_total, statements)

    def build_bundle(self, tables: List[str], include_data: bool = True) -> Dict[str, Any]:
        """In-memory structured bundle; metadata counts always match the content."""
        data: Dict[str, List[Dict[str, Any]]] = {}
        for table in tables:
            if not include_data:
                data[table] = []
                continue
            columns, rows = self._select_all(table)
            data[table] = [{c: encode_value(v) for c, v in zip(columns, row)} for row in rows]
        bundle: Dict[str, Any] = {
            "metadata": {
                "exported_at": now_utc_iso(),
                "version": EXPORT_VERSION,
                "format": "json",
                "table_count": len(data),
                "row_count": sum(len(r) for r in data.values()),
            },
            "tables": data,
        }
        if include_data and "templates" in tables:
            bundle["templates"] = self._template_view()
        if include_data and "blueprints" in tables:
            bundle["blueprints"] = self._blueprint_view()
        return bundle

    def _template_view(self) -> List[Dict[str, Any]]:
        cur = self._store.connection.execute(
            "SELECT name, kind, content, metadata_json, created_at, updated_at FROM templates ORDER BY name"
        )
        out = []
        for r in cur.fetchall():
            meta = _parse_json_column(r["metadata_json"])
            content = r["content"]
            if isinstance(content, bytes):
                content = content.decode("utf-8", errors="replace")
            out.append(
                {
                    "name": r["name"],
                    "kind": r["kind"],
                    "description": str(meta.get("description", "")),
                    "metadata": meta,
                    "content": content,
                    "created_at": r["created_at"],
                    "updated_at": r["updated_at"],
                }
            )
        return out

    def _blueprint_view(self) -> List[Dict[str, Any]]:
        cur = self._store.connection.execute(
            "SELECT name, stack, config_json, created_at, updated_at FROM blueprints ORDER BY name"
        )
        out = []
        for r in cur.fetchall():
            config = _parse_json_column(r["config_json"])
            out.append(
                {
                    "name": r["name"],
                    "stack": r["stack"],
                    "description": str(config.get("description", "")),
                    "config": config,
                    "created_at": r["created_at"],
                    "updated_at": r["updated_at"],
                }
            )
        return out

    def _export_json(self, out: Path, tables: List[str], opts: ExportOptions) -> ExportResult:
        bundle = self.build_bundle(tables, include_data=opts.include_data)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as f:
            json.dump(bundle, f, indent=2)
            f.write("\n")
        meta = bundle["metadata"]
        return ExportResult(str(out), "json", tables, int(meta["row_count"]))

    def _blob_columns(self, table: str) -> List[str]:
        cur = self._store.connection.execute(f"PRAGMA table_info({quote_identifier(table)})")
        return [r[1] for r in cur.fetchall() if "BLOB" in str(r[2]).upper()]

    def _export_csv(self, out: Path, tables: List[str], opts: ExportOptions) -> ExportResult:
        out_dir = out.with_suffix("") if out.suffix else out
        out_dir.mkdir(parents=True, exist_ok=True)
        rows_total = 0
        for table in tables:
            columns, rows = self._select_all(table)
            if not opts.include_data:
                rows = []
            df = pd.DataFrame(rows, columns=columns, dtype=object)
            for col in columns:
                df[col] = df[col].map(_csv_cell)
            df.to_csv(out_dir / f"{table}.csv", index=False, na_rep=CSV_NULL, encoding="utf-8")
            rows_total += len(df)
        return ExportResult(str(out_dir), "csv", tables, rows_total)

    def import_data(self, opts: ImportOptions) -> ImportResult:
        src = Path(opts.input_path)
        if not src.exists():
            raise NotFoundError(f"import file does not exist: {src}")
        fmt = normalize_format(opts.format)
        if fmt == "sql":
            result = self._import_sql(src, opts)
        elif fmt == "json":
            result = self._import_json(src, opts)
        else:
            result = self._import_csv(src, opts)
        logger.info(
            "%s %d tables (%d rows, %d statements) from %s",
            "Dry run:" if result.dry_run else "Imported",
            result.table_count,
            result.row_count,
            result.statements,
            src,
        )
        return result

    def _import_sql(self, src: Path, opts: ImportOptions) -> ImportResult:
        if src.is_dir():
            raise ConfigError(f"sql import expects a file, got a directory: {src}")
        with open(src, encoding="utf-8") as f:
            statements = [_LEADING_COMMENTS.sub("", s, count=1).strip() for s in split_statements(f.read())]
        if opts.replace_existing:
            statements = [_INSERT_INTO.sub("INSERT OR REPLACE INTO", s, count=1) for s in statements]
        targets: List[str] = []
        inserts = 0
        for stmt in statements:
            m = _INSERT_TARGET.match(stmt)
            if m:
                inserts += 1
                name = m.group(1)
                if name.startswith('"'):
                    name = name[1:-1].replace('""', '"')
                if name not in targets:
                    targets.append(name)
        if opts.dry_run:
            return ImportResult("sql", targets, inserts, len(statements), dry_run=True)
        index = 0
        try:
            with self._store.transaction() as conn:
                conn.execute(DEFER_FOREIGN_KEYS)
                for index, stmt in enumerate(statements, start=1):
                    conn.execute(stmt)
        except sqlite3.Error as e:
            raise StorageError(f"sql import from {src} failed at statement {index}: {e}") from e
        return ImportResult("sql", targets, inserts, len(statements))

    def _read_bundle(self, src: Path) -> Dict[str, Any]:
        try:
            with open(src, encoding="utf-8") as f:
                bundle = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"invalid JSON export {src}: {e}") from e
        if not isinstance(bundle, dict) or not isinstance(bundle.get("tables"), dict):
            raise ValidationError(f"invalid export bundle {src}: missing 'tables' mapping")
        for table, rows in bundle["tables"].items():
            if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
                raise ValidationError(f"invalid export bundle {src}: rows for table {table} must be a list of objects")
        return bundle

    def validate_bundle(self, bundle: Dict[str, Any]) -> None:
        meta = bundle.get("metadata")
        if not isinstance(meta, dict):
            raise ValidationError("export bundle has no metadata")
        if not str(meta.get("version") or "").strip():
            raise ValidationError("export bundle metadata has no version")
        tables = bundle["tables"]
        rows = sum(len(r) for r in tables.values())
        if meta.get("table_count") is not None and int(meta["table_count"]) != len(tables):
            raise ValidationError(
                f"export bundle metadata table_count={meta['table_count']} but bundle has {len(tables)} tables"
            )
        if meta.get("row_count") is not None and int(meta["row_count"]) != rows:
            raise ValidationError(f"export bundle metadata row_count={meta['row_count']} but bundle has {rows} rows")

    def _ensure_ledger(self, tables: Iterable[str]) -> None:
        if LEDGER_TABLE in tables and not self._store.table_exists(LEDGER_TABLE):
            MigrationEngine(self._store).init_ledger()

    def _check_targets(self, table_rows: Dict[str, List[Dict[str, Any]]]) -> None:
        for table, rows in table_rows.items():
            if not self._store.table_exists(table):
                raise ValidationError(f"import target table does not exist: {table}")
            known = set(self._store.table_columns(table))
            unknown = sorted({c for r in rows for c in r} - known)
            if unknown:
                raise ValidationError(f"unknown columns for table {table}: {', '.join(unknown)}")

    def _apply_rows(self, table_rows: Dict[str, List[Dict[str, Any]]], replace: bool) -> None:
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        current = ""
        try:
            with self._store.transaction() as conn:
                conn.execute(DEFER_FOREIGN_KEYS)
                for table, rows in table_rows.items():
                    current = table
                    for row in rows:
                        cols = list(row)
                        if not cols:
                            conn.execute(f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES")
                            continue
                        col_sql = ", ".join(quote_identifier(c) for c in cols)
                        marks = ", ".join("?" for _ in cols)
                        conn.execute(
                            f"{verb} INTO {quote_identifier(table)} ({col_sql}) VALUES ({marks})",
                            [row[c] for c in cols],
                        )
        except sqlite3.Error as e:
            raise StorageError(f"import into table {current} failed: {e}") from e

    def _import_rows(self, fmt: str, table_rows: Dict[str, List[Dict[str, Any]]], opts: ImportOptions) -> ImportResult:
        self._ensure_ledger(table_rows)
        self._check_targets(table_rows)
        tables = list(table_rows)
        rows = sum(len(r) for r in table_rows.values())
        if opts.dry_run:
            return ImportResult(fmt, tables, rows, dry_run=True)
        self._apply_rows(table_rows, opts.replace_existing)
        return ImportResult(fmt, tables, rows)

    def _import_json(self, src: Path, opts: ImportOptions) -> ImportResult:
        bundle = self._read_bundle(src)
        if opts.validate:
            self.validate_bundle(bundle)
        table_rows = {
            table: [{c: decode_value(v) for c, v in row.items()} for row in rows]
            for table, rows in bundle["tables"].items()
        }
        return self._import_rows("json", table_rows, opts)

    def _read_csv_table(self, path: Path, table: str) -> List[Dict[str, Any]]:
        df = pd.read_csv(path, dtype=object, na_values=[CSV_NULL], keep_default_na=False, encoding="utf-8")
        df = df.astype(object).where(df.notna(), None)
        blob_cols = set(self._blob_columns(table)) if self._store.table_exists(table) else set()
        records = df.to_dict(orient="records")
        for rec in records:
            for col, value in rec.items():
                if isinstance(value, str) and value.startswith("\\"):
                    rec[col] = value[1:]
            for col in blob_cols & set(rec):
                if rec[col] is not None:
                    try:
                        rec[col] = bytes.fromhex(rec[col])
                    except ValueError as e:
                        raise ValidationError(f"invalid hex value in {path} column {col}: {e}") from e
        return records

    def _import_csv(self, src: Path, opts: ImportOptions) -> ImportResult:
        files = sorted(src.glob("*.csv")) if src.is_dir() else [src]
        if not files:
            raise ValidationError(f"no CSV files found in {src}")
        table_rows: Dict[str, List[Dict[str, Any]]] = {}
        for path in files:
            table_rows[path.stem] = self._read_csv_table(path, path.stem)
        return self._import_rows("csv", table_rows, opts)
