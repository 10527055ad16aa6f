"""
CRUD over the base tables: templates, blueprints, configs, hooks, plugins, audits.
Each repository borrows an open Store. JSON columns are encoded with sorted keys.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from projforge.core.errors import NotFoundError, StorageError
from projforge.store.manager import Store
from projforge.timeutils import now_utc_iso

logger = logging.getLogger(__name__)


def _dumps(obj: Optional[Dict[str, Any]]) -> str:
    return json.dumps(obj or {}, sort_keys=True)


def _loads(text: Optional[str]) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value: %.60s", text)
        return {}
    return data if isinstance(data, dict) else {"value": data}


def _as_bytes(content: Any) -> bytes:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    return str(content).encode("utf-8")


@dataclass(frozen=True)
class TemplateRecord:
    name: str
    kind: str
    content: bytes
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def description(self) -> str:
        return str(self.metadata.get("description", ""))


@dataclass(frozen=True)
class BlueprintRecord:
    name: str
    stack: str
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def description(self) -> str:
        return str(self.config.get("description", ""))


@dataclass(frozen=True)
class HookRecord:
    id: int
    name: str
    event: str
    language: str
    script: str
    enabled: bool


@dataclass(frozen=True)
class PluginRecord:
    name: str
    version: str
    entrypoint: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditRecord:
    id: int
    actor: str
    action: str
    entity: str
    details: Dict[str, Any]
    created_at: Optional[str]


class _Repository:
    def __init__(self, store: Store) -> None:
        self._store = store

    def _write(self, sql: str, params: tuple, what: str) -> sqlite3.Cursor:
        try:
            with self._store.transaction() as conn:
                return conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"failed to {what}: {e}") from e


class TemplateRepository(_Repository):
    """Named, kinded template bodies (stored as BLOB)."""

    def upsert(self, name: str, kind: str, content: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._write(
            """
            INSERT INTO templates (name, kind, content, metadata_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                kind = excluded.kind,
                content = excluded.content,
                metadata_json = excluded.metadata_json,
                updated_at = excluded.updated_at;
            """,
            (name, kind, _as_bytes(content), _dumps(metadata), now_utc_iso(), now_utc_iso()),
            f"save template {name}",
        )

    def get(self, name: str) -> TemplateRecord:
        row = self._store.execute(
            "SELECT name, kind, content, metadata_json, created_at, updated_at FROM templates WHERE name = ?",
            (name,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"template not found: {name}")
        return self._record(row)

    def list(self, kind: Optional[str] = None) -> List[TemplateRecord]:
        sql = "SELECT name, kind, content, metadata_json, created_at, updated_at FROM templates"
        params: tuple = ()
        if kind:
            sql += " WHERE kind = ?"
            params = (kind,)
        sql += " ORDER BY name"
        return [self._record(r) for r in self._store.execute(sql, params).fetchall()]

    def delete(self, name: str) -> None:
        cur = self._write("DELETE FROM templates WHERE name = ?", (name,), f"delete template {name}")
        if cur.rowcount == 0:
            raise NotFoundError(f"template not found: {name}")

    @staticmethod
    def _record(row: sqlite3.Row) -> TemplateRecord:
        return TemplateRecord(
            name=row["name"],
            kind=row["kind"],
            content=_as_bytes(row["content"]),
            metadata=_loads(row["metadata_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class BlueprintRepository(_Repository):
    """Stack presets (blueprints) with a JSON config document."""

    def upsert(self, name: str, stack: str, config: Optional[Dict[str, Any]] = None) -> None:
        self._write(
            """
            INSERT INTO blueprints (name, stack, config_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                stack = excluded.stack,
                config_json = excluded.config_json,
                updated_at = excluded.updated_at;
            """,
            (name, stack, _dumps(config), now_utc_iso(), now_utc_iso()),
            f"save blueprint {name}",
        )

    def get(self, name: str) -> BlueprintRecord:
        row = self._store.execute(
            "SELECT name, stack, config_json, created_at, updated_at FROM blueprints WHERE name = ?",
            (name,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"blueprint not found: {name}")
        return self._record(row)

    def list(self, stack: Optional[str] = None) -> List[BlueprintRecord]:
        sql = "SELECT name, stack, config_json, created_at, updated_at FROM blueprints"
        params: tuple = ()
        if stack:
            sql += " WHERE stack = ?"
            params = (stack,)
        sql += " ORDER BY name"
        return [self._record(r) for r in self._store.execute(sql, params).fetchall()]

    def delete(self, name: str) -> None:
        cur = self._write("DELETE FROM blueprints WHERE name = ?", (name,), f"delete blueprint {name}")
        if cur.rowcount == 0:
            raise NotFoundError(f"blueprint not found: {name}")

    @staticmethod
    def _record(row: sqlite3.Row) -> BlueprintRecord:
        return BlueprintRecord(
            name=row["name"],
            stack=row["stack"],
            config=_loads(row["config_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ConfigRepository(_Repository):
    """Scoped key/value settings."""

    def set(self, key: str, value: str, scope: str = "global") -> None:
        self._write(
            """
            INSERT INTO configs (scope, key, value) VALUES (?, ?, ?)
            ON CONFLICT(scope, key) DO UPDATE SET value = excluded.value;
            """,
            (scope, key, str(value)),
            f"set config {scope}.{key}",
        )

    def get(self, key: str, scope: str = "global") -> str:
        row = self._store.execute(
            "SELECT value FROM configs WHERE scope = ? AND key = ?", (scope, key)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"config not found: {scope}.{key}")
        return row[0]

    def all(self, scope: str = "global") -> Dict[str, str]:
        cur = self._store.execute("SELECT key, value FROM configs WHERE scope = ? ORDER BY key", (scope,))
        return {row[0]: row[1] for row in cur.fetchall()}

    def delete(self, key: str, scope: str = "global") -> None:
        self._write("DELETE FROM configs WHERE scope = ? AND key = ?", (scope, key), f"delete config {scope}.{key}")


class HookRepository(_Repository):
    """Event hooks (scripts run around generation events)."""

    def add(self, name: str, event: str, script: str, language: str = "shell") -> int:
        cur = self._write(
            "INSERT INTO hooks (name, event, language, script, enabled) VALUES (?, ?, ?, ?, 1)",
            (name, event, language, script),
            f"add hook {name}",
        )
        return int(cur.lastrowid)

    def for_event(self, event: str, enabled_only: bool = True) -> List[HookRecord]:
        sql = "SELECT id, name, event, language, script, enabled FROM hooks WHERE event = ?"
        if enabled_only:
            sql += " AND enabled = 1"
        sql += " ORDER BY id"
        return [
            HookRecord(
                id=r["id"],
                name=r["name"],
                event=r["event"],
                language=r["language"],
                script=r["script"],
                enabled=bool(r["enabled"]),
            )
            for r in self._store.execute(sql, (event,)).fetchall()
        ]

    def set_enabled(self, hook_id: int, enabled: bool) -> None:
        cur = self._write(
            "UPDATE hooks SET enabled = ? WHERE id = ?", (1 if enabled else 0, hook_id), f"update hook {hook_id}"
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"hook not found: {hook_id}")


class PluginRepository(_Repository):
    """Installed plugins keyed by name."""

    def register(self, name: str, version: str, entrypoint: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._write(
            """
            INSERT INTO plugins (name, version, entrypoint, metadata_json) VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                version = excluded.version,
                entrypoint = excluded.entrypoint,
                metadata_json = excluded.metadata_json;
            """,
            (name, version, entrypoint, _dumps(metadata)),
            f"register plugin {name}",
        )

    def get(self, name: str) -> PluginRecord:
        row = self._store.execute(
            "SELECT name, version, entrypoint, metadata_json FROM plugins WHERE name = ?", (name,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"plugin not found: {name}")
        return PluginRecord(row["name"], row["version"], row["entrypoint"], _loads(row["metadata_json"]))

    def list(self) -> List[PluginRecord]:
        cur = self._store.execute("SELECT name, version, entrypoint, metadata_json FROM plugins ORDER BY name")
        return [PluginRecord(r["name"], r["version"], r["entrypoint"], _loads(r["metadata_json"])) for r in cur]

    def remove(self, name: str) -> None:
        cur = self._write("DELETE FROM plugins WHERE name = ?", (name,), f"remove plugin {name}")
        if cur.rowcount == 0:
            raise NotFoundError(f"plugin not found: {name}")


class AuditLog(_Repository):
    """Append-only audit trail of store-level actions."""

    def record(self, actor: str, action: str, entity: str, details: Optional[Dict[str, Any]] = None) -> int:
        cur = self._write(
            "INSERT INTO audits (actor, action, entity, details_json, created_at) VALUES (?, ?, ?, ?, ?)",
            (actor, action, entity, _dumps(details), now_utc_iso()),
            f"record audit {action} {entity}",
        )
        return int(cur.lastrowid)

    def recent(self, limit: int = 20) -> List[AuditRecord]:
        cur = self._store.execute(
            "SELECT id, actor, action, entity, details_json, created_at FROM audits ORDER BY id DESC LIMIT ?",
            (int(limit),),
        )
        return [
            AuditRecord(
                id=r["id"],
                actor=r["actor"],
                action=r["action"],
                entity=r["entity"],
                details=_loads(r["details_json"]),
                created_at=r["created_at"],
            )
            for r in cur.fetchall()
        ]
