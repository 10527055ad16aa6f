"""
Base schema for the projforge store. Every statement is idempotent
(CREATE ... IF NOT EXISTS) so it can run on every open.
"""

from __future__ import annotations

from typing import List

CREATE_TEMPLATES_TABLE = """
CREATE TABLE IF NOT EXISTS templates (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL UNIQUE,
    kind            TEXT NOT NULL,
    content         BLOB NOT NULL,
    metadata_json   TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

CREATE_BLUEPRINTS_TABLE = """
CREATE TABLE IF NOT EXISTS blueprints (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL UNIQUE,
    stack           TEXT NOT NULL,
    config_json     TEXT NOT NULL,
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

CREATE_CONFIGS_TABLE = """
CREATE TABLE IF NOT EXISTS configs (
    id              INTEGER PRIMARY KEY,
    scope           TEXT NOT NULL DEFAULT 'global',
    key             TEXT NOT NULL,
    value           TEXT NOT NULL,
    UNIQUE(scope, key)
);
"""

CREATE_HOOKS_TABLE = """
CREATE TABLE IF NOT EXISTS hooks (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL,
    event           TEXT NOT NULL,
    language        TEXT NOT NULL DEFAULT 'shell',
    script          TEXT NOT NULL,
    enabled         INTEGER NOT NULL DEFAULT 1
);
"""

CREATE_PLUGINS_TABLE = """
CREATE TABLE IF NOT EXISTS plugins (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL UNIQUE,
    version         TEXT NOT NULL,
    entrypoint      TEXT NOT NULL,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
);
"""

CREATE_AUDITS_TABLE = """
CREATE TABLE IF NOT EXISTS audits (
    id              INTEGER PRIMARY KEY,
    actor           TEXT NOT NULL,
    action          TEXT NOT NULL,
    entity          TEXT NOT NULL,
    details_json    TEXT NOT NULL DEFAULT '{}',
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_templates_kind ON templates(kind);
CREATE INDEX IF NOT EXISTS idx_blueprints_stack ON blueprints(stack);
CREATE INDEX IF NOT EXISTS idx_configs_scope_key ON configs(scope, key);
CREATE INDEX IF NOT EXISTS idx_hooks_event ON hooks(event);
CREATE INDEX IF NOT EXISTS idx_audits_action ON audits(action);
CREATE INDEX IF NOT EXISTS idx_audits_created_at ON audits(created_at);
"""

BASE_SCHEMA: List[str] = [
    CREATE_TEMPLATES_TABLE,
    CREATE_BLUEPRINTS_TABLE,
    CREATE_CONFIGS_TABLE,
    CREATE_HOOKS_TABLE,
    CREATE_PLUGINS_TABLE,
    CREATE_AUDITS_TABLE,
    CREATE_INDEXES,
]

BASE_TABLES = ("templates", "blueprints", "configs", "hooks", "plugins", "audits")
