"""
Storage layer: connection lifecycle, base schema, the Store handle and entity repositories.
"""

from __future__ import annotations

from .manager import Store, open_store
from .repositories import (
    AuditLog,
    BlueprintRepository,
    ConfigRepository,
    HookRepository,
    PluginRepository,
    TemplateRepository,
)
from .sqlite_session import sqlite_conn, transaction

# Do not add exports without updating __all__.
__all__ = [
    "AuditLog",
    "BlueprintRepository",
    "ConfigRepository",
    "HookRepository",
    "PluginRepository",
    "Store",
    "TemplateRepository",
    "open_store",
    "sqlite_conn",
    "transaction",
]
