"""
Shared exception types for projforge.
Stable surface; extend only. Every message carries the operation context
(migration id, table, file path) so the CLI can print it verbatim.
"""

from __future__ import annotations


class ProjforgeError(Exception):
    """Base exception for projforge; catch this for any package-raised error."""

    pass


class NotFoundError(ProjforgeError):
    """Missing file, migration definition, template or blueprint."""


class ConfigError(ProjforgeError):
    """Invalid or empty operation input (empty migration body, unknown format, bad config file)."""


class ConflictError(ProjforgeError):
    """Destructive operation blocked by an existing artifact without an explicit override."""


class StorageError(ProjforgeError):
    """Underlying SQLite open/query/exec failure."""


class ValidationError(ProjforgeError):
    """Import data failed validation before anything was written."""


class IntegrityError(ProjforgeError):
    """Structural corruption detected by a verify or integrity step."""


__all__ = [
    "ConfigError",
    "ConflictError",
    "IntegrityError",
    "NotFoundError",
    "ProjforgeError",
    "StorageError",
    "ValidationError",
]
