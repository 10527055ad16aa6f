"""
Stable facade: error taxonomy and hashing only. No store, db, or cli.
Do not add exports without updating __all__.
"""

from __future__ import annotations

from .errors import (
    ConfigError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    ProjforgeError,
    StorageError,
    ValidationError,
)
from .hashing import compute_file_sha256, sha256_text

# Do not add exports without updating __all__.
__all__ = [
    "ConfigError",
    "ConflictError",
    "IntegrityError",
    "NotFoundError",
    "ProjforgeError",
    "StorageError",
    "ValidationError",
    "compute_file_sha256",
    "sha256_text",
]
