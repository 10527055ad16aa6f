"""
Top-level public API surface. Stable facades only.
Canonical entrypoint: import projforge; use projforge.core, projforge.store, projforge.db.
Does not import cli.
"""

from __future__ import annotations

from . import core, db, store
from ._version import __version__

# Do not add exports without updating __all__.
__all__ = [
    "__version__",
    "core",
    "db",
    "store",
]
