"""
Canonical hashing primitives: text and file SHA256.
"""

from __future__ import annotations

import hashlib
from pathlib import Path


def sha256_text(text: str) -> str:
    """Return SHA256 hex digest of text (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_file_sha256(path: str | Path) -> str:
    """Return SHA256 hex digest of file. Returns empty string if file missing or unreadable."""
    path = Path(path)
    if not path.is_file():
        return ""
    try:
        h = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        return ""


__all__ = ["compute_file_sha256", "sha256_text"]
