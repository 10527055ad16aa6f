"""
Backup and restore of the store's backing file.

Backups are byte copies of the SQLite file, optionally gzip-compressed with the
source filename in the gzip header. Restore detects compression from the two
magic bytes at the start of the artifact, never from the file extension.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sqlite3
import time
import zlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from projforge.core.errors import ConfigError, ConflictError, IntegrityError, NotFoundError
from projforge.core.hashing import compute_file_sha256
from projforge.store.manager import Store
from projforge.store.sqlite_session import sqlite_conn

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
SIDE_FILE_SUFFIXES = ("-wal", "-shm")
_CHUNK = 1024 * 1024


@dataclass
class BackupOptions:
    output_path: Union[str, Path]
    compress: bool = False
    verify: bool = False


@dataclass
class RestoreOptions:
    backup_path: Union[str, Path]
    verify: bool = False
    create_backup: bool = False
    force: bool = False


@dataclass(frozen=True)
class BackupInfo:
    path: str
    size: int
    modified_at: datetime
    is_compressed: bool

    def __str__(self) -> str:
        kind = "Compressed" if self.is_compressed else "Raw"
        return (
            f"{self.path} ({self.size / 1024 / 1024:.2f} MB, {kind}, "
            f"{self.modified_at.strftime('%Y-%m-%d %H:%M:%S')})"
        )


def is_compressed(path: Union[str, Path]) -> bool:
    """True when the file starts with the gzip magic bytes. Files under two bytes are raw."""
    try:
        with open(path, "rb") as f:
            head = f.read(2)
    except FileNotFoundError as e:
        raise NotFoundError(f"backup file does not exist: {path}") from e
    return head == GZIP_MAGIC


def get_backup_info(path: Union[str, Path]) -> BackupInfo:
    p = Path(path)
    if not p.is_file():
        raise NotFoundError(f"backup file does not exist: {p}")
    st = p.stat()
    return BackupInfo(
        path=str(p),
        size=st.st_size,
        modified_at=datetime.fromtimestamp(st.st_mtime),
        is_compressed=is_compressed(p),
    )


def _fsync_file(path: Path) -> None:
    with open(path, "rb+") as f:
        f.flush()
        os.fsync(f.fileno())


def _remove_side_files(db_path: Path) -> None:
    for suffix in SIDE_FILE_SUFFIXES:
        side = Path(str(db_path) + suffix)
        if side.exists():
            side.unlink()
            logger.debug("Removed stale %s", side)


def verify_database_file(path: Union[str, Path]) -> None:
    """Open path read-only and run PRAGMA integrity_check; IntegrityError unless 'ok'."""
    try:
        with sqlite_conn(path, read_only=True) as conn:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.Error as e:
        raise IntegrityError(f"{path} is not a valid SQLite database: {e}") from e
    result = "; ".join(str(r[0]) for r in rows)
    if result != "ok":
        raise IntegrityError(f"integrity check failed for {path}: {result}")


def verify_compressed_file(path: Union[str, Path]) -> None:
    """Decompress path end to end; IntegrityError if the stream is corrupt or truncated."""
    try:
        with gzip.open(path, "rb") as f:
            while f.read(_CHUNK):
                pass
    except (OSError, EOFError, zlib.error) as e:
        raise IntegrityError(f"backup file is corrupted (invalid gzip): {path}: {e}") from e


class BackupManager:
    """Copies the store file to and from backup artifacts."""

    def __init__(self, db_path: Union[str, Path], store: Optional[Store] = None) -> None:
        self.db_path = Path(db_path)
        self._store = store

    def _checkpoint_source(self) -> None:
        if self._store is not None and self._store.is_open:
            self._store.checkpoint()
            return
        if not any(Path(str(self.db_path) + s).exists() for s in SIDE_FILE_SUFFIXES):
            return
        try:
            with sqlite_conn(self.db_path, pragmas=False) as conn:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchall()
        except sqlite3.Error as e:
            logger.warning("Could not checkpoint %s before copying: %s", self.db_path, e)

    def backup(self, opts: BackupOptions) -> BackupInfo:
        if not self.db_path.is_file():
            raise NotFoundError(f"source database does not exist: {self.db_path}")
        out = Path(opts.output_path)
        if out.resolve() == self.db_path.resolve():
            raise ConfigError(f"backup output must differ from the database path: {out}")
        out.parent.mkdir(parents=True, exist_ok=True)
        self._checkpoint_source()

        if opts.compress:
            self._backup_compressed(out)
        else:
            self._backup_raw(out)

        if opts.verify:
            self.verify(out)
        info = get_backup_info(out)
        logger.info("Backup written: %s sha256=%s", info, compute_file_sha256(out))
        return info

    def _backup_raw(self, out: Path) -> None:
        with open(self.db_path, "rb") as src, open(out, "wb") as dst:
            shutil.copyfileobj(src, dst, _CHUNK)
            dst.flush()
            os.fsync(dst.fileno())

    def _backup_compressed(self, out: Path) -> None:
        with open(self.db_path, "rb") as src, open(out, "wb") as raw:
            with gzip.GzipFile(filename=self.db_path.name, mode="wb", fileobj=raw) as gz:
                shutil.copyfileobj(src, gz, _CHUNK)
            raw.flush()
            os.fsync(raw.fileno())

    def verify(self, path: Union[str, Path]) -> None:
        """Structural check: gzip stream for compressed artifacts, integrity_check for raw ones."""
        if is_compressed(path):
            verify_compressed_file(path)
        else:
            verify_database_file(path)

    def restore(self, opts: RestoreOptions) -> Optional[Path]:
        """
        Overwrite the store file from a backup artifact.
        Returns the safety copy path when one was written, else None.
        """
        src = Path(opts.backup_path)
        if not src.is_file():
            raise NotFoundError(f"backup file does not exist: {src}")
        dest_exists = self.db_path.exists()
        if dest_exists and not opts.force:
            raise ConflictError(f"destination database already exists: {self.db_path} (use --force to overwrite)")

        compressed = is_compressed(src)
        if opts.verify:
            self.verify(src)

        safety: Optional[Path] = None
        if opts.create_backup and dest_exists:
            safety = Path(f"{self.db_path}.backup.{int(time.time())}")
            logger.info("Creating safety copy of existing database: %s", safety)
            self.backup(BackupOptions(output_path=safety))

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.db_path.with_name(self.db_path.name + ".restore-tmp")
        try:
            if compressed:
                self._restore_compressed(src, tmp)
            else:
                with open(src, "rb") as f_in, open(tmp, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out, _CHUNK)
            _fsync_file(tmp)
            _remove_side_files(self.db_path)
            os.replace(tmp, self.db_path)
        finally:
            if tmp.exists():
                tmp.unlink()

        if opts.verify:
            verify_database_file(self.db_path)
        logger.info("Database restored from %s (%s)", src, "compressed" if compressed else "raw")
        return safety

    @staticmethod
    def _restore_compressed(src: Path, dest: Path) -> None:
        try:
            with gzip.open(src, "rb") as f_in, open(dest, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out, _CHUNK)
        except (OSError, EOFError, zlib.error) as e:
            raise IntegrityError(f"failed to decompress backup {src}: {e}") from e

    def get_backup_info(self, path: Union[str, Path]) -> BackupInfo:
        return get_backup_info(path)

    def is_compressed(self, path: Union[str, Path]) -> bool:
        return is_compressed(path)
