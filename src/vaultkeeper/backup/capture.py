"""
Consistent capture of the live database and data directory.

The service keeps writing while a backup runs, so the database is never
copied as a plain file. The SQLite online backup API copies it page by
page under a read lock and the copy is checked with PRAGMA integrity_check
before anything else happens. Only then is the rest of the data directory
copied next to it, minus transient files.

Invariants:
    - A database copy that fails its integrity check aborts the capture
    - The live database file and its -wal/-shm/-journal siblings are never
      copied over the consistent copy
    - Staging directories are private (0700) and removed on every exit path
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import sqlite3
import tempfile
import time
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path

from vaultkeeper.errors import CaptureInconsistentError

logger = logging.getLogger(__name__)

# Seconds to wait on a locked database before giving up
SQLITE_BUSY_TIMEOUT = 30.0
SQLITE_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")
DEFAULT_EXCLUDES = ("*.tmp", "*.bak")


@dataclass
class CaptureResult:
    """Result of one capture."""

    staged_dir: Path
    database_file: Path
    integrity: str
    files_copied: int = 0
    size_bytes: int = 0
    duration_seconds: float = 0.0


def make_staging_dir(prefix: str = "vaultkeeper-", parent: Path | None = None) -> Path:
    """Create a private, empty staging directory."""
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
    os.chmod(path, 0o700)
    return path


def remove_staging_dir(path: Path) -> None:
    """Remove a staging directory, logging rather than masking a pending error."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Could not remove staging directory %s: %s", path, e)


@contextmanager
def staging_area(prefix: str = "vaultkeeper-", parent: Path | None = None) -> Iterator[Path]:
    """
    Yield a private staging directory that is removed on exit.

    Removal happens on success, on error and on KeyboardInterrupt.
    """
    path = make_staging_dir(prefix, parent)
    logger.debug("Created staging directory %s", path)
    try:
        yield path
    finally:
        remove_staging_dir(path)
        logger.debug("Removed staging directory %s", path)


def integrity_check(db_path: Path) -> list[str]:
    """
    Run the engine's structural check on a database file.

    Returns:
        The rows reported by PRAGMA integrity_check; ["ok"] when healthy.

    Raises:
        CaptureInconsistentError: If the file is missing or cannot be opened.
    """
    db_path = Path(db_path)
    if not db_path.is_file():
        raise CaptureInconsistentError(f"Database file not found: {db_path}")
    try:
        with closing(sqlite3.connect(db_path, timeout=SQLITE_BUSY_TIMEOUT)) as conn:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.DatabaseError as e:
        raise CaptureInconsistentError(f"Cannot check {db_path.name}: {e}") from e
    return [str(row[0]) for row in rows]


def require_integrity(db_path: Path) -> None:
    """
    Raises:
        CaptureInconsistentError: Unless the integrity check says exactly "ok".
    """
    result = integrity_check(db_path)
    if result != ["ok"]:
        summary = "; ".join(result[:5])
        raise CaptureInconsistentError(f"Integrity check failed for {Path(db_path).name}: {summary}")


class CaptureCoordinator:
    """
    Produces a self-consistent copy of Live State in a staging directory.

    Usage:
        coordinator = CaptureCoordinator(data_dir, "db.sqlite3")
        with staging_area() as staged:
            result = coordinator.capture(staged)
            repository.push(staged)
    """

    def __init__(
        self,
        data_dir: Path,
        database_file: str = "db.sqlite3",
        exclude: Sequence[str] = DEFAULT_EXCLUDES,
    ) -> None:
        """
        Args:
            data_dir: Live State data directory.
            database_file: Database file name inside data_dir.
            exclude: Glob patterns for transient files never to capture.
        """
        self.data_dir = Path(data_dir)
        self.database_file = database_file
        self.exclude = tuple(exclude)

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_file

    def capture(self, staged_dir: Path) -> CaptureResult:
        """
        Capture the database and data directory into staged_dir.

        Args:
            staged_dir: Empty staging directory owned by the caller.

        Returns:
            CaptureResult describing the staged copy.

        Raises:
            CaptureInconsistentError: If the database is missing, cannot be
                copied, or its copy fails the integrity check, or the data
                directory cannot be copied.
        """
        started = time.monotonic()
        staged_dir = Path(staged_dir)

        if not self.database_path.is_file():
            raise CaptureInconsistentError(f"Live database not found: {self.database_path}")

        copy_path = staged_dir / self.database_file
        self._backup_database(copy_path)
        require_integrity(copy_path)
        logger.info("Database copy passed integrity check")

        self._copy_data_directory(staged_dir)

        files_copied = 0
        size_bytes = 0
        for root, _dirs, files in os.walk(staged_dir):
            for name in files:
                files_copied += 1
                size_bytes += (Path(root) / name).lstat().st_size

        result = CaptureResult(
            staged_dir=staged_dir,
            database_file=copy_path,
            integrity="ok",
            files_copied=files_copied,
            size_bytes=size_bytes,
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "Captured %d files (%s bytes) in %.1fs",
            files_copied,
            f"{size_bytes:,}",
            result.duration_seconds,
        )
        return result

    def _backup_database(self, dest_path: Path) -> None:
        """Copy the live database with the SQLite online backup API."""
        try:
            with closing(sqlite3.connect(self.database_path, timeout=SQLITE_BUSY_TIMEOUT)) as source:
                with closing(sqlite3.connect(dest_path)) as dest:
                    source.backup(dest)
                    # Make the copy a single self-contained file
                    dest.execute("PRAGMA journal_mode=DELETE")
        except sqlite3.Error as e:
            raise CaptureInconsistentError(f"Database backup failed: {e}") from e

    def _copy_data_directory(self, staged_dir: Path) -> None:
        """Copy everything except the live database and transient files."""
        live_db_names = {self.database_file} | {
            self.database_file + suffix for suffix in SQLITE_SIDECAR_SUFFIXES
        }
        data_dir = self.data_dir

        def ignore(directory: str, names: list[str]) -> set[str]:
            ignored = {
                name for name in names
                if any(fnmatch.fnmatch(name, pattern) for pattern in self.exclude)
            }
            if Path(directory) == data_dir:
                ignored |= live_db_names & set(names)
            return ignored

        try:
            shutil.copytree(
                data_dir,
                staged_dir,
                symlinks=True,
                ignore=ignore,
                dirs_exist_ok=True,
            )
        except (shutil.Error, OSError) as e:
            raise CaptureInconsistentError(f"Copying data directory failed: {e}") from e
