"""
Host-local lock serializing backup and restore runs.

A pid file is created with O_EXCL. A lock left behind by a process that no
longer exists is taken over.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from types import TracebackType

from vaultkeeper.errors import LockHeldError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "vaultkeeper.lock"


class OperationLock:
    """
    Pid-file lock held for the duration of a backup or restore.

    Usage:
        with OperationLock(Path(settings.stack_dir) / LOCK_FILE_NAME):
            manager.run_backup()
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._held = False

    def acquire(self) -> None:
        """
        Raises:
            LockHeldError: If another live process holds the lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                pid = self.holder()
                if pid is not None and _process_alive(pid):
                    raise LockHeldError(
                        f"Another vaultkeeper run (PID {pid}) holds {self.path}"
                    ) from None
                logger.warning("Removing stale lock %s (PID %s)", self.path, pid)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return
        raise LockHeldError(f"Could not acquire {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Could not remove lock file %s: %s", self.path, e)
        self._held = False

    def holder(self) -> int | None:
        """PID recorded in the lock file, if readable."""
        try:
            with open(self.path) as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> OperationLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def _process_alive(pid: int) -> bool:
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True
