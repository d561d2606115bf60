"""
Snapshot repository client backed by restic.

restic provides the content-addressed, deduplicating, encrypted repository.
This module drives the ``restic`` binary with ``subprocess.run`` and turns
its exit codes and messages into the Vaultkeeper error taxonomy.

Secrets reach restic only through the child environment
(RESTIC_PASSWORD, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY), never argv.

Invariants:
    - ensure_initialized() only runs ``restic init`` on a definite
      "repository does not exist" answer
    - push() either returns a snapshot id or leaves no new snapshot behind
    - restore() never leaves a partially populated target
    - prune() is idempotent
    - No internal retries; a configured timeout surfaces as
      RepositoryUnreachableError
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from vaultkeeper.config.secret_material import SecretBundle
from vaultkeeper.config.settings import RepositoryConfig
from vaultkeeper.errors import (
    ConfigurationError,
    NoSnapshotAvailableError,
    RepositoryCorruptError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnreachableError,
    SnapshotNotFoundError,
)

logger = logging.getLogger(__name__)

# restic exit codes (0.17+)
EXIT_OK = 0
EXIT_INCOMPLETE = 3
EXIT_NO_REPOSITORY = 10
EXIT_LOCK_FAILED = 11
EXIT_WRONG_PASSWORD = 12

_NOT_FOUND_MARKERS = (
    "repository does not exist",
    "is there a repository at the following location",
    "unable to open config file",
)
_UNREACHABLE_MARKERS = (
    "wrong password",
    "no key found",
    "connection refused",
    "no such host",
    "i/o timeout",
    "timeout",
    "network is unreachable",
    "access denied",
    "accessdenied",
    "invalidaccesskeyid",
    "signaturedoesnotmatch",
    "forbidden",
    "unable to create lock",
    "repository is already locked",
)
_SNAPSHOT_MISSING_MARKERS = (
    "no matching id found",
    "failed to find snapshot",
    "invalid id",
)
_CORRUPT_MARKERS = (
    "ciphertext verification failed",
    "is damaged",
    "corrupt",
    "checksum mismatch",
    "invalid data returned",
)

_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class Snapshot:
    """
    An immutable snapshot record from the repository.

    Attributes:
        id: Full snapshot id.
        short_id: Abbreviated id as shown by restic.
        time: Creation time (timezone aware).
        paths: Source paths recorded at backup time.
        hostname: Host recorded at backup time.
        tags: Snapshot tags.
    """

    id: str
    time: datetime
    short_id: str = ""
    paths: tuple[str, ...] = ()
    hostname: str = ""
    tags: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        """
        Build a snapshot from restic JSON.

        Raises:
            RepositoryCorruptError: If id or time are missing or unreadable.
        """
        try:
            snapshot_id = str(data["id"])
            time = parse_restic_time(str(data["time"]))
        except (KeyError, TypeError, ValueError) as e:
            raise RepositoryCorruptError(f"Unreadable snapshot record: {data!r}") from e
        return cls(
            id=snapshot_id,
            time=time,
            short_id=str(data.get("short_id") or snapshot_id[:8]),
            paths=tuple(data.get("paths") or ()),
            hostname=str(data.get("hostname") or ""),
            tags=tuple(data.get("tags") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "short_id": self.short_id,
            "time": self.time.isoformat(),
            "paths": list(self.paths),
            "hostname": self.hostname,
            "tags": list(self.tags),
        }


def parse_restic_time(value: str) -> datetime:
    """
    Parse a restic timestamp.

    restic prints nanosecond precision (``2024-01-15T03:00:01.123456789+01:00``),
    which datetime cannot hold, so the fraction is cut to microseconds.
    Naive results are taken as UTC.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def classify_error(returncode: int, stderr: str, action: str) -> RepositoryError:
    """
    Map a failed restic call to a repository error.

    Args:
        returncode: restic exit code.
        stderr: restic error output.
        action: Short description of the attempted action, for messages.
    """
    text = stderr.lower()
    detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
    message = f"restic {action} failed: {detail}"

    if returncode == EXIT_NO_REPOSITORY:
        return RepositoryNotFoundError(message)
    if returncode in (EXIT_WRONG_PASSWORD, EXIT_LOCK_FAILED):
        return RepositoryUnreachableError(message)
    if any(m in text for m in _SNAPSHOT_MISSING_MARKERS):
        return SnapshotNotFoundError(message)
    if any(m in text for m in _CORRUPT_MARKERS):
        return RepositoryCorruptError(message)
    # restic also asks "Is there a repository...?" on auth errors, so
    # unreachable markers win over the not-found wording
    if any(m in text for m in _UNREACHABLE_MARKERS):
        return RepositoryUnreachableError(message)
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return RepositoryNotFoundError(message)
    return RepositoryError(message)


def locate_payload_root(target: Path, db_filename: str) -> Path | None:
    """
    Find the directory holding the restored payload.

    restic may restore a staged tree under its original absolute path
    (``<target>/tmp/vaultkeeper-stage-xyz/...``), so the payload root is the
    shallowest directory containing the database file.

    Returns:
        The payload root, or None if no database file was restored.
    """
    target = Path(target)
    if (target / db_filename).is_file():
        return target
    candidates = sorted(
        (p for p in target.rglob(db_filename) if p.is_file()),
        key=lambda p: (len(p.relative_to(target).parts), str(p)),
    )
    return candidates[0].parent if candidates else None


class ResticRepository:
    """
    Client for one restic repository on S3-compatible storage.

    Snapshots created by this client carry a fixed host and tag, and every
    query filters on both, so one bucket can be shared safely with other
    restic users.

    Usage:
        repo = ResticRepository.from_bundle(bundle, settings.repository)
        repo.ensure_initialized()
        snapshot_id = repo.push(staged_dir)
        latest = repo.latest()
        repo.restore(latest.id, empty_dir)
    """

    def __init__(
        self,
        address: str,
        password: str,
        access_key: str,
        secret_key: str,
        host: str = "vaultwarden",
        tag: str = "vaultwarden",
        binary: str = "restic",
        timeout: int | None = None,
    ) -> None:
        if not address or not password:
            raise ConfigurationError("Repository address and password are required")
        self.address = address
        self.host = host
        self.tag = tag
        self.binary = binary
        self.timeout = timeout
        self._password = password
        self._access_key = access_key
        self._secret_key = secret_key

    @classmethod
    def from_bundle(cls, bundle: SecretBundle, config: RepositoryConfig) -> ResticRepository:
        credentials = bundle.repository_credentials
        return cls(
            address=credentials.address,
            password=bundle.repository_password,
            access_key=credentials.access_key,
            secret_key=credentials.secret_key,
            host=config.host,
            tag=config.tag,
            binary=config.binary,
            timeout=config.timeout,
        )

    def ensure_initialized(self) -> bool:
        """
        Initialize the repository if it does not exist yet.

        Returns:
            True if the repository was created, False if it already existed.

        Raises:
            RepositoryUnreachableError: On network or authentication failure.
            RepositoryError: On any other failure.
        """
        try:
            self._run(["list", "keys"], action="open repository")
            return False
        except RepositoryNotFoundError:
            logger.info("No repository at %s, initializing", self.address)

        self._run(["init"], action="init")
        logger.info("Repository initialized at %s", self.address)
        return True

    def push(self, staged_path: Path) -> str:
        """
        Upload a staged directory as one new snapshot.

        Returns:
            The new snapshot id.
        """
        staged_path = Path(staged_path)
        if not staged_path.is_dir():
            raise ValueError(f"Staged path is not a directory: {staged_path}")

        result = self._run(
            ["backup", ".", "--json", *self._filter_args()],
            action="backup",
            cwd=staged_path,
            allowed_codes=(EXIT_OK, EXIT_INCOMPLETE),
        )

        snapshot_id = None
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if message.get("message_type") == "summary":
                snapshot_id = message.get("snapshot_id")

        if result.returncode == EXIT_INCOMPLETE:
            # Some staged files were unreadable; the snapshot must not survive
            if snapshot_id:
                self._forget([snapshot_id], prune=False)
            raise RepositoryError(
                "restic backup could not read every staged file; snapshot discarded"
            )

        if not snapshot_id:
            raise RepositoryCorruptError("restic backup did not report a snapshot id")

        logger.info("Pushed snapshot %s", snapshot_id[:8])
        return str(snapshot_id)

    def list(self) -> list[Snapshot]:
        """
        List this host's snapshots.

        Returns:
            Snapshots ordered by creation time, oldest first.
        """
        result = self._run(["snapshots", "--json", *self._filter_args()], action="list snapshots")
        return sorted(self._parse_snapshots(result.stdout), key=lambda s: (s.time, s.id))

    def latest(self) -> Snapshot:
        """
        Get the newest snapshot with a single query.

        Raises:
            NoSnapshotAvailableError: If the repository holds no snapshots.
        """
        result = self._run(
            ["snapshots", "--json", "--latest", "1", "--group-by", "host", *self._filter_args()],
            action="find latest snapshot",
        )
        snapshots = self._parse_snapshots(result.stdout)
        if not snapshots:
            raise NoSnapshotAvailableError(f"No snapshots available in {self.address}")
        return max(snapshots, key=lambda s: (s.time, s.id))

    def get(self, snapshot_id: str) -> Snapshot:
        """
        Look up one snapshot.

        Raises:
            SnapshotNotFoundError: If the id matches nothing.
        """
        result = self._run(["snapshots", "--json", snapshot_id], action=f"look up {snapshot_id}")
        snapshots = self._parse_snapshots(result.stdout)
        if not snapshots:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        return snapshots[0]

    def restore(self, snapshot_id: str, target_path: Path) -> Path:
        """
        Materialize a snapshot under an empty, exclusively owned directory.

        Returns:
            The target path.

        Raises:
            ValueError: If the target is missing or not empty.
            SnapshotNotFoundError: If the snapshot does not exist.
        """
        target_path = Path(target_path)
        if not target_path.is_dir():
            raise ValueError(f"Restore target is not a directory: {target_path}")
        if any(target_path.iterdir()):
            raise ValueError(f"Restore target is not empty: {target_path}")

        self.get(snapshot_id)

        try:
            self._run(
                ["restore", snapshot_id, "--target", str(target_path)],
                action=f"restore {snapshot_id}",
            )
        except RepositoryError:
            _empty_directory(target_path)
            raise

        logger.info("Restored snapshot %s into %s", snapshot_id[:8], target_path)
        return target_path

    def prune(self, keep_ids: Iterable[str]) -> list[str]:
        """
        Delete every snapshot not in keep_ids.

        Safe to re-run: snapshots that are already gone are skipped.

        Returns:
            Ids of the snapshots that were removed.
        """
        keep = set(keep_ids)
        doomed = [s.id for s in self.list() if s.id not in keep and s.short_id not in keep]
        if not doomed:
            logger.info("Prune: nothing to remove")
            return []

        try:
            self._forget(doomed)
        except SnapshotNotFoundError:
            # Removed concurrently; forget whatever is still present
            present = {s.id for s in self.list()}
            remaining = [sid for sid in doomed if sid in present]
            if remaining:
                self._forget(remaining)

        logger.info("Prune: removed %d snapshot(s)", len(doomed))
        return doomed

    def check(self) -> None:
        """
        Verify repository structure.

        Raises:
            RepositoryCorruptError: If restic reports damage.
        """
        try:
            self._run(["check"], action="check")
        except RepositoryUnreachableError:
            raise
        except RepositoryError as e:
            raise RepositoryCorruptError(str(e)) from e

    def _forget(self, snapshot_ids: Sequence[str], prune: bool = True) -> None:
        args = ["forget", *snapshot_ids]
        if prune:
            args.append("--prune")
        self._run(args, action="forget")

    def _filter_args(self) -> list[str]:
        args = ["--host", self.host]
        if self.tag:
            args += ["--tag", self.tag]
        return args

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "RESTIC_REPOSITORY": self.address,
                "RESTIC_PASSWORD": self._password,
                "AWS_ACCESS_KEY_ID": self._access_key,
                "AWS_SECRET_ACCESS_KEY": self._secret_key,
            }
        )
        return env

    def _run(
        self,
        args: list[str],
        action: str,
        cwd: Path | None = None,
        allowed_codes: tuple[int, ...] = (EXIT_OK,),
    ) -> subprocess.CompletedProcess:
        """Run restic and raise a classified error on failure."""
        cmd = [self.binary, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                env=self._env(),
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise RepositoryUnreachableError(
                f"restic {action} timed out after {self.timeout}s"
            ) from e
        except FileNotFoundError as e:
            raise ConfigurationError(f"restic binary not found: {self.binary}") from e

        if result.returncode not in allowed_codes:
            error = classify_error(result.returncode, result.stderr or "", action)
            logger.debug("restic %s stderr: %s", action, (result.stderr or "").strip())
            raise error
        return result

    def _parse_snapshots(self, stdout: str) -> list[Snapshot]:
        text = stdout.strip()
        if not text or text == "null":
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise RepositoryCorruptError(f"Unreadable snapshot list from restic: {e}") from e
        if data is None:
            return []
        if not isinstance(data, list):
            raise RepositoryCorruptError("Snapshot list from restic is not a JSON array")

        items: list[Any] = []
        for item in data:
            # --group-by wraps snapshots in {"group_key": ..., "snapshots": [...]}
            if isinstance(item, dict) and "group_key" in item:
                items.extend(item.get("snapshots") or [])
            elif item:
                items.append(item)
        return [Snapshot.from_dict(item) for item in items]


def _empty_directory(path: Path) -> None:
    """Remove everything inside path, keeping path itself."""
    for child in Path(path).iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
