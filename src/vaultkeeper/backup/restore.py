"""
Restore orchestration for Vaultkeeper.

Restores the latest snapshot into Live State:

    START -> LOCATE_SNAPSHOT -> STAGE -> VALIDATE_INTEGRITY
          -> SWAP_LIVE_STATE -> RECOVER_SECRETS -> DONE

with FAILED reachable from every state.

Invariants:
    - Nothing is staged when the repository holds no snapshot
    - Live State is not touched unless the staged database passed its
      integrity check
    - The service is stopped before Live State is modified
    - The staging directory survives any failure from SWAP_LIVE_STATE on,
      so the swap can be re-run from it with resume(); before that it is
      removed on every exit path, including KeyboardInterrupt

The swap copies out of the staging directory and never consumes it, so
re-running the swap from a preserved staging directory is always safe. The
default swap (stop, delete, copy) is not crash safe on its own: a crash in
the middle can leave Live State partial, and resume() is the recovery path.
With ``restore.atomic_swap`` the payload is assembled in a sibling directory
and renamed into place instead.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from vaultkeeper.backup.capture import make_staging_dir, remove_staging_dir, require_integrity
from vaultkeeper.config.runtime import load_runtime_config
from vaultkeeper.config.secret_material import (
    LEGACY_SECRET_RECORD_FILE,
    SECRET_RECORD_FILE,
    RepositoryCredentials,
    SecretBundle,
    SecretManager,
)
from vaultkeeper.config.settings import Settings
from vaultkeeper.errors import (
    CaptureInconsistentError,
    ConfigurationError,
    RestoreError,
    VaultkeeperError,
)
from vaultkeeper.repository.restic import ResticRepository, Snapshot, locate_payload_root
from vaultkeeper.service import ComposeService

logger = logging.getLogger(__name__)

SECRET_RECORD_NAMES = frozenset({SECRET_RECORD_FILE, LEGACY_SECRET_RECORD_FILE})


class RestoreState(Enum):
    """States of a restore run."""

    START = "start"
    LOCATE_SNAPSHOT = "locate_snapshot"
    STAGE = "stage"
    VALIDATE_INTEGRITY = "validate_integrity"
    SWAP_LIVE_STATE = "swap_live_state"
    RECOVER_SECRETS = "recover_secrets"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RestoreResult:
    """
    Result of a restore run.

    Attributes:
        success: True when the run reached DONE.
        state: Final state (DONE or FAILED).
        failed_state: State that failed, if any.
        snapshot: Snapshot that was restored.
        bundle: Secret bundle written to the runtime config.
        history: States entered, in order.
        preserved_staging: Staging directory kept for manual recovery.
        error: Error message on failure.
        exception: The exception that stopped the run.
    """

    success: bool = False
    state: RestoreState = RestoreState.START
    failed_state: RestoreState | None = None
    snapshot: Snapshot | None = None
    bundle: SecretBundle | None = None
    history: list[RestoreState] = field(default_factory=lambda: [RestoreState.START])
    preserved_staging: Path | None = None
    error: str | None = None
    exception: BaseException | None = None


class RestoreOrchestrator:
    """
    Drives a restore of the latest snapshot into Live State.

    All collaborators and secrets are passed in; nothing is read from
    process-wide state.

    Usage:
        orchestrator = RestoreOrchestrator(
            settings, repository, secret_manager, service,
            credentials=credentials, repository_password=password,
        )
        result = orchestrator.run()
        if not result.success and result.preserved_staging:
            result = orchestrator.resume(result.preserved_staging)
    """

    def __init__(
        self,
        settings: Settings,
        repository: ResticRepository,
        secret_manager: SecretManager,
        service: ComposeService,
        credentials: RepositoryCredentials,
        repository_password: str,
        staging_parent: Path | None = None,
    ) -> None:
        """
        Args:
            settings: Loaded settings (data dir, env file, swap mode).
            repository: Repository to restore from.
            secret_manager: Recovers secrets and writes the runtime config.
            service: Stack to stop before the swap.
            credentials: Repository credentials for the new runtime config.
            repository_password: Repository password for the new runtime config.
            staging_parent: Where staging directories are created. Defaults to
                the parent of the data directory.
        """
        self.settings = settings
        self.repository = repository
        self.secret_manager = secret_manager
        self.service = service
        self.credentials = credentials
        self.repository_password = repository_password
        self.data_dir = Path(settings.data_dir)
        self.env_file = Path(settings.env_file)
        self.database_file = settings.capture.database_file
        self.staging_parent = staging_parent if staging_parent is not None else self.data_dir.parent

    def run(self) -> RestoreResult:
        """
        Restore the latest snapshot.

        Returns:
            RestoreResult; on failure ``failed_state`` names the failing state
            and ``preserved_staging`` is set when manual recovery is needed.
        """
        result = RestoreResult()
        staging: Path | None = None
        preserve = False

        try:
            self._enter(result, RestoreState.LOCATE_SNAPSHOT)
            snapshot = self.locate_snapshot()
            result.snapshot = snapshot

            self._enter(result, RestoreState.STAGE)
            staging = make_staging_dir(prefix="vaultkeeper-restore-", parent=self.staging_parent)
            payload = self.stage(snapshot, staging)

            self._enter(result, RestoreState.VALIDATE_INTEGRITY)
            self.validate_integrity(payload)

            self._enter(result, RestoreState.SWAP_LIVE_STATE)
            preserve = True
            self.swap_live_state(payload)

            self._enter(result, RestoreState.RECOVER_SECRETS)
            result.bundle = self.recover_secrets(payload)

            preserve = False
            self._enter(result, RestoreState.DONE)
            result.success = True

        except (VaultkeeperError, OSError) as e:
            self._fail(result, e, staging if preserve else None)

        finally:
            if staging is not None and not preserve:
                remove_staging_dir(staging)

        return result

    def resume(self, staging_dir: Path) -> RestoreResult:
        """
        Re-run SWAP_LIVE_STATE and RECOVER_SECRETS from a preserved staging dir.

        The staged database is validated again and the whole swap is redone,
        replacing whatever a failed swap left in Live State or beside it.

        Returns:
            RestoreResult. The staging directory is removed only on success.
        """
        result = RestoreResult()
        staging = Path(staging_dir)

        try:
            if not staging.is_dir():
                raise ConfigurationError(f"Staging directory not found: {staging}")

            payload = locate_payload_root(staging, self.database_file)

            self._enter(result, RestoreState.VALIDATE_INTEGRITY)
            self.validate_integrity(payload)

            self._enter(result, RestoreState.SWAP_LIVE_STATE)
            self.swap_live_state(payload)

            self._enter(result, RestoreState.RECOVER_SECRETS)
            result.bundle = self.recover_secrets(payload)

            self._enter(result, RestoreState.DONE)
            result.success = True

        except (VaultkeeperError, OSError) as e:
            self._fail(result, e, staging)

        if result.success:
            remove_staging_dir(staging)
        return result

    def locate_snapshot(self) -> Snapshot:
        """
        Raises:
            NoSnapshotAvailableError: If the repository is empty.
        """
        snapshot = self.repository.latest()
        logger.info("Using snapshot %s from %s", snapshot.short_id, snapshot.time.isoformat())
        return snapshot

    def stage(self, snapshot: Snapshot, staging: Path) -> Path | None:
        """
        Restore a snapshot into an empty staging directory.

        Returns:
            The payload root, or None if the snapshot holds no database.
        """
        self.repository.restore(snapshot.id, staging)
        return locate_payload_root(staging, self.database_file)

    def validate_integrity(self, payload: Path | None) -> None:
        """
        Raises:
            CaptureInconsistentError: If the staged database is missing or
                fails the engine's integrity check.
        """
        if payload is None:
            raise CaptureInconsistentError(
                f"Snapshot contains no {self.database_file}; refusing to restore"
            )
        require_integrity(payload / self.database_file)
        logger.info("Staged database passed integrity check")

    def swap_live_state(self, payload: Path) -> None:
        """
        Replace Live State with the staged payload.

        Raises:
            RestoreError: If the service cannot be stopped or files cannot be
                copied. The staging directory is left in place.
        """
        self.service.stop()
        try:
            if self.settings.restore.atomic_swap:
                self._swap_by_rename(payload)
            else:
                self._swap_in_place(payload)
        except OSError as e:
            raise RestoreError(f"Swapping Live State failed: {e}", staging_dir=str(payload)) from e
        logger.info("Live State replaced at %s", self.data_dir)

    def recover_secrets(self, payload: Path) -> SecretBundle:
        """
        Recover the database key and write the runtime config.

        Returns:
            The bundle that was written.
        """
        bundle = self.secret_manager.recover(payload, self.credentials, self.repository_password)
        self.secret_manager.write_runtime_config(
            bundle,
            self.env_file,
            data_dir=str(self.data_dir),
            stack_dir=self.settings.stack_dir,
            extras=self._existing_extras(),
        )
        return bundle

    def _swap_in_place(self, payload: Path) -> None:
        """Stop-delete-copy. Not crash safe; see module docstring."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for child in list(self.data_dir.iterdir()):
            _remove(child)
        self._copy_payload(payload, self.data_dir)

    def _swap_by_rename(self, payload: Path) -> None:
        """
        Assemble the new data dir beside the live one and rename it in.

        Leftovers of an interrupted swap are discarded first; the staged
        payload is the source of truth for both.
        """
        new_dir = self.data_dir.with_name(self.data_dir.name + ".restore-new")
        old_dir = self.data_dir.with_name(self.data_dir.name + ".restore-old")
        for leftover in (new_dir, old_dir):
            if leftover.exists():
                _remove(leftover)

        new_dir.mkdir(parents=True)
        if self.data_dir.exists():
            shutil.copymode(self.data_dir, new_dir)
        self._copy_payload(payload, new_dir)

        if self.data_dir.exists():
            os.rename(self.data_dir, old_dir)
        os.rename(new_dir, self.data_dir)
        if old_dir.exists():
            _remove(old_dir)

    def _copy_payload(self, payload: Path, destination: Path) -> None:
        for entry in sorted(payload.iterdir()):
            if entry.name in SECRET_RECORD_NAMES:
                continue
            _copy_entry(entry, destination / entry.name)

    def _existing_extras(self) -> dict[str, str]:
        """Unmanaged keys of the current runtime config, if readable."""
        if not self.env_file.exists():
            return {}
        try:
            return load_runtime_config(self.env_file).extras
        except ConfigurationError as e:
            logger.warning("Existing runtime config is unreadable and will be replaced: %s", e)
            return {}

    def _enter(self, result: RestoreResult, state: RestoreState) -> None:
        result.state = state
        result.history.append(state)
        logger.info("Restore: %s", state.value)

    def _fail(self, result: RestoreResult, error: BaseException, staging: Path | None) -> None:
        result.failed_state = result.state
        result.state = RestoreState.FAILED
        result.history.append(RestoreState.FAILED)
        result.error = str(error)
        result.exception = error
        if staging is not None:
            result.preserved_staging = Path(staging)
            result.error = (
                f"{error} (staged copy kept at {staging}; "
                f"re-run with: vaultkeeper restore --resume-from {staging})"
            )
        logger.error("Restore failed in %s: %s", result.failed_state.value, result.error)


def _copy_entry(source: Path, destination: Path) -> None:
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, destination, symlinks=True)
    else:
        shutil.copy2(source, destination, follow_symlinks=False)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
