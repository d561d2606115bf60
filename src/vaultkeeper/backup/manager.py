"""
Backup pipeline for Vaultkeeper.

One run captures Live State into a private staging directory, pushes it to
the repository as a new snapshot, then applies the retention policy.
A capture that fails its consistency checks is never pushed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from vaultkeeper.backup.capture import CaptureCoordinator, CaptureResult, staging_area
from vaultkeeper.backup.retention import RetentionPolicy, decide_prune
from vaultkeeper.config.secret_material import SecretBundle, SecretManager
from vaultkeeper.config.settings import Settings
from vaultkeeper.errors import ConfigurationError, VaultkeeperError
from vaultkeeper.repository.restic import ResticRepository

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Result of a backup run."""

    success: bool
    snapshot_id: str | None = None
    capture: CaptureResult | None = None
    kept: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    repository_initialized: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    exception: BaseException | None = None


class BackupManager:
    """
    Runs the capture -> push -> prune pipeline.

    The secret bundle and settings are passed in explicitly; the manager
    holds no process-wide state.

    Usage:
        manager = BackupManager(settings, repository, secret_manager, bundle)
        result = manager.run_backup()
    """

    def __init__(
        self,
        settings: Settings,
        repository: ResticRepository,
        secret_manager: SecretManager | None = None,
        bundle: SecretBundle | None = None,
        staging_parent: Path | None = None,
    ) -> None:
        """
        Args:
            settings: Loaded settings.
            repository: Repository client to push to.
            secret_manager: Writes the encrypted secret record.
            bundle: Current secret bundle; required when secrets are captured.
            staging_parent: Directory for staging areas (system temp if None).
        """
        self.settings = settings
        self.repository = repository
        self.secret_manager = secret_manager or SecretManager()
        self.bundle = bundle
        self.staging_parent = staging_parent
        self.policy = RetentionPolicy.from_config(settings.retention)
        self.coordinator = CaptureCoordinator(
            data_dir=Path(settings.data_dir),
            database_file=settings.capture.database_file,
            exclude=settings.capture.exclude,
        )

    def run_backup(self) -> BackupResult:
        """
        Capture, push and prune.

        Returns:
            BackupResult with success status and run details. A prune failure
            after a successful push is reported as a failure with the new
            snapshot id still set.
        """
        result = BackupResult(success=False, started_at=datetime.now(UTC))

        try:
            if self.settings.capture.include_secrets and self.bundle is None:
                raise ConfigurationError("capture.include_secrets is set but no secret bundle was given")

            result.repository_initialized = self.repository.ensure_initialized()

            with staging_area(prefix="vaultkeeper-backup-", parent=self.staging_parent) as staged:
                result.capture = self.coordinator.capture(staged)
                if self.settings.capture.include_secrets:
                    self.secret_manager.write_secret_record(self.bundle, staged)
                result.snapshot_id = self.repository.push(staged)

            result.kept, result.pruned = self.apply_retention()
            result.success = True

        except (VaultkeeperError, OSError) as e:
            logger.error("Backup failed: %s", e)
            result.error = str(e)
            result.exception = e

        result.completed_at = datetime.now(UTC)
        return result

    def apply_retention(self, dry_run: bool = False) -> tuple[list[str], list[str]]:
        """
        Apply the retention policy to the repository.

        Args:
            dry_run: Only compute the decision, delete nothing.

        Returns:
            Tuple of (kept_ids, removed_ids).
        """
        snapshots = self.repository.list()
        keep = decide_prune(snapshots, self.policy)
        kept = [s.id for s in snapshots if s.id in keep]

        if dry_run:
            removed = [s.id for s in snapshots if s.id not in keep]
        else:
            removed = self.repository.prune(keep)

        logger.info("Retention: keeping %d, removing %d snapshot(s)", len(kept), len(removed))
        return kept, removed
