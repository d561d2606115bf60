"""
Backup and restore for Vaultkeeper.

Backups capture Live State consistently, push it to the snapshot repository
and apply the retention policy. Restores bring the latest snapshot back into
Live State and recover the secret material the service needs.

Usage:
    from vaultkeeper.backup import BackupManager, RestoreOrchestrator

    # Back up
    result = BackupManager(settings, repository, bundle=bundle).run_backup()

    # Restore the latest snapshot
    result = RestoreOrchestrator(
        settings, repository, secret_manager, service,
        credentials=credentials, repository_password=password,
    ).run()
"""

from vaultkeeper.backup.capture import (
    CaptureCoordinator,
    CaptureResult,
    integrity_check,
    staging_area,
)
from vaultkeeper.backup.manager import BackupManager, BackupResult
from vaultkeeper.backup.restore import RestoreOrchestrator, RestoreResult, RestoreState
from vaultkeeper.backup.retention import RetentionPolicy, decide_prune

__all__ = [
    "BackupManager",
    "BackupResult",
    "CaptureCoordinator",
    "CaptureResult",
    "integrity_check",
    "staging_area",
    "RestoreOrchestrator",
    "RestoreResult",
    "RestoreState",
    "RetentionPolicy",
    "decide_prune",
]
