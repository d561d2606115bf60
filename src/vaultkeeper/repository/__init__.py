"""
Snapshot repository access for Vaultkeeper.

Usage:
    from vaultkeeper.repository import ResticRepository

    repo = ResticRepository.from_bundle(bundle, settings.repository)
    repo.ensure_initialized()
    snapshot_id = repo.push(staged_dir)
"""

from vaultkeeper.repository.restic import (
    ResticRepository,
    Snapshot,
    classify_error,
    locate_payload_root,
    parse_restic_time,
)

__all__ = [
    "ResticRepository",
    "Snapshot",
    "classify_error",
    "locate_payload_root",
    "parse_restic_time",
]
