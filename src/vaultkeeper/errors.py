"""
Error taxonomy for Vaultkeeper.

Every failure raised by a component derives from VaultkeeperError so the
backup and restore pipelines can stop at the first failed stage and report
it. The classes map onto operator actions:

    ConfigurationError        fix the settings or runtime config, no retry
    RepositoryUnreachableError network/auth problem, safe to retry later
    RepositoryCorruptError    repository damage, needs an operator
    SnapshotNotFoundError     asked for a snapshot id that does not exist
    NoSnapshotAvailableError  the repository holds no snapshots at all
    CaptureInconsistentError  a database copy failed its integrity check
    SecretRecoveryError       no usable database-encryption key
    RestoreError              Live State swap failed, manual recovery needed
"""


class VaultkeeperError(Exception):
    """Base exception for all Vaultkeeper errors."""

    pass


class ConfigurationError(VaultkeeperError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


class RepositoryError(VaultkeeperError):
    """Base exception for snapshot repository failures."""

    pass


class RepositoryUnreachableError(RepositoryError):
    """Raised when the repository cannot be reached or authenticated against."""

    pass


class RepositoryCorruptError(RepositoryError):
    """Raised when the repository or its output is damaged."""

    pass


class RepositoryNotFoundError(RepositoryError):
    """Raised when no repository exists at the configured address."""

    pass


class SnapshotNotFoundError(RepositoryError):
    """Raised when a requested snapshot does not exist."""

    pass


class NoSnapshotAvailableError(RepositoryError):
    """Raised when the repository holds no snapshots to restore."""

    pass


class CaptureInconsistentError(VaultkeeperError):
    """Raised when a database copy is missing or fails its integrity check."""

    pass


class SecretRecoveryError(VaultkeeperError):
    """Raised when no usable database-encryption key can be obtained."""

    pass


class RestoreError(VaultkeeperError):
    """Raised when Live State cannot be replaced with the staged payload."""

    def __init__(self, message: str, staging_dir: str | None = None) -> None:
        super().__init__(message)
        self.staging_dir = staging_dir


class LockHeldError(VaultkeeperError):
    """Raised when another backup or restore holds the operation lock."""

    pass
