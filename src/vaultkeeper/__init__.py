"""
Vaultkeeper - consistent backup and restore for a self-hosted Vaultwarden.

Vaultkeeper captures transactionally consistent snapshots of the live SQLite
database and data directory, pushes them to an encrypted restic repository
on S3-compatible storage under a retention policy, and restores the latest
snapshot together with the secret material the service needs to start.

Key Features:
    - Online SQLite backup with an integrity check before anything is pushed
    - Calendar-based retention (daily, weekly, monthly, yearly)
    - Restore state machine that never touches Live State before validation
    - Secret recovery from the snapshot, with an operator prompt as fallback
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from vaultkeeper.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
