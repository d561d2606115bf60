"""
Configuration management for Vaultkeeper.

This module handles loading, validating, and saving configuration settings,
the runtime-config artifact read by the service, and the Secret Bundle.
"""

from vaultkeeper.config.runtime import (
    RuntimeConfig,
    load_runtime_config,
    repository_address,
)
from vaultkeeper.config.secret_material import (
    RepositoryCredentials,
    SecretBundle,
    SecretManager,
    SecretProvenance,
)
from vaultkeeper.config.settings import (
    Settings,
    load_config,
    save_config,
)
from vaultkeeper.errors import ConfigurationError

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
    # Runtime config
    "RuntimeConfig",
    "load_runtime_config",
    "repository_address",
    # Secrets
    "SecretManager",
    "SecretBundle",
    "SecretProvenance",
    "RepositoryCredentials",
]
