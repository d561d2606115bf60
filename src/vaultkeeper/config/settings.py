"""
Configuration settings management for Vaultkeeper.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from /etc/vaultkeeper/config.yaml by default, with
the path overridable via the VAULTKEEPER_CONFIG environment variable. A
missing file is not an error: the defaults describe the standard
/srv/vaultwarden layout.

Settings only hold non-secret values (paths, repository naming, retention,
service control). Secrets live in the runtime-config artifact, see
vaultkeeper.config.runtime.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from vaultkeeper.errors import ConfigurationError

# Default configuration locations
DEFAULT_CONFIG_DIR = Path("/etc/vaultkeeper")
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STACK_DIR = Path("/srv/vaultwarden")


@dataclass
class RepositoryConfig:
    """Snapshot repository settings."""

    binary: str = "restic"
    host: str = "vaultwarden"
    tag: str = "vaultwarden"
    # Seconds per restic call; None means no deadline
    timeout: int | None = None


@dataclass
class RetentionConfig:
    """Retention policy applied after every backup."""

    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6
    keep_yearly: int = 3


@dataclass
class CaptureConfig:
    """Consistent capture settings."""

    database_file: str = "db.sqlite3"
    exclude: list[str] = field(default_factory=lambda: ["*.tmp", "*.bak"])
    include_secrets: bool = True


@dataclass
class RestoreConfig:
    """Restore settings."""

    atomic_swap: bool = False
    log_file: str = "/var/log/vaultwarden-restore.log"


@dataclass
class ServiceConfig:
    """Dependent service control settings."""

    compose_file: str = str(DEFAULT_STACK_DIR / "docker-compose.yml")
    docker_binary: str = "docker"


@dataclass
class Settings:
    """
    Complete Vaultkeeper configuration settings.

    Attributes:
        stack_dir: Directory holding the service stack (compose file, .env).
        data_dir: Live State data directory used by the service.
        env_file: Path of the runtime-config artifact.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup_log_file: Append-only log for backup runs.
        repository: Snapshot repository settings.
        retention: Retention policy counts.
        capture: Capture settings.
        restore: Restore settings.
        service: Service control settings.
    """

    stack_dir: str = str(DEFAULT_STACK_DIR)
    data_dir: str = str(DEFAULT_STACK_DIR / "vw-data")
    env_file: str = str(DEFAULT_STACK_DIR / ".env")
    log_level: str = "INFO"
    backup_log_file: str = "/var/log/vaultwarden-backup.log"

    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @property
    def database_path(self) -> Path:
        """Path of the live database file."""
        return Path(self.data_dir) / self.capture.database_file


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from VAULTKEEPER_CONFIG environment variable if set,
    otherwise returns the default path (/etc/vaultkeeper/config.yaml).
    """
    env_path = os.environ.get("VAULTKEEPER_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses VAULTKEEPER_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("vaultkeeper", {}) or {}

    if "stack_dir" in general:
        settings.stack_dir = str(general["stack_dir"])
        # Derived paths follow the stack dir unless set explicitly
        settings.data_dir = str(Path(settings.stack_dir) / "vw-data")
        settings.env_file = str(Path(settings.stack_dir) / ".env")
        settings.service.compose_file = str(Path(settings.stack_dir) / "docker-compose.yml")
    if "data_dir" in general:
        settings.data_dir = str(general["data_dir"])
    if "env_file" in general:
        settings.env_file = str(general["env_file"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()
    if "backup_log_file" in general:
        settings.backup_log_file = str(general["backup_log_file"])

    repository = data.get("repository", {}) or {}
    if "binary" in repository:
        settings.repository.binary = str(repository["binary"])
    if "host" in repository:
        settings.repository.host = str(repository["host"])
    if "tag" in repository:
        settings.repository.tag = str(repository["tag"])
    if "timeout" in repository:
        timeout = repository["timeout"]
        settings.repository.timeout = int(timeout) if timeout is not None else None

    retention = data.get("retention", {}) or {}
    for key in ("keep_daily", "keep_weekly", "keep_monthly", "keep_yearly"):
        if key in retention:
            try:
                setattr(settings.retention, key, int(retention[key]))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"retention.{key} must be an integer") from e

    capture = data.get("capture", {}) or {}
    if "database_file" in capture:
        settings.capture.database_file = str(capture["database_file"])
    if "exclude" in capture:
        settings.capture.exclude = [str(p) for p in capture["exclude"] or []]
    if "include_secrets" in capture:
        settings.capture.include_secrets = bool(capture["include_secrets"])

    restore = data.get("restore", {}) or {}
    if "atomic_swap" in restore:
        settings.restore.atomic_swap = bool(restore["atomic_swap"])
    if "log_file" in restore:
        settings.restore.log_file = str(restore["log_file"])

    service = data.get("service", {}) or {}
    if "compose_file" in service:
        settings.service.compose_file = str(service["compose_file"])
    if "docker_binary" in service:
        settings.service.docker_binary = str(service["docker_binary"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "VAULTKEEPER_STACK_DIR": ("stack_dir", str),
        "VAULTKEEPER_DATA_DIR": ("data_dir", str),
        "VAULTKEEPER_ENV_FILE": ("env_file", str),
        "VAULTKEEPER_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "VAULTKEEPER_REPOSITORY_TIMEOUT": ("repository.timeout", int),
        "VAULTKEEPER_KEEP_DAILY": ("retention.keep_daily", int),
        "VAULTKEEPER_KEEP_WEEKLY": ("retention.keep_weekly", int),
        "VAULTKEEPER_KEEP_MONTHLY": ("retention.keep_monthly", int),
        "VAULTKEEPER_KEEP_YEARLY": ("retention.keep_yearly", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    for key in ("keep_daily", "keep_weekly", "keep_monthly", "keep_yearly"):
        if getattr(settings.retention, key) < 0:
            raise ConfigurationError(f"retention.{key} must not be negative")

    if settings.repository.timeout is not None and settings.repository.timeout < 1:
        raise ConfigurationError("repository.timeout must be at least 1 second")

    if not settings.capture.database_file or "/" in settings.capture.database_file:
        raise ConfigurationError(
            f"capture.database_file must be a plain file name: {settings.capture.database_file!r}"
        )

    if not settings.data_dir:
        raise ConfigurationError("data_dir must be set")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "vaultkeeper": {
            "stack_dir": settings.stack_dir,
            "data_dir": settings.data_dir,
            "env_file": settings.env_file,
            "log_level": settings.log_level,
            "backup_log_file": settings.backup_log_file,
        },
        "repository": {
            "binary": settings.repository.binary,
            "host": settings.repository.host,
            "tag": settings.repository.tag,
            "timeout": settings.repository.timeout,
        },
        "retention": {
            "keep_daily": settings.retention.keep_daily,
            "keep_weekly": settings.retention.keep_weekly,
            "keep_monthly": settings.retention.keep_monthly,
            "keep_yearly": settings.retention.keep_yearly,
        },
        "capture": {
            "database_file": settings.capture.database_file,
            "exclude": list(settings.capture.exclude),
            "include_secrets": settings.capture.include_secrets,
        },
        "restore": {
            "atomic_swap": settings.restore.atomic_swap,
            "log_file": settings.restore.log_file,
        },
        "service": {
            "compose_file": settings.service.compose_file,
            "docker_binary": settings.service.docker_binary,
        },
    }
