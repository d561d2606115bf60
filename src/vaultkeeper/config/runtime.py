"""
Runtime-config artifact for the Vaultwarden stack.

The artifact is a key=value file (``/srv/vaultwarden/.env`` by default) read
by the service container and by the backup job. It is the only place the
Secret Bundle is persisted in clear form, so it is always created with
owner-only permissions.

File format:
    KEY=VALUE            one assignment per line, split on the first '='
    # comment            ignored, as are blank lines

Keys the service or Vaultkeeper do not know about (DOMAIN, LOG_LEVEL, ...)
are preserved when the artifact is rewritten.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path

from vaultkeeper.errors import ConfigurationError

DB_ENCRYPTION_KEY = "DB_ENCRYPTION_KEY"
R2_BUCKET = "R2_BUCKET"
R2_ENDPOINT = "R2_ENDPOINT"
R2_ACCESS_KEY = "R2_ACCESS_KEY"
R2_SECRET_KEY = "R2_SECRET_KEY"
RESTIC_PASSWORD = "RESTIC_PASSWORD"
RESTIC_REPOSITORY = "RESTIC_REPOSITORY"
DATA_DIR = "DATA_DIR"
STACK_DIR = "STACK_DIR"

# Canonical order when rendering; extra keys follow in their original order
KNOWN_KEYS = (
    DB_ENCRYPTION_KEY,
    R2_BUCKET,
    R2_ENDPOINT,
    R2_ACCESS_KEY,
    R2_SECRET_KEY,
    RESTIC_PASSWORD,
    RESTIC_REPOSITORY,
    DATA_DIR,
    STACK_DIR,
)

REQUIRED_KEYS = (
    DB_ENCRYPTION_KEY,
    R2_BUCKET,
    R2_ENDPOINT,
    R2_ACCESS_KEY,
    R2_SECRET_KEY,
    RESTIC_PASSWORD,
    RESTIC_REPOSITORY,
    DATA_DIR,
)

SECURE_FILE_MODE = 0o600


def repository_address(endpoint: str, bucket: str) -> str:
    """
    Build the repository address for S3-compatible storage.

    Returns:
        Address in the form ``s3:<endpoint>/<bucket>``.
    """
    endpoint = endpoint.strip().rstrip("/")
    bucket = bucket.strip().strip("/")
    if not endpoint or not bucket:
        raise ConfigurationError("Repository endpoint and bucket are both required")
    return f"s3:{endpoint}/{bucket}"


@dataclass
class RuntimeConfig:
    """
    Parsed runtime-config artifact.

    Attributes:
        values: Key/value pairs in file order.
        path: File the values were read from, if any.
    """

    values: dict[str, str] = field(default_factory=dict)
    path: Path | None = None

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self.values.get(key)
        if value is None or value == "":
            return default
        return value

    def require(self, key: str) -> str:
        """
        Get a required value.

        Raises:
            ConfigurationError: If the key is missing or empty.
        """
        value = self.get(key)
        if value is None:
            where = f" in {self.path}" if self.path else ""
            raise ConfigurationError(f"Required setting {key} is missing{where}")
        return value

    def validate(self) -> None:
        """Check every required key is present and non-empty."""
        missing = [key for key in REQUIRED_KEYS if self.get(key) is None]
        if missing:
            where = f" in {self.path}" if self.path else ""
            raise ConfigurationError(
                f"Runtime config is missing required settings{where}: {', '.join(missing)}"
            )

    @property
    def extras(self) -> dict[str, str]:
        """Values Vaultkeeper does not manage."""
        return {k: v for k, v in self.values.items() if k not in KNOWN_KEYS}


def parse_runtime_config(text: str) -> dict[str, str]:
    """
    Parse key=value text.

    Raises:
        ConfigurationError: If a non-comment line has no '=' or an invalid key.
    """
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or not key.replace("_", "").isalnum():
            raise ConfigurationError(f"Malformed runtime config line {lineno}: {raw!r}")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key] = value
    return values


def render_runtime_config(values: dict[str, str]) -> str:
    """Render values as key=value text, known keys first."""
    lines = []
    for key in KNOWN_KEYS:
        if key in values:
            lines.append(f"{key}={values[key]}")
    for key, value in values.items():
        if key not in KNOWN_KEYS:
            lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def load_runtime_config(path: Path) -> RuntimeConfig:
    """
    Read the runtime-config artifact.

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Runtime config not found: {path}")
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read runtime config {path}: {e}") from e
    return RuntimeConfig(values=parse_runtime_config(text), path=path)


def write_secure_file(path: Path, data: bytes) -> None:
    """
    Write data to file with owner-only permissions.

    The temporary file is created with mode 0600 by ``os.open`` itself, so
    there is no moment where the content is readable by others, and it is
    renamed over the destination so readers never see a partial file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{secrets.token_hex(6)}.tmp")

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECURE_FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        # umask may have narrowed the mode
        os.chmod(temp_path, SECURE_FILE_MODE)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
