"""
Secret material management for Vaultkeeper.

The Secret Bundle is everything the service and the backup job need to run:
the database-encryption key, the object-storage credentials for the
repository, and the repository password.

Security Design:
    - Generated keys are 256-bit values from the secrets module, base64 encoded
    - A bundle is produced by exactly one provenance per run: generated on
      install, recovered from a snapshot payload, or typed by the operator
    - The runtime-config artifact is the only clear-text copy on disk and is
      created owner-only (0600) before any byte is written
    - The copy stored inside snapshots is a Fernet token keyed by PBKDF2 over
      the repository password (600,000 iterations, random 256-bit salt)

Threat Model:
    - Protects against: reading the secret record out of a restored snapshot
      without the repository password, world-readable runtime config
    - Does NOT protect against: root on the host, memory inspection of the
      running process, or a leaked repository password
"""

from __future__ import annotations

import base64
import binascii
import getpass
import json
import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vaultkeeper.config import runtime
from vaultkeeper.config.runtime import RuntimeConfig, write_secure_file
from vaultkeeper.errors import ConfigurationError, SecretRecoveryError

logger = logging.getLogger(__name__)

# Security parameters - do not reduce these values
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
KEY_BYTES = 32  # 256 bits

SECRET_RECORD_FILE = ".vaultkeeper-secrets.enc"
# Clear-text record written by the earlier shell tooling
LEGACY_SECRET_RECORD_FILE = "vaultwarden-secrets.json"
SECRET_RECORD_VERSION = 1

MAX_PROMPT_ATTEMPTS = 3

# Extra runtime-config key recording how the bundle was produced
PROVENANCE_KEY = "VAULTKEEPER_SECRET_PROVENANCE"


class SecretProvenance(Enum):
    """Where a Secret Bundle came from. Exactly one applies per bundle."""

    GENERATED = "generated"
    RECOVERED = "recovered"
    PROMPTED = "prompted"


@dataclass(frozen=True)
class RepositoryCredentials:
    """Object-storage credentials and coordinates for the repository."""

    access_key: str
    secret_key: str = field(repr=False)
    endpoint: str = ""
    bucket: str = ""

    @property
    def address(self) -> str:
        return runtime.repository_address(self.endpoint, self.bucket)

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If any value is empty.
        """
        for name in ("access_key", "secret_key", "endpoint", "bucket"):
            if not getattr(self, name):
                raise ConfigurationError(f"Repository credential '{name}' is empty")

    @classmethod
    def from_runtime_config(cls, config: RuntimeConfig) -> RepositoryCredentials:
        return cls(
            access_key=config.require(runtime.R2_ACCESS_KEY),
            secret_key=config.require(runtime.R2_SECRET_KEY),
            endpoint=config.require(runtime.R2_ENDPOINT),
            bucket=config.require(runtime.R2_BUCKET),
        )

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> RepositoryCredentials:
        """
        Read credentials from R2_* environment variables.

        Raises:
            ConfigurationError: If any variable is unset or empty.
        """
        keys = (runtime.R2_ACCESS_KEY, runtime.R2_SECRET_KEY, runtime.R2_ENDPOINT, runtime.R2_BUCKET)
        missing = [key for key in keys if not environ.get(key)]
        if missing:
            raise ConfigurationError(
                f"Environment variables not set: {', '.join(missing)}"
            )
        return cls(
            access_key=environ[runtime.R2_ACCESS_KEY],
            secret_key=environ[runtime.R2_SECRET_KEY],
            endpoint=environ[runtime.R2_ENDPOINT],
            bucket=environ[runtime.R2_BUCKET],
        )


@dataclass(frozen=True)
class SecretBundle:
    """
    The secret material needed to run and decrypt the service.

    Attributes:
        db_encryption_key: Base64 database-encryption key.
        repository_credentials: Object-storage credentials.
        repository_password: Password of the encrypted repository.
        provenance: How this bundle was produced.
    """

    db_encryption_key: str = field(repr=False)
    repository_credentials: RepositoryCredentials
    repository_password: str = field(repr=False)
    provenance: SecretProvenance

    def validate(self) -> None:
        """
        Reject empty or malformed material.

        Raises:
            ConfigurationError: If any part of the bundle is unusable.
        """
        if not isinstance(self.provenance, SecretProvenance):
            raise ConfigurationError(f"Unknown secret provenance: {self.provenance!r}")
        validate_key(self.db_encryption_key, "database-encryption key")
        if not self.repository_password:
            raise ConfigurationError("Repository password is empty")
        self.repository_credentials.validate()


def generate_secret(num_bytes: int = KEY_BYTES) -> str:
    """Return a fresh random value, standard base64 encoded."""
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def validate_key(value: str | None, label: str = "key") -> bytes:
    """
    Decode a base64 key and check its length.

    Returns:
        The decoded key bytes.

    Raises:
        ConfigurationError: If the value is empty, not base64, or too short.
    """
    if not value:
        raise ConfigurationError(f"The {label} is empty")
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"The {label} is not valid base64") from e
    if len(raw) < KEY_BYTES:
        raise ConfigurationError(
            f"The {label} decodes to {len(raw)} bytes, expected at least {KEY_BYTES}"
        )
    return raw


class SecretManager:
    """
    Produces, recovers and persists the Secret Bundle.

    The manager is the only writer of the runtime-config artifact.

    Usage:
        manager = SecretManager()

        # First-time install
        bundle = manager.generate(credentials)
        manager.write_runtime_config(bundle, env_file, data_dir=..., stack_dir=...)

        # Restore
        bundle = manager.recover_from_payload(staging, credentials, password)
        if bundle is None:
            bundle = manager.prompt_operator(credentials, password)
    """

    def __init__(
        self,
        prompt: Callable[[str], str] | None = None,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        """
        Args:
            prompt: Hidden-input prompt function. Defaults to getpass.getpass.
            iterations: PBKDF2 iterations for the secret record key.
        """
        self._prompt = prompt or getpass.getpass
        self._iterations = iterations

    def generate(self, credentials: RepositoryCredentials) -> SecretBundle:
        """
        Generate a fresh bundle for a first-time install.

        Args:
            credentials: Operator-issued object-storage credentials.

        Returns:
            A GENERATED bundle with new database key and repository password.
        """
        bundle = SecretBundle(
            db_encryption_key=generate_secret(),
            repository_credentials=credentials,
            repository_password=generate_secret(),
            provenance=SecretProvenance.GENERATED,
        )
        bundle.validate()
        return bundle

    def recover_from_payload(
        self,
        payload_dir: Path,
        credentials: RepositoryCredentials,
        repository_password: str,
    ) -> SecretBundle | None:
        """
        Recover the database key from a staged restore payload.

        Args:
            payload_dir: Root of the staged snapshot payload.
            credentials: Repository credentials used for the restore.
            repository_password: Password used to open the repository.

        Returns:
            A RECOVERED bundle, or None when the payload holds no secret record.

        Raises:
            SecretRecoveryError: If a record exists but cannot be read.
        """
        payload_dir = Path(payload_dir)
        record_path = payload_dir / SECRET_RECORD_FILE
        legacy_path = payload_dir / LEGACY_SECRET_RECORD_FILE

        if record_path.exists():
            record = self._decrypt_record(record_path.read_bytes(), repository_password)
        elif legacy_path.exists():
            logger.warning("Using clear-text secret record %s", legacy_path.name)
            record = self._parse_record(legacy_path.read_bytes())
        else:
            logger.info("No secret record in snapshot payload")
            return None

        bundle = SecretBundle(
            db_encryption_key=str(record.get(runtime.DB_ENCRYPTION_KEY) or ""),
            repository_credentials=credentials,
            repository_password=repository_password,
            provenance=SecretProvenance.RECOVERED,
        )
        try:
            bundle.validate()
        except ConfigurationError as e:
            raise SecretRecoveryError(f"Secret record in snapshot is unusable: {e}") from e
        return bundle

    def prompt_operator(
        self,
        credentials: RepositoryCredentials,
        repository_password: str,
    ) -> SecretBundle:
        """
        Ask the operator for the database-encryption key.

        Raises:
            SecretRecoveryError: If no valid key is entered.
        """
        for attempt in range(1, MAX_PROMPT_ATTEMPTS + 1):
            value = self._prompt(
                "No key in backup; enter DB_ENCRYPTION_KEY: "
            ).strip()
            try:
                validate_key(value, "database-encryption key")
            except ConfigurationError as e:
                logger.warning("Rejected key (attempt %d/%d): %s", attempt, MAX_PROMPT_ATTEMPTS, e)
                continue
            bundle = SecretBundle(
                db_encryption_key=value,
                repository_credentials=credentials,
                repository_password=repository_password,
                provenance=SecretProvenance.PROMPTED,
            )
            bundle.validate()
            return bundle

        raise SecretRecoveryError(
            "No usable DB_ENCRYPTION_KEY supplied; refusing to continue without it"
        )

    def prompt_repository_password(self) -> str:
        """
        Ask the operator for the repository password.

        Raises:
            SecretRecoveryError: If nothing is entered.
        """
        for _ in range(MAX_PROMPT_ATTEMPTS):
            value = self._prompt("Enter RESTIC_PASSWORD: ")
            if value:
                return value
        raise SecretRecoveryError("No repository password supplied")

    def recover(
        self,
        payload_dir: Path,
        credentials: RepositoryCredentials,
        repository_password: str,
    ) -> SecretBundle:
        """Recover from the payload, falling back to the operator."""
        bundle = self.recover_from_payload(payload_dir, credentials, repository_password)
        if bundle is None:
            bundle = self.prompt_operator(credentials, repository_password)
        return bundle

    def load_bundle(self, config: RuntimeConfig) -> SecretBundle:
        """
        Rebuild the bundle stored in a runtime-config artifact.

        Raises:
            ConfigurationError: If the artifact is incomplete or malformed.
        """
        raw_provenance = config.get(PROVENANCE_KEY, SecretProvenance.GENERATED.value)
        try:
            provenance = SecretProvenance(raw_provenance)
        except ValueError as e:
            raise ConfigurationError(f"Unknown {PROVENANCE_KEY}: {raw_provenance!r}") from e

        bundle = SecretBundle(
            db_encryption_key=config.require(runtime.DB_ENCRYPTION_KEY),
            repository_credentials=RepositoryCredentials.from_runtime_config(config),
            repository_password=config.require(runtime.RESTIC_PASSWORD),
            provenance=provenance,
        )
        bundle.validate()
        return bundle

    def write_runtime_config(
        self,
        bundle: SecretBundle,
        path: Path,
        data_dir: str,
        stack_dir: str,
        extras: Mapping[str, str] | None = None,
    ) -> Path:
        """
        Write the runtime-config artifact holding the bundle.

        Args:
            bundle: Validated secret bundle.
            path: Artifact path.
            data_dir: Live State data directory.
            stack_dir: Service stack directory.
            extras: Unmanaged keys to carry over (DOMAIN, LOG_LEVEL, ...).

        Raises:
            ConfigurationError: If the bundle is incomplete.
        """
        bundle.validate()
        credentials = bundle.repository_credentials

        values: dict[str, str] = dict(extras or {})
        values.update(
            {
                runtime.DB_ENCRYPTION_KEY: bundle.db_encryption_key,
                runtime.R2_BUCKET: credentials.bucket,
                runtime.R2_ENDPOINT: credentials.endpoint,
                runtime.R2_ACCESS_KEY: credentials.access_key,
                runtime.R2_SECRET_KEY: credentials.secret_key,
                runtime.RESTIC_PASSWORD: bundle.repository_password,
                runtime.RESTIC_REPOSITORY: credentials.address,
                runtime.DATA_DIR: str(data_dir),
                runtime.STACK_DIR: str(stack_dir),
                PROVENANCE_KEY: bundle.provenance.value,
            }
        )

        path = Path(path)
        write_secure_file(path, runtime.render_runtime_config(values).encode())
        logger.info("Runtime config written to %s (%s secrets)", path, bundle.provenance.value)
        return path

    def write_secret_record(self, bundle: SecretBundle, target_dir: Path) -> Path:
        """
        Store the database key inside a staged copy, encrypted.

        Returns:
            Path of the written record.
        """
        bundle.validate()
        record = {
            "version": SECRET_RECORD_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            runtime.DB_ENCRYPTION_KEY: bundle.db_encryption_key,
        }
        salt = secrets.token_bytes(SALT_LENGTH)
        fernet = self._derive_key(bundle.repository_password, salt)
        token = fernet.encrypt(json.dumps(record).encode())

        record_path = Path(target_dir) / SECRET_RECORD_FILE
        write_secure_file(record_path, salt + token)
        return record_path

    def _decrypt_record(self, data: bytes, repository_password: str) -> dict:
        """Decrypt a salt-prefixed Fernet secret record."""
        if len(data) <= SALT_LENGTH:
            raise SecretRecoveryError("Secret record in snapshot is truncated")
        salt, token = data[:SALT_LENGTH], data[SALT_LENGTH:]
        fernet = self._derive_key(repository_password, salt)
        try:
            decrypted = fernet.decrypt(token)
        except InvalidToken as e:
            raise SecretRecoveryError(
                "Cannot decrypt secret record in snapshot (wrong repository password?)"
            ) from e
        return self._parse_record(decrypted)

    def _parse_record(self, data: bytes) -> dict:
        try:
            record = json.loads(data.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SecretRecoveryError(f"Secret record in snapshot is not valid JSON: {e}") from e
        if not isinstance(record, dict):
            raise SecretRecoveryError("Secret record in snapshot is not an object")
        return record

    def _derive_key(self, passphrase: str, salt: bytes) -> Fernet:
        """Derive a Fernet key from the repository password and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte keys
            salt=salt,
            iterations=self._iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
        return Fernet(key)
