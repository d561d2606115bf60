"""Tests for the Secret Material Manager."""

import base64
import json
import shutil
import stat
import tempfile
import unittest
from pathlib import Path

from vaultkeeper.config.runtime import (
    DB_ENCRYPTION_KEY,
    R2_ACCESS_KEY,
    R2_BUCKET,
    R2_ENDPOINT,
    R2_SECRET_KEY,
    RESTIC_PASSWORD,
    RESTIC_REPOSITORY,
    load_runtime_config,
)
from vaultkeeper.config.secret_material import (
    LEGACY_SECRET_RECORD_FILE,
    MAX_PROMPT_ATTEMPTS,
    PROVENANCE_KEY,
    SALT_LENGTH,
    SECRET_RECORD_FILE,
    RepositoryCredentials,
    SecretBundle,
    SecretManager,
    SecretProvenance,
    generate_secret,
    validate_key,
)
from vaultkeeper.errors import ConfigurationError, SecretRecoveryError

# Low iteration count keeps record tests fast
TEST_ITERATIONS = 1_000


def make_credentials() -> RepositoryCredentials:
    return RepositoryCredentials(
        access_key="AKIDEXAMPLE",
        secret_key="r2-secret",
        endpoint="https://acct.r2.cloudflarestorage.com",
        bucket="vw-backups",
    )


class ScriptedPrompt:
    """Prompt that returns queued answers and counts calls."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, message: str) -> str:
        self.calls += 1
        return self.answers.pop(0) if self.answers else ""


class TestGenerateSecret(unittest.TestCase):
    """Tests for key generation."""

    def test_key_uniqueness(self) -> None:
        """Test 10,000 generated keys are all distinct."""
        keys = {generate_secret() for _ in range(10_000)}

        self.assertEqual(len(keys), 10_000)

    def test_key_decodes_to_32_bytes(self) -> None:
        """Test keys are standard base64 of 32 bytes."""
        for _ in range(100):
            key = generate_secret()
            self.assertEqual(len(key), 44)
            self.assertEqual(len(base64.b64decode(key, validate=True)), 32)

    def test_generate_bundle(self) -> None:
        """Test a generated bundle is fresh and tagged GENERATED."""
        manager = SecretManager(iterations=TEST_ITERATIONS)
        credentials = make_credentials()

        first = manager.generate(credentials)
        second = manager.generate(credentials)

        self.assertEqual(first.provenance, SecretProvenance.GENERATED)
        self.assertIs(first.repository_credentials, credentials)
        self.assertNotEqual(first.db_encryption_key, second.db_encryption_key)
        self.assertNotEqual(first.repository_password, second.repository_password)
        self.assertNotEqual(first.db_encryption_key, first.repository_password)


class TestValidation(unittest.TestCase):
    """Tests for key and bundle validation."""

    def test_validate_key_rejects_empty(self) -> None:
        """Test an empty key is rejected."""
        with self.assertRaises(ConfigurationError):
            validate_key("")

    def test_validate_key_rejects_non_base64(self) -> None:
        """Test non-base64 input is rejected."""
        with self.assertRaises(ConfigurationError):
            validate_key("not base64 at all!!")

    def test_validate_key_rejects_short(self) -> None:
        """Test keys under 32 bytes are rejected."""
        with self.assertRaises(ConfigurationError):
            validate_key(base64.b64encode(b"x" * 16).decode())

    def test_bundle_rejects_empty_password(self) -> None:
        """Test a bundle without a repository password is invalid."""
        bundle = SecretBundle(
            db_encryption_key=generate_secret(),
            repository_credentials=make_credentials(),
            repository_password="",
            provenance=SecretProvenance.GENERATED,
        )

        with self.assertRaises(ConfigurationError):
            bundle.validate()

    def test_bundle_rejects_missing_credentials(self) -> None:
        """Test a bundle with an empty bucket is invalid."""
        bundle = SecretBundle(
            db_encryption_key=generate_secret(),
            repository_credentials=RepositoryCredentials("ak", "sk", "https://e", ""),
            repository_password="pw",
            provenance=SecretProvenance.GENERATED,
        )

        with self.assertRaises(ConfigurationError):
            bundle.validate()

    def test_repr_hides_secrets(self) -> None:
        """Test secret values never appear in repr."""
        bundle = SecretManager().generate(make_credentials())

        text = repr(bundle)

        self.assertNotIn(bundle.db_encryption_key, text)
        self.assertNotIn(bundle.repository_password, text)
        self.assertNotIn("r2-secret", text)

    def test_credentials_from_environ(self) -> None:
        """Test credentials are read from R2_* variables."""
        credentials = RepositoryCredentials.from_environ({
            R2_ACCESS_KEY: "ak",
            R2_SECRET_KEY: "sk",
            R2_ENDPOINT: "https://e",
            R2_BUCKET: "b",
        })

        self.assertEqual(credentials.address, "s3:https://e/b")

    def test_credentials_from_environ_missing(self) -> None:
        """Test missing variables are named in the error."""
        with self.assertRaises(ConfigurationError) as ctx:
            RepositoryCredentials.from_environ({R2_ACCESS_KEY: "ak"})

        self.assertIn("R2_SECRET_KEY", str(ctx.exception))
        self.assertIn("R2_BUCKET", str(ctx.exception))


class TestSecretRecord(unittest.TestCase):
    """Tests for the encrypted secret record inside snapshots."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.payload = Path(self.temp_dir)
        self.manager = SecretManager(iterations=TEST_ITERATIONS)
        self.credentials = make_credentials()
        self.bundle = self.manager.generate(self.credentials)

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_round_trip(self) -> None:
        """Test a written record is recovered with RECOVERED provenance."""
        self.manager.write_secret_record(self.bundle, self.payload)

        recovered = self.manager.recover_from_payload(
            self.payload, self.credentials, self.bundle.repository_password
        )

        self.assertIsNotNone(recovered)
        self.assertEqual(recovered.db_encryption_key, self.bundle.db_encryption_key)
        self.assertEqual(recovered.provenance, SecretProvenance.RECOVERED)

    def test_record_is_encrypted(self) -> None:
        """Test the key is not stored in clear form."""
        path = self.manager.write_secret_record(self.bundle, self.payload)

        raw = path.read_bytes()

        self.assertNotIn(self.bundle.db_encryption_key.encode(), raw)
        self.assertNotIn(DB_ENCRYPTION_KEY.encode(), raw)
        self.assertGreater(len(raw), SALT_LENGTH)
        self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)

    def test_absent_record_returns_none(self) -> None:
        """Test a payload without a record yields None."""
        result = self.manager.recover_from_payload(self.payload, self.credentials, "pw")

        self.assertIsNone(result)

    def test_wrong_password(self) -> None:
        """Test a record that cannot be decrypted is an error, not None."""
        self.manager.write_secret_record(self.bundle, self.payload)

        with self.assertRaises(SecretRecoveryError):
            self.manager.recover_from_payload(self.payload, self.credentials, "wrong-password")

    def test_truncated_record(self) -> None:
        """Test a truncated record is rejected."""
        (self.payload / SECRET_RECORD_FILE).write_bytes(b"short")

        with self.assertRaises(SecretRecoveryError):
            self.manager.recover_from_payload(self.payload, self.credentials, "pw")

    def test_legacy_clear_record(self) -> None:
        """Test the clear-text record from older installs is still read."""
        key = generate_secret()
        (self.payload / LEGACY_SECRET_RECORD_FILE).write_text(json.dumps({DB_ENCRYPTION_KEY: key}))

        recovered = self.manager.recover_from_payload(self.payload, self.credentials, "pw")

        self.assertEqual(recovered.db_encryption_key, key)

    def test_legacy_record_without_key(self) -> None:
        """Test a record with no usable key is an error."""
        (self.payload / LEGACY_SECRET_RECORD_FILE).write_text(json.dumps({"other": "x"}))

        with self.assertRaises(SecretRecoveryError):
            self.manager.recover_from_payload(self.payload, self.credentials, "pw")


class TestPromptOperator(unittest.TestCase):
    """Tests for the operator prompt fallback."""

    def test_prompted_key(self) -> None:
        """Test a typed key produces a PROMPTED bundle."""
        key = generate_secret()
        prompt = ScriptedPrompt(key)
        manager = SecretManager(prompt=prompt)

        bundle = manager.prompt_operator(make_credentials(), "pw")

        self.assertEqual(bundle.db_encryption_key, key)
        self.assertEqual(bundle.provenance, SecretProvenance.PROMPTED)

    def test_empty_input_is_asked_again(self) -> None:
        """Test empty answers are re-asked, never defaulted."""
        key = generate_secret()
        prompt = ScriptedPrompt("", "   ", key)
        manager = SecretManager(prompt=prompt)

        bundle = manager.prompt_operator(make_credentials(), "pw")

        self.assertEqual(bundle.db_encryption_key, key)
        self.assertEqual(prompt.calls, 3)

    def test_gives_up_after_max_attempts(self) -> None:
        """Test repeated empty input raises SecretRecoveryError."""
        prompt = ScriptedPrompt()
        manager = SecretManager(prompt=prompt)

        with self.assertRaises(SecretRecoveryError):
            manager.prompt_operator(make_credentials(), "pw")

        self.assertEqual(prompt.calls, MAX_PROMPT_ATTEMPTS)

    def test_recover_prefers_payload(self) -> None:
        """Test recover() does not prompt when the payload has a record."""
        temp_dir = tempfile.mkdtemp()
        try:
            prompt = ScriptedPrompt()
            manager = SecretManager(prompt=prompt, iterations=TEST_ITERATIONS)
            bundle = manager.generate(make_credentials())
            manager.write_secret_record(bundle, Path(temp_dir))

            recovered = manager.recover(Path(temp_dir), make_credentials(), bundle.repository_password)

            self.assertEqual(recovered.provenance, SecretProvenance.RECOVERED)
            self.assertEqual(prompt.calls, 0)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def test_repository_password_prompt(self) -> None:
        """Test the repository password prompt."""
        manager = SecretManager(prompt=ScriptedPrompt("", "s3cret"))

        self.assertEqual(manager.prompt_repository_password(), "s3cret")


class TestRuntimeConfigWriter(unittest.TestCase):
    """Tests for writing and reloading the runtime config."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.env_file = Path(self.temp_dir) / ".env"
        self.manager = SecretManager(iterations=TEST_ITERATIONS)
        self.bundle = self.manager.generate(make_credentials())

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_write_runtime_config(self) -> None:
        """Test the artifact holds the whole bundle, owner-only."""
        self.manager.write_runtime_config(
            self.bundle, self.env_file, data_dir="/srv/vw/vw-data", stack_dir="/srv/vw"
        )

        self.assertEqual(stat.S_IMODE(self.env_file.stat().st_mode), 0o600)
        config = load_runtime_config(self.env_file)
        config.validate()
        self.assertEqual(config.get(DB_ENCRYPTION_KEY), self.bundle.db_encryption_key)
        self.assertEqual(config.get(RESTIC_PASSWORD), self.bundle.repository_password)
        self.assertEqual(config.get(RESTIC_REPOSITORY), "s3:https://acct.r2.cloudflarestorage.com/vw-backups")
        self.assertEqual(config.get(PROVENANCE_KEY), "generated")

    def test_extras_preserved(self) -> None:
        """Test unmanaged keys are carried over."""
        self.manager.write_runtime_config(
            self.bundle,
            self.env_file,
            data_dir="/d",
            stack_dir="/s",
            extras={"DOMAIN": "https://vault.example.com"},
        )

        self.assertEqual(load_runtime_config(self.env_file).get("DOMAIN"), "https://vault.example.com")

    def test_load_bundle_round_trip(self) -> None:
        """Test load_bundle rebuilds the written bundle."""
        self.manager.write_runtime_config(self.bundle, self.env_file, data_dir="/d", stack_dir="/s")

        loaded = self.manager.load_bundle(load_runtime_config(self.env_file))

        self.assertEqual(loaded, self.bundle)

    def test_load_bundle_defaults_provenance(self) -> None:
        """Test artifacts without a provenance key load as GENERATED."""
        self.env_file.write_text(
            f"{DB_ENCRYPTION_KEY}={generate_secret()}\n"
            f"{R2_BUCKET}=b\n{R2_ENDPOINT}=https://e\n{R2_ACCESS_KEY}=ak\n{R2_SECRET_KEY}=sk\n"
            f"{RESTIC_PASSWORD}=pw\n"
        )

        loaded = self.manager.load_bundle(load_runtime_config(self.env_file))

        self.assertEqual(loaded.provenance, SecretProvenance.GENERATED)

    def test_invalid_bundle_never_written(self) -> None:
        """Test a partial bundle is refused before touching disk."""
        bundle = SecretBundle(
            db_encryption_key="",
            repository_credentials=make_credentials(),
            repository_password="pw",
            provenance=SecretProvenance.PROMPTED,
        )

        with self.assertRaises(ConfigurationError):
            self.manager.write_runtime_config(bundle, self.env_file, data_dir="/d", stack_dir="/s")

        self.assertFalse(self.env_file.exists())


if __name__ == "__main__":
    unittest.main()
