"""Tests for the restore orchestrator and service control."""

import os
import shutil
import stat
import subprocess
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

from fakes import FakeRepository, create_database, read_rows, tree_digest

from vaultkeeper.backup.restore import RestoreOrchestrator, RestoreState, _copy_entry
from vaultkeeper.config.runtime import DB_ENCRYPTION_KEY, load_runtime_config
from vaultkeeper.config.secret_material import (
    PROVENANCE_KEY,
    SECRET_RECORD_FILE,
    RepositoryCredentials,
    SecretManager,
    SecretProvenance,
    generate_secret,
)
from vaultkeeper.config.settings import Settings
from vaultkeeper.errors import (
    CaptureInconsistentError,
    NoSnapshotAvailableError,
    RestoreError,
    SecretRecoveryError,
)
from vaultkeeper.service import ComposeService

TEST_ITERATIONS = 1_000

FULL_HISTORY = [
    RestoreState.START,
    RestoreState.LOCATE_SNAPSHOT,
    RestoreState.STAGE,
    RestoreState.VALIDATE_INTEGRITY,
    RestoreState.SWAP_LIVE_STATE,
    RestoreState.RECOVER_SECRETS,
    RestoreState.DONE,
]


class ScriptedPrompt:
    """Prompt that returns queued answers."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, message: str) -> str:
        self.calls += 1
        return self.answers.pop(0) if self.answers else ""


class RestoreTestCase(unittest.TestCase):
    """Shared fixture: live data dir, fake repository and a secret bundle."""

    def setUp(self) -> None:
        """Create Live State, a repository and a bundle."""
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.settings = Settings(
            stack_dir=str(self.root / "stack"),
            data_dir=str(self.root / "stack" / "vw-data"),
            env_file=str(self.root / "stack" / ".env"),
        )
        self.data_dir = Path(self.settings.data_dir)
        self.env_file = Path(self.settings.env_file)
        self.staging_parent = self.root / "staging"
        self.staging_parent.mkdir()

        create_database(self.data_dir / "db.sqlite3", rows=3)
        (self.data_dir / "only-in-live.txt").write_text("stale")

        self.repository = FakeRepository(self.root / "repo")
        self.prompt = ScriptedPrompt()
        self.secret_manager = SecretManager(prompt=self.prompt, iterations=TEST_ITERATIONS)
        self.bundle = self.secret_manager.generate(
            RepositoryCredentials("AKID", "r2-secret", "https://r2.example.com", "vw")
        )
        self.service = MagicMock(spec=ComposeService)

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def push_payload(self, name: str, rows: int = 20, with_record: bool = True, time=None) -> str:
        source = self.root / "sources" / name
        create_database(source / "db.sqlite3", rows=rows)
        (source / "attachments").mkdir()
        (source / "attachments" / "a.bin").write_bytes(b"attached")
        if with_record:
            self.secret_manager.write_secret_record(self.bundle, source)
        return self.repository.push(source, time=time)

    def make_orchestrator(self) -> RestoreOrchestrator:
        return RestoreOrchestrator(
            self.settings,
            self.repository,
            self.secret_manager,
            self.service,
            credentials=self.bundle.repository_credentials,
            repository_password=self.bundle.repository_password,
            staging_parent=self.staging_parent,
        )


class TestRestoreRun(RestoreTestCase):
    """Tests for RestoreOrchestrator.run."""

    def test_happy_path(self) -> None:
        """Test a full restore replaces Live State and writes the runtime config."""
        self.push_payload("one")

        result = self.make_orchestrator().run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.state, RestoreState.DONE)
        self.assertEqual(result.history, FULL_HISTORY)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertEqual((self.data_dir / "attachments" / "a.bin").read_bytes(), b"attached")
        self.assertFalse((self.data_dir / "only-in-live.txt").exists())
        self.assertFalse((self.data_dir / SECRET_RECORD_FILE).exists())
        self.service.stop.assert_called_once()
        self.assertEqual(list(self.staging_parent.iterdir()), [])

    def test_runtime_config_written(self) -> None:
        """Test the recovered key lands in an owner-only runtime config."""
        self.push_payload("one")

        result = self.make_orchestrator().run()

        self.assertEqual(result.bundle.provenance, SecretProvenance.RECOVERED)
        self.assertEqual(stat.S_IMODE(self.env_file.stat().st_mode), 0o600)
        config = load_runtime_config(self.env_file)
        self.assertEqual(config.get(DB_ENCRYPTION_KEY), self.bundle.db_encryption_key)
        self.assertEqual(config.get(PROVENANCE_KEY), "recovered")
        self.assertEqual(self.prompt.calls, 0)

    def test_empty_repository(self) -> None:
        """Test nothing is staged or stopped when there is no snapshot."""
        before = tree_digest(self.data_dir)

        result = self.make_orchestrator().run()

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.LOCATE_SNAPSHOT)
        self.assertEqual(result.state, RestoreState.FAILED)
        self.assertIsInstance(result.exception, NoSnapshotAvailableError)
        self.assertEqual(list(self.staging_parent.iterdir()), [])
        self.service.stop.assert_not_called()
        self.assertEqual(tree_digest(self.data_dir), before)
        self.assertIsNone(result.preserved_staging)

    def test_corrupt_snapshot_leaves_live_state(self) -> None:
        """Test a snapshot failing its integrity check never touches Live State."""
        source = self.root / "sources" / "bad"
        source.mkdir(parents=True)
        (source / "db.sqlite3").write_bytes(b"not a database" * 500)
        self.repository.push(source)
        before = tree_digest(self.data_dir)

        result = self.make_orchestrator().run()

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.VALIDATE_INTEGRITY)
        self.assertIsInstance(result.exception, CaptureInconsistentError)
        self.assertEqual(tree_digest(self.data_dir), before)
        self.service.stop.assert_not_called()
        self.assertEqual(list(self.staging_parent.iterdir()), [])

    def test_snapshot_without_database(self) -> None:
        """Test a snapshot with no database is refused."""
        source = self.root / "sources" / "empty"
        source.mkdir(parents=True)
        (source / "config.json").write_text("{}")
        self.repository.push(source)

        result = self.make_orchestrator().run()

        self.assertEqual(result.failed_state, RestoreState.VALIDATE_INTEGRITY)
        self.service.stop.assert_not_called()

    def test_latest_of_three(self) -> None:
        """Test the newest snapshot is the one restored."""
        base = datetime(2024, 6, 1, 3, tzinfo=UTC)
        self.push_payload("first", rows=1, time=base)
        self.push_payload("second", rows=2, time=base + timedelta(days=1))
        latest_id = self.push_payload("third", rows=3, time=base + timedelta(days=2))

        result = self.make_orchestrator().run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.snapshot.id, latest_id)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 3)

    def test_nested_payload(self) -> None:
        """Test a payload restored under its original path is found."""
        self.repository.nest_payload = True
        self.push_payload("nested")

        result = self.make_orchestrator().run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertFalse((self.data_dir / "tmp").exists())

    def test_atomic_swap(self) -> None:
        """Test the rename swap leaves no sibling directories behind."""
        self.settings.restore.atomic_swap = True
        self.push_payload("one")

        result = self.make_orchestrator().run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertFalse((self.data_dir.parent / "vw-data.restore-new").exists())
        self.assertFalse((self.data_dir.parent / "vw-data.restore-old").exists())
        self.assertFalse((self.data_dir / "only-in-live.txt").exists())

    def test_unmanaged_keys_carried_over(self) -> None:
        """Test keys like DOMAIN survive the runtime config rewrite."""
        self.env_file.write_text("DOMAIN=https://vault.example.com\nDB_ENCRYPTION_KEY=old\n")
        self.push_payload("one")

        self.make_orchestrator().run()

        config = load_runtime_config(self.env_file)
        self.assertEqual(config.get("DOMAIN"), "https://vault.example.com")
        self.assertEqual(config.get(DB_ENCRYPTION_KEY), self.bundle.db_encryption_key)

    def test_prompt_fallback(self) -> None:
        """Test a snapshot without a secret record falls back to the operator."""
        operator_key = generate_secret()
        self.prompt.answers = ["not-a-key", operator_key]
        self.push_payload("no-record", with_record=False)

        result = self.make_orchestrator().run()

        self.assertTrue(result.success, result.error)
        self.assertEqual(result.bundle.provenance, SecretProvenance.PROMPTED)
        self.assertEqual(self.prompt.calls, 2)
        self.assertEqual(load_runtime_config(self.env_file).get(DB_ENCRYPTION_KEY), operator_key)

    def test_prompt_exhausted(self) -> None:
        """Test the run fails in RECOVER_SECRETS without a usable key."""
        self.prompt.answers = ["", "short", "also bad"]
        self.push_payload("no-record", with_record=False)

        result = self.make_orchestrator().run()

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.RECOVER_SECRETS)
        self.assertIsInstance(result.exception, SecretRecoveryError)
        self.assertFalse(self.env_file.exists())
        self.assertIsNotNone(result.preserved_staging)

    def test_partial_swap_resumes_without_loss(self) -> None:
        """Test a swap that fails after copying some entries is redone in full."""
        self.push_payload("one")
        orchestrator = self.make_orchestrator()
        copied = []

        def copy_then_fail(source, destination):
            if copied:
                raise OSError("No space left on device")
            copied.append(source.name)
            _copy_entry(source, destination)

        with patch("vaultkeeper.backup.restore._copy_entry", side_effect=copy_then_fail):
            result = orchestrator.run()

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.SWAP_LIVE_STATE)
        self.assertIsInstance(result.exception, RestoreError)
        self.assertEqual(copied, ["attachments"])
        self.assertIn("--resume-from", result.error)
        staging = result.preserved_staging
        self.assertTrue((staging / "attachments" / "a.bin").exists())
        self.assertTrue((staging / "db.sqlite3").exists())

        resumed = orchestrator.resume(staging)

        self.assertTrue(resumed.success, resumed.error)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertEqual((self.data_dir / "attachments" / "a.bin").read_bytes(), b"attached")
        self.assertEqual(resumed.bundle.provenance, SecretProvenance.RECOVERED)
        self.assertFalse(staging.exists())

    def test_atomic_swap_interrupted_before_rename(self) -> None:
        """Test resume replaces Live State when the new dir was never renamed in."""
        self.settings.restore.atomic_swap = True
        self.push_payload("one")
        orchestrator = self.make_orchestrator()
        new_dir = self.data_dir.parent / "vw-data.restore-new"

        with patch("vaultkeeper.backup.restore.os.rename", side_effect=OSError("Device busy")):
            result = orchestrator.run()

        self.assertEqual(result.failed_state, RestoreState.SWAP_LIVE_STATE)
        self.assertTrue(new_dir.is_dir())
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 3)

        resumed = orchestrator.resume(result.preserved_staging)

        self.assertTrue(resumed.success, resumed.error)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertFalse(new_dir.exists())
        self.assertFalse((self.data_dir / "only-in-live.txt").exists())

    def test_atomic_swap_interrupted_between_renames(self) -> None:
        """Test resume finishes when Live State was renamed aside but not replaced."""
        self.settings.restore.atomic_swap = True
        self.push_payload("one")
        orchestrator = self.make_orchestrator()
        renames = []

        def rename_once(source, destination):
            if renames:
                raise OSError("Device busy")
            renames.append(source)
            os.replace(source, destination)

        with patch("vaultkeeper.backup.restore.os.rename", side_effect=rename_once):
            result = orchestrator.run()

        self.assertEqual(result.failed_state, RestoreState.SWAP_LIVE_STATE)
        self.assertFalse(self.data_dir.exists())

        resumed = orchestrator.resume(result.preserved_staging)

        self.assertTrue(resumed.success, resumed.error)
        self.assertEqual(len(read_rows(self.data_dir / "db.sqlite3")), 20)
        self.assertFalse((self.data_dir.parent / "vw-data.restore-new").exists())
        self.assertFalse((self.data_dir.parent / "vw-data.restore-old").exists())

    def test_interrupt_during_stage_cleans_up(self) -> None:
        """Test KeyboardInterrupt while staging removes the staging directory."""
        self.push_payload("one")
        before = tree_digest(self.data_dir)

        with patch.object(self.repository, "restore", side_effect=KeyboardInterrupt):
            with self.assertRaises(KeyboardInterrupt):
                self.make_orchestrator().run()

        self.assertEqual(list(self.staging_parent.iterdir()), [])
        self.assertEqual(tree_digest(self.data_dir), before)

    def test_service_stop_failure(self) -> None:
        """Test a service that will not stop aborts before Live State changes."""
        self.push_payload("one")
        self.service.stop.side_effect = RestoreError("Could not stop service: timeout")
        before = tree_digest(self.data_dir)

        result = self.make_orchestrator().run()

        self.assertEqual(result.failed_state, RestoreState.SWAP_LIVE_STATE)
        self.assertEqual(tree_digest(self.data_dir), before)


class TestResume(RestoreTestCase):
    """Tests for RestoreOrchestrator.resume."""

    def test_staging_without_database(self) -> None:
        """Test resume refuses a staging dir that holds no database."""
        staging = self.staging_parent / "vaultkeeper-restore-x"
        staging.mkdir()
        self.secret_manager.write_secret_record(self.bundle, staging)
        before = tree_digest(self.data_dir)

        result = self.make_orchestrator().resume(staging)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_state, RestoreState.VALIDATE_INTEGRITY)
        self.assertIsInstance(result.exception, CaptureInconsistentError)
        self.service.stop.assert_not_called()
        self.assertEqual(tree_digest(self.data_dir), before)
        self.assertTrue(staging.exists())

    def test_missing_staging(self) -> None:
        """Test resuming from a directory that does not exist fails."""
        result = self.make_orchestrator().resume(self.root / "nowhere")

        self.assertFalse(result.success)
        self.assertIsNotNone(result.error)


class TestComposeService(unittest.TestCase):
    """Tests for ComposeService."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.compose_file = Path(self.temp_dir) / "docker-compose.yml"

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch("vaultkeeper.service.subprocess.run")
    def test_stop_without_stack(self, mock_run) -> None:
        """Test stopping a host with no compose file is a no-op."""
        ComposeService(self.compose_file).stop()

        mock_run.assert_not_called()

    @patch("vaultkeeper.service.subprocess.run")
    def test_stop_runs_compose_down(self, mock_run) -> None:
        """Test stop runs docker compose down."""
        self.compose_file.write_text("services: {}\n")
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")

        ComposeService(self.compose_file).stop()

        cmd = mock_run.call_args.args[0]
        self.assertEqual(cmd[:2], ["docker", "compose"])
        self.assertEqual(cmd[-1], "down")

    @patch("vaultkeeper.service.subprocess.run")
    def test_start_failure(self, mock_run) -> None:
        """Test a failing start raises RestoreError."""
        self.compose_file.write_text("services: {}\n")
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="boom")

        with self.assertRaises(RestoreError):
            ComposeService(self.compose_file).start()

    def test_start_without_stack(self) -> None:
        """Test starting without a compose file raises RestoreError."""
        with self.assertRaises(RestoreError):
            ComposeService(self.compose_file).start()


if __name__ == "__main__":
    unittest.main()
