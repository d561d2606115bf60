"""
Command-line interface for Vaultkeeper.

Provides commands for backup, restore, first-time secret generation,
repository inspection and the backup schedule.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from vaultkeeper import __version__
from vaultkeeper.config import runtime
from vaultkeeper.config.runtime import RuntimeConfig, load_runtime_config
from vaultkeeper.config.secret_material import RepositoryCredentials, SecretBundle, SecretManager
from vaultkeeper.config.settings import Settings, load_config
from vaultkeeper.errors import (
    ConfigurationError,
    RepositoryUnreachableError,
    SecretRecoveryError,
    VaultkeeperError,
)
from vaultkeeper.lock import LOCK_FILE_NAME, OperationLock
from vaultkeeper.repository.restic import ResticRepository

logger = logging.getLogger(__name__)

# Status lines for the run log files. The console gets them through output(),
# so this logger does not propagate and is not silenced by --quiet.
status_logger = logging.getLogger("vaultkeeper.status")
status_logger.propagate = False
status_logger.setLevel(logging.INFO)
status_logger.addHandler(logging.NullHandler())

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_UNREACHABLE = 3
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Global verbosity settings (set during main() based on args)
_quiet_mode = False


def set_output_mode(quiet: bool = False) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
    """
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def timestamp() -> str:
    return datetime.now().strftime(LOG_DATEFMT)


def stamped(message: str) -> str:
    """Prefix a message with the local time, as in the run logs."""
    return f"[{timestamp()}] {message}"


def report(message: str, force: bool = False) -> None:
    """Print a stamped status line and append it to the run log."""
    output(stamped(message), force=force)
    status_logger.info(message)


def report_error(message: str) -> None:
    output_error(stamped(message))
    status_logger.error(message)


def exit_code_for(error: BaseException | None) -> int:
    """Map an error to the process exit code."""
    if error is None:
        return EXIT_OK
    if isinstance(error, (ConfigurationError, SecretRecoveryError)):
        return EXIT_CONFIG
    if isinstance(error, RepositoryUnreachableError):
        return EXIT_UNREACHABLE
    return EXIT_FAILURE


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Vaultkeeper CLI."""
    parser = argparse.ArgumentParser(
        prog="vaultkeeper",
        description="Consistent backup and restore for a self-hosted Vaultwarden",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"vaultkeeper {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: /etc/vaultkeeper/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Capture Live State and push a new snapshot",
        description="Capture the database consistently, push it to the repository "
        "and apply the retention policy.",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore the latest snapshot into Live State",
        description="Restore the latest snapshot, validate it, replace Live State "
        "and recover the database-encryption key.",
    )
    restore_parser.add_argument(
        "--resume-from",
        metavar="PATH",
        help="Resume from a staging directory kept by a failed restore",
    )
    restore_parser.add_argument(
        "--no-start",
        action="store_true",
        help="Do not start the service after restoring",
    )
    restore_parser.add_argument(
        "--confirm",
        action="store_true",
        help="Ask for confirmation before replacing Live State",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # init-secrets command
    init_parser = subparsers.add_parser(
        "init-secrets",
        help="Generate fresh secrets for a first-time install",
        description="Generate the database-encryption key and repository password "
        "and write the runtime config. R2_* variables must be set.",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing runtime config",
    )
    init_parser.set_defaults(func=cmd_init_secrets)

    # snapshots command
    snapshots_parser = subparsers.add_parser(
        "snapshots",
        help="List snapshots in the repository",
    )
    snapshots_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    snapshots_parser.set_defaults(func=cmd_snapshots)

    # prune command
    prune_parser = subparsers.add_parser(
        "prune",
        help="Apply the retention policy without a new backup",
    )
    prune_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be removed without removing it",
    )
    prune_parser.set_defaults(func=cmd_prune)

    # check command
    check_parser = subparsers.add_parser(
        "check",
        help="Verify repository integrity",
    )
    check_parser.set_defaults(func=cmd_check)

    # schedule command
    schedule_parser = subparsers.add_parser(
        "schedule",
        help="Manage the backup cron entry",
    )
    schedule_parser.add_argument(
        "action",
        nargs="?",
        choices=["install", "uninstall", "status"],
        default="status",
        help="Schedule action (default: status)",
    )
    schedule_parser.add_argument(
        "--interval",
        choices=["hourly", "daily", "weekly"],
        default="daily",
        help="Backup interval for install (default: daily)",
    )
    schedule_parser.add_argument(
        "--cron-help",
        action="store_true",
        help="Show cron schedule syntax help",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose > 0:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def add_log_file(path: str | None) -> logging.Handler | None:
    """
    Append log records to a run log file.

    Status lines always reach the file, even in quiet mode; other records
    follow the console verbosity.

    A log file that cannot be opened is reported and skipped; the run
    still logs to the console.
    """
    if not path:
        return None
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")
    except OSError as e:
        output_error(f"Warning: cannot write log file {path}: {e}")
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logging.getLogger().addHandler(handler)
    status_logger.addHandler(handler)
    return handler


def remove_log_file(handler: logging.Handler | None) -> None:
    if handler is None:
        return
    logging.getLogger().removeHandler(handler)
    status_logger.removeHandler(handler)
    handler.close()


def load_settings(args: argparse.Namespace) -> Settings:
    """Load settings; the configured log level applies unless -v or -q was given."""
    config_path = Path(args.config) if getattr(args, "config", None) else None
    settings = load_config(config_path)
    if not getattr(args, "verbose", 0) and not getattr(args, "quiet", False):
        logging.getLogger().setLevel(settings.log_level)
    return settings


def load_bundle(settings: Settings, secret_manager: SecretManager) -> SecretBundle:
    """
    Load the Secret Bundle from the runtime config.

    Raises:
        ConfigurationError: If the runtime config is missing or incomplete.
    """
    env_file = Path(settings.env_file)
    if not env_file.exists():
        raise ConfigurationError(
            f"Runtime config not found: {env_file}. Run 'vaultkeeper init-secrets' first."
        )
    return secret_manager.load_bundle(load_runtime_config(env_file))


def open_repository(settings: Settings, secret_manager: SecretManager | None = None) -> ResticRepository:
    bundle = load_bundle(settings, secret_manager or SecretManager())
    return ResticRepository.from_bundle(bundle, settings.repository)


def operation_lock(settings: Settings) -> OperationLock:
    return OperationLock(Path(settings.stack_dir) / LOCK_FILE_NAME)


def cmd_backup(args: argparse.Namespace) -> int:
    """Capture Live State and push a new snapshot."""
    from vaultkeeper.backup import BackupManager
    from vaultkeeper.scheduler import Scheduler

    settings = load_settings(args)
    handler = add_log_file(settings.backup_log_file)
    try:
        secret_manager = SecretManager()
        bundle = load_bundle(settings, secret_manager)
        repository = ResticRepository.from_bundle(bundle, settings.repository)
        manager = BackupManager(settings, repository, secret_manager=secret_manager, bundle=bundle)

        report("Starting backup...")
        with operation_lock(settings):
            result = manager.run_backup()

        scheduler = Scheduler(config_path=Path(args.config) if args.config else None)
        scheduler.record_run(result.success, snapshot_id=result.snapshot_id, error=result.error)

        if not result.success:
            if result.snapshot_id:
                report_error(f"Snapshot {result.snapshot_id[:8]} pushed, but pruning failed")
            report_error(f"Backup failed: {result.error}")
            return exit_code_for(result.exception)

        if result.repository_initialized:
            report("Initialized new repository")
        if result.capture:
            report(
                f"Captured {result.capture.files_copied} files "
                f"({result.capture.size_bytes:,} bytes)"
            )
        if result.pruned:
            report(f"Pruned {len(result.pruned)} snapshot(s), kept {len(result.kept)}")
        report(f"Backup complete: snapshot {result.snapshot_id}", force=True)
        return EXIT_OK
    except VaultkeeperError as e:
        status_logger.error("Backup failed: %s", e)
        raise
    finally:
        remove_log_file(handler)


def resolve_restore_credentials(
    settings: Settings,
    secret_manager: SecretManager,
    environ: dict[str, str] | None = None,
) -> tuple[RepositoryCredentials, str]:
    """
    Find repository credentials and password for a restore.

    The existing runtime config wins; otherwise R2_* environment variables are
    used. The password comes from the runtime config, RESTIC_PASSWORD, or a
    prompt.

    Raises:
        ConfigurationError: If no credentials are available.
        SecretRecoveryError: If no password is entered.
    """
    environ = dict(os.environ) if environ is None else environ
    existing: RuntimeConfig | None = None
    env_file = Path(settings.env_file)
    if env_file.exists():
        try:
            existing = load_runtime_config(env_file)
        except ConfigurationError as e:
            logger.warning("Ignoring unreadable runtime config: %s", e)

    credentials = None
    if existing is not None:
        try:
            credentials = RepositoryCredentials.from_runtime_config(existing)
        except ConfigurationError:
            credentials = None
    if credentials is None:
        credentials = RepositoryCredentials.from_environ(environ)
    credentials.validate()

    password = (existing.get(runtime.RESTIC_PASSWORD) if existing else None) or environ.get(
        runtime.RESTIC_PASSWORD
    )
    if not password:
        password = secret_manager.prompt_repository_password()
    return credentials, password


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore the latest snapshot into Live State."""
    from vaultkeeper.backup import RestoreOrchestrator
    from vaultkeeper.service import ComposeService

    settings = load_settings(args)
    handler = add_log_file(settings.restore.log_file)
    try:
        report("Vaultkeeper restore")
        output(f"  Data directory: {settings.data_dir}")
        output(f"  Runtime config: {settings.env_file}")
        if args.resume_from:
            output(f"  Resuming from:  {args.resume_from}")
        output()

        if args.confirm:
            output("WARNING: This will replace the current Vaultwarden data.")
            response = input("Proceed with restore? [y/N]: ").strip().lower()
            if response not in ("y", "yes"):
                report("Restore cancelled.")
                return EXIT_OK

        secret_manager = SecretManager()
        credentials, password = resolve_restore_credentials(settings, secret_manager)
        repository = ResticRepository(
            address=credentials.address,
            password=password,
            access_key=credentials.access_key,
            secret_key=credentials.secret_key,
            host=settings.repository.host,
            tag=settings.repository.tag,
            binary=settings.repository.binary,
            timeout=settings.repository.timeout,
        )
        service = ComposeService(
            Path(settings.service.compose_file),
            docker_binary=settings.service.docker_binary,
        )
        orchestrator = RestoreOrchestrator(
            settings,
            repository,
            secret_manager,
            service,
            credentials=credentials,
            repository_password=password,
        )

        with operation_lock(settings):
            if args.resume_from:
                result = orchestrator.resume(Path(args.resume_from))
            else:
                result = orchestrator.run()

        if not result.success:
            failed = result.failed_state.value if result.failed_state else "unknown"
            report_error(f"Restore failed during {failed}: {result.error}")
            return exit_code_for(result.exception)

        if result.snapshot:
            report(f"Restored snapshot {result.snapshot.short_id}")
        if result.bundle:
            report(f"Secrets {result.bundle.provenance.value}; runtime config written")

        if args.no_start:
            report("Service not started (--no-start)")
        elif service.is_configured():
            service.start()
            report("Service started")
        else:
            report(f"No compose file at {settings.service.compose_file}; start the service manually")

        report("Restore complete", force=True)
        return EXIT_OK
    except VaultkeeperError as e:
        status_logger.error("Restore failed: %s", e)
        raise
    finally:
        remove_log_file(handler)


def cmd_init_secrets(args: argparse.Namespace) -> int:
    """Generate fresh secrets for a first-time install."""
    settings = load_settings(args)
    env_file = Path(settings.env_file)

    extras: dict[str, str] = {}
    if env_file.exists():
        if not args.force:
            output_error(f"Error: Runtime config already exists: {env_file}")
            output("Use --force to replace it. Existing secrets will be lost.")
            return EXIT_FAILURE
        extras = load_runtime_config(env_file).extras

    secret_manager = SecretManager()
    credentials = RepositoryCredentials.from_environ(os.environ)
    bundle = secret_manager.generate(credentials)
    secret_manager.write_runtime_config(
        bundle,
        env_file,
        data_dir=settings.data_dir,
        stack_dir=settings.stack_dir,
        extras=extras,
    )

    output(stamped(f"Runtime config written to {env_file} (mode 0600)"))
    output(f"  Repository: {credentials.address}")
    output()
    output("Keep a copy of DB_ENCRYPTION_KEY and RESTIC_PASSWORD somewhere safe.")
    output("Without RESTIC_PASSWORD no backup can ever be restored.")
    return EXIT_OK


def cmd_snapshots(args: argparse.Namespace) -> int:
    """List snapshots in the repository."""
    settings = load_settings(args)
    snapshots = open_repository(settings).list()

    if args.json:
        output(json.dumps([s.to_dict() for s in snapshots], indent=2), force=True)
        return EXIT_OK

    if not snapshots:
        output("No snapshots.")
        return EXIT_OK

    output(f"{'ID':<10} {'Time':<26} {'Host':<16} Tags")
    output("-" * 70)
    for snapshot in snapshots:
        output(
            f"{snapshot.short_id:<10} "
            f"{snapshot.time.strftime('%Y-%m-%d %H:%M:%S %z'):<26} "
            f"{snapshot.hostname:<16} "
            f"{','.join(snapshot.tags)}"
        )
    output()
    output(f"{len(snapshots)} snapshot(s)")
    return EXIT_OK


def cmd_prune(args: argparse.Namespace) -> int:
    """Apply the retention policy without a new backup."""
    from vaultkeeper.backup import BackupManager

    settings = load_settings(args)
    secret_manager = SecretManager()
    bundle = load_bundle(settings, secret_manager)
    repository = ResticRepository.from_bundle(bundle, settings.repository)
    manager = BackupManager(settings, repository, secret_manager=secret_manager, bundle=bundle)

    with operation_lock(settings):
        kept, removed = manager.apply_retention(dry_run=args.dry_run)

    verb = "Would remove" if args.dry_run else "Removed"
    output(stamped(f"{verb} {len(removed)} snapshot(s), keeping {len(kept)}"))
    for snapshot_id in removed:
        output(f"  - {snapshot_id[:8]}")
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Verify repository integrity."""
    settings = load_settings(args)
    repository = open_repository(settings)
    output(stamped("Checking repository..."))
    repository.check()
    output(stamped("Repository check passed"))
    return EXIT_OK


def cmd_schedule(args: argparse.Namespace) -> int:
    """Manage the backup cron entry."""
    from vaultkeeper.scheduler import Scheduler, SchedulerError, get_cron_help

    if args.cron_help:
        output(get_cron_help())
        return EXIT_OK

    scheduler = Scheduler(config_path=Path(args.config) if args.config else None)

    try:
        if args.action == "install":
            status = scheduler.install_schedule(args.interval)
            output(f"Scheduled {status.interval} backups: {status.command}")
        elif args.action == "uninstall":
            scheduler.uninstall_schedule()
            output("Backup schedule removed.")
            return EXIT_OK
        else:
            status = scheduler.get_schedule_status()
    except SchedulerError as e:
        output_error(f"Error: {e}")
        return EXIT_FAILURE

    output("Backup Schedule")
    output("=" * 50)
    output(f"  Enabled:   {'yes' if status.enabled else 'no'}")
    output(f"  Interval:  {status.interval}")
    if status.next_run:
        output(f"  Next run:  {status.next_run.strftime('%Y-%m-%d %H:%M UTC')}")
    if status.last_run:
        result = "success" if status.last_run_success else f"failed ({status.last_run_error})"
        output(f"  Last run:  {status.last_run.strftime('%Y-%m-%d %H:%M UTC')} - {result}")
    if status.last_snapshot_id:
        output(f"  Last snapshot: {status.last_snapshot_id[:8]}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Vaultkeeper CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_OK)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output_error("\nOperation cancelled.")
        sys.exit(EXIT_INTERRUPTED)
    except (ConfigurationError, SecretRecoveryError) as e:
        output_error(stamped(f"Configuration error: {e}"))
        sys.exit(EXIT_CONFIG)
    except RepositoryUnreachableError as e:
        output_error(stamped(f"Repository unreachable: {e}"))
        sys.exit(EXIT_UNREACHABLE)
    except VaultkeeperError as e:
        output_error(stamped(f"Error: {e}"))
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(stamped(f"Error: {e}"))
        logger.exception("Command failed")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
