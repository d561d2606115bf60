"""
Cron integration for scheduled backups.

Installs a crontab entry that runs ``vaultkeeper backup --quiet`` and keeps
a small state file with the last run, so ``vaultkeeper schedule status`` can
report whether the schedule is healthy.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from vaultkeeper.config.settings import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)

CRON_MARKER = "# vaultkeeper scheduled backup"
CRONTAB_TIMEOUT = 10


class ScheduleInterval(Enum):
    """Supported schedule intervals."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def cron_schedule(self) -> str:
        """
        Cron expression for this interval.

        Returns standard cron format: minute hour day month weekday
        """
        if self == ScheduleInterval.HOURLY:
            return "0 * * * *"
        elif self == ScheduleInterval.WEEKLY:
            return "0 3 * * 0"  # Sundays at 3:00 AM
        return "0 3 * * *"  # Daily at 3:00 AM

    @classmethod
    def from_string(cls, value: str) -> ScheduleInterval:
        """Parse interval from string."""
        value = value.lower().strip()
        for interval in cls:
            if interval.value == value:
                return interval
        raise ValueError(f"Invalid interval: {value}. Must be hourly, daily, or weekly.")


@dataclass
class ScheduleStatus:
    """
    Current status of the backup schedule.

    Attributes:
        enabled: Whether a cron entry is installed.
        interval: The configured backup interval.
        command: The command cron runs.
        next_run: Datetime of the next scheduled backup.
        last_run: Datetime of the last completed backup.
        last_run_success: Whether the last backup succeeded.
        last_snapshot_id: Snapshot created by the last successful backup.
        last_run_error: Error message from the last failed run, if any.
    """

    enabled: bool = False
    interval: str = "daily"
    command: str | None = None
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_run_success: bool | None = None
    last_snapshot_id: str | None = None
    last_run_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary."""
        return {
            "enabled": self.enabled,
            "interval": self.interval,
            "command": self.command,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_run_success": self.last_run_success,
            "last_snapshot_id": self.last_snapshot_id,
            "last_run_error": self.last_run_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleStatus:
        """Create status from dictionary."""
        return cls(
            enabled=data.get("enabled", False),
            interval=data.get("interval", "daily"),
            command=data.get("command"),
            next_run=datetime.fromisoformat(data["next_run"]) if data.get("next_run") else None,
            last_run=datetime.fromisoformat(data["last_run"]) if data.get("last_run") else None,
            last_run_success=data.get("last_run_success"),
            last_snapshot_id=data.get("last_snapshot_id"),
            last_run_error=data.get("last_run_error"),
        )


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    pass


class CronNotAvailableError(SchedulerError):
    """Raised when system cron is not available."""

    pass


class Scheduler:
    """
    Manages the cron entry for scheduled backups.

    Usage:
        scheduler = Scheduler()
        scheduler.install_schedule(ScheduleInterval.DAILY)
        status = scheduler.get_schedule_status()
        scheduler.uninstall_schedule()
    """

    def __init__(self, config_dir: Path | None = None, config_path: Path | None = None) -> None:
        """
        Args:
            config_dir: Base configuration directory. Defaults to /etc/vaultkeeper
            config_path: Config file the scheduled command should use, if not
                the default.
        """
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self._scheduler_dir = self._config_dir / "scheduler"
        self._state_file = self._scheduler_dir / "state.json"
        self._config_path = config_path

    def install_schedule(self, interval: ScheduleInterval | str = ScheduleInterval.DAILY) -> ScheduleStatus:
        """
        Install (or replace) the backup cron entry.

        Raises:
            CronNotAvailableError: If crontab cannot be read or written.
        """
        if isinstance(interval, str):
            interval = ScheduleInterval.from_string(interval)

        command = self.backup_command()
        cron_line = f"{interval.cron_schedule} {command}"

        lines = _without_entry(self._read_crontab())
        lines.append(CRON_MARKER)
        lines.append(cron_line)
        self._write_crontab(lines)
        logger.info("Installed cron entry: %s", cron_line)

        status = self._load_state()
        status.enabled = True
        status.interval = interval.value
        status.command = command
        status.next_run = calculate_next_run(interval)
        self._save_state(status)
        return status

    def uninstall_schedule(self) -> ScheduleStatus:
        """
        Remove the backup cron entry.

        Raises:
            CronNotAvailableError: If crontab cannot be rewritten.
        """
        current = self._read_crontab()
        lines = _without_entry(current)
        if len(lines) != len(current):
            if lines:
                self._write_crontab(lines)
            else:
                self._remove_crontab()
            logger.info("Removed cron entries")

        status = self._load_state()
        status.enabled = False
        status.next_run = None
        self._save_state(status)
        return status

    def get_schedule_status(self) -> ScheduleStatus:
        """
        Get current schedule status.

        The enabled flag reflects the live crontab, not just the state file.
        """
        status = self._load_state()
        try:
            entry = _find_entry(self._read_crontab())
            status.enabled = entry is not None and not entry.startswith("#")
        except CronNotAvailableError as e:
            logger.warning("Could not read crontab: %s", e)
        if status.enabled:
            status.next_run = calculate_next_run(ScheduleInterval.from_string(status.interval))
        else:
            status.next_run = None
        return status

    def record_run(self, success: bool, snapshot_id: str | None = None, error: str | None = None) -> None:
        """Record the outcome of a backup run."""
        status = self._load_state()
        status.last_run = datetime.now(UTC)
        status.last_run_success = success
        status.last_run_error = error
        if success:
            status.last_snapshot_id = snapshot_id
        self._save_state(status)

    def backup_command(self) -> str:
        """Command line cron runs for a scheduled backup."""
        command = self._get_vaultkeeper_command()
        if self._config_path is not None:
            command += f" --config {self._config_path}"
        return f"{command} backup --quiet"

    def _get_vaultkeeper_command(self) -> str:
        path = shutil.which("vaultkeeper")
        if path:
            return path
        return f"{sys.executable} -m vaultkeeper"

    def _read_crontab(self) -> list[str]:
        try:
            result = subprocess.run(
                ["crontab", "-l"],
                capture_output=True,
                text=True,
                timeout=CRONTAB_TIMEOUT,
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise CronNotAvailableError(f"Cannot read crontab: {e}") from e
        if result.returncode != 0:
            # "no crontab for <user>"
            return []
        return result.stdout.strip().split("\n") if result.stdout.strip() else []

    def _write_crontab(self, lines: list[str]) -> None:
        try:
            result = subprocess.run(
                ["crontab", "-"],
                input="\n".join(lines) + "\n",
                capture_output=True,
                text=True,
                timeout=CRONTAB_TIMEOUT,
            )
        except (subprocess.SubprocessError, OSError) as e:
            raise CronNotAvailableError(f"Cannot write crontab: {e}") from e
        if result.returncode != 0:
            raise CronNotAvailableError(f"Failed to install crontab: {result.stderr.strip()}")

    def _remove_crontab(self) -> None:
        try:
            subprocess.run(["crontab", "-r"], capture_output=True, timeout=CRONTAB_TIMEOUT)
        except (subprocess.SubprocessError, OSError) as e:
            raise CronNotAvailableError(f"Cannot remove crontab: {e}") from e

    def _load_state(self) -> ScheduleStatus:
        """Load scheduler state from disk."""
        if not self._state_file.exists():
            return ScheduleStatus()

        try:
            with open(self._state_file) as f:
                data = json.load(f)
            return ScheduleStatus.from_dict(data)
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.warning("Could not load scheduler state: %s", e)
            return ScheduleStatus()

    def _save_state(self, status: ScheduleStatus) -> None:
        """Save scheduler state to disk."""
        try:
            self._scheduler_dir.mkdir(parents=True, exist_ok=True)
            with open(self._state_file, "w") as f:
                json.dump(status.to_dict(), f, indent=2)
        except OSError as e:
            logger.error("Could not save scheduler state: %s", e)


def _find_entry(lines: list[str]) -> str | None:
    """The cron line installed under our marker, if any."""
    for marker, entry in zip(lines, lines[1:]):
        if marker == CRON_MARKER:
            return entry
    return None


def _without_entry(lines: list[str]) -> list[str]:
    """Drop our marker comment and the cron line right after it."""
    kept = []
    skip = False
    for line in lines:
        if skip:
            skip = False
        elif line == CRON_MARKER:
            skip = True
        else:
            kept.append(line)
    return kept


def calculate_next_run(interval: ScheduleInterval, now: datetime | None = None) -> datetime:
    """Next run time for an interval, in UTC."""
    now = now or datetime.now(UTC)

    if interval == ScheduleInterval.HOURLY:
        next_run = now.replace(minute=0, second=0, microsecond=0)
        next_run += timedelta(hours=1)
    elif interval == ScheduleInterval.WEEKLY:
        days_until_sunday = (6 - now.weekday()) % 7
        if days_until_sunday == 0 and now.hour >= 3:
            days_until_sunday = 7
        next_run = now.replace(hour=3, minute=0, second=0, microsecond=0)
        next_run += timedelta(days=days_until_sunday)
    else:
        next_run = now.replace(hour=3, minute=0, second=0, microsecond=0)
        if now.hour >= 3:
            next_run += timedelta(days=1)

    return next_run


def get_cron_help() -> str:
    """
    Get help text explaining the backup schedule.

    Returns:
        Multi-line string with cron syntax explanation.
    """
    return """
Cron Schedule Syntax
====================

    minute  hour  day-of-month  month  day-of-week

Vaultkeeper Schedule Mappings:
    hourly  -> "0 * * * *"     (Every hour at minute 0)
    daily   -> "0 3 * * *"     (Daily at 3:00 AM, the default)
    weekly  -> "0 3 * * 0"     (Sundays at 3:00 AM)

Backups run with --quiet; the completion line is still printed and
status lines are appended to the backup log file.

To view current crontab:
    crontab -l
"""
