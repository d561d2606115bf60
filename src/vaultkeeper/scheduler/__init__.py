"""
Scheduled backups via system cron.

Usage:
    from vaultkeeper.scheduler import Scheduler, ScheduleInterval

    scheduler = Scheduler()
    scheduler.install_schedule(ScheduleInterval.DAILY)
    status = scheduler.get_schedule_status()
    print(f"Next run: {status.next_run}")
    scheduler.uninstall_schedule()
"""

from vaultkeeper.scheduler.cron import (
    CronNotAvailableError,
    ScheduleInterval,
    Scheduler,
    SchedulerError,
    ScheduleStatus,
    calculate_next_run,
    get_cron_help,
)

__all__ = [
    "Scheduler",
    "ScheduleInterval",
    "ScheduleStatus",
    "SchedulerError",
    "CronNotAvailableError",
    "calculate_next_run",
    "get_cron_help",
]
