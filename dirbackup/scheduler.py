"""
APScheduler configuration for unattended periodic backups.

The configured crontab expression triggers one backup run at a time. A run
that is still going when the next trigger fires is not started twice.
"""

import logging
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dirbackup.config import BackupConfig
from dirbackup.errors import ConfigInvalid
from dirbackup.backup.executor import execute_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# Global scheduler instance
scheduler = None


def init_scheduler(config: BackupConfig, timezone: Optional[str] = None):
    """
    Initialize and configure APScheduler.

    Args:
        config: Validated run configuration with a schedule
        timezone: Timezone for the crontab (default: local time)

    Returns:
        Configured scheduler

    Raises:
        ConfigInvalid: If no schedule is configured or it cannot be parsed
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    if not config.schedule:
        raise ConfigInvalid("No schedule configured")

    try:
        trigger = CronTrigger.from_crontab(config.schedule, timezone=timezone)
    except ValueError as e:
        raise ConfigInvalid(f"Invalid schedule '{config.schedule}': {e}")

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Backup: {config.display_name}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup of {config.source_dir} ({config.schedule})")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    logger.info("Starting scheduler")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")


def reset_scheduler():
    """Drop the global scheduler instance."""
    global scheduler

    stop_scheduler()
    scheduler = None


def _execute_backup_wrapper(config: BackupConfig):
    """
    Wrapper for executing backups in scheduler context.

    Errors are logged so the scheduler keeps running.
    """
    try:
        logger.info(f"Scheduler executing backup of {config.source_dir}")
        report = execute_backup(config)
        status = 'no files' if report.no_files else ('success' if report.success else 'failed')
        logger.info(f"Scheduled backup completed with status: {status}")
    except Exception as e:
        logger.exception(f"Scheduled backup failed: {e}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
