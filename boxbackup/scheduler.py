"""
APScheduler configuration for periodic backups.

Manages:
- The recurring backup job (cron expression)
- Manual job triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from boxbackup.backup.executor import execute_backup_job


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# Global scheduler instance and the run it executes
scheduler = None
backup_context = None


def init_scheduler(job, settings, config):
    """
    Initialize and configure APScheduler.

    Args:
        job: BackupJob to run on every trigger
        settings: BackupSettings (schedule_cron is used when the job has none)
        config: Config class

    Raises:
        ValueError: If no cron expression is configured or it is invalid
    """
    global scheduler, backup_context

    if scheduler is not None:
        return scheduler

    schedule_cron = job.schedule_cron or settings.schedule_cron
    if not schedule_cron:
        raise ValueError("No backup schedule configured. Pass --cron or set schedule_cron in the config file.")

    # Parse before creating anything so a bad expression leaves no state behind
    trigger = CronTrigger.from_crontab(schedule_cron, timezone=config.SCHEDULER_TIMEZONE)

    backup_context = (job, settings, config)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Never run two backups at once
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.SCHEDULER_TIMEZONE
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Backup: {job.output_directory}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job ({schedule_cron})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            logger.info(f"  - {job.id}: {job.name} ({job.trigger})")
    else:
        logger.info("No scheduled jobs loaded")

    logger.info("APScheduler starting")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")


def _execute_backup_wrapper():
    """
    Run one backup from the scheduler.

    Failures are logged; they never stop the scheduler.
    """
    global backup_context

    job, settings, config = backup_context

    try:
        logger.info("Scheduler executing backup job")
        result = execute_backup_job(job, settings, config)
        if result.status == 'success':
            logger.info(f"Backup job completed: {result.archive_path}")
        else:
            logger.error(f"Backup job failed: {result.error_message}")
    except Exception as e:
        logger.exception(f"Scheduler backup job crashed: {e}")


def trigger_backup_now():
    """
    Schedule one extra backup run right away.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)

    # 1 second delay so the trigger is never in the past when added
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name="Manual backup",
        replace_existing=False
    )

    logger.info("Manually triggered backup job")


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
