"""
APScheduler configuration and job scheduling for dbvault.

Manages:
- The periodic backup job (BACKUP_SCHEDULE_CRON)
- Daily retention policy enforcement (RETENTION_SCHEDULE_CRON)
- Manual "run now" triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from dbvault.backup.executor import execute_backup_run
from dbvault.backup.retention import enforce_retention_policy


logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'
RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance

    Returns:
        The BackgroundScheduler instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Never two backups at once
        'misfire_grace_time': 300
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_schedule(cron_expression: str = None):
    """
    Make the scheduled backup job match the configured cron expression.

    Also removes leftover manual jobs from earlier processes.

    Args:
        cron_expression: Crontab expression, or None/empty to unschedule

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If the cron expression is invalid
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            scheduler.remove_job(job.id)
            logger.info(f"Cleaned up old manual job: {job.id}")

    if not cron_expression:
        if scheduler.get_job(SCHEDULED_JOB_ID):
            scheduler.remove_job(SCHEDULED_JOB_ID)
            logger.info("Removed scheduled backup job")
        return

    trigger = CronTrigger.from_crontab(cron_expression, timezone='UTC')
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=['scheduled'],
        trigger=trigger,
        id=SCHEDULED_JOB_ID,
        name='Scheduled database backup',
        replace_existing=True
    )
    logger.info(f"Scheduled database backup ({cron_expression})")


def sync_retention_schedule(cron_expression: str = None, retention_days: int = 0):
    """
    Make the retention cleanup job match the configured policy.

    Args:
        cron_expression: Crontab expression for the cleanup run
        retention_days: Retention in days; 0 or less removes the job

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If the cron expression is invalid
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if not cron_expression or not retention_days or retention_days <= 0:
        if scheduler.get_job(RETENTION_JOB_ID):
            scheduler.remove_job(RETENTION_JOB_ID)
            logger.info("Removed retention cleanup job")
        return

    scheduler.add_job(
        func=_execute_retention_wrapper,
        trigger=CronTrigger.from_crontab(cron_expression, timezone='UTC'),
        id=RETENTION_JOB_ID,
        name='Daily retention cleanup',
        replace_existing=True
    )
    logger.info(f"Scheduled retention cleanup ({cron_expression}, {retention_days} days)")


def _execute_retention_wrapper():
    """Enforce the retention policy inside the app context from a scheduler thread."""
    with flask_app.app_context():
        try:
            result = enforce_retention_policy()
            if result is not None:
                logger.info(
                    f"Retention cleanup deleted {len(result.deleted)} of {result.listed} objects "
                    f"({len(result.errors)} errors)"
                )
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}")


def _execute_backup_wrapper(trigger: str):
    """
    Run a backup inside the app context from a scheduler thread.

    Args:
        trigger: What started the run (scheduled or manual)
    """
    with flask_app.app_context():
        try:
            run = execute_backup_run(trigger)
            logger.info(f"Backup run {run.id} ({trigger}) completed with status: {run.status}")
        except Exception as e:
            logger.error(f"Scheduled backup ({trigger}) failed: {e}")


def trigger_backup_now() -> str:
    """
    Queue a backup to run immediately.

    Returns:
        ID of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay avoids racing the request that queued it
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=['manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual database backup',
        replace_existing=True
    )

    logger.info(f"Manually triggered backup: {job_id}")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
