"""
APScheduler configuration and job scheduling for Cadangkan.

Manages:
- Scheduled backups (one cron job per database with an enabled schedule)
- Retention applied after every scheduled backup
- Daily retention policy enforcement
- Manual backup triggers
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from cadangkan.backup.executor import execute_backup_job
from cadangkan.backup.retention import RetentionManager, enforce_retention_policies
from cadangkan.services import get_services


logger = logging.getLogger(__name__)

RETENTION_JOB_ID = 'retention_cleanup'
BACKUP_JOB_PREFIX = 'backup_'
MANUAL_JOB_PREFIX = 'manual_'

# Different databases back up in parallel, at most this many at once
BACKUP_THREADS = 3
RETENTION_HOUR = 3

# A late run fires once (within 5 minutes of its slot), never twice in parallel
JOB_DEFAULTS = {
    'coalesce': True,
    'max_instances': 1,
    'misfire_grace_time': 300,
}

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _backup_job_id(name: str) -> str:
    return f"{BACKUP_JOB_PREFIX}{name}"


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Jobs run outside requests and need the app for its context
    flask_app = app
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        executors={'default': ThreadPoolExecutor(max_workers=BACKUP_THREADS)},
        job_defaults=JOB_DEFAULTS,
        timezone=tz
    )

    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger(hour=RETENTION_HOUR, minute=0, timezone=tz),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
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

        jobs = scheduler.get_jobs()
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")
    scheduler = None
    flask_app = None


def sync_backup_jobs():
    """
    Synchronize scheduled backups with the database registry.

    This function should be called:
    - After app startup
    - After adding, updating or removing a database
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    services = get_services(flask_app)
    tz = flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    scheduled_ids = {
        job.id for job in scheduler.get_jobs() if job.id.startswith(BACKUP_JOB_PREFIX)
    }

    for name, db_config in services.config_manager.load().items():
        job_id = _backup_job_id(name)
        schedule = db_config.schedule

        if schedule and schedule.enabled and schedule.cron:
            try:
                trigger = CronTrigger.from_crontab(schedule.cron, timezone=tz)
            except ValueError as e:
                logger.error(f"Invalid cron for database {name} ({schedule.cron}): {e}")
                continue

            if job_id in scheduled_ids:
                scheduler.reschedule_job(job_id, trigger=trigger)
                scheduled_ids.discard(job_id)
                logger.info(f"Updated scheduled backup: {name} ({schedule.cron})")
            else:
                scheduler.add_job(
                    func=_execute_backup_wrapper,
                    args=[name],
                    trigger=trigger,
                    id=job_id,
                    name=f"Backup: {name}",
                    replace_existing=True
                )
                logger.info(f"Scheduled backup: {name} ({schedule.cron})")

    # Whatever is left is disabled or no longer configured
    for leftover_id in scheduled_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed scheduled backup: {leftover_id}")
        except JobLookupError:
            pass


def _execute_backup_wrapper(name: str):
    """
    Run a backup and then apply the database's retention policy.

    Runs inside the app context; errors are logged, not raised, so the
    scheduler keeps the job.
    """
    with flask_app.app_context():
        services = get_services(flask_app)
        try:
            logger.info(f"Scheduler executing backup for database: {name}")
            result = execute_backup_job(name, services)
            logger.info(f"Scheduled backup for {name} completed: {result.backup_id}")
        except Exception as e:
            logger.error(f"Scheduled backup for {name} failed: {e}")
            return

        try:
            policy = services.config_manager.get_effective_retention(name)
            if policy.keep_all:
                return
            retention = RetentionManager(services.storage, locks=services.locks)
            cleanup = retention.apply_policy(name, policy)
            logger.info(f"Retention for {name} deleted {cleanup.deleted} backup(s)")
        except Exception as e:
            logger.error(f"Retention after backup of {name} failed: {e}")


def _enforce_retention_wrapper():
    with flask_app.app_context():
        summary = enforce_retention_policies(get_services(flask_app))
        for error in summary['errors']:
            logger.error(error)


def trigger_backup_now(name: str):
    """
    Manually trigger a backup for a database.

    Args:
        name: Configured database name

    Raises:
        DatabaseNotFoundError: If name is not configured
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Verify database exists
    get_services(flask_app).config_manager.get_database(name)

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"{MANUAL_JOB_PREFIX}{name}_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}",
        name=f"Manual: {name}",
        replace_existing=False
    )
    logger.info(f"Manually triggered backup for database: {name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def get_next_run(name: str) -> Optional[datetime]:
    """Next scheduled backup time of a database, or None."""
    if scheduler is None:
        return None
    job = scheduler.get_job(_backup_job_id(name))
    if job is None:
        return None
    return job.next_run_time


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
