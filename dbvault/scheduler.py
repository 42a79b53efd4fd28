"""
APScheduler configuration and job scheduling for dbvault.

Manages:
- Scheduled backups (one cron job per active data source)
- Daily retention cleanup
- Manual backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from dbvault.models import DataSource
from dbvault.backup.executor import execute_backup_for_data_source, execute_backup_run, request_backup
from dbvault.backup.retention import enforce_retention_policies

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

CLEANUP_JOB_ID = 'retention_cleanup'


def _job_id(data_source_id: int) -> str:
    return f"backup_{data_source_id}"


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Background jobs push their own app context from this reference
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': 300
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_cleanup_wrapper,
        trigger=CronTrigger.from_crontab(app.config.get('CLEANUP_CRON', '0 3 * * *'), timezone='UTC'),
        id=CLEANUP_JOB_ID,
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

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None
    flask_app = None


def sync_backup_schedules():
    """
    Reconcile scheduler jobs with data sources.

    Call after app start-up and after creating, updating or deleting a
    data source.

    Returns:
        Dict with counts: added, updated, removed
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    summary = {'added': 0, 'updated': 0, 'removed': 0}

    # One-time manual jobs left over from a previous process have already run or missed their window
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            try:
                scheduler.remove_job(job.id)
                logger.info(f"Cleaned up old manual job: {job.id}")
            except Exception as e:
                logger.warning(f"Failed to remove old manual job {job.id}: {e}")

    scheduled_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for data_source in DataSource.query.all():
        job_id = _job_id(data_source.id)

        if data_source.is_active and data_source.schedule_cron:
            if job_id in scheduled_ids:
                if _update_scheduled_job(data_source):
                    summary['updated'] += 1
                scheduled_ids.discard(job_id)
            elif _add_scheduled_job(data_source):
                summary['added'] += 1
        elif job_id in scheduled_ids:
            _remove_scheduled_job(data_source.id)
            scheduled_ids.discard(job_id)
            summary['removed'] += 1

    # Jobs for data sources that no longer exist
    for leftover_id in scheduled_ids:
        try:
            scheduler.remove_job(leftover_id)
            summary['removed'] += 1
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except Exception as e:
            logger.warning(f"Failed to remove orphaned job {leftover_id}: {e}")

    return summary


def _add_scheduled_job(data_source: DataSource) -> bool:
    try:
        trigger = CronTrigger.from_crontab(data_source.schedule_cron, timezone='UTC')
        scheduler.add_job(
            func=_execute_backup_wrapper,
            args=[data_source.id],
            trigger=trigger,
            id=_job_id(data_source.id),
            name=f"Backup: {data_source.name}",
            replace_existing=True
        )
        logger.info(f"Scheduled backup: {data_source.name} ({data_source.schedule_cron})")
        return True
    except ValueError as e:
        logger.error(f"Invalid cron expression for {data_source.name}: {e}")
        return False


def _update_scheduled_job(data_source: DataSource) -> bool:
    job = scheduler.get_job(_job_id(data_source.id))
    if not job:
        return False

    try:
        job.reschedule(trigger=CronTrigger.from_crontab(data_source.schedule_cron, timezone='UTC'))
        job.modify(name=f"Backup: {data_source.name}")
        logger.info(f"Updated scheduled backup: {data_source.name}")
        return True
    except ValueError as e:
        logger.error(f"Invalid cron expression for {data_source.name}: {e}")
        return False


def _remove_scheduled_job(data_source_id: int):
    try:
        scheduler.remove_job(_job_id(data_source_id))
        logger.info(f"Removed scheduled backup for data source {data_source_id}")
    except Exception as e:
        logger.warning(f"Failed to remove scheduled backup {data_source_id}: {e}")


def _execute_backup_wrapper(data_source_id: int):
    """
    Run a scheduled backup inside the stored app's context.

    Args:
        data_source_id: DataSource ID to back up
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup for data source {data_source_id}")
            run = execute_backup_for_data_source(data_source_id, run_type='scheduled')
            logger.info(f"Scheduled backup {run.id} finished with status: {run.status}")
        except Exception as e:
            logger.error(f"Scheduled backup for data source {data_source_id} failed: {e}", exc_info=True)


def _execute_run_wrapper(run_id: str):
    """Run a previously created (manual) run inside the stored app's context."""
    with flask_app.app_context():
        try:
            run = execute_backup_run(run_id)
            logger.info(f"Manual backup {run_id} finished with status: {run.status}")
        except Exception as e:
            logger.error(f"Manual backup {run_id} failed: {e}", exc_info=True)


def _cleanup_wrapper():
    with flask_app.app_context():
        try:
            enforce_retention_policies()
        except Exception as e:
            logger.error(f"Retention cleanup failed: {e}", exc_info=True)


def trigger_backup_now(data_source_id: int):
    """
    Create a manual run and schedule its execution immediately.

    Args:
        data_source_id: DataSource ID to back up

    Returns:
        The pending BackupRun

    Raises:
        ValueError: If the data source is not found
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    run = request_backup(data_source_id, run_type='manual', allow_inactive=True)

    # 1 second delay so the request that created the run can return first
    scheduler.add_job(
        func=_execute_run_wrapper,
        args=[run.id],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
        id=f"manual_{run.id}",
        name=f"Manual: {run.data_source.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup {run.id} for data source {data_source_id}")
    return run


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


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
