"""
Retention policy enforcement for backups.

Grandfather-father-son strategy, applied per data source to successful runs
(completed or partially_failed) ordered newest first:

- keep every backup younger than RETENTION_KEEP_ALL_DAYS
- then the newest backup per day for RETENTION_DAILY_DAYS
- then the newest per ISO week for RETENTION_WEEKLY_WEEKS
- then the newest per month for RETENTION_MONTHLY_MONTHS
- then the newest per year for RETENTION_YEARLY_YEARS
- delete everything older

The newest backup is never deleted. Locked runs are left out entirely.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dbvault import db
from dbvault.models import BackupRun, DataSource, RunStatus, utcnow
from .destinations import DestinationRegistry

logger = logging.getLogger(__name__)


def subtract_months(moment: datetime, months: int) -> datetime:
    """Move back whole calendar months, clamping the day to the target month."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class RetentionManager:
    """
    Deletes stored copies of old backup runs.

    Args:
        registry: DestinationRegistry resolving file records to destinations
        keep_all_days, daily_days, weekly_weeks, monthly_months, yearly_years:
            Length of each retention period
    """

    def __init__(
        self,
        registry: DestinationRegistry,
        keep_all_days: int = 7,
        daily_days: int = 16,
        weekly_weeks: int = 8,
        monthly_months: int = 4,
        yearly_years: int = 2
    ):
        self.registry = registry
        self.keep_all_days = keep_all_days
        self.daily_days = daily_days
        self.weekly_weeks = weekly_weeks
        self.monthly_months = monthly_months
        self.yearly_years = yearly_years

    @classmethod
    def from_config(cls, config, registry: DestinationRegistry) -> 'RetentionManager':
        return cls(
            registry,
            keep_all_days=int(config.get('RETENTION_KEEP_ALL_DAYS', 7)),
            daily_days=int(config.get('RETENTION_DAILY_DAYS', 16)),
            weekly_weeks=int(config.get('RETENTION_WEEKLY_WEEKS', 8)),
            monthly_months=int(config.get('RETENTION_MONTHLY_MONTHS', 4)),
            yearly_years=int(config.get('RETENTION_YEARLY_YEARS', 2)),
        )

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce retention for every data source.

        Returns:
            Summary dict: data_sources_processed, runs_deleted, files_deleted, errors
        """
        summary = {
            'data_sources_processed': 0,
            'runs_deleted': 0,
            'files_deleted': 0,
            'errors': []
        }

        for data_source in DataSource.query.order_by(DataSource.id).all():
            try:
                result = self.enforce_data_source_policy(data_source)
                summary['data_sources_processed'] += 1
                summary['runs_deleted'] += result['runs_deleted']
                summary['files_deleted'] += result['files_deleted']
            except Exception as e:
                db.session.rollback()
                error_msg = f"Failed to enforce retention for data source {data_source.name}: {e}"
                logger.error(error_msg)
                summary['errors'].append(error_msg)

        logger.info(
            f"Retention enforcement complete. "
            f"Data sources: {summary['data_sources_processed']}, "
            f"runs cleaned: {summary['runs_deleted']}, "
            f"files deleted: {summary['files_deleted']}, "
            f"errors: {len(summary['errors'])}"
        )
        return summary

    def enforce_data_source_policy(self, data_source: DataSource, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Enforce retention for one data source.

        Returns:
            Dict with counts: {'runs_deleted': int, 'files_deleted': int}
        """
        runs = (
            BackupRun.query
            .filter(
                BackupRun.data_source_id == data_source.id,
                BackupRun.status.in_((RunStatus.COMPLETED.value, RunStatus.PARTIALLY_FAILED.value)),
                BackupRun.files_deleted_at.is_(None),
                BackupRun.locked.is_(False)
            )
            .order_by(BackupRun.created_at.desc(), BackupRun.id.desc())
            .all()
        )

        result = {'runs_deleted': 0, 'files_deleted': 0}
        if not runs:
            return result

        newest, older = runs[0], runs[1:]
        to_delete = self.select_runs_to_delete(older, now=now)

        for run in to_delete:
            result['files_deleted'] += self.delete_run_files(run)
            if run.files_deleted_at is not None:
                result['runs_deleted'] += 1

        logger.info(
            f"Retention for {data_source.name}: {len(runs)} backups, "
            f"{len(to_delete)} selected for deletion, newest preserved: {newest.id}"
        )
        return result

    def select_runs_to_delete(self, runs: List[BackupRun], now: Optional[datetime] = None) -> List[BackupRun]:
        """
        Pick runs outside the retention windows.

        Args:
            runs: Candidate runs, the newest backup already excluded
            now: Reference time (utcnow if None)
        """
        now = now or utcnow()
        keep_all_until = now - timedelta(days=self.keep_all_days)
        keep_daily_until = keep_all_until - timedelta(days=self.daily_days)
        keep_weekly_until = keep_daily_until - timedelta(weeks=self.weekly_weeks)
        keep_monthly_until = subtract_months(keep_weekly_until, self.monthly_months)
        keep_yearly_until = subtract_months(keep_monthly_until, 12 * self.yearly_years)

        groups = {}
        to_delete = []

        for run in runs:
            created = run.created_at
            if created > keep_all_until:
                continue
            elif created > keep_daily_until:
                key = ('day', created.strftime('%Y-%m-%d'))
            elif created > keep_weekly_until:
                year, week, _ = created.isocalendar()
                key = ('week', f"{year}-{week:02d}")
            elif created > keep_monthly_until:
                key = ('month', created.strftime('%Y-%m'))
            elif created > keep_yearly_until:
                key = ('year', created.strftime('%Y'))
            else:
                to_delete.append(run)
                continue
            groups.setdefault(key, []).append(run)

        for group in groups.values():
            group.sort(key=lambda r: r.created_at, reverse=True)
            to_delete.extend(group[1:])

        return to_delete

    def delete_run_files(self, run: BackupRun) -> int:
        """
        Delete every stored copy of a run through its destination.

        Individual file failures are logged and skipped. The run gets
        files_deleted_at once no undeleted file remains.

        Returns:
            Number of files deleted
        """
        files = run.available_files().all()
        deleted = 0

        for record in files:
            destination = self.registry.get_destination_for_file(record)
            if destination is None:
                logger.error(f"Run {run.id}: unknown destination {record.destination_id} for file {record.id}")
                continue
            try:
                if destination.delete_file_record(record):
                    deleted += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f"Run {run.id}: failed to delete file {record.id} ({record.path}): {e}")

        if run.available_files().count() == 0:
            run.files_deleted_at = utcnow()
            db.session.commit()

        logger.info(f"Run {run.id}: deleted {deleted} of {len(files)} file(s)")
        return deleted


def enforce_retention_policies(data_source_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Enforce retention policies using the current app's configuration.

    This function is called by the scheduler on a daily basis and by the
    `flask backup cleanup` command.

    Args:
        data_source_id: Limit cleanup to one data source

    Raises:
        ValueError: If data_source_id does not exist
    """
    from flask import current_app
    from .destinations import get_registry

    manager = RetentionManager.from_config(current_app.config, get_registry())

    if data_source_id is None:
        return manager.enforce_all_policies()

    data_source = db.session.get(DataSource, data_source_id)
    if not data_source:
        raise ValueError(f"Data source not found: {data_source_id}")

    result = manager.enforce_data_source_policy(data_source)
    return {
        'data_sources_processed': 1,
        'runs_deleted': result['runs_deleted'],
        'files_deleted': result['files_deleted'],
        'errors': []
    }
