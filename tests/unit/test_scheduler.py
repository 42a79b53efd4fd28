"""
Unit tests for scheduler (dbvault/scheduler.py).

Tests APScheduler configuration and job scheduling.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from dbvault import scheduler as scheduler_module


def make_job(job_id, name='job', next_run_time=None):
    job = MagicMock()
    job.id = job_id
    job.name = name
    job.next_run_time = next_run_time
    return job


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def test_init_scheduler(self, app, mock_scheduler):
        """Test scheduler is configured and the cleanup job added."""
        result = scheduler_module.init_scheduler(app)

        assert result is mock_scheduler
        assert scheduler_module.scheduler is mock_scheduler
        assert scheduler_module.flask_app is app

        call_kwargs = scheduler_module.BackgroundScheduler.call_args.kwargs
        assert 'jobstores' in call_kwargs
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['timezone'] == 'UTC'

        add_kwargs = mock_scheduler.add_job.call_args.kwargs
        assert add_kwargs['id'] == scheduler_module.CLEANUP_JOB_ID
        assert isinstance(add_kwargs['trigger'], CronTrigger)

    def test_init_scheduler_only_once(self, app, mock_scheduler):
        """Test scheduler is only initialized once."""
        first = scheduler_module.init_scheduler(app)
        second = scheduler_module.init_scheduler(app)

        assert first is second
        scheduler_module.BackgroundScheduler.assert_called_once()

    def test_start_scheduler(self, app, mock_scheduler):
        scheduler_module.init_scheduler(app)

        scheduler_module.start_scheduler()

        mock_scheduler.start.assert_called_once()

    def test_start_already_running(self, app, mock_scheduler):
        """Test starting a running scheduler is a no-op."""
        scheduler_module.init_scheduler(app)
        mock_scheduler.running = True

        scheduler_module.start_scheduler()

        mock_scheduler.start.assert_not_called()

    def test_start_without_init(self, mock_scheduler):
        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_stop_scheduler(self, app, mock_scheduler):
        """Test stopping shuts down and forgets the scheduler."""
        scheduler_module.init_scheduler(app)
        mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None
        assert scheduler_module.flask_app is None

    def test_is_scheduler_running(self, app, mock_scheduler):
        assert scheduler_module.is_scheduler_running() is False

        scheduler_module.init_scheduler(app)
        mock_scheduler.running = True

        assert scheduler_module.is_scheduler_running() is True


class TestSyncBackupSchedules:
    """Test reconciliation of jobs with data sources."""

    def test_adds_jobs_for_scheduled_sources(self, app, db, mock_scheduler, data_source_factory):
        """Test active sources with a cron expression get a job."""
        scheduled = data_source_factory(schedule_cron='0 2 * * *')
        data_source_factory()
        scheduler_module.init_scheduler(app)
        mock_scheduler.add_job.reset_mock()

        summary = scheduler_module.sync_backup_schedules()

        assert summary == {'added': 1, 'updated': 0, 'removed': 0}
        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs['id'] == f'backup_{scheduled.id}'
        assert kwargs['args'] == [scheduled.id]
        assert kwargs['func'] is scheduler_module._execute_backup_wrapper

    def test_updates_existing_jobs(self, app, db, mock_scheduler, data_source_factory):
        """Test an existing job is rescheduled."""
        data_source = data_source_factory(schedule_cron='0 4 * * *')
        job = make_job(f'backup_{data_source.id}')
        mock_scheduler.get_jobs.return_value = [job]
        mock_scheduler.get_job.return_value = job
        scheduler_module.init_scheduler(app)

        summary = scheduler_module.sync_backup_schedules()

        assert summary['updated'] == 1
        job.reschedule.assert_called_once()

    def test_removes_jobs_for_inactive_and_deleted_sources(self, app, db, mock_scheduler, data_source_factory):
        """Test inactive and deleted sources lose their jobs."""
        inactive = data_source_factory(schedule_cron='0 2 * * *', is_active=False)
        mock_scheduler.get_jobs.return_value = [make_job(f'backup_{inactive.id}'), make_job('backup_999')]
        scheduler_module.init_scheduler(app)

        summary = scheduler_module.sync_backup_schedules()

        assert summary['removed'] == 2
        removed = {c.args[0] for c in mock_scheduler.remove_job.call_args_list}
        assert removed == {f'backup_{inactive.id}', 'backup_999'}

    def test_removes_stale_manual_jobs(self, app, db, mock_scheduler):
        mock_scheduler.get_jobs.return_value = [make_job('manual_abc'), make_job(scheduler_module.CLEANUP_JOB_ID)]
        scheduler_module.init_scheduler(app)

        scheduler_module.sync_backup_schedules()

        mock_scheduler.remove_job.assert_called_once_with('manual_abc')

    def test_invalid_cron_is_skipped(self, app, db, mock_scheduler, data_source_factory):
        """Test a bad cron expression is logged and not scheduled."""
        data_source_factory(schedule_cron='not a cron')
        scheduler_module.init_scheduler(app)
        mock_scheduler.add_job.reset_mock()

        summary = scheduler_module.sync_backup_schedules()

        assert summary['added'] == 0
        mock_scheduler.add_job.assert_not_called()

    def test_requires_init(self, db, mock_scheduler):
        with pytest.raises(RuntimeError):
            scheduler_module.sync_backup_schedules()


class TestManualTrigger:
    """Test trigger_backup_now."""

    def test_creates_run_and_job(self, app, db, mock_scheduler, data_source):
        """Test a pending run is created and a one-off job scheduled."""
        scheduler_module.init_scheduler(app)
        mock_scheduler.add_job.reset_mock()

        run = scheduler_module.trigger_backup_now(data_source.id)

        assert run.status == 'pending'
        assert run.run_type == 'manual'
        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs['id'] == f'manual_{run.id}'
        assert kwargs['args'] == [run.id]
        assert isinstance(kwargs['trigger'], DateTrigger)

    def test_inactive_source_allowed(self, app, db, mock_scheduler, data_source_factory):
        """Test manual triggers work for inactive sources."""
        data_source = data_source_factory(is_active=False)
        scheduler_module.init_scheduler(app)

        assert scheduler_module.trigger_backup_now(data_source.id).status == 'pending'

    def test_unknown_source(self, app, db, mock_scheduler):
        scheduler_module.init_scheduler(app)

        with pytest.raises(ValueError):
            scheduler_module.trigger_backup_now(999)


class TestJobWrappers:
    """Test the functions APScheduler calls."""

    def test_backup_wrapper(self, app, mock_scheduler):
        scheduler_module.init_scheduler(app)

        with patch('dbvault.scheduler.execute_backup_for_data_source') as mock_execute:
            scheduler_module._execute_backup_wrapper(3)

        mock_execute.assert_called_once_with(3, run_type='scheduled')

    def test_backup_wrapper_swallows_errors(self, app, mock_scheduler):
        """Test a failing job does not raise into the scheduler thread."""
        scheduler_module.init_scheduler(app)

        with patch('dbvault.scheduler.execute_backup_for_data_source', side_effect=ValueError('gone')):
            scheduler_module._execute_backup_wrapper(3)

    def test_run_wrapper(self, app, mock_scheduler):
        scheduler_module.init_scheduler(app)

        with patch('dbvault.scheduler.execute_backup_run') as mock_execute:
            scheduler_module._execute_run_wrapper('abc')

        mock_execute.assert_called_once_with('abc')

    def test_cleanup_wrapper(self, app, mock_scheduler):
        scheduler_module.init_scheduler(app)

        with patch('dbvault.scheduler.enforce_retention_policies') as mock_cleanup:
            scheduler_module._cleanup_wrapper()

        mock_cleanup.assert_called_once_with()


class TestGetScheduledJobs:
    """Test job listing."""

    def test_no_scheduler(self, mock_scheduler):
        assert scheduler_module.get_scheduled_jobs() == []

    def test_lists_jobs(self, app, mock_scheduler):
        next_run = datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)
        mock_scheduler.get_jobs.return_value = [make_job('backup_1', 'Backup: shop', next_run)]
        scheduler_module.init_scheduler(app)

        jobs = scheduler_module.get_scheduled_jobs()

        assert jobs[0]['id'] == 'backup_1'
        assert jobs[0]['name'] == 'Backup: shop'
        assert jobs[0]['next_run'] == '2024-01-16T02:00:00+00:00'
