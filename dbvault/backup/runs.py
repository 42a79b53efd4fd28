"""
Backup run state machine and persistence.

pending -> running -> completed | partially_failed | failed

Terminal transitions go through RunRepository.finalize only, which is a
conditional UPDATE so that the first caller wins and every later call is
a no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy import update

from dbvault import db
from dbvault.models import BackupRun, BackupRunTimeline, DataSource, RunStatus, utcnow
from .errors import BackupError, RunStateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """Read-only snapshot of a run handed to destinations and worker threads."""
    run_id: str
    data_source_id: Optional[int] = None
    data_source_name: Optional[str] = None
    destination_ids: Optional[Tuple[str, ...]] = None
    run_type: str = 'manual'

    @classmethod
    def from_run(cls, run: BackupRun) -> 'RunContext':
        source = run.data_source
        destination_ids = None
        if source is not None and source.destination_ids is not None:
            destination_ids = tuple(source.destination_ids)
        return cls(
            run_id=run.id,
            data_source_id=run.data_source_id,
            data_source_name=source.name if source is not None else None,
            destination_ids=destination_ids,
            run_type=run.run_type or 'manual',
        )


@dataclass
class DestinationOutcome:
    """Terminal result for one destination."""
    success: bool
    stored_path: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    record_id: Optional[int] = None
    attempts: int = field(default=0, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'stored_path': self.stored_path,
            'error': self.error,
            'retry_count': self.retry_count,
            'record_id': self.record_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DestinationOutcome':
        return cls(
            success=bool(data.get('success')),
            stored_path=data.get('stored_path'),
            error=data.get('error'),
            retry_count=int(data.get('retry_count') or 0),
            record_id=data.get('record_id'),
        )


def determine_run_status(outcomes: Mapping[str, Any]) -> RunStatus:
    """
    Overall status from per-destination outcomes.

    An empty map has zero successes and is therefore failed.
    """
    successes = 0
    for outcome in outcomes.values():
        ok = outcome.get('success') if isinstance(outcome, Mapping) else outcome.success
        if ok:
            successes += 1

    if successes == 0:
        return RunStatus.FAILED
    if successes == len(outcomes):
        return RunStatus.COMPLETED
    return RunStatus.PARTIALLY_FAILED


def _error_entry(error) -> Dict[str, Any]:
    if isinstance(error, BackupError):
        return error.to_dict()
    return {
        'message': str(error),
        'error_code': 'BACKUP_FAILED',
        'error_type': type(error).__name__,
        'context': {},
    }


class RunRepository:
    """
    Loads and transitions BackupRun rows.

    Must be used from the thread that owns the Flask-SQLAlchemy session.
    """

    def create_run(self, data_source: DataSource, run_type: str = 'manual',
                   metadata: Optional[Dict[str, Any]] = None) -> BackupRun:
        run = BackupRun(
            data_source_id=data_source.id,
            status=RunStatus.PENDING.value,
            run_type=run_type,
            run_metadata=dict(metadata or {})
        )
        db.session.add(run)
        db.session.flush()
        db.session.add(BackupRunTimeline(run_id=run.id, status=run.status, event='run_created'))
        db.session.commit()
        return run

    def load(self, run_id: str) -> Optional[BackupRun]:
        return db.session.get(BackupRun, run_id)

    def save(self, run: BackupRun) -> BackupRun:
        db.session.add(run)
        db.session.commit()
        return run

    def mark_running(self, run_id: str) -> None:
        """
        Move a pending run to running.

        Raises:
            RunStateError: If the run does not exist or is not pending
        """
        result = db.session.execute(
            update(BackupRun)
            .where(BackupRun.id == run_id, BackupRun.status == RunStatus.PENDING.value)
            .values(status=RunStatus.RUNNING.value, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            current = db.session.query(BackupRun.status).filter_by(id=run_id).scalar()
            raise RunStateError(
                f"Run {run_id} cannot start from status {current!r}",
                {'run_id': run_id, 'status': current}
            )

        db.session.add(BackupRunTimeline(run_id=run_id, status=RunStatus.RUNNING.value, event='status_changed'))
        db.session.commit()

    def finalize(
        self,
        run_id: str,
        outcomes: Mapping[str, Any],
        error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Write the terminal status derived from the outcome map.

        Args:
            run_id: Run to finalize
            outcomes: destination_id -> DestinationOutcome (or dict)
            error: Pre-delivery error that ended the run, if any
            metadata: Extra keys merged into the run metadata

        Returns:
            True if this call performed the transition, False if the run
            was already terminal (nothing is written in that case)
        """
        status = determine_run_status(outcomes)
        serialized = {
            key: outcome.to_dict() if hasattr(outcome, 'to_dict') else dict(outcome)
            for key, outcome in outcomes.items()
        }

        current = db.session.query(BackupRun.errors, BackupRun.run_metadata).filter_by(id=run_id).first()
        if current is None:
            logger.warning(f"Cannot finalize unknown run {run_id}")
            return False

        errors = list(current[0] or [])
        if error is not None:
            errors.append(_error_entry(error))
        for destination_id, outcome in serialized.items():
            if not outcome['success']:
                errors.append({
                    'message': outcome['error'],
                    'error_code': 'DESTINATION_FAILED',
                    'error_type': 'DestinationError',
                    'context': {'destination_id': destination_id, 'retry_count': outcome['retry_count']},
                })

        run_metadata = dict(current[1] or {})
        run_metadata.update(metadata or {})

        result = db.session.execute(
            update(BackupRun)
            .where(BackupRun.id == run_id, BackupRun.status.in_(RunStatus.active()))
            .values({
                BackupRun.status: status.value,
                BackupRun.completed_at: utcnow(),
                BackupRun.destination_outcomes: serialized,
                BackupRun.errors: errors,
                BackupRun.run_metadata: run_metadata,
            })
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            logger.info(f"Run {run_id} already finalized, ignoring {status.value}")
            return False

        db.session.add(BackupRunTimeline(
            run_id=run_id,
            status=status.value,
            event='run_finalized',
            entry_metadata={'destinations': len(serialized)}
        ))
        db.session.commit()
        logger.info(f"Run {run_id} finalized as {status.value}")
        return True

    def is_cancellation_requested(self, run_id: str) -> bool:
        flag = db.session.query(BackupRun.cancellation_requested).filter_by(id=run_id).scalar()
        return bool(flag)

    def request_cancellation(self, run_id: str) -> bool:
        """
        Flag an active run for cancellation.

        Returns:
            True if the run was active and is now flagged
        """
        result = db.session.execute(
            update(BackupRun)
            .where(BackupRun.id == run_id, BackupRun.status.in_(RunStatus.active()))
            .values(cancellation_requested=True)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1
