"""
Lifecycle events for backup runs and the sinks that receive them.

Events are immutable. Sinks:
- LoggingEventSink: writes events to the application log
- TimelineEventSink: appends BackupRunTimeline rows
- CompositeEventSink: fans out to several sinks
- NullEventSink: discards everything
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dbvault.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupEvent:
    run_id: str
    occurred_at: datetime = field(default_factory=utcnow, compare=False, kw_only=True)

    name = 'event'

    def payload(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class RunStarted(BackupEvent):
    data_source_id: Optional[int] = None

    name = 'run_started'


@dataclass(frozen=True)
class RunFailed(BackupEvent):
    error: Optional[BaseException] = None

    name = 'run_failed'

    def payload(self):
        return {'error': str(self.error) if self.error else None}


@dataclass(frozen=True)
class DestinationStarted(BackupEvent):
    destination_id: str = ''

    name = 'destination_started'


@dataclass(frozen=True)
class DestinationCompleted(BackupEvent):
    destination_id: str = ''
    stored_path: Optional[str] = None
    record_id: Optional[int] = None
    retry_count: int = 0

    name = 'destination_completed'

    def payload(self):
        return {
            'stored_path': self.stored_path,
            'record_id': self.record_id,
            'retry_count': self.retry_count,
        }


@dataclass(frozen=True)
class DestinationFailed(BackupEvent):
    destination_id: str = ''
    error: str = ''
    retry_count: int = 0
    will_retry: bool = False

    name = 'destination_failed'

    def payload(self):
        return {'error': self.error, 'retry_count': self.retry_count, 'will_retry': self.will_retry}


@dataclass(frozen=True)
class DestinationRetry(BackupEvent):
    destination_id: str = ''
    previous_error: str = ''
    attempt: int = 2
    delay_seconds: float = 0.0

    name = 'destination_retry'

    def payload(self):
        return {
            'previous_error': self.previous_error,
            'attempt': self.attempt,
            'delay_seconds': self.delay_seconds,
        }


@dataclass(frozen=True)
class AllDestinationsProcessed(BackupEvent):
    outcomes: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None

    name = 'all_destinations_processed'

    def payload(self):
        return {
            'status': self.status,
            'outcomes': {
                key: outcome.to_dict() if hasattr(outcome, 'to_dict') else outcome
                for key, outcome in self.outcomes.items()
            },
        }


class EventSink:
    """Receives backup lifecycle events."""

    def emit(self, event: BackupEvent) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, event):
        pass


class LoggingEventSink(EventSink):
    """Logs each event at a level matching its severity."""

    def __init__(self, log: logging.Logger = None):
        self.log = log or logger

    def emit(self, event):
        prefix = f"Run {event.run_id}"
        destination = getattr(event, 'destination_id', None)
        if destination:
            prefix += f" [{destination}]"

        if isinstance(event, DestinationRetry):
            self.log.warning(
                f"{prefix}: retrying (attempt {event.attempt}) in {event.delay_seconds:.1f}s "
                f"after: {event.previous_error}"
            )
        elif isinstance(event, DestinationFailed):
            level = logging.WARNING if event.will_retry else logging.ERROR
            self.log.log(level, f"{prefix}: delivery failed: {event.error}")
        elif isinstance(event, RunFailed):
            self.log.error(f"{prefix}: run failed: {event.error}")
        elif isinstance(event, AllDestinationsProcessed):
            self.log.info(f"{prefix}: all destinations processed, status={event.status}")
        else:
            self.log.info(f"{prefix}: {event.name}")


class TimelineEventSink(EventSink):
    """
    Appends a BackupRunTimeline row per event.

    Must only be called from the thread that owns the database session.
    """

    def __init__(self, status_lookup=None):
        self._status_lookup = status_lookup

    def emit(self, event):
        from dbvault import db
        from dbvault.models import BackupRun, BackupRunTimeline

        if self._status_lookup:
            status = self._status_lookup(event.run_id)
        else:
            status = db.session.query(BackupRun.status).filter_by(id=event.run_id).scalar()

        try:
            db.session.add(BackupRunTimeline(
                run_id=event.run_id,
                status=status or 'unknown',
                event=event.name,
                destination_id=getattr(event, 'destination_id', None) or None,
                entry_metadata=event.payload(),
                created_at=event.occurred_at
            ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class CompositeEventSink(EventSink):
    """Forwards events to every child sink; one failing sink does not block the others."""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event):
        for sink in self.sinks:
            safe_emit(sink, event)


def safe_emit(sink: Optional[EventSink], event: BackupEvent) -> bool:
    """
    Emit an event, logging and discarding any sink error.

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        sink.emit(event)
        return True
    except Exception as e:
        logger.error(f"Event sink {type(sink).__name__} failed on {event.name}: {e}", exc_info=True)
        return False
