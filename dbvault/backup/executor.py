"""
Backup executor - runs one backup from dump to delivery.

Workflow:
1. Move the run from pending to running
2. Build the ConnectionSpec (decrypting the stored password)
3. Estimate the source size and produce the dump
4. Deliver the dump to every enabled destination
5. Finalize the run and release the temporary workspace

Failures before delivery finalize the run as failed through the same
RunRepository.finalize call that delivery uses.
"""

import logging
from typing import Optional

from flask import current_app

from dbvault.models import BackupRun, DataSource
from dbvault.utils.crypto import decrypt_password
from .connection import ConnectionSpec
from .destinations import DestinationRegistry, get_registry
from .errors import BackupError, InvalidConfigurationError
from .events import CompositeEventSink, EventSink, LoggingEventSink, RunFailed, RunStarted, TimelineEventSink, safe_emit
from .orchestrator import DeliveryOrchestrator
from .producer import DumpProducer
from .retry import RetryPolicy
from .runs import RunContext, RunRepository

logger = logging.getLogger(__name__)


def default_event_sink() -> EventSink:
    return CompositeEventSink([LoggingEventSink(), TimelineEventSink()])


class BackupExecutor:
    """
    Runs the complete backup workflow for one BackupRun.
    """

    def __init__(
        self,
        run: BackupRun,
        producer: Optional[DumpProducer] = None,
        registry: Optional[DestinationRegistry] = None,
        run_store: Optional[RunRepository] = None,
        sink: Optional[EventSink] = None,
        orchestrator: Optional[DeliveryOrchestrator] = None,
        config=None
    ):
        """
        Initialize backup executor.

        Args:
            run: Pending BackupRun to execute
            producer: DumpProducer (built from config if None)
            registry: DestinationRegistry (the app registry if None)
            run_store: RunRepository
            sink: EventSink for lifecycle events
            orchestrator: DeliveryOrchestrator (built from config if None)
            config: Mapping with application settings (current_app.config if None)
        """
        self.run_id = run.id
        self.run = run
        self.config = config if config is not None else current_app.config
        self.run_store = run_store or RunRepository()
        self.sink = sink if sink is not None else default_event_sink()
        self.producer = producer or DumpProducer(
            temp_dir=self.config.get('TEMP_DIR'),
            compression_method=self.config.get('DUMP_COMPRESSION_METHOD', 'gzip'),
            compression_level=int(self.config.get('DUMP_COMPRESSION_LEVEL', 6))
        )
        self.registry = registry if registry is not None else get_registry()
        self.orchestrator = orchestrator or self._build_orchestrator()

    def _build_orchestrator(self) -> DeliveryOrchestrator:
        parallel = bool(self.config.get('DELIVERY_PARALLEL', False))
        context_factory = None
        if parallel:
            app = current_app._get_current_object()
            context_factory = app.app_context

        return DeliveryOrchestrator(
            self.run_store,
            sink=self.sink,
            retry_policy=RetryPolicy.from_config(self.config),
            parallel=parallel,
            max_workers=int(self.config.get('DELIVERY_MAX_WORKERS', 4)),
            cleanup_orphans=bool(self.config.get('ORPHAN_CLEANUP_BEFORE_RETRY', True)),
            cancellation_check=lambda: self.run_store.is_cancellation_requested(self.run_id),
            context_factory=context_factory
        )

    def execute(self) -> BackupRun:
        """
        Execute the backup run.

        Returns:
            The BackupRun in its terminal state

        Raises:
            RunStateError: If the run is not pending
        """
        self.run_store.mark_running(self.run_id)
        run = self.run_store.load(self.run_id)
        context = RunContext.from_run(run)
        safe_emit(self.sink, RunStarted(self.run_id, data_source_id=run.data_source_id))

        artifact = None
        try:
            spec = self._connection_spec(run.data_source)

            estimated_size = self.producer.estimate_size(spec)
            logger.info(f"Run {self.run_id}: {spec.display_name} is about {estimated_size / 1024 / 1024:.2f} MB")

            warnings = []
            artifact = self.producer.produce(spec, warnings)
            self._record_artifact(artifact, estimated_size, warnings)

            self.orchestrator.deliver(
                context,
                artifact,
                self.registry.get_destinations(),
                metadata={'estimated_size_bytes': estimated_size}
            )
        except BackupError as e:
            self._fail(e)
        except Exception as e:
            logger.exception(f"Run {self.run_id}: unexpected error")
            self._fail(e)
        finally:
            if artifact is not None:
                artifact.release()

        return self.run_store.load(self.run_id)

    def _connection_spec(self, data_source: DataSource) -> ConnectionSpec:
        try:
            password = decrypt_password(data_source.password_encrypted)
        except (ValueError, RuntimeError) as e:
            raise InvalidConfigurationError('password', str(e))
        return ConnectionSpec.from_data_source(data_source, password=password)

    def _record_artifact(self, artifact, estimated_size: int, warnings: list):
        run = self.run_store.load(self.run_id)
        run.file_size_bytes = artifact.size_bytes
        for warning in warnings:
            run.add_warning(warning)

        run_metadata = dict(run.run_metadata or {})
        run_metadata.update({
            'filename': artifact.filename,
            'checksum': artifact.checksum,
            'estimated_size_bytes': estimated_size,
        })
        run.run_metadata = run_metadata
        self.run_store.save(run)

    def _fail(self, error: Exception):
        logger.error(f"Run {self.run_id} failed before delivery: {error}")
        if self.run_store.finalize(self.run_id, {}, error=error):
            safe_emit(self.sink, RunFailed(self.run_id, error=error))


def request_backup(data_source_id: int, run_type: str = 'manual', allow_inactive: bool = False) -> BackupRun:
    """
    Create a pending run for a data source.

    Args:
        data_source_id: ID of the DataSource
        run_type: 'manual' or 'scheduled'
        allow_inactive: If True, allow runs for inactive data sources (manual triggers)

    Raises:
        ValueError: If the data source is not found, or inactive and not allowed
    """
    from dbvault import db

    data_source = db.session.get(DataSource, data_source_id)
    if not data_source:
        raise ValueError(f"Data source not found: {data_source_id}")

    if not data_source.is_active and not allow_inactive:
        raise ValueError(f"Data source is inactive: {data_source.name}")

    return RunRepository().create_run(data_source, run_type=run_type)


def execute_backup_run(run_id: str) -> BackupRun:
    """
    Execute a pending run by ID.

    Raises:
        ValueError: If the run does not exist
    """
    run = RunRepository().load(run_id)
    if not run:
        raise ValueError(f"Backup run not found: {run_id}")

    return BackupExecutor(run).execute()


def execute_backup_for_data_source(data_source_id: int, run_type: str = 'scheduled',
                                   allow_inactive: bool = False) -> BackupRun:
    """Create a run for the data source and execute it immediately."""
    run = request_backup(data_source_id, run_type=run_type, allow_inactive=allow_inactive)
    return BackupExecutor(run).execute()
