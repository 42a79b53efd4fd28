"""
Delivery of a produced dump to every enabled destination.

Each destination gets its own retry loop. Destinations are independent: a
failure at one never affects another. Once every destination is terminal the
run is finalized, one AllDestinationsProcessed event is emitted and the
artifact workspace is released.

In parallel mode worker threads only put events on a queue and return an
outcome; the calling thread dispatches events, writes the outcome map and
talks to the run repository.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import nullcontext
from typing import Any, Callable, Dict, Iterable, List, Optional

from .artifact import ArtifactHandle
from .errors import DestinationRecordError, DestinationStoreError, OrphanCleanupError
from .events import (
    AllDestinationsProcessed,
    DestinationCompleted,
    DestinationFailed,
    DestinationRetry,
    DestinationStarted,
    EventSink,
    safe_emit,
)
from .retry import RetryPolicy
from .runs import DestinationOutcome, RunContext, determine_run_status

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = 'Delivery cancelled'


class DeliveryOrchestrator:
    """
    Fans an artifact out to destinations with per-destination retry.

    Args:
        run_store: RunRepository used to finalize the run
        sink: EventSink receiving lifecycle events
        retry_policy: RetryPolicy (defaults to 3 attempts, 60s base delay)
        parallel: Deliver to destinations concurrently in a thread pool
        max_workers: Thread pool size in parallel mode
        cleanup_orphans: Delete a stored copy whose file record could not be created
        cancellation_check: Callable returning True when the run should stop.
            Only ever called from the thread that called deliver().
        context_factory: Callable returning a context manager entered around
            each worker thread (e.g. app.app_context)
        poll_interval: Seconds between cancellation checks while waiting
    """

    def __init__(
        self,
        run_store,
        sink: Optional[EventSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
        parallel: bool = False,
        max_workers: int = 4,
        cleanup_orphans: bool = True,
        cancellation_check: Optional[Callable[[], bool]] = None,
        context_factory: Optional[Callable[[], Any]] = None,
        poll_interval: float = 0.5
    ):
        self.run_store = run_store
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy()
        self.parallel = parallel
        self.max_workers = max(1, int(max_workers))
        self.cleanup_orphans = cleanup_orphans
        self.cancellation_check = cancellation_check
        self.context_factory = context_factory
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()

    def cancel(self):
        """Stop starting new attempts. In-flight store calls are allowed to finish."""
        if not self._cancelled.is_set():
            logger.info("Delivery cancellation requested")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def deliver(
        self,
        run,
        artifact: ArtifactHandle,
        destinations: Iterable,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, DestinationOutcome]:
        """
        Deliver the artifact and finalize the run.

        Args:
            run: BackupRun or RunContext
            artifact: Produced dump, released before this method returns
            destinations: Candidate destinations (disabled ones are skipped)
            metadata: Extra metadata passed to every store call

        Returns:
            destination_id -> DestinationOutcome for every enabled destination
        """
        context = run if isinstance(run, RunContext) else RunContext.from_run(run)
        outcomes: Dict[str, DestinationOutcome] = {}
        targets: List = []

        payload = artifact.metadata()
        payload.update({
            'run_id': context.run_id,
            'data_source_id': context.data_source_id,
            'data_source_name': context.data_source_name,
        })
        payload.update(metadata or {})

        try:
            targets = self._enabled_destinations(context, destinations)
            logger.info(f"Run {context.run_id}: delivering {artifact.filename} to {len(targets)} destination(s)")

            if self.parallel and len(targets) > 1:
                self._deliver_parallel(context, targets, artifact, payload, outcomes)
            else:
                self._deliver_sequential(context, targets, artifact, payload, outcomes)
        finally:
            for destination in targets:
                if destination.identifier not in outcomes:
                    outcomes[destination.identifier] = DestinationOutcome(success=False, error=CANCELLED_MESSAGE)
            try:
                self._finish(context, artifact, outcomes)
            finally:
                artifact.release()

        return outcomes

    def _finish(self, context: RunContext, artifact: ArtifactHandle, outcomes: Dict[str, DestinationOutcome]):
        status = determine_run_status(outcomes)
        finalized = self.run_store.finalize(
            context.run_id,
            outcomes,
            metadata={'artifact': artifact.metadata(), 'cancelled': self.cancelled}
        )
        if not finalized:
            logger.warning(f"Run {context.run_id} was already terminal; outcome {status.value} not recorded")
            return

        safe_emit(self.sink, AllDestinationsProcessed(context.run_id, outcomes=dict(outcomes), status=status.value))

    def _enabled_destinations(self, context: RunContext, destinations: Iterable) -> List:
        enabled = []
        seen = set()
        for destination in destinations:
            identifier = destination.identifier
            if identifier in seen:
                logger.warning(f"Run {context.run_id}: duplicate destination {identifier} ignored")
                continue
            seen.add(identifier)

            try:
                if destination.is_enabled(context):
                    enabled.append(destination)
                else:
                    logger.debug(f"Run {context.run_id}: destination {identifier} disabled")
            except Exception as e:
                logger.warning(f"Run {context.run_id}: is_enabled failed for {identifier}, skipping: {e}")
        return enabled

    def _deliver_sequential(self, context, targets, artifact, payload, outcomes):
        def emit(event):
            safe_emit(self.sink, event)

        for destination in targets:
            self._poll_cancellation()
            outcomes[destination.identifier] = self._deliver_to(
                context, destination, artifact, payload, emit, on_calling_thread=True
            )

    def _deliver_parallel(self, context, targets, artifact, payload, outcomes):
        events = queue.Queue()
        workers = min(self.max_workers, len(targets))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='dbvault-delivery') as pool:
            futures = {
                pool.submit(self._worker, context, destination, artifact, payload, events.put): destination.identifier
                for destination in targets
            }
            pending = set(futures)
            try:
                while pending:
                    done, pending = wait(pending, timeout=self.poll_interval)
                    self._dispatch(events)
                    self._poll_cancellation()

                    for future in done:
                        identifier = futures[future]
                        try:
                            outcomes[identifier] = future.result()
                        except Exception as e:
                            logger.error(f"Run {context.run_id}: worker for {identifier} crashed: {e}", exc_info=True)
                            outcomes[identifier] = DestinationOutcome(success=False, error=str(e))
            except BaseException:
                self._cancelled.set()
                raise
            finally:
                self._dispatch(events)

    def _worker(self, context, destination, artifact, payload, emit):
        scope = self.context_factory() if self.context_factory else nullcontext()
        with scope:
            return self._deliver_to(context, destination, artifact, payload, emit, on_calling_thread=False)

    def _dispatch(self, events: queue.Queue):
        while True:
            try:
                event = events.get_nowait()
            except queue.Empty:
                return
            safe_emit(self.sink, event)

    def _deliver_to(self, context, destination, artifact, payload, emit, on_calling_thread) -> DestinationOutcome:
        identifier = destination.identifier
        policy = self.retry_policy

        if self.cancelled:
            emit(DestinationFailed(context.run_id, destination_id=identifier, error=CANCELLED_MESSAGE))
            return DestinationOutcome(success=False, error=CANCELLED_MESSAGE)

        emit(DestinationStarted(context.run_id, destination_id=identifier))

        attempt = 0
        last_error = None
        while attempt < policy.max_attempts:
            if attempt > 0:
                delay = policy.delay_for(attempt)
                emit(DestinationRetry(
                    context.run_id,
                    destination_id=identifier,
                    previous_error=last_error,
                    attempt=attempt + 1,
                    delay_seconds=delay
                ))
                if self._backoff(delay, on_calling_thread):
                    break
            elif on_calling_thread:
                self._poll_cancellation()

            if self.cancelled:
                break

            attempt += 1
            try:
                stored_path, record_id = self._attempt(context, destination, artifact, payload)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                will_retry = policy.should_retry(attempt) and not self.cancelled
                emit(DestinationFailed(
                    context.run_id,
                    destination_id=identifier,
                    error=last_error,
                    retry_count=attempt - 1,
                    will_retry=will_retry
                ))
                continue

            emit(DestinationCompleted(
                context.run_id,
                destination_id=identifier,
                stored_path=stored_path,
                record_id=record_id,
                retry_count=attempt - 1
            ))
            return DestinationOutcome(
                success=True,
                stored_path=stored_path,
                retry_count=attempt - 1,
                record_id=record_id,
                attempts=attempt
            )

        retry_count = max(attempt - 1, 0)
        if attempt < policy.max_attempts:
            error = CANCELLED_MESSAGE if last_error is None else f"{CANCELLED_MESSAGE} after: {last_error}"
            emit(DestinationFailed(context.run_id, destination_id=identifier, error=error, retry_count=retry_count))
        else:
            error = last_error

        return DestinationOutcome(success=False, error=error, retry_count=retry_count, attempts=attempt)

    def _attempt(self, context, destination, artifact: ArtifactHandle, payload):
        identifier = destination.identifier
        if not artifact.exists():
            raise DestinationStoreError(
                f"Artifact {artifact.filename} is no longer available",
                {'destination_id': identifier, 'path': artifact.path}
            )

        stored_path = destination.store(context, artifact.path, artifact.filename, dict(payload))
        if not stored_path:
            raise DestinationStoreError(
                f"Destination {identifier} did not return a stored path",
                {'destination_id': identifier}
            )

        try:
            record_id = destination.create_file_record(
                context, artifact.filename, stored_path, artifact.size_bytes, dict(payload)
            )
        except Exception as e:
            if self.cleanup_orphans:
                self._cleanup_orphan(destination, stored_path)
            if isinstance(e, DestinationRecordError):
                raise
            raise DestinationRecordError(
                f"Failed to create file record for {identifier}: {e}",
                {'destination_id': identifier, 'stored_path': stored_path}
            ) from e

        return stored_path, record_id

    def _cleanup_orphan(self, destination, stored_path: str):
        try:
            destination.delete_stored_file(stored_path)
            logger.info(f"Removed orphaned copy {stored_path} from {destination.identifier}")
        except Exception as e:
            error = OrphanCleanupError(
                f"Could not remove orphaned copy {stored_path} from {destination.identifier}: {e}",
                {'destination_id': destination.identifier, 'stored_path': stored_path}
            )
            logger.warning(error.message)

    def _backoff(self, delay: float, on_calling_thread: bool) -> bool:
        """
        Wait before the next attempt.

        Returns:
            True if cancelled while waiting
        """
        if not on_calling_thread or not self.cancellation_check:
            return self._cancelled.wait(delay)

        remaining = delay
        while remaining > 0:
            step = min(self.poll_interval, remaining)
            if self._cancelled.wait(step):
                return True
            remaining -= step
            self._poll_cancellation()
        return self._cancelled.is_set()

    def _poll_cancellation(self):
        if self._cancelled.is_set() or not self.cancellation_check:
            return
        try:
            if self.cancellation_check():
                self.cancel()
        except Exception as e:
            logger.warning(f"Cancellation check failed: {e}")
