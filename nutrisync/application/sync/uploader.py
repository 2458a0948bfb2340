"""
Uploader workers.

An ``Uploader`` drains the sync queue: claim a record, mark it in flight,
post it through the retry dispatcher, then persist the outcome. A record
is never dropped on failure; it becomes ``failed`` with the classified
reason and stays in the store.

The claim is refreshed before every attempt and throughout backoff
sleeps. Outcomes are written only while the record is still the
``in_flight`` lease this worker took; a worker that lost either gives up
without posting or writing.

``UploaderPool`` runs a bounded number of uploaders sharing one queue.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

import structlog

from nutrisync.application.sync.cancellation import CancellationRegistry
from nutrisync.application.sync.retry_dispatcher import Classifier, RetryDispatcher
from nutrisync.application.sync.sync_queue import SyncQueue
from nutrisync.domain.analysis.models import AnalysisResult
from nutrisync.domain.capture.events import CaptureFailed, CaptureSynced
from nutrisync.domain.capture.models import CaptureRecord, FailureInfo, SyncState
from nutrisync.domain.capture.ports import IAnalysisGateway, IEventBus, IRecordStore
from nutrisync.domain.shared.errors import (
    CaptureNotFoundError,
    ClaimLostError,
    OperationCancelledError,
    StorageError,
)

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadOutcome(str, Enum):
    SYNCED = "synced"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"  # record deleted while the call was in flight
    ABANDONED = "abandoned"  # claim lost; another worker owns the record


@dataclass(frozen=True)
class UploadReport:
    capture_id: str
    outcome: UploadOutcome
    attempts: int
    record: Optional[CaptureRecord] = None


class Uploader:
    """
    Single upload worker.

    Example:
        >>> uploader = Uploader(store, queue, gateway, RetryDispatcher())
        >>> report = await uploader.process_next()
        >>> report.outcome
        <UploadOutcome.SYNCED: 'synced'>
    """

    def __init__(
        self,
        store: IRecordStore,
        queue: SyncQueue,
        gateway: IAnalysisGateway,
        dispatcher: RetryDispatcher,
        *,
        event_bus: Optional[IEventBus] = None,
        cancellations: Optional[CancellationRegistry] = None,
        max_attempts: Optional[int] = None,
        classify: Optional[Classifier] = None,
        failure_cooldown_s: float = 300.0,
        idle_wait_s: float = 30.0,
        now: Callable[[], datetime] = _utcnow,
        name: str = "uploader-0",
    ) -> None:
        self._store = store
        self._queue = queue
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._event_bus = event_bus
        self._cancellations = cancellations or CancellationRegistry()
        self._max_attempts = max_attempts
        self._classify = classify
        self._failure_cooldown = timedelta(seconds=failure_cooldown_s)
        self._idle_wait_s = idle_wait_s
        self._now = now
        self._wake = asyncio.Event()
        self.name = name

    def notify(self) -> None:
        """Wake the worker loop (new capture, foreground, shutdown)."""
        self._wake.set()

    async def process_next(self) -> Optional[UploadReport]:
        """
        Upload the next eligible record.

        Returns:
            UploadReport, or None when nothing is eligible

        Raises:
            StorageError: Record state could not be persisted; the claim is
                released and reconciliation recovers the record
        """
        record = await self._queue.next(owner=self.name)
        if record is None:
            return None

        capture_id = record.id
        log = logger.bind(worker=self.name, capture_id=capture_id)
        try:
            if self._cancellations.is_cancelled(capture_id):
                log.info("upload_skipped_cancelled")
                await self._requeue_if_present(capture_id)
                return UploadReport(capture_id, UploadOutcome.CANCELLED, 0)

            try:
                record = await self._store.update(capture_id, lambda r: r.mark_in_flight(self._now()))
            except CaptureNotFoundError:
                log.info("upload_skipped_deleted")
                self._cancellations.clear(capture_id)
                return UploadReport(capture_id, UploadOutcome.DISCARDED, 0)

            lease = record
            calls = 0

            async def post() -> AnalysisResult:
                nonlocal calls
                await self._heartbeat(capture_id)
                calls += 1
                log.info("upload_attempt", attempt=calls, total_attempts=lease.attempts + calls)
                return await self._gateway.analyze(lease)

            async def backoff(delay: float) -> None:
                await self._sleep_holding_claim(capture_id, delay)

            try:
                result = await self._dispatcher.execute(
                    post,
                    max_attempts=self._max_attempts,
                    classify=self._classify,
                    cancelled=self._cancellations.token(capture_id),
                    sleep=backoff,
                )
            except ClaimLostError as lost:
                return self._abandon(capture_id, calls, lost, log)
            except OperationCancelledError:
                log.info("upload_cancelled", attempts=calls)
                await self._requeue_if_present(capture_id)
                return UploadReport(capture_id, UploadOutcome.CANCELLED, calls)
            except Exception as error:
                return await self._record_failure(lease, error, calls, log)

            return await self._record_success(lease, result, calls, log)
        finally:
            await self._queue.release(capture_id, owner=self.name)

    async def _heartbeat(self, capture_id: str) -> None:
        # deletion releases the claim too; report it as a cancellation
        if self._cancellations.is_cancelled(capture_id):
            raise OperationCancelledError("Operation cancelled")
        if not await self._queue.touch(capture_id, owner=self.name):
            raise ClaimLostError(f"{self.name} lost its claim on capture {capture_id}")

    async def _sleep_holding_claim(self, capture_id: str, delay: float) -> None:
        """Backoff sleep in slices shorter than the claim timeout, touching the claim after each."""
        step = self._queue.claim_timeout_s / 3
        remaining = delay
        while True:
            chunk = min(remaining, step)
            await self._dispatcher.sleep(chunk)
            remaining -= chunk
            await self._heartbeat(capture_id)
            if remaining <= 0:
                return

    def _fenced(
        self, lease: CaptureRecord, apply: Callable[[CaptureRecord], CaptureRecord]
    ) -> Callable[[CaptureRecord], CaptureRecord]:
        """Mutator that applies only to the in-flight lease this worker took."""

        def mutate(current: CaptureRecord) -> CaptureRecord:
            if current.sync_state is not SyncState.IN_FLIGHT or current.in_flight_since != lease.in_flight_since:
                raise ClaimLostError(
                    f"Capture {current.id} is {current.sync_state.value}, no longer leased to {self.name}"
                )
            return apply(current)

        return mutate

    def _abandon(
        self, capture_id: str, calls: int, error: ClaimLostError, log: structlog.typing.FilteringBoundLogger
    ) -> UploadReport:
        log.warning("upload_abandoned", attempts=calls, error=str(error))
        return UploadReport(capture_id, UploadOutcome.ABANDONED, calls)

    async def _record_success(
        self, lease: CaptureRecord, result: AnalysisResult, calls: int, log: structlog.typing.FilteringBoundLogger
    ) -> UploadReport:
        capture_id = lease.id
        if self._cancellations.is_cancelled(capture_id):
            log.info("upload_result_discarded", reason="cancelled")
            self._cancellations.clear(capture_id)
            return UploadReport(capture_id, UploadOutcome.DISCARDED, calls)
        try:
            updated = await self._store.update(
                capture_id, self._fenced(lease, lambda r: r.mark_synced(result, calls, self._now()))
            )
        except CaptureNotFoundError:
            log.info("upload_result_discarded", reason="deleted")
            self._cancellations.clear(capture_id)
            return UploadReport(capture_id, UploadOutcome.DISCARDED, calls)
        except ClaimLostError as lost:
            return self._abandon(capture_id, calls, lost, log)

        await self._queue.ack(capture_id, owner=self.name)
        log.info(
            "capture_synced",
            provider=result.provider,
            items=len(result.items),
            attempts=updated.attempts,
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                CaptureSynced.create(
                    capture_id=capture_id,
                    provider=result.provider,
                    item_count=len(result.items),
                    attempts=updated.attempts,
                )
            )
        return UploadReport(capture_id, UploadOutcome.SYNCED, calls, updated)

    async def _record_failure(
        self, lease: CaptureRecord, error: Exception, calls: int, log: structlog.typing.FilteringBoundLogger
    ) -> UploadReport:
        capture_id = lease.id
        now = self._now()
        failure = FailureInfo.from_error(error, now)
        retry_at = now + self._failure_cooldown if failure.retryable else None
        try:
            updated = await self._store.update(
                capture_id, self._fenced(lease, lambda r: r.mark_failed(failure, calls, now, retry_at))
            )
        except CaptureNotFoundError:
            log.info("upload_failure_discarded", reason="deleted")
            self._cancellations.clear(capture_id)
            return UploadReport(capture_id, UploadOutcome.DISCARDED, calls)
        except ClaimLostError as lost:
            return self._abandon(capture_id, calls, lost, log)

        await self._queue.nack(capture_id, error, owner=self.name)
        log.warning(
            "capture_failed",
            code=failure.code,
            retryable=failure.retryable,
            attempts=updated.attempts,
            retry_at=retry_at.isoformat() if retry_at else None,
            error=failure.message,
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                CaptureFailed.create(
                    capture_id=capture_id,
                    code=failure.code,
                    message=failure.message,
                    retryable=failure.retryable,
                    attempts=updated.attempts,
                    retry_at=retry_at,
                )
            )
        return UploadReport(capture_id, UploadOutcome.FAILED, calls, updated)

    async def _requeue_if_present(self, capture_id: str) -> None:
        self._cancellations.clear(capture_id)
        if await self._store.get(capture_id) is None:
            return
        try:
            await self._store.update(capture_id, lambda r: r.requeue(self._now()))
        except CaptureNotFoundError:
            logger.debug("requeue_skipped_deleted", capture_id=capture_id)

    async def run(self, stop: asyncio.Event) -> None:
        """Process records until ``stop`` is set."""
        logger.info("uploader_started", worker=self.name)
        while not stop.is_set():
            self._wake.clear()
            try:
                report = await self.process_next()
            except StorageError as e:
                logger.error("uploader_storage_error", worker=self.name, error=str(e))
                report = None
            if report is None and not stop.is_set():
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._idle_wait_s)
                except asyncio.TimeoutError:
                    logger.debug("uploader_idle_poll", worker=self.name)
        logger.info("uploader_stopped", worker=self.name)


class UploaderPool:
    """
    Bounded pool of uploaders sharing one queue.

    Example:
        >>> pool = UploaderPool([Uploader(...), Uploader(...)])
        >>> pool.start()
        >>> pool.notify()
        >>> await pool.stop()
    """

    def __init__(self, uploaders: List[Uploader]) -> None:
        if not uploaders:
            raise ValueError("pool needs at least one uploader")
        self._uploaders = uploaders
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def size(self) -> int:
        return len(self._uploaders)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            logger.warning("uploader_pool_already_running")
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(u.run(self._stop), name=u.name) for u in self._uploaders
        ]
        logger.info("uploader_pool_started", size=self.size)

    def notify(self) -> None:
        for uploader in self._uploaders:
            uploader.notify()

    async def stop(self, timeout_s: Optional[float] = 30.0) -> None:
        """Stop workers; cancel them if they don't finish within ``timeout_s``."""
        if not self._tasks:
            return
        self._stop.set()
        self.notify()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("uploader_pool_cancelled_workers", count=len(pending))
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("uploader_crashed", worker=task.get_name(), error=str(task.exception()))
        self._tasks = []
        logger.info("uploader_pool_stopped")
