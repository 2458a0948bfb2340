"""
Device-side composition root.

Wires the record store, sync queue, retry dispatcher, uploader pool,
reconciliation engine and scheduler from ``Settings``.

Example:
    >>> async with SyncRuntime.from_settings(Settings.from_env()) as runtime:
    ...     await runtime.captures.capture_photo(image_path="/photos/lunch.jpg")
    ...     await runtime.on_foreground()
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from nutrisync.application.sync.cancellation import CancellationRegistry
from nutrisync.application.sync.capture_service import CaptureService
from nutrisync.application.sync.reconciliation import ReconciliationEngine, SweepReport
from nutrisync.application.sync.retry_dispatcher import RetryDispatcher, RetryPolicy, SleepFn
from nutrisync.application.sync.sync_queue import SyncQueue
from nutrisync.application.sync.uploader import Uploader, UploaderPool
from nutrisync.config import Settings
from nutrisync.domain.capture.ports import IAnalysisGateway
from nutrisync.infrastructure.events.in_memory_bus import InMemoryEventBus
from nutrisync.infrastructure.http.analysis_api_client import AnalysisApiClient
from nutrisync.infrastructure.http.token_provider import StaticTokenProvider
from nutrisync.infrastructure.scheduler.reconciliation_scheduler import ReconciliationScheduler
from nutrisync.infrastructure.storage.json_record_store import JsonRecordStore

logger = structlog.get_logger(__name__)


class SyncRuntime:
    """Owns the long-running sync components and their lifecycle."""

    def __init__(
        self,
        *,
        store: JsonRecordStore,
        queue: SyncQueue,
        pool: UploaderPool,
        engine: ReconciliationEngine,
        scheduler: ReconciliationScheduler,
        captures: CaptureService,
        event_bus: InMemoryEventBus,
        api_client: Optional[AnalysisApiClient] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.pool = pool
        self.engine = engine
        self.scheduler = scheduler
        self.captures = captures
        self.event_bus = event_bus
        self._api_client = api_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: Optional[IAnalysisGateway] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> SyncRuntime:
        """
        Build every component from configuration.

        Args:
            settings: Validated settings
            gateway: Analysis gateway override (defaults to the HTTP client)
            sleep: Backoff sleep function (tests pass a fake)
        """
        store = JsonRecordStore(settings.records_file)
        queue = SyncQueue(store, claim_timeout_s=settings.claim_timeout_s)
        dispatcher = RetryDispatcher(
            RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay_s=settings.retry_base_delay_s,
                max_delay_s=settings.retry_max_delay_s,
                rate_limit_min_delay_s=settings.rate_limit_min_delay_s,
            ),
            sleep=sleep,
        )
        event_bus = InMemoryEventBus()
        cancellations = CancellationRegistry()

        api_client: Optional[AnalysisApiClient] = None
        if gateway is None:
            api_client = AnalysisApiClient(
                settings.api_base_url,
                token_provider=StaticTokenProvider(settings.api_token),
                timeout_s=settings.api_timeout_s,
            )
            gateway = api_client

        uploaders = [
            Uploader(
                store,
                queue,
                gateway,
                dispatcher,
                event_bus=event_bus,
                cancellations=cancellations,
                failure_cooldown_s=settings.failure_cooldown_s,
                idle_wait_s=settings.reconciliation_interval_s,
                name=f"uploader-{i}",
            )
            for i in range(settings.worker_count)
        ]
        pool = UploaderPool(uploaders)
        engine = ReconciliationEngine(
            store,
            queue,
            retention_days=settings.retention_days,
            max_synced_records=settings.max_synced_records,
        )
        captures = CaptureService(
            store,
            queue,
            event_bus=event_bus,
            cancellations=cancellations,
            on_enqueued=pool.notify,
        )
        return cls(
            store=store,
            queue=queue,
            pool=pool,
            engine=engine,
            scheduler=ReconciliationScheduler(engine, settings.reconciliation_interval_s),
            captures=captures,
            event_bus=event_bus,
            api_client=api_client,
        )

    async def start(self) -> None:
        """Recover leftovers from a previous run, then start workers and the sweep job."""
        report = await self.engine.sweep(recover_all_in_flight=True)
        logger.info("runtime_recovered", recovered=len(report.recovered), requeued=len(report.requeued))
        self.pool.start()
        self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.shutdown()
        await self.pool.stop()
        if self._api_client is not None:
            await self._api_client.aclose()
        logger.info("runtime_stopped")

    async def on_foreground(self) -> SweepReport:
        """App came to the foreground: sweep and wake the workers."""
        report = await self.engine.sweep()
        self.pool.notify()
        return report

    async def __aenter__(self) -> SyncRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
