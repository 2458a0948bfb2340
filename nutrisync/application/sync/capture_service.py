"""
Capture service.

Entry point for the device UI: record a photo or a manual entry, delete
or retry captures, list what has not synced yet and compute the day's
totals from local data.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import structlog

from nutrisync.application.sync.cancellation import CancellationRegistry
from nutrisync.application.sync.sync_queue import SyncQueue
from nutrisync.domain.analysis.models import NutritionItem, NutritionTotals
from nutrisync.domain.capture.events import CaptureDeleted, CaptureQueued
from nutrisync.domain.capture.models import (
    CaptureRecord,
    ImagePayload,
    ItemsPayload,
    SyncState,
)
from nutrisync.domain.capture.ports import IEventBus, IRecordStore
from nutrisync.domain.shared.errors import CaptureNotFoundError, InvalidInputError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DailySummary:
    day: date
    totals: NutritionTotals
    meal_count: int
    unsynced_count: int


class CaptureService:
    """
    Use cases exposed to the UI.

    Example:
        >>> service = CaptureService(store, queue)
        >>> record = await service.capture_photo(image_path="/photos/lunch.jpg")
        >>> await service.unsynced_count()
        1
    """

    def __init__(
        self,
        store: IRecordStore,
        queue: SyncQueue,
        *,
        event_bus: Optional[IEventBus] = None,
        cancellations: Optional[CancellationRegistry] = None,
        on_enqueued: Optional[Callable[[], None]] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._event_bus = event_bus
        self._cancellations = cancellations or CancellationRegistry()
        self._on_enqueued = on_enqueued

    async def _enqueue(self, record: CaptureRecord) -> CaptureRecord:
        await self._store.put(record)
        logger.info("capture_queued", capture_id=record.id, kind=record.payload.kind)
        if self._event_bus is not None:
            await self._event_bus.publish(CaptureQueued.create(record.id))
        if self._on_enqueued is not None:
            self._on_enqueued()
        return record

    async def capture_photo(
        self,
        *,
        image_path: Optional[Union[str, Path]] = None,
        image_bytes: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
    ) -> CaptureRecord:
        """
        Persist a photo capture as pending.

        Args:
            image_path: Local file written by the camera layer
            image_bytes: Inline image data (stored base64-encoded)
            mime_type: Image mime type

        Raises:
            InvalidInputError: Neither or both sources given, or empty image
        """
        if (image_path is None) == (image_bytes is None):
            raise InvalidInputError("Provide exactly one of image_path or image_bytes")
        if image_bytes is not None:
            if not image_bytes:
                raise InvalidInputError("Image is empty")
            payload = ImagePayload(
                image_base64=base64.b64encode(image_bytes).decode("ascii"),
                mime_type=mime_type,
            )
        else:
            payload = ImagePayload(image_path=str(image_path), mime_type=mime_type)
        return await self._enqueue(CaptureRecord.create(payload))

    async def capture_items(self, items: Iterable[NutritionItem]) -> CaptureRecord:
        """Persist a manual entry; the server skips image analysis for it."""
        item_list = list(items)
        if not item_list:
            raise InvalidInputError("Manual entry needs at least one item")
        return await self._enqueue(CaptureRecord.create(ItemsPayload(items=item_list)))

    async def delete(self, capture_id: str) -> bool:
        """
        Delete a capture in any state.

        An upload in flight completes but its result is discarded.
        """
        record = await self._store.get(capture_id)
        if record is None:
            return False
        if self._queue.is_claimed(capture_id):
            self._cancellations.cancel(capture_id)
        deleted = await self._store.delete(capture_id)
        await self._queue.release(capture_id)
        if deleted:
            logger.info("capture_deleted", capture_id=capture_id, state=record.sync_state.value)
            if self._event_bus is not None:
                await self._event_bus.publish(
                    CaptureDeleted.create(capture_id, record.sync_state is SyncState.SYNCED)
                )
        return deleted

    async def retry(self, capture_id: str) -> CaptureRecord:
        """
        User-initiated retry of a failed capture, terminal failures included.

        Raises:
            CaptureNotFoundError: Unknown ID
        """

        def requeue(current: CaptureRecord) -> CaptureRecord:
            if current.sync_state is not SyncState.FAILED:
                return current
            return current.requeue()

        record = await self._store.update(capture_id, requeue)
        if record.sync_state is SyncState.PENDING and self._on_enqueued is not None:
            self._on_enqueued()
        logger.info("capture_retry_requested", capture_id=capture_id, state=record.sync_state.value)
        return record

    async def get(self, capture_id: str) -> CaptureRecord:
        record = await self._store.get(capture_id)
        if record is None:
            raise CaptureNotFoundError(f"Capture {capture_id} not found")
        return record

    async def list_unsynced(self) -> List[CaptureRecord]:
        return await self._store.list_by_state(
            SyncState.PENDING, SyncState.IN_FLIGHT, SyncState.FAILED
        )

    async def unsynced_count(self) -> int:
        return len(await self.list_unsynced())

    async def daily_totals(self, day: date, tz: tzinfo = timezone.utc) -> DailySummary:
        """
        Totals for captures made on ``day`` (in ``tz``).

        Synced captures contribute their analysis result; manual entries
        contribute their items before they sync. Unanalyzed photos only
        count toward ``unsynced_count``.
        """
        items: List[NutritionItem] = []
        meals = 0
        unsynced = 0
        for record in await self._store.all():
            if _local_day(record.created_at, tz) != day:
                continue
            if record.sync_state is not SyncState.SYNCED:
                unsynced += 1
            if record.result is not None:
                items.extend(record.result.items)
                meals += 1
            elif isinstance(record.payload, ItemsPayload):
                items.extend(record.payload.items)
                meals += 1
        return DailySummary(
            day=day,
            totals=NutritionTotals.from_items(items),
            meal_count=meals,
            unsynced_count=unsynced,
        )


def _local_day(moment: datetime, tz: tzinfo) -> date:
    return moment.astimezone(tz).date()
