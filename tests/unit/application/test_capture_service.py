"""Unit tests for CaptureService."""

import base64
from datetime import timedelta

import pytest

from nutrisync.application.sync.cancellation import CancellationRegistry
from nutrisync.application.sync.capture_service import CaptureService
from nutrisync.domain.capture.events import CaptureDeleted, CaptureQueued
from nutrisync.domain.capture.models import CaptureRecord, FailureInfo, ItemsPayload, SyncState
from nutrisync.domain.shared.errors import (
    AuthenticationError,
    CaptureNotFoundError,
    InvalidInputError,
)
from nutrisync.infrastructure.events.in_memory_bus import InMemoryEventBus


@pytest.fixture
def cancellations() -> CancellationRegistry:
    return CancellationRegistry()


@pytest.fixture
def wakeups() -> list:
    return []


@pytest.fixture
def service(store, queue, cancellations, wakeups) -> CaptureService:
    return CaptureService(
        store, queue, cancellations=cancellations, on_enqueued=lambda: wakeups.append(1)
    )


class TestCapture:
    @pytest.mark.asyncio
    async def test_photo_bytes_persisted_as_pending(self, service, store, wakeups) -> None:
        record = await service.capture_photo(image_bytes=b"jpeg-bytes")

        stored = await store.get(record.id)
        assert stored.sync_state is SyncState.PENDING
        assert base64.b64decode(stored.payload.image_base64) == b"jpeg-bytes"
        assert wakeups == [1]

    @pytest.mark.asyncio
    async def test_photo_path(self, service) -> None:
        record = await service.capture_photo(image_path="/photos/lunch.jpg", mime_type="image/png")

        assert record.payload.image_path == "/photos/lunch.jpg"
        assert record.payload.mime_type == "image/png"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [{}, {"image_path": "/a.jpg", "image_bytes": b"x"}, {"image_bytes": b""}],
    )
    async def test_photo_requires_exactly_one_source(self, service, store, kwargs) -> None:
        with pytest.raises(InvalidInputError):
            await service.capture_photo(**kwargs)

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_manual_items(self, service, sample_items) -> None:
        record = await service.capture_items(sample_items)

        assert isinstance(record.payload, ItemsPayload)
        assert len(record.payload.items) == 2

    @pytest.mark.asyncio
    async def test_manual_items_must_not_be_empty(self, service) -> None:
        with pytest.raises(InvalidInputError):
            await service.capture_items([])

    @pytest.mark.asyncio
    async def test_publishes_queued_event(self, store, queue) -> None:
        bus = InMemoryEventBus()
        seen = []

        async def on_queued(event: CaptureQueued) -> None:
            seen.append(event.capture_id)

        bus.subscribe(CaptureQueued, on_queued)
        record = await CaptureService(store, queue, event_bus=bus).capture_photo(image_bytes=b"x")

        assert seen == [record.id]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_pending(self, service, store) -> None:
        record = await service.capture_photo(image_bytes=b"x")

        assert await service.delete(record.id)
        assert await store.get(record.id) is None

    @pytest.mark.asyncio
    async def test_delete_unknown(self, service) -> None:
        assert not await service.delete("missing")

    @pytest.mark.asyncio
    async def test_delete_claimed_record_cancels_upload(self, service, queue, cancellations) -> None:
        record = await service.capture_photo(image_bytes=b"x")
        await queue.next()

        await service.delete(record.id)

        assert cancellations.is_cancelled(record.id)
        assert not queue.is_claimed(record.id)

    @pytest.mark.asyncio
    async def test_delete_synced_publishes_flag(self, store, queue, make_record, sample_result, clock) -> None:
        bus = InMemoryEventBus()
        seen = []

        async def on_deleted(event: CaptureDeleted) -> None:
            seen.append(event.was_synced)

        bus.subscribe(CaptureDeleted, on_deleted)
        record = make_record().mark_synced(sample_result, 1, clock.now())
        await store.put(record)

        await CaptureService(store, queue, event_bus=bus).delete(record.id)

        assert seen == [True]


class TestRetry:
    @pytest.mark.asyncio
    async def test_user_retry_requeues_terminal_failure(self, service, store, make_record, clock, wakeups) -> None:
        record = make_record().mark_failed(FailureInfo.from_error(AuthenticationError("x")), 1, clock.now())
        await store.put(record)

        retried = await service.retry(record.id)

        assert retried.sync_state is SyncState.PENDING
        assert wakeups == [1]

    @pytest.mark.asyncio
    async def test_retry_non_failed_is_noop(self, service, store, make_record, sample_result, clock) -> None:
        record = make_record().mark_synced(sample_result, 1, clock.now())
        await store.put(record)

        assert (await service.retry(record.id)).sync_state is SyncState.SYNCED

    @pytest.mark.asyncio
    async def test_retry_unknown(self, service) -> None:
        with pytest.raises(CaptureNotFoundError):
            await service.retry("00000000-0000-0000-0000-000000000000")


class TestQueries:
    @pytest.mark.asyncio
    async def test_unsynced_count(self, service, store, make_record, sample_result, clock) -> None:
        await store.put(make_record())
        await store.put(make_record().mark_in_flight(clock.now()))
        await store.put(make_record().mark_synced(sample_result, 1, clock.now()))

        assert await service.unsynced_count() == 2

    @pytest.mark.asyncio
    async def test_get_unknown(self, service) -> None:
        with pytest.raises(CaptureNotFoundError):
            await service.get("missing")

    @pytest.mark.asyncio
    async def test_daily_totals_count_manual_entries_before_sync(
        self, service, store, make_record, sample_result, sample_items, clock
    ) -> None:
        today = clock.now()
        await store.put(make_record(created_at=today).mark_synced(sample_result, 1, today))
        await store.put(CaptureRecord.create(ItemsPayload(items=[sample_items[1]]), now=today))
        await store.put(
            make_record(created_at=today - timedelta(days=1)).mark_synced(sample_result, 1, today)
        )

        summary = await service.daily_totals(today.date())

        assert summary.meal_count == 2
        assert summary.unsynced_count == 1
        assert summary.totals.calories == pytest.approx(638)

    @pytest.mark.asyncio
    async def test_daily_totals_sum_synced_items(self, service, store, make_record, sample_result, clock) -> None:
        today = clock.now()
        await store.put(make_record(created_at=today).mark_synced(sample_result, 1, today))
        await store.put(make_record(created_at=today))

        summary = await service.daily_totals(today.date())

        assert summary.meal_count == 1
        assert summary.unsynced_count == 1
        assert summary.totals.calories == pytest.approx(443)
        assert summary.totals.protein == pytest.approx(50)
