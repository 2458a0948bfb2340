"""Unit tests for InMemoryEventBus."""

from typing import List

import pytest

from nutrisync.domain.capture.events import CaptureDeleted, CaptureQueued
from nutrisync.infrastructure.events.in_memory_bus import InMemoryEventBus


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.mark.asyncio
async def test_handlers_receive_only_their_event_type(bus) -> None:
    queued: List[str] = []

    async def on_queued(event: CaptureQueued) -> None:
        queued.append(event.capture_id)

    bus.subscribe(CaptureQueued, on_queued)
    await bus.publish(CaptureQueued.create("c-1"))
    await bus.publish(CaptureDeleted.create("c-2", was_synced=False))

    assert queued == ["c-1"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(bus) -> None:
    delivered: List[str] = []

    async def broken(event: CaptureQueued) -> None:
        raise RuntimeError("boom")

    async def healthy(event: CaptureQueued) -> None:
        delivered.append(event.capture_id)

    bus.subscribe(CaptureQueued, broken)
    bus.subscribe(CaptureQueued, healthy)

    await bus.publish(CaptureQueued.create("c-1"))

    assert delivered == ["c-1"]


@pytest.mark.asyncio
async def test_publish_without_handlers(bus) -> None:
    await bus.publish(CaptureQueued.create("c-1"))


def test_unsubscribe(bus) -> None:
    async def handler(event: CaptureQueued) -> None:
        pass

    bus.subscribe(CaptureQueued, handler)

    assert bus.unsubscribe(CaptureQueued, handler)
    assert not bus.unsubscribe(CaptureQueued, handler)
    assert bus.get_handler_count(CaptureQueued) == 0


def test_clear(bus) -> None:
    async def handler(event: CaptureQueued) -> None:
        pass

    bus.subscribe(CaptureQueued, handler)
    bus.clear()

    assert bus.get_handler_count(CaptureQueued) == 0
