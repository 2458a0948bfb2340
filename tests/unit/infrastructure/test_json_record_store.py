"""Unit tests for JsonRecordStore.

Tests focus on:
- Durability (a new instance sees what the previous one wrote)
- Atomic writes (failed writes leave the file and memory unchanged)
- Corruption handling (corrupt file, partially invalid entries)
"""

import asyncio
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from nutrisync.domain.capture.models import SyncState
from nutrisync.domain.shared.errors import (
    CaptureNotFoundError,
    DuplicateCaptureError,
    StorageError,
)
from nutrisync.infrastructure.storage.json_record_store import JsonRecordStore


class TestPersistence:
    @pytest.mark.asyncio
    async def test_put_is_durable_across_instances(self, store, records_path, make_record) -> None:
        record = make_record()

        await store.put(record)
        reloaded = JsonRecordStore(records_path)

        assert await reloaded.get(record.id) == record

    @pytest.mark.asyncio
    async def test_file_is_a_json_array(self, store, records_path, make_record) -> None:
        await store.put(make_record())

        document = json.loads(records_path.read_text())

        assert isinstance(document, list)
        assert document[0]["sync_state"] == "pending"

    @pytest.mark.asyncio
    async def test_put_duplicate_id_rejected(self, store, make_record) -> None:
        record = make_record()
        await store.put(record)

        with pytest.raises(DuplicateCaptureError):
            await store.put(record)

    @pytest.mark.asyncio
    async def test_update_applies_mutator(self, store, make_record, clock) -> None:
        record = make_record()
        await store.put(record)

        updated = await store.update(record.id, lambda r: r.mark_in_flight(clock.now()))

        assert updated.sync_state is SyncState.IN_FLIGHT
        assert (await store.get(record.id)).sync_state is SyncState.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, store) -> None:
        with pytest.raises(CaptureNotFoundError):
            await store.update("00000000-0000-0000-0000-000000000000", lambda r: r)

    @pytest.mark.asyncio
    async def test_mutator_cannot_change_id(self, store, make_record) -> None:
        first, second = make_record(), make_record()
        await store.put(first)

        with pytest.raises(ValueError):
            await store.update(first.id, lambda r: second)

    @pytest.mark.asyncio
    async def test_list_by_state_oldest_first(self, store, make_record, clock) -> None:
        later = make_record(created_at=clock.now())
        earlier = make_record(created_at=clock.now().replace(hour=8))
        await store.put(later)
        await store.put(earlier)

        pending = await store.list_by_state(SyncState.PENDING)

        assert [r.id for r in pending] == [earlier.id, later.id]

    @pytest.mark.asyncio
    async def test_delete_many(self, store, make_record) -> None:
        records = [make_record() for _ in range(3)]
        for record in records:
            await store.put(record)

        removed = await store.delete_many([records[0].id, records[1].id, "missing"])

        assert removed == 2
        assert [r.id for r in await store.all()] == [records[2].id]

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_serialized(self, store, make_record) -> None:
        record = make_record()
        await store.put(record)

        await asyncio.gather(
            *(store.update(record.id, lambda r: r.model_copy(update={"attempts": r.attempts + 1})) for _ in range(20))
        )

        assert (await store.get(record.id)).attempts == 20


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(self, store, records_path, make_record) -> None:
        first = make_record()
        await store.put(first)
        before = records_path.read_text()

        with patch(
            "nutrisync.infrastructure.storage.json_record_store.os.replace",
            side_effect=OSError("disk full"),
        ):
            with pytest.raises(StorageError):
                await store.put(make_record())

        assert records_path.read_text() == before
        assert [r.id for r in await store.all()] == [first.id]
        assert not [p for p in records_path.parent.iterdir() if p.name.endswith(".tmp")]


class TestCorruption:
    def test_missing_file_gives_empty_store(self, tmp_path: Path) -> None:
        assert len(JsonRecordStore(tmp_path / "absent.json")) == 0

    def test_corrupt_file_is_moved_aside(self, records_path: Path) -> None:
        records_path.write_text("{not json")

        store = JsonRecordStore(records_path)

        assert len(store) == 0
        assert not records_path.exists()
        assert any(p.name.startswith("captures.json.corrupt-") for p in records_path.parent.iterdir())

    def test_non_array_document_is_corrupt(self, records_path: Path) -> None:
        records_path.write_text(json.dumps({"records": []}))

        assert len(JsonRecordStore(records_path)) == 0

    def test_invalid_entries_are_skipped(self, records_path: Path, make_record) -> None:
        good = make_record()
        records_path.write_text(
            json.dumps([good.model_dump(mode="json"), {"id": "broken"}, {"payload": {}}])
        )

        store = JsonRecordStore(records_path)

        assert len(store) == 1
        assert records_path.exists()

    @pytest.mark.asyncio
    async def test_store_writable_after_corruption(self, records_path: Path, make_record) -> None:
        records_path.write_text("garbage")
        store = JsonRecordStore(records_path)

        await store.put(make_record())

        assert len(JsonRecordStore(records_path)) == 1
        assert os.path.exists(records_path)
