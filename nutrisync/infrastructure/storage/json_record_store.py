"""JSON-file capture record store.

Implements the IRecordStore port on top of a single JSON array file.
Every mutation rewrites the whole collection through a temporary file,
``fsync`` and ``os.replace``, so the file on disk is always either the old
or the new collection, never a torn write.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from nutrisync.domain.capture.models import CaptureRecord, SyncState
from nutrisync.domain.capture.ports import RecordMutator
from nutrisync.domain.shared.errors import (
    CaptureNotFoundError,
    DuplicateCaptureError,
    StorageError,
)

logger = structlog.get_logger(__name__)


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class JsonRecordStore:
    """
    Durable, serialized store of capture records.

    Writers take an ``asyncio.Lock`` and swap the in-memory dict only after
    the file write succeeded. Readers see immutable snapshots without
    locking.

    Load behavior:
    - missing file → empty store
    - unreadable or non-array document → empty store, corrupt file moved aside
    - individual invalid entries → skipped (partial store)

    Example:
        >>> store = JsonRecordStore(Path("/data/captures.json"))
        >>> await store.put(CaptureRecord.create(payload))
        >>> pending = await store.list_by_state(SyncState.PENDING)
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._records: Dict[str, CaptureRecord] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ─── loading ────────────────────────────────────────────

    def _load(self) -> Dict[str, CaptureRecord]:
        if not self._path.exists():
            return {}

        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            self._quarantine(f"unreadable document: {e}")
            return {}

        if not isinstance(document, list):
            self._quarantine(f"expected a JSON array, got {type(document).__name__}")
            return {}

        records: Dict[str, CaptureRecord] = {}
        skipped = 0
        for index, entry in enumerate(document):
            try:
                record = CaptureRecord.model_validate(entry)
            except ValidationError as e:
                skipped += 1
                logger.warning(
                    "record_store_entry_skipped",
                    path=str(self._path),
                    index=index,
                    errors=e.error_count(),
                )
                continue
            if record.id in records:
                skipped += 1
                logger.warning("record_store_duplicate_id", path=str(self._path), capture_id=record.id)
                continue
            records[record.id] = record

        logger.info(
            "record_store_loaded",
            path=str(self._path),
            records=len(records),
            skipped=skipped,
        )
        return records

    def _quarantine(self, reason: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = self._path.with_name(f"{self._path.name}.corrupt-{stamp}")
        try:
            os.replace(self._path, target)
        except OSError as e:
            logger.warning(
                "record_store_corrupt",
                path=str(self._path),
                reason=reason,
                moved_to=None,
                move_error=str(e),
            )
            return
        logger.warning(
            "record_store_corrupt",
            path=str(self._path),
            reason=reason,
            moved_to=str(target),
        )

    # ─── persistence ────────────────────────────────────────

    async def _persist(self, records: Dict[str, CaptureRecord]) -> None:
        ordered = sorted(records.values(), key=lambda r: r.sort_key)
        data = json.dumps([r.model_dump(mode="json") for r in ordered], indent=2)
        try:
            await asyncio.to_thread(_atomic_write, self._path, data)
        except OSError as e:
            logger.error("record_store_write_failed", path=str(self._path), error=str(e))
            raise StorageError(f"Failed to persist {self._path}: {e}") from e

    # ─── mutations ──────────────────────────────────────────

    async def put(self, record: CaptureRecord) -> None:
        async with self._lock:
            if record.id in self._records:
                raise DuplicateCaptureError(f"Capture {record.id} already stored")
            updated = dict(self._records)
            updated[record.id] = record
            await self._persist(updated)
            self._records = updated
        logger.debug("record_stored", capture_id=record.id, state=record.sync_state.value)

    async def update(self, capture_id: str, mutator: RecordMutator) -> CaptureRecord:
        """
        Read-modify-write one record under the store lock.

        Exceptions raised by ``mutator`` abort the update and propagate.

        Raises:
            CaptureNotFoundError: ID not stored
            StorageError: Write failed (store unchanged)
        """
        async with self._lock:
            current = self._records.get(capture_id)
            if current is None:
                raise CaptureNotFoundError(f"Capture {capture_id} not found")
            new_record = mutator(current)
            if new_record.id != capture_id:
                raise ValueError("mutator must not change the record id")
            updated = dict(self._records)
            updated[capture_id] = new_record
            await self._persist(updated)
            self._records = updated
        return new_record

    async def delete(self, capture_id: str) -> bool:
        return await self.delete_many([capture_id]) == 1

    async def delete_many(self, capture_ids: Iterable[str]) -> int:
        async with self._lock:
            targets = {cid for cid in capture_ids if cid in self._records}
            if not targets:
                return 0
            updated = {cid: r for cid, r in self._records.items() if cid not in targets}
            await self._persist(updated)
            self._records = updated
        logger.debug("records_deleted", count=len(targets))
        return len(targets)

    # ─── reads (snapshots) ──────────────────────────────────

    async def get(self, capture_id: str) -> Optional[CaptureRecord]:
        return self._records.get(capture_id)

    async def list_by_state(self, *states: SyncState) -> List[CaptureRecord]:
        """Records in any of ``states``, oldest first."""
        wanted = set(states)
        snapshot = self._records
        return sorted(
            (r for r in snapshot.values() if r.sync_state in wanted),
            key=lambda r: r.sort_key,
        )

    async def all(self) -> List[CaptureRecord]:
        return sorted(self._records.values(), key=lambda r: r.sort_key)

    def __len__(self) -> int:
        return len(self._records)
