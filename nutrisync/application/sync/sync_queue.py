"""Sync queue.

Derived view over the record store: which captures should be uploaded
next, and which worker currently owns each one. Claims live in memory
only; after a restart the reconciliation sweep recovers records that were
left ``in_flight``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from nutrisync.domain.capture.models import CaptureRecord, SyncState
from nutrisync.domain.capture.ports import IRecordStore

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
WallClock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Claim:
    deadline: float
    owner: Optional[str] = None


class SyncQueue:
    """
    Claim-based queue of records eligible for upload.

    Eligible records are ``pending`` ones plus ``failed`` ones whose error
    is retryable and whose cooldown has elapsed, oldest first. Selection
    and claim happen under one lock, so a record is never handed to two
    callers at once.

    Claims expire after ``claim_timeout_s`` without a ``touch``; an
    expired claim may be handed out again. When ``owner`` is given,
    ``touch``/``ack``/``nack``/``release`` act only on that owner's claim,
    so a worker that lost its claim cannot extend or drop a successor's.

    Example:
        >>> queue = SyncQueue(store, claim_timeout_s=600)
        >>> record = await queue.next(owner="uploader-0")
        >>> if record:
        ...     await queue.ack(record.id, owner="uploader-0")
    """

    def __init__(
        self,
        store: IRecordStore,
        claim_timeout_s: float = 600.0,
        clock: Clock = time.monotonic,
        now: WallClock = _utcnow,
    ) -> None:
        if claim_timeout_s <= 0:
            raise ValueError("claim_timeout_s must be > 0")
        self._store = store
        self._claim_timeout_s = claim_timeout_s
        self._clock = clock
        self._now = now
        self._lock = asyncio.Lock()
        self._claims: Dict[str, _Claim] = {}

    @property
    def claim_timeout_s(self) -> float:
        return self._claim_timeout_s

    def _expire(self) -> None:
        now = self._clock()
        expired = [cid for cid, claim in self._claims.items() if claim.deadline <= now]
        for cid in expired:
            owner = self._claims.pop(cid).owner
            logger.warning("sync_claim_expired", capture_id=cid, owner=owner)

    def _owned(self, capture_id: str, owner: Optional[str]) -> Optional[_Claim]:
        """Live claim on ``capture_id`` held by ``owner`` (any owner when None)."""
        claim = self._claims.get(capture_id)
        if claim is None or claim.deadline <= self._clock():
            return None
        if owner is not None and claim.owner != owner:
            return None
        return claim

    async def eligible(self) -> List[CaptureRecord]:
        """Eligible records (claimed or not), oldest first."""
        now = self._now()
        candidates = await self._store.list_by_state(SyncState.PENDING, SyncState.FAILED)
        return [r for r in candidates if r.is_due(now)]

    async def next(self, owner: Optional[str] = None) -> Optional[CaptureRecord]:
        """Claim and return the oldest eligible unclaimed record, if any."""
        async with self._lock:
            self._expire()
            for record in await self.eligible():
                if record.id in self._claims:
                    continue
                self._claims[record.id] = _Claim(self._clock() + self._claim_timeout_s, owner)
                logger.debug("sync_claimed", capture_id=record.id, state=record.sync_state.value, owner=owner)
                return record
        return None

    async def _drop(self, capture_id: str, owner: Optional[str]) -> bool:
        async with self._lock:
            if owner is not None and self._owned(capture_id, owner) is None:
                return False
            return self._claims.pop(capture_id, None) is not None

    async def ack(self, capture_id: str, owner: Optional[str] = None) -> None:
        """Upload succeeded; release the claim."""
        await self._drop(capture_id, owner)
        logger.debug("sync_acked", capture_id=capture_id)

    async def nack(
        self, capture_id: str, error: Optional[BaseException] = None, owner: Optional[str] = None
    ) -> None:
        """Upload gave up; release the claim. The record state is the uploader's job."""
        await self._drop(capture_id, owner)
        logger.debug(
            "sync_nacked",
            capture_id=capture_id,
            error=type(error).__name__ if error else None,
        )

    async def release(self, capture_id: str, owner: Optional[str] = None) -> bool:
        """Drop a claim without an outcome (deletion, cancellation)."""
        return await self._drop(capture_id, owner)

    async def touch(self, capture_id: str, owner: Optional[str] = None) -> bool:
        """Extend a live claim. False when the claim expired or belongs to someone else."""
        async with self._lock:
            claim = self._owned(capture_id, owner)
            if claim is None:
                return False
            claim.deadline = self._clock() + self._claim_timeout_s
            return True

    def is_claimed(self, capture_id: str) -> bool:
        return self._owned(capture_id, None) is not None

    def claimed_ids(self) -> List[str]:
        now = self._clock()
        return [cid for cid, claim in self._claims.items() if claim.deadline > now]

    async def size(self) -> int:
        """Number of eligible records, claimed ones included."""
        return len(await self.eligible())
