"""
Reconciliation sweep.

Periodic repair of the capture store:

- ``failed`` records with a retryable error go back to ``pending`` once
  their cooldown has elapsed
- ``in_flight`` records no live worker owns, stuck past the claim
  timeout, go back to ``pending``
- ``synced`` records past the retention window, or beyond the cap on
  kept synced records, are deleted

``pending`` and ``failed`` records are never deleted here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import structlog

from nutrisync.application.sync.sync_queue import SyncQueue
from nutrisync.domain.capture.models import CaptureRecord, SyncState
from nutrisync.domain.capture.ports import IRecordStore
from nutrisync.domain.shared.errors import CaptureNotFoundError

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SweepReport:
    requeued: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    pruned: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.requeued or self.recovered or self.pruned)


class ReconciliationEngine:
    """
    Sweep the capture store back into a consistent state.

    Example:
        >>> engine = ReconciliationEngine(store, queue)
        >>> report = await engine.sweep()
        >>> report.recovered
        ['4f1c...']
    """

    def __init__(
        self,
        store: IRecordStore,
        queue: SyncQueue,
        *,
        retention_days: int = 30,
        max_synced_records: int = 1000,
        claim_timeout_s: Optional[float] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._retention = timedelta(days=retention_days)
        self._max_synced = max_synced_records
        self._claim_timeout = timedelta(
            seconds=claim_timeout_s if claim_timeout_s is not None else queue.claim_timeout_s
        )
        self._now = now

    async def sweep(self, recover_all_in_flight: bool = False) -> SweepReport:
        """
        Run one sweep.

        Args:
            recover_all_in_flight: Requeue every unclaimed in-flight record
                regardless of age (startup, when no worker can own one)

        Returns:
            SweepReport with the IDs touched and the number pruned
        """
        now = self._now()
        requeued = await self._requeue_failed(now)
        recovered = await self._recover_in_flight(now, recover_all_in_flight)
        pruned = await self._prune_synced(now)

        report = SweepReport(requeued=requeued, recovered=recovered, pruned=pruned)
        logger.info(
            "reconciliation_sweep",
            requeued=len(requeued),
            recovered=len(recovered),
            pruned=pruned,
        )
        return report

    async def _requeue_failed(self, now: datetime) -> List[str]:
        requeued: List[str] = []
        for record in await self._store.list_by_state(SyncState.FAILED):
            if not record.is_due(now) or self._queue.is_claimed(record.id):
                continue
            if await self._transition(record.id, SyncState.FAILED, now):
                requeued.append(record.id)
        return requeued

    async def _recover_in_flight(self, now: datetime, recover_all: bool) -> List[str]:
        recovered: List[str] = []
        for record in await self._store.list_by_state(SyncState.IN_FLIGHT):
            if self._queue.is_claimed(record.id):
                continue
            if not recover_all and not record.in_flight_longer_than(self._claim_timeout, now):
                continue
            if await self._transition(record.id, SyncState.IN_FLIGHT, now):
                logger.warning("stale_in_flight_recovered", capture_id=record.id)
                recovered.append(record.id)
        return recovered

    async def _transition(self, capture_id: str, expected: SyncState, now: datetime) -> bool:
        """Requeue only if the record is still in ``expected`` state."""

        def requeue(current: CaptureRecord) -> CaptureRecord:
            if current.sync_state is not expected:
                return current
            return current.requeue(now)

        try:
            updated = await self._store.update(capture_id, requeue)
        except CaptureNotFoundError:
            return False
        return updated.sync_state is SyncState.PENDING

    async def _prune_synced(self, now: datetime) -> int:
        synced = await self._store.list_by_state(SyncState.SYNCED)
        cutoff = now - self._retention

        def synced_time(r: CaptureRecord) -> datetime:
            return r.synced_at or r.updated_at or r.created_at

        expired = {r.id for r in synced if synced_time(r) < cutoff}
        remaining = sorted(
            (r for r in synced if r.id not in expired), key=synced_time, reverse=True
        )
        overflow = {r.id for r in remaining[self._max_synced :]}

        doomed = expired | overflow
        if not doomed:
            return 0
        return await self._store.delete_many(doomed)
