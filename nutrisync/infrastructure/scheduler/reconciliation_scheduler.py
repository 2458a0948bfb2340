"""
APScheduler wiring for the reconciliation sweep.

Runs ``ReconciliationEngine.sweep`` on a fixed interval inside the
running asyncio loop.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from nutrisync.application.sync.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)

JOB_ID = "reconciliation_sweep"


class ReconciliationScheduler:
    """
    Manages the scheduler lifecycle and the sweep job.

    Example:
        >>> scheduler = ReconciliationScheduler(engine, interval_s=300)
        >>> scheduler.start()
        >>> scheduler.shutdown()
    """

    def __init__(self, engine: ReconciliationEngine, interval_s: float = 300.0) -> None:
        self._engine = engine
        self._interval_s = interval_s
        self.scheduler: Optional[AsyncIOScheduler] = None

    def start(self) -> None:
        """Create the scheduler, register the job and start it (needs a running loop)."""
        if self.scheduler is not None and self.scheduler.running:
            logger.warning("scheduler_already_running")
            return

        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,  # One sweep at a time
                "misfire_grace_time": int(self._interval_s),
            },
        )
        self.scheduler.add_job(
            self._run_sweep,
            trigger=IntervalTrigger(seconds=self._interval_s),
            id=JOB_ID,
            name="Capture reconciliation sweep",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("scheduler_started", interval_s=self._interval_s)

    async def _run_sweep(self) -> None:
        try:
            await self._engine.sweep()
        except Exception:
            logger.exception("reconciliation_sweep_failed")

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler is None or not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def get_jobs(self) -> List[Dict[str, Any]]:
        if self.scheduler is None:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]
