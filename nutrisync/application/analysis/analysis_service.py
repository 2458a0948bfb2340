"""
Idempotent analysis service.

Wraps the orchestrator with per-capture idempotency: the first request
for a capture ID runs the provider chain and stores the result; repeated
requests (client retries after a lost response) get the stored result.
Concurrent duplicates share one in-flight orchestration. Failures are
not stored, so a later retry runs the chain again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from nutrisync.application.analysis.orchestrator import AnalysisOrchestrator
from nutrisync.domain.analysis.models import AnalysisResult, NutritionItem
from nutrisync.domain.analysis.ports import IAnalysisResultStore
from nutrisync.domain.shared.errors import InvalidInputError, ResultNotFoundError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AnalysisRequest:
    """Decoded ``POST /analyze`` payload."""

    capture_id: str
    image: Optional[bytes] = None
    mime_type: str = "image/jpeg"
    items: List[NutritionItem] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.capture_id:
            raise InvalidInputError("Capture id is required")
        if (self.image is None) == (not self.items):
            raise InvalidInputError("Provide exactly one of image or items")


@dataclass(frozen=True)
class AnalysisOutcome:
    result: AnalysisResult
    replayed: bool


class AnalysisService:
    """
    Idempotent front door to the orchestrator.

    Keys are scoped by the authenticated subject, so two users can never
    read each other's results by guessing a capture ID.

    Example:
        >>> service = AnalysisService(orchestrator, InMemoryResultStore())
        >>> outcome = await service.analyze(AnalysisRequest("id-1", image=data), subject="user-1")
        >>> again = await service.analyze(AnalysisRequest("id-1", image=data), subject="user-1")
        >>> again.replayed
        True
    """

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        results: IAnalysisResultStore,
        result_ttl_s: int = 24 * 3600,
    ) -> None:
        self._orchestrator = orchestrator
        self._results = results
        self._result_ttl_s = result_ttl_s
        self._in_flight: Dict[str, asyncio.Task[AnalysisResult]] = {}

    @staticmethod
    def _key(subject: Optional[str], capture_id: str) -> str:
        return f"{subject or 'anonymous'}:{capture_id}"

    async def analyze(self, request: AnalysisRequest, subject: Optional[str] = None) -> AnalysisOutcome:
        """
        Analyze once per capture ID.

        Raises:
            InvalidInputError: Rejected before contacting providers
            ProviderExhaustedError: Every provider failed
        """
        key = self._key(subject, request.capture_id)
        log = logger.bind(capture_id=request.capture_id)

        pending = self._in_flight.get(key)
        if pending is None:
            stored = await self._results.get(key)
            if stored is not None:
                log.info("analysis_replayed", source="store")
                return AnalysisOutcome(stored, replayed=True)
            pending = self._in_flight.get(key)

        if pending is not None:
            log.info("analysis_joined_in_flight")
            return AnalysisOutcome(await asyncio.shield(pending), replayed=True)

        task = asyncio.ensure_future(self._run(key, request))
        self._in_flight[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))
        return AnalysisOutcome(await asyncio.shield(task), replayed=False)

    def _finished(self, key: str, task: asyncio.Task[AnalysisResult]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("analysis_not_stored", key=key, error=type(task.exception()).__name__)

    async def _run(self, key: str, request: AnalysisRequest) -> AnalysisResult:
        if request.image is not None:
            result = await self._orchestrator.analyze(
                request.image, request.mime_type, capture_id=request.capture_id
            )
        else:
            result = self._orchestrator.analyze_items(request.items, capture_id=request.capture_id)
        await self._results.set(key, result, ttl_seconds=self._result_ttl_s)
        return result

    async def get_result(self, capture_id: str, subject: Optional[str] = None) -> AnalysisResult:
        """
        Stored result for a capture.

        Raises:
            ResultNotFoundError: Never analyzed, failed, or expired
        """
        result = await self._results.get(self._key(subject, capture_id))
        if result is None:
            raise ResultNotFoundError(f"No analysis result for capture {capture_id}")
        return result
