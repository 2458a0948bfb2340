"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

import pytest

from nutrisync.application.sync.retry_dispatcher import RetryDispatcher, RetryPolicy
from nutrisync.application.sync.sync_queue import SyncQueue
from nutrisync.domain.analysis.models import AnalysisResult, NutritionItem, ProviderAnalysis
from nutrisync.domain.capture.models import CaptureRecord, ImagePayload
from nutrisync.infrastructure.storage.json_record_store import JsonRecordStore


# ═══════════════════════════════════════════════════════════
# FAKES
# ═══════════════════════════════════════════════════════════


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    """Monotonic and wall clock under test control."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.wall = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.mono = 1000.0

    def monotonic(self) -> float:
        return self.mono

    def now(self) -> datetime:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.mono += seconds
        self.wall += timedelta(seconds=seconds)


class ScriptedGateway:
    """IAnalysisGateway that replays scripted outcomes per call."""

    def __init__(self, outcomes: List[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: List[str] = []

    async def analyze(self, record: CaptureRecord) -> AnalysisResult:
        self.calls.append(record.id)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(record)
        return outcome


class ScriptedProvider:
    """IAnalysisProvider with a fixed outcome."""

    def __init__(
        self,
        name: str,
        outcome: Any,
        timeout_s: float = 1.0,
        delay_s: float = 0.0,
    ) -> None:
        self.name = name
        self.timeout_s = timeout_s
        self._outcome = outcome
        self._delay_s = delay_s
        self.calls = 0

    async def analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        self.calls += 1
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome


# ═══════════════════════════════════════════════════════════
# SAMPLE DATA
# ═══════════════════════════════════════════════════════════


@pytest.fixture
def sample_items() -> List[NutritionItem]:
    return [
        NutritionItem(name="Grilled Chicken Breast", calories=248, protein=46, carbs=0, fat=5, sugar=0, portion_size="150g", confidence=0.9),
        NutritionItem(name="White Rice", calories=195, protein=4, carbs=42, fat=0.5, sugar=0.1, portion_size="150g", confidence=0.85),
    ]


@pytest.fixture
def sample_result(sample_items: List[NutritionItem]) -> AnalysisResult:
    return AnalysisResult.build(items=sample_items, provider="openai", provider_version="gpt-4o")


@pytest.fixture
def image_payload() -> ImagePayload:
    return ImagePayload(image_base64="cGFzdGE=", mime_type="image/jpeg")


@pytest.fixture
def make_record(image_payload: ImagePayload) -> Callable[..., CaptureRecord]:
    def factory(created_at: Optional[datetime] = None, **updates: Any) -> CaptureRecord:
        record = CaptureRecord.create(image_payload, now=created_at)
        return record.model_copy(update=updates) if updates else record

    return factory


# ═══════════════════════════════════════════════════════════
# INFRASTRUCTURE
# ═══════════════════════════════════════════════════════════


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def records_path(tmp_path: Path) -> Path:
    return tmp_path / "captures.json"


@pytest.fixture
def store(records_path: Path) -> JsonRecordStore:
    return JsonRecordStore(records_path)


@pytest.fixture
def queue(store: JsonRecordStore, clock: FakeClock) -> SyncQueue:
    return SyncQueue(store, claim_timeout_s=600, clock=clock.monotonic, now=clock.now)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher(recording_sleep: RecordingSleep) -> RetryDispatcher:
    return RetryDispatcher(RetryPolicy(max_attempts=5, base_delay_s=1.0), sleep=recording_sleep)
