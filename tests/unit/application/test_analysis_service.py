"""Unit tests for the idempotent AnalysisService."""

import asyncio

import pytest

from conftest import ScriptedProvider
from nutrisync.application.analysis.analysis_service import AnalysisRequest, AnalysisService
from nutrisync.application.analysis.orchestrator import AnalysisOrchestrator
from nutrisync.domain.analysis.models import ProviderAnalysis
from nutrisync.domain.shared.errors import (
    InvalidInputError,
    ProviderExhaustedError,
    ResultNotFoundError,
    UpstreamTimeoutError,
)
from nutrisync.infrastructure.cache.in_memory_result_store import InMemoryResultStore

IMAGE = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture
def found(sample_items) -> ProviderAnalysis:
    return ProviderAnalysis(items=sample_items, version="v1")


@pytest.fixture
def results() -> InMemoryResultStore:
    return InMemoryResultStore()


def image_request(capture_id: str = "c-1") -> AnalysisRequest:
    return AnalysisRequest(capture_id=capture_id, image=IMAGE)


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_duplicate_request_replays_stored_result(self, found, results) -> None:
        provider = ScriptedProvider("openai", found)
        service = AnalysisService(AnalysisOrchestrator([provider]), results)

        first = await service.analyze(image_request(), subject="user-1")
        second = await service.analyze(image_request(), subject="user-1")

        assert not first.replayed
        assert second.replayed
        assert second.result == first.result
        assert provider.calls == 1
        assert results.size() == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_share_one_orchestration(self, found, results) -> None:
        provider = ScriptedProvider("openai", found, delay_s=0.05)
        service = AnalysisService(AnalysisOrchestrator([provider]), results)

        outcomes = await asyncio.gather(
            *(service.analyze(image_request(), subject="user-1") for _ in range(5))
        )

        assert provider.calls == 1
        assert len({o.result.created_at for o in outcomes}) == 1
        assert sum(not o.replayed for o in outcomes) == 1

    @pytest.mark.asyncio
    async def test_keys_are_scoped_by_subject(self, found, results) -> None:
        provider = ScriptedProvider("openai", found)
        service = AnalysisService(AnalysisOrchestrator([provider]), results)

        await service.analyze(image_request(), subject="user-1")
        other = await service.analyze(image_request(), subject="user-2")

        assert not other.replayed
        assert provider.calls == 2
        with pytest.raises(ResultNotFoundError):
            await service.get_result("c-1", subject="user-3")

    @pytest.mark.asyncio
    async def test_failures_are_not_stored(self, results) -> None:
        provider = ScriptedProvider("openai", UpstreamTimeoutError("slow"))
        service = AnalysisService(AnalysisOrchestrator([provider]), results)

        for _ in range(2):
            with pytest.raises(ProviderExhaustedError):
                await service.analyze(image_request())

        assert provider.calls == 2
        assert results.size() == 0


class TestRequests:
    @pytest.mark.asyncio
    async def test_manual_items_request(self, found, results, sample_items) -> None:
        provider = ScriptedProvider("openai", found)
        service = AnalysisService(AnalysisOrchestrator([provider]), results)

        outcome = await service.analyze(AnalysisRequest(capture_id="c-9", items=sample_items))

        assert outcome.result.provider == "manual"
        assert outcome.result.capture_id == "c-9"
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_get_result_after_analysis(self, found, results) -> None:
        service = AnalysisService(AnalysisOrchestrator([ScriptedProvider("openai", found)]), results)
        await service.analyze(image_request("c-5"), subject="user-1")

        stored = await service.get_result("c-5", subject="user-1")

        assert stored.capture_id == "c-5"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"capture_id": "", "image": IMAGE},
            {"capture_id": "c-1"},
            {"capture_id": "c-1", "image": IMAGE, "items": ["x"]},
        ],
    )
    def test_request_validation(self, kwargs) -> None:
        with pytest.raises(InvalidInputError):
            AnalysisRequest(**kwargs)
