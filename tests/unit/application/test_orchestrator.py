"""Unit tests for AnalysisOrchestrator.

Tests focus on:
- Provider fallback order and the SUCCESS / ALL_FAILED outcomes
- Timeouts, empty results and unexpected errors all advance the chain
- Input validation happens before any provider call
"""

import asyncio

import pytest

from conftest import ScriptedProvider
from nutrisync.application.analysis.orchestrator import (
    AnalysisOrchestrator,
    OrchestrationState,
    OrchestrationTrace,
)
from nutrisync.domain.analysis.models import ProviderAnalysis
from nutrisync.domain.shared.errors import (
    AuthenticationError,
    ErrorCode,
    InvalidInputError,
    ProviderExhaustedError,
    RateLimitedError,
)

IMAGE = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture
def found(sample_items) -> ProviderAnalysis:
    return ProviderAnalysis(items=sample_items, version="v1")


class TestFallback:
    @pytest.mark.asyncio
    async def test_primary_success(self, found) -> None:
        primary = ScriptedProvider("openai", found)
        backup = ScriptedProvider("edamam", found)
        orchestrator = AnalysisOrchestrator([primary, backup])

        result = await orchestrator.analyze(IMAGE, "image/jpeg", capture_id="c-1")

        assert result.provider == "openai"
        assert result.provider_version == "v1"
        assert result.capture_id == "c-1"
        assert backup.calls == 0

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_next_provider(self, found) -> None:
        slow = ScriptedProvider("openai", found, timeout_s=0.01, delay_s=0.5)
        backup = ScriptedProvider("edamam", found)
        trace = OrchestrationTrace()

        result = await AnalysisOrchestrator([slow, backup]).analyze(IMAGE, "image/jpeg", trace=trace)

        assert result.provider == "edamam"
        assert len(result.items) == 2
        assert trace.state is OrchestrationState.SUCCESS
        assert trace.attempts[0].error.code is ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_empty_result_advances(self, found) -> None:
        empty = ScriptedProvider("openai", ProviderAnalysis(items=[], version="v1"))
        backup = ScriptedProvider("edamam", found)

        result = await AnalysisOrchestrator([empty, backup]).analyze(IMAGE, "image/jpeg")

        assert result.provider == "edamam"

    @pytest.mark.asyncio
    async def test_unexpected_error_advances(self, found) -> None:
        broken = ScriptedProvider("openai", KeyError("choices"))
        backup = ScriptedProvider("edamam", found)

        result = await AnalysisOrchestrator([broken, backup]).analyze(IMAGE, "image/jpeg")

        assert result.provider == "edamam"


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_reports_last_error(self) -> None:
        empty = ScriptedProvider("openai", ProviderAnalysis(items=[], version="v1"))
        unauthorized = ScriptedProvider("edamam", AuthenticationError("bad app key"))
        trace = OrchestrationTrace()

        with pytest.raises(ProviderExhaustedError) as exc_info:
            await AnalysisOrchestrator([empty, unauthorized]).analyze(IMAGE, "image/jpeg", trace=trace)

        error = exc_info.value
        assert error.last_code is ErrorCode.UNAUTHORIZED
        assert not error.retryable
        assert error.attempted == ["openai", "edamam"]
        assert trace.state is OrchestrationState.ALL_FAILED

    @pytest.mark.asyncio
    async def test_retryable_when_last_error_retryable(self) -> None:
        limited = ScriptedProvider("openai", RateLimitedError("429"))

        with pytest.raises(ProviderExhaustedError) as exc_info:
            await AnalysisOrchestrator([limited]).analyze(IMAGE, "image/jpeg")

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_no_items_anywhere(self) -> None:
        empty = ScriptedProvider("openai", ProviderAnalysis(items=[], version="v1"))

        with pytest.raises(ProviderExhaustedError) as exc_info:
            await AnalysisOrchestrator([empty]).analyze(IMAGE, "image/jpeg")

        assert exc_info.value.last_code is ErrorCode.NO_ITEMS_DETECTED
        assert not exc_info.value.retryable


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "image, mime_type",
        [(b"", "image/jpeg"), (b"x" * 11, "image/jpeg"), (IMAGE, "application/pdf")],
    )
    async def test_invalid_input_makes_no_provider_call(self, found, image, mime_type) -> None:
        provider = ScriptedProvider("openai", found)
        orchestrator = AnalysisOrchestrator([provider], max_image_bytes=10)

        with pytest.raises(InvalidInputError):
            await orchestrator.analyze(image, mime_type)

        assert provider.calls == 0

    def test_requires_providers(self) -> None:
        with pytest.raises(ValueError):
            AnalysisOrchestrator([])

    def test_mime_type_case_insensitive(self, found) -> None:
        AnalysisOrchestrator([ScriptedProvider("openai", found)]).validate(IMAGE, "IMAGE/JPEG")


class TestManualItems:
    def test_items_bypass_providers(self, found, sample_items) -> None:
        provider = ScriptedProvider("openai", found)

        result = AnalysisOrchestrator([provider]).analyze_items(sample_items, capture_id="c-2")

        assert result.provider == "manual"
        assert result.totals.calories == pytest.approx(443)
        assert provider.calls == 0

    def test_empty_items_rejected(self, found) -> None:
        with pytest.raises(InvalidInputError):
            AnalysisOrchestrator([ScriptedProvider("openai", found)]).analyze_items([])


@pytest.mark.asyncio
async def test_providers_tried_in_order(found) -> None:
    order = []

    class Recording:
        def __init__(self, name, outcome):
            self.name = name
            self.timeout_s = 1.0
            self._outcome = outcome

        async def analyze(self, image, mime_type):
            order.append(self.name)
            await asyncio.sleep(0)
            if isinstance(self._outcome, Exception):
                raise self._outcome
            return self._outcome

    providers = [
        Recording("a", RateLimitedError("429")),
        Recording("b", AuthenticationError("401")),
        Recording("c", found),
    ]

    result = await AnalysisOrchestrator(providers).analyze(IMAGE, "image/jpeg")

    assert order == ["a", "b", "c"]
    assert result.provider == "c"
