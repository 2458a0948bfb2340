"""
Analysis Orchestrator.

Server-side provider chain for meal photos:

    RECEIVED ─▶ PROVIDER_ATTEMPT(i) ─┬─▶ SUCCESS        (≥ 1 item)
                                    ├─▶ NEXT_PROVIDER  (error, timeout, 0 items)
                                    └─▶ ALL_FAILED     (no providers left)

Any provider failure advances to the next provider; only the last
provider's error is reported, wrapped in ``ProviderExhaustedError``.
Input validation happens before any provider is contacted.

Design Pattern: Chain of Responsibility + Dependency Injection
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence

import structlog

from nutrisync.domain.analysis.models import AnalysisResult, NutritionItem
from nutrisync.domain.analysis.ports import IAnalysisProvider
from nutrisync.domain.shared.errors import (
    InvalidInputError,
    NoFoodDetectedError,
    PipelineError,
    ProviderExhaustedError,
    TransientError,
    UpstreamTimeoutError,
)

logger = structlog.get_logger(__name__)

MANUAL_PROVIDER = "manual"
MANUAL_VERSION = "manual-entry"


class OrchestrationState(str, Enum):
    RECEIVED = "received"
    PROVIDER_ATTEMPT = "provider_attempt"
    NEXT_PROVIDER = "next_provider"
    SUCCESS = "success"
    ALL_FAILED = "all_failed"


@dataclass
class ProviderAttempt:
    """Outcome of one provider call (kept for logs and diagnostics)."""

    provider: str
    error: Optional[PipelineError] = None
    item_count: int = 0


@dataclass
class OrchestrationTrace:
    state: OrchestrationState = OrchestrationState.RECEIVED
    attempts: List[ProviderAttempt] = field(default_factory=list)


class AnalysisOrchestrator:
    """
    Runs the ordered provider chain for one image.

    Dependencies (injected):
    - providers: ordered IAnalysisProvider list, primary first

    Example:
        >>> orchestrator = AnalysisOrchestrator([openai_provider, edamam_provider])
        >>> result = await orchestrator.analyze(image_bytes, "image/jpeg")
        >>> result.provider
        'openai'
    """

    def __init__(
        self,
        providers: Sequence[IAnalysisProvider],
        max_image_bytes: int = 10 * 1024 * 1024,
        allowed_mime_types: Iterable[str] = ("image/jpeg", "image/png", "image/webp", "image/heic"),
    ) -> None:
        if not providers:
            raise ValueError("at least one analysis provider is required")
        self._providers = list(providers)
        self._max_image_bytes = max_image_bytes
        self._allowed_mime_types = {m.lower() for m in allowed_mime_types}

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self._providers]

    def validate(self, image: bytes, mime_type: str) -> None:
        """
        RECEIVED checks.

        Raises:
            InvalidInputError: Empty, oversized or unsupported image
        """
        if not image:
            raise InvalidInputError("Image is empty")
        if len(image) > self._max_image_bytes:
            raise InvalidInputError(
                f"Image is {len(image)} bytes; limit is {self._max_image_bytes}"
            )
        if mime_type.lower() not in self._allowed_mime_types:
            raise InvalidInputError(f"Unsupported image type {mime_type!r}")

    async def analyze(
        self,
        image: bytes,
        mime_type: str,
        capture_id: Optional[str] = None,
        trace: Optional[OrchestrationTrace] = None,
    ) -> AnalysisResult:
        """
        Analyze one image with provider fallback.

        Args:
            image: Raw image bytes
            mime_type: Image mime type
            capture_id: Client capture ID, bound to the result
            trace: Optional trace filled with per-provider outcomes

        Returns:
            AnalysisResult from the first provider that found items

        Raises:
            InvalidInputError: Input rejected before contacting providers
            ProviderExhaustedError: Every provider failed; carries the last error
        """
        trace = trace or OrchestrationTrace()
        log = logger.bind(capture_id=capture_id)
        self.validate(image, mime_type)

        last_error: Optional[PipelineError] = None
        for index, provider in enumerate(self._providers):
            trace.state = OrchestrationState.PROVIDER_ATTEMPT
            attempt = ProviderAttempt(provider=provider.name)
            trace.attempts.append(attempt)
            log.info("provider_attempt", provider=provider.name, position=index)

            try:
                analysis = await asyncio.wait_for(
                    provider.analyze(image, mime_type), timeout=provider.timeout_s
                )
            except asyncio.TimeoutError:
                attempt.error = UpstreamTimeoutError(
                    f"{provider.name} timed out after {provider.timeout_s}s"
                )
            except PipelineError as e:
                attempt.error = e
            except Exception as e:
                log.error("provider_unexpected_error", provider=provider.name, exc_info=True)
                attempt.error = TransientError(f"{provider.name} failed: {e}")
            else:
                attempt.item_count = len(analysis.items)
                if analysis.items:
                    trace.state = OrchestrationState.SUCCESS
                    log.info(
                        "analysis_succeeded",
                        provider=provider.name,
                        version=analysis.version,
                        items=len(analysis.items),
                        fallback_used=index > 0,
                    )
                    return AnalysisResult.build(
                        items=analysis.items,
                        provider=provider.name,
                        provider_version=analysis.version,
                        capture_id=capture_id,
                    )
                attempt.error = NoFoodDetectedError(f"{provider.name} found no food items")

            last_error = attempt.error
            trace.state = OrchestrationState.NEXT_PROVIDER
            log.warning(
                "provider_failed",
                provider=provider.name,
                code=last_error.code.value,
                retryable=last_error.retryable,
                error=last_error.message,
            )

        trace.state = OrchestrationState.ALL_FAILED
        if last_error is None:
            raise RuntimeError("provider chain finished without an outcome")
        exhausted = ProviderExhaustedError(
            last_error, attempted=[a.provider for a in trace.attempts]
        )
        log.warning(
            "providers_exhausted",
            attempted=exhausted.attempted,
            last_code=last_error.code.value,
            retryable=exhausted.retryable,
        )
        raise exhausted

    def analyze_items(
        self, items: Iterable[NutritionItem], capture_id: Optional[str] = None
    ) -> AnalysisResult:
        """
        Manual entry: build the canonical result without calling providers.

        Raises:
            InvalidInputError: No items
        """
        item_list = list(items)
        if not item_list:
            raise InvalidInputError("Manual entry needs at least one item")
        return AnalysisResult.build(
            items=item_list,
            provider=MANUAL_PROVIDER,
            provider_version=MANUAL_VERSION,
            capture_id=capture_id,
        )
