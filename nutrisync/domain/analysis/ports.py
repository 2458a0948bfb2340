"""
Analysis ports.

Interfaces the orchestrator depends on. Concrete providers live in
``nutrisync.infrastructure.providers``.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from nutrisync.domain.analysis.models import AnalysisResult, ProviderAnalysis


@runtime_checkable
class IAnalysisProvider(Protocol):
    """
    Port for AI nutrition analysis providers.

    Implementations normalize their own payloads and raise classified
    ``PipelineError`` subclasses on failure. Zero items is returned as an
    empty ``ProviderAnalysis``; the orchestrator decides what that means.

    Example:
        >>> class MyProvider:
        ...     name = "mine"
        ...     timeout_s = 30.0
        ...     async def analyze(self, image, mime_type):
        ...         return ProviderAnalysis(items=[...], version="v1")
    """

    name: str
    timeout_s: float

    async def analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        """
        Analyze a meal photo.

        Args:
            image: Raw image bytes
            mime_type: e.g. "image/jpeg"

        Returns:
            ProviderAnalysis with normalized items (possibly empty)

        Raises:
            PipelineError: Classified provider failure
        """
        ...


@runtime_checkable
class IAnalysisResultStore(Protocol):
    """Port for storing analysis results keyed by idempotency key."""

    async def get(self, key: str) -> Optional[AnalysisResult]:
        ...

    async def set(self, key: str, result: AnalysisResult, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...
