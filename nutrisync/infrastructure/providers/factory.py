"""Analysis provider factory.

Builds the ordered provider chain from ``Settings.analysis_providers``
(env ``ANALYSIS_PROVIDERS``), e.g. ``openai,edamam``.

Values:
    - "openai": OpenAI vision (requires OPENAI_API_KEY)
    - "edamam": Edamam food database (requires EDAMAM_APP_ID / EDAMAM_APP_KEY)
    - "stub": Deterministic stub (default)

Usage:
    providers = create_providers(Settings.from_env())
"""

from __future__ import annotations

from typing import List

from nutrisync.config import Settings
from nutrisync.domain.analysis.ports import IAnalysisProvider
from nutrisync.infrastructure.providers.edamam import EdamamProvider
from nutrisync.infrastructure.providers.openai_vision import OpenAIVisionProvider
from nutrisync.infrastructure.providers.stub import StubAnalysisProvider

KNOWN_PROVIDERS = ("openai", "edamam", "stub")


def create_provider(name: str, settings: Settings) -> IAnalysisProvider:
    """
    Create one provider by name.

    Raises:
        ValueError: Unknown name or missing credentials
    """
    if name == "openai":
        if not settings.openai_api_key:
            raise ValueError(
                "ANALYSIS_PROVIDERS includes openai but OPENAI_API_KEY not set. "
                "Set OPENAI_API_KEY in .env or remove openai from ANALYSIS_PROVIDERS"
            )
        return OpenAIVisionProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_s=settings.openai_timeout_s,
        )

    if name == "edamam":
        if not settings.edamam_app_id or not settings.edamam_app_key:
            raise ValueError(
                "ANALYSIS_PROVIDERS includes edamam but EDAMAM_APP_ID/EDAMAM_APP_KEY not set"
            )
        return EdamamProvider(
            app_id=settings.edamam_app_id,
            app_key=settings.edamam_app_key,
            timeout_s=settings.edamam_timeout_s,
        )

    if name == "stub":
        return StubAnalysisProvider()

    raise ValueError(f"Unknown analysis provider {name!r}; expected one of {KNOWN_PROVIDERS}")


def create_providers(settings: Settings) -> List[IAnalysisProvider]:
    """Ordered provider chain; duplicates are ignored."""
    seen: List[str] = []
    for name in settings.analysis_providers:
        if name not in seen:
            seen.append(name)
    if not seen:
        raise ValueError("ANALYSIS_PROVIDERS must name at least one provider")
    return [create_provider(name, settings) for name in seen]
