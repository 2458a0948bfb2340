"""
OpenAI vision provider.

Primary, high-fidelity provider: sends the photo to a GPT-4o class model
and parses the JSON array of food items it returns.
"""

from __future__ import annotations

import base64
import json
import os
import re
from typing import Any, List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from nutrisync.domain.analysis.models import ProviderAnalysis
from nutrisync.domain.analysis.normalization import normalize_items
from nutrisync.domain.shared.errors import (
    AuthenticationError,
    ConnectionLostError,
    ContentRejectedError,
    PipelineError,
    RateLimitedError,
    TransientError,
    UpstreamTimeoutError,
)
from nutrisync.infrastructure.http.analysis_api_client import parse_retry_after
from nutrisync.infrastructure.providers.resilience import ProviderCircuit

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a nutrition expert. Analyze food images and provide accurate nutritional "
    "information including calories, macronutrients, and sugar content."
)

USER_PROMPT = """Analyze this food image carefully and identify ALL food items visible. For each food item, provide detailed nutritional information.

Return a JSON array where each item has:
- name: string (specific food name, e.g., "Grilled Chicken Breast" not just "chicken")
- calories: number (estimated calories for the portion shown)
- protein: number (grams of protein)
- carbs: number (grams of carbohydrates)
- fat: number (grams of fat)
- sugar: number (grams of sugar)
- portionSize: string (estimated portion, e.g., "200g", "1 cup", "1 medium piece")
- confidence: number (0-1, how confident you are in the identification)

If you see multiple items (e.g., rice, chicken, vegetables), list each separately.
Estimate portion sizes based on common serving sizes and what's visible in the image.
If no food is visible, return an empty array.

Return ONLY a valid JSON array, no markdown, no explanations."""

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def parse_items_payload(content: str) -> List[Any]:
    """
    Extract the raw item list from a model answer.

    Accepts a bare array, an array wrapped in prose or code fences, or an
    object with an ``items`` array.

    Raises:
        TransientError: No parsable item list
    """
    text = content.strip()
    candidates = [text]
    match = _ARRAY_RE.search(text)
    if match:
        candidates.insert(0, match.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            return list(data["items"])
    raise TransientError(f"Malformed vision response: {text[:200]!r}")


def map_openai_error(error: openai.OpenAIError) -> PipelineError:
    """Translate OpenAI SDK exceptions into the pipeline taxonomy."""
    if isinstance(error, openai.APITimeoutError):
        return UpstreamTimeoutError("OpenAI request timed out")
    if isinstance(error, openai.APIConnectionError):
        return ConnectionLostError(f"OpenAI unreachable: {error}")
    if isinstance(error, openai.RateLimitError):
        retry_after = parse_retry_after(error.response.headers.get("retry-after"))
        return RateLimitedError("OpenAI rate limit exceeded", retry_after_s=retry_after)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthenticationError("OpenAI rejected the API key")
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return TransientError(f"OpenAI returned {error.status_code}")
        return ContentRejectedError(f"OpenAI rejected the request ({error.status_code})")
    return TransientError(f"OpenAI error: {error}")


class OpenAIVisionProvider:
    """
    GPT-4o vision provider.

    Example:
        >>> provider = OpenAIVisionProvider(api_key="sk-...")
        >>> analysis = await provider.analyze(image_bytes, "image/jpeg")
        >>> analysis.version
        'gpt-4o'
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        timeout_s: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ) -> None:
        """
        Args:
            api_key: OpenAI API key (falls back to OPENAI_API_KEY)
            model: Vision-capable chat model
            timeout_s: Per-request deadline
            client: Pre-configured AsyncOpenAI client (tests)

        Raises:
            ValueError: If no API key and no client
        """
        if client is None:
            resolved_key = api_key or os.getenv("OPENAI_API_KEY")
            if not resolved_key:
                raise ValueError("OPENAI_API_KEY not found in environment")
            # retries belong to the sync layer, not the SDK
            client = AsyncOpenAI(api_key=resolved_key, timeout=timeout_s, max_retries=0)
        self._client = client
        self._model = model
        self.timeout_s = timeout_s
        self._circuit = ProviderCircuit(
            "openai_vision", failure_threshold=failure_threshold, recovery_timeout=recovery_timeout
        )

    async def __aenter__(self) -> OpenAIVisionProvider:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self._client.close()

    async def analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        return await self._circuit.call(self._analyze, image, mime_type)

    async def _analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        image_b64 = base64.b64encode(image).decode("ascii")
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": USER_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{mime_type};base64,{image_b64}"},
                            },
                        ],
                    },
                ],
                max_tokens=3000,
                temperature=0.3,
            )
        except openai.OpenAIError as e:
            error = map_openai_error(e)
            logger.warning("openai_vision_failed", code=error.code.value, error=str(e))
            raise error from e

        if not completion.choices:
            raise TransientError("OpenAI returned no choices")
        choice = completion.choices[0]
        if choice.finish_reason == "content_filter":
            raise ContentRejectedError("OpenAI content filter blocked the image")

        raw_items = parse_items_payload(choice.message.content or "")
        items = normalize_items(raw_items)
        logger.info(
            "openai_vision_completed",
            model=self._model,
            raw_items=len(raw_items),
            items=len(items),
        )
        return ProviderAnalysis(items=items, version=completion.model or self._model)
