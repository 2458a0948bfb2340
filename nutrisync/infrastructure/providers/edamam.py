"""
Edamam food-database provider.

Fallback provider of narrower scope: uploads the image to the Edamam
parser and maps its ``hints`` to nutrition items. Edamam reports
nutrients per 100 g; values are scaled by the first measure's weight.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

from nutrisync.domain.analysis.models import NutritionItem, ProviderAnalysis
from nutrisync.domain.analysis.normalization import coerce_nutrient
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

EDAMAM_PARSER_URL = "https://api.edamam.com/api/food-database/v2/parser"
EDAMAM_VERSION = "edamam-v2"

# Edamam nutrient code -> canonical field
NUTRIENT_CODES: Mapping[str, str] = {
    "ENERC_KCAL": "calories",
    "PROCNT": "protein",
    "CHOCDF": "carbs",
    "FAT": "fat",
    "SUGAR": "sugar",
}


def _scaled(value: Any, multiplier: float, digits: int) -> Optional[float]:
    number = coerce_nutrient(value)
    if number is None:
        return None
    return round(number * multiplier, digits)


def map_hint(hint: Mapping[str, Any]) -> Optional[NutritionItem]:
    """Map one Edamam hint to an item; None when it has no label."""
    food = hint.get("food") or {}
    label = food.get("label")
    if not isinstance(label, str) or not label.strip():
        return None

    nutrients = food.get("nutrients") or {}
    measures = hint.get("measures") or []
    first_measure = measures[0] if measures and isinstance(measures[0], Mapping) else None
    weight = coerce_nutrient(first_measure.get("weight")) if first_measure else None
    portion_weight = weight or 100.0
    multiplier = portion_weight / 100.0

    values: Dict[str, Optional[float]] = {}
    for code, field in NUTRIENT_CODES.items():
        values[field] = _scaled(nutrients.get(code), multiplier, 0 if field == "calories" else 1)

    return NutritionItem(
        name=label.strip(),
        portion_size=f"{round(portion_weight)}g",
        confidence=0.8 if first_measure else 0.6,
        **values,
    )


def error_from_status(response: httpx.Response) -> PipelineError:
    status = response.status_code
    if status in (401, 403):
        return AuthenticationError("Edamam rejected the credentials")
    if status == 429:
        return RateLimitedError(
            "Edamam rate limit exceeded",
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return TransientError(f"Edamam returned {status}")
    return ContentRejectedError(f"Edamam rejected the image ({status})")


class EdamamProvider:
    """
    Edamam food-database provider.

    Example:
        >>> provider = EdamamProvider(app_id="id", app_key="key")
        >>> analysis = await provider.analyze(image_bytes, "image/jpeg")
    """

    name = "edamam"

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_key: Optional[str] = None,
        timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        url: str = EDAMAM_PARSER_URL,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ) -> None:
        self._app_id = app_id or os.getenv("EDAMAM_APP_ID")
        self._app_key = app_key or os.getenv("EDAMAM_APP_KEY")
        if not self._app_id or not self._app_key:
            raise ValueError("EDAMAM_APP_ID and EDAMAM_APP_KEY are required")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._url = url
        self.timeout_s = timeout_s
        self._circuit = ProviderCircuit(
            "edamam_parser", failure_threshold=failure_threshold, recovery_timeout=recovery_timeout
        )

    async def __aenter__(self) -> EdamamProvider:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        return await self._circuit.call(self._analyze, image, mime_type)

    async def _analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        extension = mime_type.split("/")[-1] or "jpg"
        try:
            response = await self._client.post(
                self._url,
                files={"image": (f"food.{extension}", image, mime_type)},
                headers={"app_id": self._app_id or "", "app_key": self._app_key or ""},
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Edamam timed out after {self.timeout_s}s") from e
        except httpx.TransportError as e:
            raise ConnectionLostError(f"Edamam unreachable: {e}") from e

        if response.status_code != 200:
            error = error_from_status(response)
            logger.warning("edamam_failed", status=response.status_code, code=error.code.value)
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise TransientError("Edamam returned invalid JSON") from e
        if not isinstance(data, dict):
            raise TransientError("Edamam returned an unexpected payload")

        hints = data.get("hints") or []
        items: List[NutritionItem] = []
        for hint in hints:
            if isinstance(hint, Mapping):
                item = map_hint(hint)
                if item is not None:
                    items.append(item)

        logger.info("edamam_completed", hints=len(hints), items=len(items))
        return ProviderAnalysis(items=items, version=EDAMAM_VERSION)
