"""Stub analysis provider.

Returns canned nutrition items without calling external APIs. Used for
local development and tests; the answer depends only on the image bytes.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from nutrisync.domain.analysis.models import NutritionItem, ProviderAnalysis

STUB_VERSION = "stub-1"

_MEALS: Dict[str, List[NutritionItem]] = {
    "pasta": [
        NutritionItem(name="Spaghetti", calories=350, protein=12, carbs=70, fat=2, sugar=3, portion_size="200g", confidence=0.9),
        NutritionItem(name="Tomato sauce", calories=60, protein=2, carbs=10, fat=2, sugar=7, portion_size="80g", confidence=0.85),
    ],
    "salad": [
        NutritionItem(name="Lettuce", calories=12, protein=1, carbs=2, fat=0, sugar=1, portion_size="80g", confidence=0.9),
        NutritionItem(name="Olive oil", calories=88, protein=0, carbs=0, fat=10, sugar=0, portion_size="10g", confidence=0.7),
    ],
    "chicken": [
        NutritionItem(name="Grilled Chicken Breast", calories=248, protein=46, carbs=0, fat=5, sugar=0, portion_size="150g", confidence=0.92),
        NutritionItem(name="Roasted Potatoes", calories=112, protein=2, carbs=20, fat=3, sugar=1, portion_size="120g", confidence=0.8),
    ],
}

_DEFAULT_MEAL: List[NutritionItem] = [
    NutritionItem(name="Grilled Chicken Breast", calories=198, protein=37, carbs=0, fat=4, sugar=0, portion_size="120g", confidence=0.9),
    NutritionItem(name="White Rice", calories=195, protein=4, carbs=42, fat=0.4, sugar=0.1, portion_size="150g", confidence=0.9),
    NutritionItem(name="Steamed Broccoli", calories=35, protein=2.4, carbs=7, fat=0.4, sugar=1.4, portion_size="100g", confidence=0.85),
]


class StubAnalysisProvider:
    """
    Deterministic provider.

    Picks a canned meal when a keyword ("pasta", "salad", "chicken")
    appears in the first bytes of the image, or returns ``items`` when
    given explicitly. Images starting with ``b"empty"`` yield no items.
    """

    def __init__(
        self,
        name: str = "stub",
        items: Optional[Sequence[NutritionItem]] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self.name = name
        self.timeout_s = timeout_s
        self._items = list(items) if items is not None else None

    async def __aenter__(self) -> StubAnalysisProvider:
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        return None

    async def analyze(self, image: bytes, mime_type: str) -> ProviderAnalysis:
        if self._items is not None:
            return ProviderAnalysis(items=self._items, version=STUB_VERSION)

        marker = image[:64].lower()
        if marker.startswith(b"empty"):
            return ProviderAnalysis(items=[], version=STUB_VERSION)
        for keyword, meal in _MEALS.items():
            if keyword.encode() in marker:
                return ProviderAnalysis(items=meal, version=STUB_VERSION)
        return ProviderAnalysis(items=_DEFAULT_MEAL, version=STUB_VERSION)
