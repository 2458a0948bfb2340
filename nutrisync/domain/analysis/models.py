"""
Analysis domain models.

Canonical nutrition result shared by the server orchestrator and the
client cache. Numeric nutrient values are either finite non-negative
numbers or ``None`` meaning *unknown*; unknown is never coerced to zero.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

NUTRIENT_FIELDS: Tuple[str, ...] = ("calories", "protein", "carbs", "fat", "sugar")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NutritionItem(BaseModel):
    """
    One recognized food item.

    Example:
        >>> item = NutritionItem(name="Pasta", calories=350, protein=12.0)
        >>> item.fat is None
        True
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., min_length=1, description="Food name")
    calories: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="kcal")
    protein: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="grams")
    carbs: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="grams")
    fat: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="grams")
    sugar: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="grams")
    portion_size: Optional[str] = Field(None, description="Free text, e.g. '150g'")
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class NutritionTotals(BaseModel):
    """
    Per-field sums over a list of items.

    ``unknown_fields`` lists nutrients for which at least one item had no
    value, so a partial sum is never mistaken for a complete one.
    """

    model_config = ConfigDict(frozen=True)

    calories: float = 0.0
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    sugar: float = 0.0
    unknown_fields: Tuple[str, ...] = ()

    @classmethod
    def from_items(cls, items: Iterable[NutritionItem]) -> NutritionTotals:
        sums = {name: 0.0 for name in NUTRIENT_FIELDS}
        unknown: List[str] = []
        for item in items:
            for name in NUTRIENT_FIELDS:
                value = getattr(item, name)
                if value is None:
                    if name not in unknown:
                        unknown.append(name)
                else:
                    sums[name] += value
        ordered_unknown = tuple(name for name in NUTRIENT_FIELDS if name in unknown)
        return cls(**sums, unknown_fields=ordered_unknown)

    @property
    def complete(self) -> bool:
        """True when every nutrient was known for every item."""
        return not self.unknown_fields

    def matches(self, other: NutritionTotals) -> bool:
        if set(self.unknown_fields) != set(other.unknown_fields):
            return False
        return all(
            math.isclose(getattr(self, name), getattr(other, name), rel_tol=1e-9, abs_tol=1e-6)
            for name in NUTRIENT_FIELDS
        )


class ProviderAnalysis(BaseModel):
    """Raw outcome of one provider call after normalization."""

    model_config = ConfigDict(frozen=True)

    items: List[NutritionItem] = Field(default_factory=list)
    version: str = Field(..., min_length=1, description="Model/API version tag")


class AnalysisResult(BaseModel):
    """
    Canonical analysis result.

    Totals always equal the arithmetic sum of the items; a result whose
    totals disagree fails validation.

    Example:
        >>> result = AnalysisResult.build(
        ...     items=[NutritionItem(name="Apple", calories=95)],
        ...     provider="openai",
        ...     provider_version="gpt-4o",
        ... )
        >>> result.totals.calories
        95.0
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    capture_id: Optional[str] = None
    items: List[NutritionItem] = Field(..., min_length=1)
    totals: NutritionTotals
    provider: str = Field(..., min_length=1)
    provider_version: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def totals_match_items(self) -> AnalysisResult:
        expected = NutritionTotals.from_items(self.items)
        if not self.totals.matches(expected):
            raise ValueError("totals do not equal the sum of items")
        return self

    @classmethod
    def build(
        cls,
        items: Iterable[NutritionItem],
        provider: str,
        provider_version: str,
        capture_id: Optional[str] = None,
    ) -> AnalysisResult:
        """Create a result with totals computed from ``items``."""
        item_list = list(items)
        return cls(
            capture_id=capture_id,
            items=item_list,
            totals=NutritionTotals.from_items(item_list),
            provider=provider,
            provider_version=provider_version,
        )

    def for_capture(self, capture_id: str) -> AnalysisResult:
        """Copy bound to a capture ID."""
        return self.model_copy(update={"capture_id": capture_id})
