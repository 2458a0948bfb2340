"""
Wire schemas for the analysis API.

camelCase on the wire (``mimeType``, ``providerVersion``); snake_case
names are accepted too. Shared by the FastAPI routes and the device-side
HTTP client.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nutrisync.domain.analysis.models import AnalysisResult, NutritionItem, NutritionTotals


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NutritionItemSchema(_WireModel):
    name: str = Field(..., min_length=1)
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
    sugar: Optional[float] = None
    portion_size: Optional[str] = Field(None, alias="portionSize")
    confidence: Optional[float] = None

    @classmethod
    def from_domain(cls, item: NutritionItem) -> NutritionItemSchema:
        return cls.model_validate(item.model_dump())

    def to_domain(self) -> NutritionItem:
        return NutritionItem.model_validate(self.model_dump())


class NutritionTotalsSchema(_WireModel):
    calories: float
    protein: float
    carbs: float
    fat: float
    sugar: float
    unknown_fields: Tuple[str, ...] = Field((), alias="unknownFields")


class AnalyzeRequest(_WireModel):
    """
    ``POST /analyze`` body.

    Exactly one of ``image`` (base64) and ``items`` (manual entry).
    """

    id: str = Field(..., min_length=1, description="Client capture ID (idempotency key)")
    image: Optional[str] = Field(None, description="Base64-encoded image")
    mime_type: str = Field("image/jpeg", alias="mimeType")
    items: Optional[List[NutritionItemSchema]] = None

    @model_validator(mode="after")
    def exactly_one_payload(self) -> AnalyzeRequest:
        if (self.image is None) == (self.items is None):
            raise ValueError("exactly one of image or items is required")
        if self.items is not None and not self.items:
            raise ValueError("items must not be empty")
        return self


class AnalyzeResponse(_WireModel):
    id: str
    items: List[NutritionItemSchema]
    totals: NutritionTotalsSchema
    provider: str
    provider_version: str = Field(..., alias="providerVersion")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    replayed: bool = False

    @classmethod
    def from_result(cls, capture_id: str, result: AnalysisResult, replayed: bool) -> AnalyzeResponse:
        return cls(
            id=capture_id,
            items=[NutritionItemSchema.from_domain(i) for i in result.items],
            totals=NutritionTotalsSchema.model_validate(result.totals.model_dump()),
            provider=result.provider,
            provider_version=result.provider_version,
            created_at=result.created_at,
            replayed=replayed,
        )

    def to_domain(self) -> AnalysisResult:
        """Rebuild the domain result; totals are re-validated against items."""
        payload = {
            "capture_id": self.id,
            "items": [i.to_domain() for i in self.items],
            "totals": NutritionTotals.model_validate(self.totals.model_dump()),
            "provider": self.provider,
            "provider_version": self.provider_version,
        }
        if self.created_at is not None:
            payload["created_at"] = self.created_at
        return AnalysisResult.model_validate(payload)


class ErrorResponse(BaseModel):
    code: str
    message: str
    retryable: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    providers: List[str]
