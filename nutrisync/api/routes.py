"""HTTP routes for the analysis API."""

from __future__ import annotations

import base64
import binascii
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from nutrisync.api.schemas import AnalyzeRequest, AnalyzeResponse, ErrorResponse, HealthResponse
from nutrisync.application.analysis.analysis_service import AnalysisRequest, AnalysisService
from nutrisync.domain.shared.errors import InvalidInputError

router = APIRouter()

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def get_analysis_service(request: Request) -> AnalysisService:
    service: AnalysisService = request.app.state.analysis_service
    return service


def current_subject(request: Request) -> Optional[str]:
    claims = getattr(request.state, "auth_claims", None)
    if not claims:
        return None
    subject = claims.get("sub")
    return str(subject) if subject is not None else None


def decode_image(data: str) -> bytes:
    """Decode base64 image data; a ``data:<mime>;base64,`` prefix is allowed."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("Image is not valid base64") from e


def to_analysis_request(body: AnalyzeRequest) -> AnalysisRequest:
    if body.image is not None:
        return AnalysisRequest(
            capture_id=body.id,
            image=decode_image(body.image),
            mime_type=body.mime_type,
        )
    try:
        items = [item.to_domain() for item in body.items or []]
    except ValidationError as e:
        raise InvalidInputError(f"Invalid items: {e.error_count()} validation errors") from e
    return AnalysisRequest(capture_id=body.id, items=items)


@router.post("/analyze", response_model=AnalyzeResponse, responses=_ERROR_RESPONSES)
async def analyze(
    body: AnalyzeRequest,
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalyzeResponse:
    """Analyze a meal photo or manual entry; idempotent by ``id``."""
    outcome = await service.analyze(to_analysis_request(body), subject=current_subject(request))
    return AnalyzeResponse.from_result(body.id, outcome.result, outcome.replayed)


@router.get("/analyze/{capture_id}", response_model=AnalyzeResponse, responses={404: {"model": ErrorResponse}})
async def get_analysis(
    capture_id: str,
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalyzeResponse:
    """Stored result for a capture (recovers a response lost in transit)."""
    result = await service.get_result(capture_id, subject=current_subject(request))
    return AnalyzeResponse.from_result(capture_id, result, replayed=True)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=request.app.version,
        providers=request.app.state.provider_names,
    )
