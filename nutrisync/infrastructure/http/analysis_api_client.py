"""
Analysis API client.

Device-side adapter for the IAnalysisGateway port: posts a capture to
``POST /analyze`` with httpx and maps every failure onto the error
taxonomy so the retry dispatcher can classify it.
"""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from nutrisync.api.schemas import AnalyzeResponse, NutritionItemSchema
from nutrisync.domain.analysis.models import AnalysisResult
from nutrisync.domain.capture.models import CaptureRecord, ImagePayload
from nutrisync.domain.capture.ports import ITokenProvider
from nutrisync.domain.shared.errors import (
    AuthenticationError,
    ConnectionLostError,
    ContentRejectedError,
    ErrorCode,
    InvalidInputError,
    NoFoodDetectedError,
    PipelineError,
    ProviderExhaustedError,
    RateLimitedError,
    TerminalError,
    TransientError,
    UpstreamTimeoutError,
)

logger = structlog.get_logger(__name__)

_TERMINAL_BY_CODE = {
    ErrorCode.INVALID_INPUT.value: InvalidInputError,
    ErrorCode.UNAUTHORIZED.value: AuthenticationError,
    ErrorCode.CONTENT_REJECTED.value: ContentRejectedError,
    ErrorCode.NO_ITEMS_DETECTED.value: NoFoodDetectedError,
}


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header (delta-seconds form only)."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_from_response(response: httpx.Response) -> PipelineError:
    """
    Map a non-2xx analysis API response to a classified error.

    The body's ``retryable`` flag wins when present; 401/403 are always
    auth failures and 429 is always a rate limit.
    """
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    body: Dict[str, Any] = {}
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            body = parsed
    except ValueError:
        body = {}

    message = str(body.get("message") or f"HTTP {response.status_code}")
    code = body.get("code")
    status = response.status_code

    if status in (401, 403):
        return AuthenticationError(message)
    if status == 429 or code == ErrorCode.RATE_LIMITED.value:
        return RateLimitedError(message, retry_after_s=retry_after)

    retryable = body.get("retryable")
    if retryable is None:
        retryable = status >= 500 or status == 408

    if code == ErrorCode.PROVIDER_EXHAUSTED.value:
        last: PipelineError = (
            TransientError(message, retry_after_s=retry_after)
            if retryable
            else TerminalError(message)
        )
        return ProviderExhaustedError(last, message=message)

    if retryable:
        if status == 504 or code == ErrorCode.TIMEOUT.value:
            return UpstreamTimeoutError(message)
        return TransientError(message, retry_after_s=retry_after)

    error_cls = _TERMINAL_BY_CODE.get(str(code))
    if error_cls is not None:
        return error_cls(message)
    return TerminalError(message, code=ErrorCode.INVALID_INPUT if status == 400 else ErrorCode.INTERNAL)


class AnalysisApiClient:
    """
    httpx client for the analysis API.

    Example:
        >>> async with AnalysisApiClient("https://api.example.com", tokens) as client:
        ...     result = await client.analyze(record)
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[ITokenProvider] = None,
        timeout_s: float = 90.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout_s)

    async def __aenter__(self) -> AnalysisApiClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token_provider is not None:
            token = await self._token_provider.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _build_body(self, record: CaptureRecord) -> Dict[str, Any]:
        payload = record.payload
        if isinstance(payload, ImagePayload):
            if payload.image_base64 is not None:
                image_b64 = payload.image_base64
            else:
                image_b64 = await self._read_image(payload.image_path or "")
            return {"id": record.id, "image": image_b64, "mimeType": payload.mime_type}
        items = [
            NutritionItemSchema.from_domain(i).model_dump(by_alias=True, exclude_none=True)
            for i in payload.items
        ]
        return {"id": record.id, "items": items}

    @staticmethod
    async def _read_image(path: str) -> str:
        try:
            data = await asyncio.to_thread(Path(path).read_bytes)
        except FileNotFoundError as e:
            raise InvalidInputError(f"Image file missing: {path}") from e
        except OSError as e:
            raise TransientError(f"Could not read image {path}: {e}") from e
        if not data:
            raise InvalidInputError(f"Image file is empty: {path}")
        return base64.b64encode(data).decode("ascii")

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(
                method, url, headers=await self._headers(), timeout=self._timeout_s, **kwargs
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Analysis API timed out after {self._timeout_s}s") from e
        except httpx.TransportError as e:
            raise ConnectionLostError(f"Analysis API unreachable: {e}") from e

    @staticmethod
    def _parse_result(response: httpx.Response) -> AnalysisResult:
        try:
            return AnalyzeResponse.model_validate(response.json()).to_domain()
        except (ValueError, ValidationError) as e:
            raise TransientError(f"Malformed analysis response: {e}") from e

    async def analyze(self, record: CaptureRecord) -> AnalysisResult:
        """
        Post a capture for analysis (idempotent by ``record.id``).

        Raises:
            PipelineError: Classified failure
        """
        body = await self._build_body(record)
        response = await self._send("POST", f"{self._base_url}/analyze", json=body)
        if response.status_code != 200:
            error = error_from_response(response)
            logger.info(
                "analysis_api_error",
                capture_id=record.id,
                status=response.status_code,
                code=error.code.value,
                retryable=error.retryable,
            )
            raise error
        return self._parse_result(response)

    async def fetch_result(self, capture_id: str) -> Optional[AnalysisResult]:
        """Stored result for a capture, or None when the server has none."""
        response = await self._send("GET", f"{self._base_url}/analyze/{capture_id}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise error_from_response(response)
        return self._parse_result(response)
