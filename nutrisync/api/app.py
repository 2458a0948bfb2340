"""
Analysis API application.

``create_app()`` wires settings, providers, the orchestrator and the
idempotent analysis service into a FastAPI app. ``main()`` runs it under
uvicorn (console script ``nutrisync-server``).
"""

from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from nutrisync.api.auth import AuthMiddleware, JwtTokenVerifier
from nutrisync.api.routes import router
from nutrisync.application.analysis.analysis_service import AnalysisService
from nutrisync.application.analysis.orchestrator import AnalysisOrchestrator
from nutrisync.config import Settings
from nutrisync.domain.analysis.ports import IAnalysisProvider, IAnalysisResultStore
from nutrisync.domain.shared.errors import (
    AuthenticationError,
    ContentRejectedError,
    ErrorCode,
    InvalidInputError,
    NoFoodDetectedError,
    PipelineError,
    ProviderExhaustedError,
    RateLimitedError,
    ResultNotFoundError,
    UpstreamTimeoutError,
)
from nutrisync.infrastructure.cache.in_memory_result_store import InMemoryResultStore
from nutrisync.infrastructure.providers.factory import create_providers
from nutrisync.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def status_for(error: PipelineError) -> int:
    """HTTP status for a classified pipeline error."""
    if isinstance(error, InvalidInputError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, (ContentRejectedError, NoFoodDetectedError)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, RateLimitedError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, UpstreamTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(error, ProviderExhaustedError):
        return status.HTTP_503_SERVICE_UNAVAILABLE if error.retryable else status.HTTP_502_BAD_GATEWAY
    if error.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error_response(status_code: int, body: Dict[str, Any], retry_after: Optional[float] = None) -> JSONResponse:
    headers = {"Retry-After": str(int(retry_after + 0.999))} if retry_after else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def pipeline_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, PipelineError):
        raise exc
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log("request_failed", path=request.url.path, status=status_code, code=exc.code.value)
    return _error_response(status_code, exc.to_dict(), exc.retry_after_s)


async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(
        status.HTTP_404_NOT_FOUND,
        {"code": ErrorCode.NOT_FOUND.value, "message": str(exc), "retryable": False},
    )


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        raise exc
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        {"code": ErrorCode.INVALID_INPUT.value, "message": message, "retryable": False},
    )


def create_app(
    settings: Optional[Settings] = None,
    providers: Optional[Sequence[IAnalysisProvider]] = None,
    result_store: Optional[IAnalysisResultStore] = None,
    verifier: Optional[JwtTokenVerifier] = None,
) -> FastAPI:
    """
    Build the analysis API.

    Args:
        settings: Configuration (defaults to ``Settings.from_env()``)
        providers: Ordered provider chain (defaults to the factory)
        result_store: Idempotency store (defaults to in-memory)
        verifier: Token verifier (defaults to HS256 with AUTH_JWT_SECRET)

    Raises:
        ValueError: Auth required but no secret/verifier configured
    """
    settings = settings or Settings.from_env()
    chain: List[IAnalysisProvider] = list(providers) if providers is not None else create_providers(settings)
    if settings.auth_required and verifier is None:
        if not settings.auth_jwt_secret:
            raise ValueError("AUTH_JWT_SECRET is required when AUTH_REQUIRED=true")
        verifier = JwtTokenVerifier(settings.auth_jwt_secret, audience=settings.auth_jwt_audience)

    orchestrator = AnalysisOrchestrator(
        chain,
        max_image_bytes=settings.max_image_bytes,
        allowed_mime_types=settings.allowed_mime_types,
    )
    service = AnalysisService(
        orchestrator,
        result_store or InMemoryResultStore(default_ttl_seconds=settings.result_ttl_s),
        result_ttl_s=settings.result_ttl_s,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for provider in chain:
                if hasattr(provider, "__aenter__"):
                    await stack.enter_async_context(provider)  # type: ignore[arg-type]
            logger.info("lifespan_ready", providers=orchestrator.provider_names)
            yield
            logger.info("lifespan_shutdown")

    app = FastAPI(title="NutriSync Analysis API", version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.analysis_service = service
    app.state.provider_names = orchestrator.provider_names

    app.add_middleware(AuthMiddleware, verifier=verifier, auth_required=settings.auth_required)
    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(ResultNotFoundError, not_found_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


def main() -> None:
    """Run the API under uvicorn."""
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    app = create_app(settings)
    logger.info("server_starting", host=settings.host, port=settings.port, version=settings.app_version)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
