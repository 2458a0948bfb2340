"""FastAPI authentication middleware."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import jwt
import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from nutrisync.domain.shared.errors import AuthenticationError

logger = structlog.get_logger(__name__)


class JwtTokenVerifier:
    """
    Verifies HS256-signed bearer tokens with PyJWT.

    Example:
        >>> verifier = JwtTokenVerifier(secret="s3cret")
        >>> claims = await verifier.verify_token(token)
        >>> claims["sub"]
        'user-123'
    """

    def __init__(
        self,
        secret: str,
        audience: Optional[str] = None,
        algorithms: Iterable[str] = ("HS256",),
    ) -> None:
        if not secret:
            raise ValueError("JWT secret is required")
        self._secret = secret
        self._audience = audience
        self._algorithms = list(algorithms)

    async def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Decode and validate a token.

        Raises:
            AuthenticationError: Expired, malformed, bad signature or no subject
        """
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                options={"require": ["sub"], "verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e
        return claims


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"code": "UNAUTHORIZED", "message": message, "retryable": False},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for bearer JWT authentication.

    Sets ``request.state.auth_claims`` (None when auth is optional and no
    token was sent). Exempt paths (health checks) skip verification.

    Examples:
        >>> app.add_middleware(AuthMiddleware, verifier=verifier, auth_required=True)
        >>> # In route handler:
        >>> subject = request.state.auth_claims["sub"]
    """

    def __init__(
        self,
        app: Any,
        verifier: Optional[JwtTokenVerifier] = None,
        auth_required: bool = True,
        exempt_paths: Iterable[str] = ("/health",),
    ) -> None:
        super().__init__(app)
        if auth_required and verifier is None:
            raise ValueError("auth_required=True needs a token verifier")
        self.verifier = verifier
        self.auth_required = auth_required
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        request.state.auth_claims = None
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        token = self._extract_token(request.headers.get("Authorization"))
        if not token:
            if self.auth_required:
                return _unauthorized("Missing authorization token")
            return await call_next(request)

        if self.verifier is None:
            return await call_next(request)

        try:
            request.state.auth_claims = await self.verifier.verify_token(token)
        except AuthenticationError as e:
            logger.info("auth_rejected", path=request.url.path, reason=e.message)
            return _unauthorized(e.message)

        return await call_next(request)

    @staticmethod
    def _extract_token(auth_header: Optional[str]) -> Optional[str]:
        """Extract Bearer token from Authorization header.

        Examples:
            >>> AuthMiddleware._extract_token("Bearer eyJ...")
            'eyJ...'
            >>> AuthMiddleware._extract_token("eyJ...") is None
            True
        """
        if not auth_header:
            return None
        parts = auth_header.split()
        if len(parts) != 2:
            return None
        scheme, token = parts
        if scheme.lower() != "bearer":
            return None
        return token
