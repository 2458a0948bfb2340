"""
Domain exceptions.

Typed exceptions for the capture pipeline. Every pipeline failure belongs
to exactly one kind, which decides whether the sync layer retries it:

- TERMINAL: retrying cannot help (bad input, auth, content rejected)
- TRANSIENT: timeouts, 5xx, lost connections
- RATE_LIMITED: provider or API asked us to slow down
- PROVIDER_EXHAUSTED: every analysis provider failed

Each pipeline error serializes to ``{"code", "message", "retryable"}``,
the body returned by the analysis API and stored on failed captures.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification bucket of a pipeline failure."""

    TERMINAL = "terminal"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PROVIDER_EXHAUSTED = "provider_exhausted"


class ErrorCode(str, Enum):
    """Stable machine-readable error codes (wire format)."""

    INVALID_INPUT = "INVALID_INPUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONTENT_REJECTED = "CONTENT_REJECTED"
    NO_ITEMS_DETECTED = "NO_ITEMS_DETECTED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    CONNECTION_LOST = "CONNECTION_LOST"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_EXHAUSTED = "PROVIDER_EXHAUSTED"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"


# ═══════════════════════════════════════════════════════════
# BASE EXCEPTION
# ═══════════════════════════════════════════════════════════


class DomainError(Exception):
    """
    Base exception for all domain errors.

    All domain-specific exceptions inherit from this.
    Allows catching all domain errors with single except clause.
    """

    pass


class PipelineError(DomainError):
    """
    Base exception for classified capture/analysis failures.

    Subclasses fix ``kind`` and a default ``code``; callers may override
    the code when a more specific one is known.
    """

    kind: ErrorKind = ErrorKind.TERMINAL
    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        retry_after_s: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retry_after_s = retry_after_s

    @property
    def retryable(self) -> bool:
        """True when an automatic retry may succeed."""
        return self.kind is not ErrorKind.TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


# ═══════════════════════════════════════════════════════════
# TERMINAL ERRORS
# ═══════════════════════════════════════════════════════════


class TerminalError(PipelineError):
    """Base exception for failures that must not be retried automatically."""

    kind = ErrorKind.TERMINAL


class InvalidInputError(TerminalError):
    """
    Request payload is malformed.

    Raised when:
    - Image is empty or larger than the configured limit
    - Unsupported mime type
    - Neither (or both) image and items supplied

    Example:
        >>> raise InvalidInputError("Image exceeds 10485760 bytes")
    """

    default_code = ErrorCode.INVALID_INPUT


class AuthenticationError(TerminalError):
    """
    Credentials missing, expired or rejected.

    Raised when:
    - Bearer token missing or invalid on the analysis API
    - Provider API key rejected (HTTP 401/403)

    Example:
        >>> raise AuthenticationError("Provider rejected API key")
    """

    default_code = ErrorCode.UNAUTHORIZED


class ContentRejectedError(TerminalError):
    """
    Provider refused the content.

    Raised when:
    - Content policy violation
    - Provider answered 4xx for the payload itself

    Example:
        >>> raise ContentRejectedError("Image rejected by content filter")
    """

    default_code = ErrorCode.CONTENT_REJECTED


class NoFoodDetectedError(TerminalError):
    """
    Provider answered but recognized no food items.

    Treated as a soft failure by the orchestrator: the next provider is
    tried. Surfaces only when it is the last provider's outcome.

    Example:
        >>> raise NoFoodDetectedError("openai returned no items")
    """

    default_code = ErrorCode.NO_ITEMS_DETECTED


class OperationCancelledError(TerminalError):
    """
    Operation cancelled before completion.

    Raised when:
    - The capture was deleted while queued or in flight
    """

    default_code = ErrorCode.CANCELLED


class ClaimLostError(OperationCancelledError):
    """
    Worker no longer owns the capture it was uploading.

    Raised when:
    - The sync queue claim expired or passed to another worker
    - The record left ``in_flight`` (or was re-marked) behind the worker's back
    """

    pass


# ═══════════════════════════════════════════════════════════
# RETRYABLE ERRORS
# ═══════════════════════════════════════════════════════════


class RetryableError(PipelineError):
    """Base exception for failures worth another attempt."""

    kind = ErrorKind.TRANSIENT
    default_code = ErrorCode.UPSTREAM_ERROR


class TransientError(RetryableError):
    """
    Temporary upstream failure.

    Raised when:
    - Provider or API returned 5xx
    - Malformed provider payload (may succeed on retry)

    Example:
        >>> raise TransientError("Edamam returned 502")
    """

    pass


class UpstreamTimeoutError(TransientError):
    """Request exceeded its deadline."""

    default_code = ErrorCode.TIMEOUT


class ConnectionLostError(TransientError):
    """Network unreachable or connection dropped."""

    default_code = ErrorCode.CONNECTION_LOST


class UpstreamUnavailableError(TransientError):
    """
    Upstream temporarily unavailable.

    Raised when:
    - Circuit breaker is open for a provider
    - Provider not configured for this deployment
    """

    default_code = ErrorCode.UPSTREAM_UNAVAILABLE


class RateLimitedError(RetryableError):
    """
    Upstream asked us to slow down (HTTP 429 or provider quota).

    Always retryable; ``retry_after_s`` carries the server hint if any.

    Example:
        >>> raise RateLimitedError("Too many requests", retry_after_s=30)
    """

    kind = ErrorKind.RATE_LIMITED
    default_code = ErrorCode.RATE_LIMITED


# ═══════════════════════════════════════════════════════════
# EXHAUSTION ERRORS
# ═══════════════════════════════════════════════════════════


class ProviderExhaustedError(PipelineError):
    """
    Every analysis provider failed.

    Carries the last provider's error; retryability follows it, so a chain
    ending in an auth failure is terminal while one ending in a timeout is
    retried later.

    Example:
        >>> raise ProviderExhaustedError(last_error, attempted=["openai", "edamam"])
    """

    kind = ErrorKind.PROVIDER_EXHAUSTED
    default_code = ErrorCode.PROVIDER_EXHAUSTED

    def __init__(
        self,
        last_error: PipelineError,
        *,
        attempted: Optional[list[str]] = None,
        message: Optional[str] = None,
    ) -> None:
        self.last_error = last_error
        self.attempted = list(attempted or [])
        super().__init__(
            message or f"All analysis providers failed: {last_error.message}",
            retry_after_s=last_error.retry_after_s,
        )

    @property
    def retryable(self) -> bool:
        return self.last_error.retryable

    @property
    def last_code(self) -> ErrorCode:
        """Code of the final provider failure."""
        return self.last_error.code


class RetryExhaustedError(PipelineError):
    """
    Retry budget spent on a retryable failure.

    Raised by the retry dispatcher after the final attempt failed.
    Stays retryable so the capture is picked up again later.
    """

    kind = ErrorKind.TRANSIENT
    default_code = ErrorCode.RETRIES_EXHAUSTED

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        detail = last_error.message if isinstance(last_error, PipelineError) else str(last_error)
        code = last_error.code if isinstance(last_error, PipelineError) else None
        super().__init__(
            f"Gave up after {attempts} attempts: {detail}",
            code=code,
        )


# ═══════════════════════════════════════════════════════════
# STORAGE EXCEPTIONS
# ═══════════════════════════════════════════════════════════


class StorageError(DomainError):
    """
    Durable store could not be read or written.

    Raised when:
    - Disk full or permission denied while persisting
    - Temporary file could not be swapped into place

    The previous on-disk state is left intact.
    """

    pass


class CaptureNotFoundError(DomainError):
    """
    Capture record not found.

    Raised when:
    - Capture ID doesn't exist
    - Capture was deleted while being processed

    Example:
        >>> raise CaptureNotFoundError("Capture abc123 not found")
    """

    pass


class DuplicateCaptureError(DomainError):
    """Capture ID already present in the store."""

    pass


class ResultNotFoundError(DomainError):
    """No stored analysis result for the requested capture ID."""

    pass
