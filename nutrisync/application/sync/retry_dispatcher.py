"""
Retry dispatcher.

Runs an async operation with exponential backoff on top of tenacity.
Failures are classified by a ``classify`` function:

- TERMINAL: propagate immediately, one attempt only
- RETRYABLE: wait ``base * 2**attempt`` (attempt zero-indexed) and retry,
  up to ``max_attempts``; then raise ``RetryExhaustedError``

Rate-limit failures always count as retryable and wait at least
``rate_limit_min_delay_s`` or the server's ``Retry-After`` hint.

The dispatcher keeps no per-operation state; policy and the sleep
function are injected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from nutrisync.domain.shared.errors import (
    ErrorKind,
    OperationCancelledError,
    PipelineError,
    ProviderExhaustedError,
    RetryExhaustedError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
CancelCheck = Callable[[], bool]


class Classification(str, Enum):
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


Classifier = Callable[[BaseException], Classification]


def default_classify(error: BaseException) -> Classification:
    """
    Default failure classification.

    Classified pipeline errors decide for themselves. Everything else
    (timeouts, connection resets, unrecognized errors) is retried; only
    errors explicitly known to be permanent stop the retry loop.
    """
    if isinstance(error, PipelineError):
        return Classification.RETRYABLE if error.retryable else Classification.TERMINAL
    return Classification.RETRYABLE


def is_rate_limited(error: BaseException) -> bool:
    if isinstance(error, ProviderExhaustedError):
        return error.last_error.kind is ErrorKind.RATE_LIMITED
    return isinstance(error, PipelineError) and error.kind is ErrorKind.RATE_LIMITED


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters."""

    max_attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: Optional[float] = None
    rate_limit_min_delay_s: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0:
            raise ValueError("base_delay_s must be >= 0")

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """
        Delay after the failed attempt ``attempt`` (zero-indexed).

        Example:
            >>> RetryPolicy(base_delay_s=1.0).delay_for(3)
            8.0
        """
        delay = self.base_delay_s * (2**attempt)
        if self.max_delay_s is not None:
            delay = min(delay, self.max_delay_s)
        if error is not None and is_rate_limited(error):
            delay = max(delay, self.rate_limit_min_delay_s)
            hint = getattr(error, "retry_after_s", None)
            if hint:
                delay = max(delay, float(hint))
        return delay


class RetryDispatcher:
    """
    Execute operations with classified exponential backoff.

    Example:
        >>> dispatcher = RetryDispatcher(RetryPolicy(max_attempts=5, base_delay_s=1.0))
        >>> result = await dispatcher.execute(lambda: client.analyze(record))
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: SleepFn = asyncio.sleep) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def sleep(self) -> SleepFn:
        return self._sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_attempts: Optional[int] = None,
        classify: Optional[Classifier] = None,
        cancelled: Optional[CancelCheck] = None,
        sleep: Optional[SleepFn] = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails terminally or runs out of attempts.

        Args:
            operation: Zero-argument coroutine factory
            max_attempts: Override of the policy's attempt budget
            classify: Override of ``default_classify``
            cancelled: Checked before every attempt
            sleep: Backoff sleep for this call only; exceptions it raises
                abort the loop and propagate unchanged

        Returns:
            The operation's result

        Raises:
            OperationCancelledError: ``cancelled()`` became true
            RetryExhaustedError: Final attempt failed with a retryable error
            Exception: The original error when classified as terminal
        """
        attempts_allowed = max_attempts or self.policy.max_attempts
        classifier = classify or default_classify

        def should_retry(error: BaseException) -> bool:
            if not isinstance(error, Exception) or isinstance(error, OperationCancelledError):
                return False
            if is_rate_limited(error):
                return True
            return classifier(error) is Classification.RETRYABLE

        def wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            return self.policy.delay_for(retry_state.attempt_number - 1, error)

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retry_scheduled",
                attempt=retry_state.attempt_number,
                max_attempts=attempts_allowed,
                delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
                error_type=type(error).__name__,
                error=str(error),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts_allowed),
            wait=wait,
            retry=retry_if_exception(should_retry),
            sleep=sleep or self._sleep,
            before_sleep=log_retry,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if cancelled is not None and cancelled():
                        raise OperationCancelledError("Operation cancelled")
                    return await operation()
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            logger.warning(
                "retry_exhausted",
                attempts=attempts,
                error_type=type(last_error).__name__,
                error=str(last_error),
            )
            if last_error is None:
                raise
            raise RetryExhaustedError(last_error, attempts) from last_error

        # AsyncRetrying always returns or raises inside the loop
        raise RuntimeError("retry loop exited without an outcome")
