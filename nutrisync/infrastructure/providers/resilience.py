"""Circuit breaker shared by the real analysis providers."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

from circuitbreaker import CircuitBreaker, CircuitBreakerError

from nutrisync.domain.shared.errors import RetryableError, UpstreamUnavailableError

T = TypeVar("T")


class ProviderCircuit:
    """
    Per-provider circuit breaker.

    Consecutive retryable failures open the circuit; while open, calls
    fail fast with ``UpstreamUnavailableError`` so the orchestrator moves
    to the next provider without waiting on a dead upstream. Terminal
    failures (auth, rejected content) do not count.
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: int = 60) -> None:
        self.name = name
        self._breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=RetryableError,
            name=name,
        )

    @property
    def state(self) -> str:
        return str(self._breaker.state)

    @property
    def failure_count(self) -> int:
        return int(self._breaker.failure_count)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        try:
            return await self._breaker.call_async(func, *args, **kwargs)
        except CircuitBreakerError as e:
            raise UpstreamUnavailableError(f"{self.name} circuit open") from e
