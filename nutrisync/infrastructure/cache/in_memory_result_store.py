"""
In-memory analysis result store.

Keeps finished analysis results keyed by idempotency key with a TTL, so a
repeated ``POST /analyze`` for the same capture returns the stored result.
A multi-instance deployment needs a shared store (e.g. Redis) behind the
same port.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

import structlog

from nutrisync.domain.analysis.models import AnalysisResult

logger = structlog.get_logger(__name__)


class InMemoryResultStore:
    """
    TTL dictionary of analysis results.

    Example:
        >>> store = InMemoryResultStore(default_ttl_seconds=86400)
        >>> await store.set("user-1:capture-1", result)
        >>> await store.get("user-1:capture-1")
    """

    def __init__(
        self,
        default_ttl_seconds: int = 24 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        # key -> (result, expiration)
        self._entries: Dict[str, Tuple[AnalysisResult, float]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    async def get(self, key: str) -> Optional[AnalysisResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        result, expiration = entry
        if self._clock() > expiration:
            del self._entries[key]
            logger.debug("result_expired", key=key)
            return None
        return result

    async def set(self, key: str, result: AnalysisResult, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        self._entries[key] = (result, self._clock() + ttl)
        logger.debug("result_stored", key=key, ttl_s=ttl)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expiration) in self._entries.items() if now > expiration]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("results_cleaned_up", count=len(expired))
        return len(expired)

    def size(self) -> int:
        return len(self._entries)
