"""Cancellation tokens for captures deleted while queued or in flight."""

from __future__ import annotations

from typing import Callable, Set


class CancellationRegistry:
    """Set of capture IDs whose work must stop at the next checkpoint."""

    def __init__(self) -> None:
        self._cancelled: Set[str] = set()

    def cancel(self, capture_id: str) -> None:
        self._cancelled.add(capture_id)

    def is_cancelled(self, capture_id: str) -> bool:
        return capture_id in self._cancelled

    def clear(self, capture_id: str) -> None:
        self._cancelled.discard(capture_id)

    def token(self, capture_id: str) -> Callable[[], bool]:
        """Zero-argument check bound to one capture."""
        return lambda: capture_id in self._cancelled
