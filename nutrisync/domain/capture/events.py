"""Capture domain events.

Events are immutable records of facts that occurred; the UI subscribes
to them to refresh badges and show "will retry later" messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4


@dataclass(frozen=True)
class DomainEvent:
    """Base class for domain events.

    Attributes:
        event_id: Unique identifier for this event instance.
        occurred_at: When the event occurred (UTC timezone-aware).

    Raises:
        ValueError: If occurred_at is not timezone-aware.
    """

    event_id: UUID
    occurred_at: datetime

    def __post_init__(self) -> None:
        if self.occurred_at.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware (use UTC)")


def _stamp() -> tuple[UUID, datetime]:
    return uuid4(), datetime.now(timezone.utc)


@dataclass(frozen=True)
class CaptureQueued(DomainEvent):
    """A new capture was persisted and is waiting for upload."""

    capture_id: str

    @classmethod
    def create(cls, capture_id: str) -> CaptureQueued:
        event_id, occurred_at = _stamp()
        return cls(event_id=event_id, occurred_at=occurred_at, capture_id=capture_id)


@dataclass(frozen=True)
class CaptureSynced(DomainEvent):
    """Capture analyzed by the server and marked synced.

    Attributes:
        capture_id: Record ID.
        provider: Provider that produced the result.
        item_count: Number of items in the result.
        attempts: Total upload attempts for the record.
    """

    capture_id: str
    provider: str
    item_count: int
    attempts: int

    @classmethod
    def create(cls, capture_id: str, provider: str, item_count: int, attempts: int) -> CaptureSynced:
        if item_count <= 0:
            raise ValueError("item_count must be positive")
        event_id, occurred_at = _stamp()
        return cls(
            event_id=event_id,
            occurred_at=occurred_at,
            capture_id=capture_id,
            provider=provider,
            item_count=item_count,
            attempts=attempts,
        )


@dataclass(frozen=True)
class CaptureFailed(DomainEvent):
    """Upload gave up for now; the record stays in the store as failed."""

    capture_id: str
    code: str
    message: str
    retryable: bool
    attempts: int
    retry_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        capture_id: str,
        code: str,
        message: str,
        retryable: bool,
        attempts: int,
        retry_at: Optional[datetime] = None,
    ) -> CaptureFailed:
        event_id, occurred_at = _stamp()
        return cls(
            event_id=event_id,
            occurred_at=occurred_at,
            capture_id=capture_id,
            code=code,
            message=message,
            retryable=retryable,
            attempts=attempts,
            retry_at=retry_at,
        )


@dataclass(frozen=True)
class CaptureDeleted(DomainEvent):
    """User deleted a capture."""

    capture_id: str
    was_synced: bool

    @classmethod
    def create(cls, capture_id: str, was_synced: bool) -> CaptureDeleted:
        event_id, occurred_at = _stamp()
        return cls(
            event_id=event_id,
            occurred_at=occurred_at,
            capture_id=capture_id,
            was_synced=was_synced,
        )
