"""
Capture domain models.

A ``CaptureRecord`` is one meal capture waiting for (or done with)
server-side analysis. Records are immutable values: every transition
returns a new record that the record store persists.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nutrisync.domain.analysis.models import AnalysisResult, NutritionItem
from nutrisync.domain.shared.errors import ErrorCode, ErrorKind, PipelineError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncState(str, Enum):
    """Lifecycle of a capture record."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


class FailureInfo(BaseModel):
    """Classified reason attached to a failed record."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    code: str
    message: str
    retryable: bool
    kind: str = ErrorKind.TERMINAL.value
    occurred_at: datetime = Field(default_factory=utcnow)
    retry_after_s: Optional[float] = None

    @classmethod
    def from_error(cls, error: BaseException, now: Optional[datetime] = None) -> FailureInfo:
        """Build from any exception; unclassified errors count as retryable."""
        occurred = now or utcnow()
        if isinstance(error, PipelineError):
            return cls(
                code=error.code.value,
                message=error.message,
                retryable=error.retryable,
                kind=error.kind.value,
                occurred_at=occurred,
                retry_after_s=error.retry_after_s,
            )
        return cls(
            code=ErrorCode.INTERNAL.value,
            message=str(error) or type(error).__name__,
            retryable=True,
            kind=ErrorKind.TRANSIENT.value,
            occurred_at=occurred,
        )


class ImagePayload(BaseModel):
    """Photo capture: a local file path or inline base64 data."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: Literal["image"] = "image"
    image_path: Optional[str] = None
    image_base64: Optional[str] = None
    mime_type: str = "image/jpeg"

    @model_validator(mode="after")
    def exactly_one_source(self) -> ImagePayload:
        if (self.image_path is None) == (self.image_base64 is None):
            raise ValueError("exactly one of image_path or image_base64 is required")
        return self


class ItemsPayload(BaseModel):
    """Manual entry: items already parsed on the device."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: Literal["items"] = "items"
    items: List[NutritionItem] = Field(..., min_length=1)


CapturePayload = Annotated[Union[ImagePayload, ItemsPayload], Field(discriminator="kind")]


class CaptureRecord(BaseModel):
    """
    Durable meal capture.

    The ``id`` is generated on the device at capture time and is the
    idempotency key for every network operation on this record.

    Example:
        >>> record = CaptureRecord.create(ImagePayload(image_path="/tmp/a.jpg"))
        >>> record.sync_state
        <SyncState.PENDING: 'pending'>
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    created_at: datetime = Field(default_factory=utcnow)
    payload: CapturePayload
    sync_state: SyncState = SyncState.PENDING
    attempts: int = Field(0, ge=0)
    last_error: Optional[FailureInfo] = None
    updated_at: Optional[datetime] = None
    in_flight_since: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None
    result: Optional[AnalysisResult] = None

    @field_validator("id")
    @classmethod
    def valid_uuid(cls, v: str) -> str:
        return str(uuid.UUID(str(v)))

    @field_validator("created_at", "updated_at", "in_flight_since", "next_attempt_at", "synced_at")
    @classmethod
    def timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def create(
        cls,
        payload: Union[ImagePayload, ItemsPayload],
        now: Optional[datetime] = None,
        capture_id: Optional[str] = None,
    ) -> CaptureRecord:
        """New pending record with a fresh client-side ID."""
        created = now or utcnow()
        return cls(
            id=capture_id or str(uuid.uuid4()),
            created_at=created,
            updated_at=created,
            payload=payload,
        )

    # ─── transitions ────────────────────────────────────────

    def mark_in_flight(self, now: Optional[datetime] = None) -> CaptureRecord:
        moment = now or utcnow()
        return self.model_copy(
            update={
                "sync_state": SyncState.IN_FLIGHT,
                "in_flight_since": moment,
                "updated_at": moment,
            }
        )

    def mark_synced(
        self, result: AnalysisResult, attempts_made: int, now: Optional[datetime] = None
    ) -> CaptureRecord:
        moment = now or utcnow()
        return self.model_copy(
            update={
                "sync_state": SyncState.SYNCED,
                "attempts": self.attempts + attempts_made,
                "result": result.for_capture(self.id),
                "last_error": None,
                "in_flight_since": None,
                "next_attempt_at": None,
                "synced_at": moment,
                "updated_at": moment,
            }
        )

    def mark_failed(
        self,
        failure: FailureInfo,
        attempts_made: int,
        now: Optional[datetime] = None,
        retry_at: Optional[datetime] = None,
    ) -> CaptureRecord:
        moment = now or utcnow()
        return self.model_copy(
            update={
                "sync_state": SyncState.FAILED,
                "attempts": self.attempts + attempts_made,
                "last_error": failure,
                "in_flight_since": None,
                "next_attempt_at": retry_at if failure.retryable else None,
                "updated_at": moment,
            }
        )

    def requeue(self, now: Optional[datetime] = None) -> CaptureRecord:
        """Back to pending; keeps ``last_error`` for display."""
        return self.model_copy(
            update={
                "sync_state": SyncState.PENDING,
                "in_flight_since": None,
                "next_attempt_at": None,
                "updated_at": now or utcnow(),
            }
        )

    # ─── queries ────────────────────────────────────────────

    @property
    def retryable_failure(self) -> bool:
        return (
            self.sync_state is SyncState.FAILED
            and self.last_error is not None
            and self.last_error.retryable
        )

    def is_due(self, now: datetime) -> bool:
        """Eligible for an automatic upload attempt at ``now``."""
        if self.sync_state is SyncState.PENDING:
            return True
        if not self.retryable_failure:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def in_flight_longer_than(self, timeout: timedelta, now: datetime) -> bool:
        if self.sync_state is not SyncState.IN_FLIGHT:
            return False
        since = self.in_flight_since or self.updated_at or self.created_at
        return now - since >= timeout

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)
