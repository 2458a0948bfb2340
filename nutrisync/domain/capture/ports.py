"""
Capture ports.

Interfaces used by the client-side sync layer.
"""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Protocol,
    Type,
    TypeVar,
    runtime_checkable,
)

from nutrisync.domain.analysis.models import AnalysisResult
from nutrisync.domain.capture.events import DomainEvent
from nutrisync.domain.capture.models import CaptureRecord, SyncState

TEvent = TypeVar("TEvent", bound=DomainEvent)

RecordMutator = Callable[[CaptureRecord], CaptureRecord]


@runtime_checkable
class IRecordStore(Protocol):
    """
    Port for the durable capture store.

    Mutations are serialized; once ``put`` returns the record survives a
    process kill.
    """

    async def put(self, record: CaptureRecord) -> None:
        """
        Insert a new record.

        Raises:
            DuplicateCaptureError: ID already stored
            StorageError: Write failed
        """
        ...

    async def get(self, capture_id: str) -> Optional[CaptureRecord]:
        ...

    async def update(self, capture_id: str, mutator: RecordMutator) -> CaptureRecord:
        """
        Atomically read-modify-write a record.

        Raises:
            CaptureNotFoundError: ID not stored
            StorageError: Write failed
        """
        ...

    async def delete(self, capture_id: str) -> bool:
        ...

    async def delete_many(self, capture_ids: Iterable[str]) -> int:
        ...

    async def list_by_state(self, *states: SyncState) -> List[CaptureRecord]:
        ...

    async def all(self) -> List[CaptureRecord]:
        ...


@runtime_checkable
class IAnalysisGateway(Protocol):
    """Port for the server-side analysis API as seen by the device."""

    async def analyze(self, record: CaptureRecord) -> AnalysisResult:
        """
        Post a capture for analysis (idempotent by ``record.id``).

        Raises:
            PipelineError: Classified failure
        """
        ...


@runtime_checkable
class ITokenProvider(Protocol):
    """Supplies the bearer token for API calls."""

    async def get_token(self) -> Optional[str]:
        ...


@runtime_checkable
class IEventBus(Protocol):
    """Port for publishing capture events to in-process subscribers."""

    def subscribe(self, event_type: Type[TEvent], handler: Callable[[TEvent], Awaitable[None]]) -> None:
        ...

    async def publish(self, event: Any) -> None:
        ...
