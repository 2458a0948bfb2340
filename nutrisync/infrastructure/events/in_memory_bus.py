"""In-memory event bus.

Implements the IEventBus port for in-process subscribers (UI badges,
notifications). Handlers run in subscription order; a failing handler is
logged and does not stop the others.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Type, TypeVar

import structlog

from nutrisync.domain.capture.events import DomainEvent

logger = structlog.get_logger(__name__)

TEvent = TypeVar("TEvent", bound=DomainEvent)


class InMemoryEventBus:
    """
    Dictionary-based event bus.

    Example:
        >>> bus = InMemoryEventBus()
        >>> async def on_synced(event: CaptureSynced) -> None:
        ...     print(event.capture_id)
        >>> bus.subscribe(CaptureSynced, on_synced)
        >>> await bus.publish(CaptureSynced.create(...))
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[DomainEvent], List[Callable[[Any], Awaitable[None]]]] = {}

    def subscribe(
        self,
        event_type: Type[TEvent],
        handler: Callable[[TEvent], Awaitable[None]],
    ) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "event_handler_subscribed",
            event_type=event_type.__name__,
            handler=getattr(handler, "__name__", repr(handler)),
        )

    async def publish(self, event: DomainEvent) -> None:
        """Deliver ``event`` to handlers subscribed to its exact type."""
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            logger.debug("event_without_handlers", event_type=event_type.__name__)
            return

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=event_type.__name__,
                    event_id=str(event.event_id),
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )

    def unsubscribe(
        self,
        event_type: Type[TEvent],
        handler: Callable[[TEvent], Awaitable[None]],
    ) -> bool:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def clear(self) -> None:
        self._handlers.clear()

    def get_handler_count(self, event_type: Type[TEvent]) -> int:
        return len(self._handlers.get(event_type, []))
