"""Domain event bus.

Fire-and-forget notifications (velocity spikes, flagged creators, reserve
releases) for downstream consumers such as the notification service.
Handlers run isolated from each other; a failing handler is logged and never
propagates to the publisher.
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import utcnow
from models import DomainEventRecord, DomainEventType

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    type: DomainEventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class DomainEventBus:
    """In-process publish/subscribe keyed by event type."""

    def __init__(self):
        self._handlers: Dict[DomainEventType, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: DomainEventType, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> None:
        for event_type in DomainEventType:
            self.subscribe(event_type, handler)

    @staticmethod
    def create_event(event_type: DomainEventType, payload: Dict[str, Any]) -> DomainEvent:
        return DomainEvent(type=event_type, payload=payload)

    async def publish(self, event: DomainEvent) -> int:
        """
        Deliver an event to every subscribed handler.

        Returns the number of handlers that completed successfully.
        """
        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return 0

        results = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )

        delivered = 0
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"[EVENTS] Handler {getattr(handler, '__name__', handler)!r} failed for {event.type.value}",
                    exc_info=result,
                )
            else:
                delivered += 1
        return delivered


class DomainEventRecorder:
    """Subscriber that persists every event in its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def __call__(self, event: DomainEvent) -> None:
        async with self.session_factory() as session:
            session.add(
                DomainEventRecord(
                    type=event.type.value,
                    payload=json.dumps(event.payload, default=str),
                    created_at=event.timestamp,
                )
            )
            await session.commit()


async def publish_safely(
    bus: Optional[DomainEventBus],
    event_type: DomainEventType,
    payload: Dict[str, Any],
) -> None:
    """Publish without ever raising into the caller."""
    if bus is None:
        return
    try:
        await bus.publish(bus.create_event(event_type, payload))
    except Exception as e:
        logger.error(f"[EVENTS] Failed to publish {event_type.value}: {e}")
