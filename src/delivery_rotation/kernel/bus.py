"""
In-process event bus

Stored events are published here after they commit; read models subscribe
by event type. A failing subscriber is logged and skipped, it never affects
the write that produced the event or the other subscribers.
"""

from collections import defaultdict
from typing import Callable

from delivery_rotation.kernel.events import Event
from delivery_rotation.kernel.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Event], None]


class InProcessBus:
    """Synchronous publish/subscribe within one process"""

    def __init__(self) -> None:
        self._event_handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._catch_all: list[EventHandler] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for one event type (several handlers per type are fine)

        Use ``"*"`` to receive every event.
        """
        if event_type == "*":
            self._catch_all.append(handler)
        else:
            self._event_handlers[event_type].append(handler)
        logger.debug("Event handler registered", event_type=event_type)

    def subscribe_many(self, event_types: list[str], handler: EventHandler) -> None:
        for event_type in event_types:
            self.subscribe(event_type, handler)

    def publish_event(self, event: Event) -> None:
        """Deliver an event to its handlers in registration order"""
        handlers = self._event_handlers.get(event.event_type, []) + self._catch_all

        if not handlers:
            logger.debug(
                "No handlers registered for event type",
                event_type=event.event_type,
                event_id=event.event_id,
            )
            return

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    stream_id=event.stream_id,
                    error=str(e),
                    exc_info=True,
                )

    def publish_events(self, events: list[Event]) -> None:
        for event in events:
            self.publish_event(event)

    def get_event_types(self) -> list[str]:
        """Event types with at least one dedicated handler"""
        return list(self._event_handlers.keys())

    def clear(self) -> None:
        """Remove every subscription"""
        self._event_handlers.clear()
        self._catch_all.clear()
