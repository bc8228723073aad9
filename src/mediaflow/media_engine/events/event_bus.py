"""
In-process event bus for lifecycle events.
Each worker owns its own bus; subscribe() returns a handle that detaches the
subscriber again.
"""

import logging
from threading import Lock
from typing import Callable, Dict, List, Type

from mediaflow.media_engine.events.domain_events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class Subscription:
    def __init__(self, bus: "EventBus", event_type: Type[DomainEvent], handler: EventHandler):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self.event_type, self.handler)
            self.active = False


class EventBus:
    def __init__(self):
        self._lock = Lock()
        self._subscribers: Dict[Type[DomainEvent], List[EventHandler]] = {}

    def subscribe(
        self, handler: EventHandler, event_type: Type[DomainEvent] = DomainEvent
    ) -> Subscription:
        """
        Subscribes a handler to an event type.
        Handlers registered for DomainEvent receive every event.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Subscribed handler %s to %s",
            getattr(handler, "__name__", repr(handler)),
            event_type.__name__,
        )
        return Subscription(self, event_type, handler)

    def _remove(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        logger.info(
            "Event %s",
            event.event_type,
            extra={"event": event.model_dump(mode="json")},
        )
        with self._lock:
            handlers = list(self._subscribers.get(type(event), []))
            if type(event) is not DomainEvent:
                handlers += [
                    h for h in self._subscribers.get(DomainEvent, []) if h not in handlers
                ]
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} "
                    f"for {type(event).__name__} failed: {e}",
                    exc_info=True,
                )
