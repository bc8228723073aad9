from mediaflow.media_engine.events.domain_events import (
    DomainEvent,
    TaskActiveEvent,
    TaskCompletedEvent,
    TaskEvent,
    TaskFailedEvent,
)
from mediaflow.media_engine.events.event_bus import EventBus, Subscription

__all__ = [
    "DomainEvent",
    "TaskEvent",
    "TaskActiveEvent",
    "TaskCompletedEvent",
    "TaskFailedEvent",
    "EventBus",
    "Subscription",
]
