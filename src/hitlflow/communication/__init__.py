"""Event publication and push delivery for the approval subsystem."""

from .event_bus import EventBus, EventHandler
from .events import Event, EventPublisher, EventType, publish_safely
from .push import PushChannel, PushChannelRegistry

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventPublisher",
    "EventType",
    "PushChannel",
    "PushChannelRegistry",
    "publish_safely",
]
