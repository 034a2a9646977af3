"""In-process event bus implementing the event-publishing interface."""

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .events import Event, EventType

logger = logging.getLogger(__name__)


class EventHandler:
    """Handler for processing events from the event bus."""

    def __init__(
        self,
        handler_id: str,
        handler_func: Callable[[Event], Any],
        event_types: Optional[Set[EventType]] = None,
    ):
        self.handler_id = handler_id
        self.handler_func = handler_func
        self.event_types = event_types or set()
        self.is_active = True

    def accepts(self, event: Event) -> bool:
        if not self.is_active:
            return False
        return not self.event_types or event.event_type in self.event_types

    async def handle(self, event: Event) -> Any:
        """Handle an event if it matches the handler criteria."""
        if not self.accepts(event):
            return None

        result = self.handler_func(event)
        if inspect.isawaitable(result):
            result = await result
        return result

    def deactivate(self):
        """Deactivate this handler."""
        self.is_active = False


class EventBus:
    """
    Publish/subscribe hub with a finite set of event types.

    Publishing records the event immediately; handlers run concurrently in a
    background delivery task. A failing handler is logged and counted; it
    never fails the publisher.
    """

    def __init__(self, history_size: int = 1000):
        self.handlers: Dict[str, EventHandler] = {}
        self.topic_handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self.history: Deque[Event] = deque(maxlen=history_size)

        self.stats = {
            "events_published": 0,
            "events_delivered": 0,
            "handler_failures": 0,
            "handlers_registered": 0,
        }
        self._delivery_tasks: Set["asyncio.Task[Any]"] = set()

    def register_handler(
        self,
        handler_id: str,
        handler_func: Callable[[Event], Any],
        event_types: Optional[Set[EventType]] = None,
    ) -> EventHandler:
        """Register an event handler; no event_types means every event."""
        if handler_id in self.handlers:
            self.unregister_handler(handler_id)

        handler = EventHandler(
            handler_id=handler_id,
            handler_func=handler_func,
            event_types=event_types,
        )
        self.handlers[handler_id] = handler

        for event_type in (event_types or set(EventType)):
            self.topic_handlers[event_type].append(handler)

        self.stats["handlers_registered"] += 1
        logger.debug(f"Registered handler: {handler_id}")
        return handler

    def unregister_handler(self, handler_id: str):
        """Unregister an event handler."""
        handler = self.handlers.pop(handler_id, None)
        if handler is None:
            return

        handler.deactivate()
        for handlers_list in self.topic_handlers.values():
            if handler in handlers_list:
                handlers_list.remove(handler)

        logger.debug(f"Unregistered handler: {handler_id}")

    async def publish(self, event_type: EventType, payload: Dict[str, Any]) -> Event:
        """Record an event and schedule its delivery to matching handlers.

        Delivery runs in a background task, so publishing never waits on
        subscribers. ``drain`` waits for outstanding deliveries.
        """
        event = Event(event_type=EventType(event_type), payload=payload)
        self.history.append(event)
        self.stats["events_published"] += 1

        handlers = [h for h in self.topic_handlers.get(event.event_type, []) if h.is_active]
        if handlers:
            task = asyncio.create_task(
                self._deliver(event, handlers),
                name=f"event-delivery:{event.event_type.value}",
            )
            self._delivery_tasks.add(task)
            task.add_done_callback(self._delivery_tasks.discard)

        return event

    async def _deliver(self, event: Event, handlers: List[EventHandler]) -> None:
        results = await asyncio.gather(
            *(handler.handle(event) for handler in handlers),
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, BaseException):
                self.stats["handler_failures"] += 1
                logger.error(f"Handler {handler.handler_id} failed on {event.event_type.value}: {result}")
            else:
                self.stats["events_delivered"] += 1

    async def drain(self) -> None:
        """Wait until every scheduled delivery, including ones scheduled meanwhile, has finished."""
        while self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding deliveries."""
        tasks = list(self._delivery_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._delivery_tasks.clear()

    def events_of_type(self, event_type: EventType) -> List[Event]:
        """Recently published events of one type, oldest first."""
        return [e for e in self.history if e.event_type == event_type]

    def get_stats(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        return {
            **self.stats,
            "active_handlers": len([h for h in self.handlers.values() if h.is_active]),
            "history_size": len(self.history),
        }
