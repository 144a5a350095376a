from collections import defaultdict
from typing import Type, Callable, Dict, List, Any, Set
import asyncio
import logging

logger = logging.getLogger(__name__)

class Event:
    """Base class for all events."""
    pass

class Subscription:
    """Handle returned by EventBus.subscribe; cancel() detaches the handler."""

    def __init__(self, bus: "EventBus", event_type: Type[Event], handler: Callable[[Event], Any]):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def cancel(self):
        if self.active:
            self._bus.unsubscribe(self.event_type, self.handler)
            self.active = False

class EventBus:
    def __init__(self):
        self._subs: Dict[Type[Event], List[Callable[[Event], Any]]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[Event], handler: Callable[[Event], Any]) -> Subscription:
        """Register a handler for a specific event type."""
        self._subs[event_type].append(handler)
        return Subscription(self, event_type, handler)

    def unsubscribe(self, event_type: Type[Event], handler: Callable[[Event], Any]):
        try:
            self._subs[event_type].remove(handler)
        except ValueError:
            logger.debug("Handler %r was not subscribed to %s", handler, event_type.__name__)

    def handler_count(self, event_type: Type[Event]) -> int:
        return len(self._subs[event_type])

    def emit(self, event: Event):
        """Publish an event to all subscribers (sync or async)."""
        # copy: handlers may unsubscribe while we iterate
        for handler in list(self._subs[type(event)]):
            try:
                result = handler(event)
            except Exception as e:
                logger.error("Handler %r failed on %s: %s", handler, type(event).__name__, e, exc_info=True)
                continue
            # If handler returns a coroutine, schedule it
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async handler failed: %s", exc, exc_info=exc)

    async def drain(self):
        """Wait for every async handler scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
