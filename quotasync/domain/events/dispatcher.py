"""Minimal synchronous publish/subscribe dispatcher for domain events."""

import logging
import threading
from typing import Callable, List

from quotasync.domain.events.sync_events import DomainEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[DomainEvent], None]

class EventDispatcher:
    """Delivers events to subscribed callbacks in subscription order.

    A failing subscriber is logged and skipped; it never breaks the
    publisher or the remaining subscribers.
    """

    def __init__(self):
        self._subscribers: List[EventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Registers a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, event: DomainEvent) -> None:
        logger.debug(f"EVENT: {event}")
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber {callback!r} failed on {type(event).__name__}: {e}", exc_info=True)
