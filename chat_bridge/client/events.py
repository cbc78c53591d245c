"""
Client Events

Publish/subscribe channel through which the connection engine reports state
changes and messages to whatever presentation layer is attached.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kinds of observable output."""
    STATUS = "status"            # str
    MESSAGE = "message"          # str, one line of the message log
    CONNECTION = "connection"    # bool
    MODE = "mode"                # ConnectionMode
    SERVER_LIST = "server_list"  # List[ServerDescriptor]


@dataclass(frozen=True)
class ClientEvent:
    """A single published event."""
    type: EventType
    payload: Any
    timestamp: datetime = field(default_factory=datetime.now)


EventHandler = Callable[[ClientEvent], None]


@dataclass
class EventStats:
    """Statistics for event delivery."""
    published: int = 0
    handler_errors: int = 0


class EventBus:
    """
    Synchronous event dispatcher.

    Handlers run on the publishing thread, in subscription order. A handler
    that raises is logged and skipped; the remaining handlers still run.
    Presentation layers are responsible for moving work onto their own
    thread.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[EventHandler]] = {t: [] for t in EventType}
        self._lock = threading.Lock()
        self._stats = EventStats()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: The type of event to receive.
            handler: Called with each ClientEvent of that type.
        """
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass  # Handler not found

    def publish(self, event_type: EventType, payload: Any) -> ClientEvent:
        """
        Deliver an event to every handler of its type.

        Args:
            event_type: The event type.
            payload: Event data.

        Returns:
            The published event.
        """
        event = ClientEvent(event_type, payload)
        with self._lock:
            handlers = list(self._handlers[event_type])
            self._stats.published += 1

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                with self._lock:
                    self._stats.handler_errors += 1
                logger.exception(f"Event handler for {event_type.value} failed")
        return event

    def get_stats(self) -> EventStats:
        with self._lock:
            return EventStats(self._stats.published, self._stats.handler_errors)

    def clear_handlers(self) -> None:
        """Clear all registered handlers."""
        with self._lock:
            for handlers in self._handlers.values():
                handlers.clear()
