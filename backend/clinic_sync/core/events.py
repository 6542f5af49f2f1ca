"""
In-process event bus used to hand component events to UI callbacks.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Union
from enum import Enum

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data structure"""
    event_type: Union[Enum, str]
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "system"

    @property
    def key(self) -> str:
        return self.event_type.value if isinstance(self.event_type, Enum) else str(self.event_type)


class EventBus:
    """
    Synchronous publish/subscribe bus.

    Subscribers run in publish order within the current event-loop turn. A
    subscriber that raises is logged and skipped; it never reaches the
    publisher and never stops delivery to the remaining subscribers.
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable[[Event], Any]]] = defaultdict(list)
        self.failed_deliveries = 0

    def subscribe(self, event_type: Union[Enum, str], callback: Callable[[Event], Any]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        key = event_type.value if isinstance(event_type, Enum) else str(event_type)
        self.subscribers[key].append(callback)

        def unsubscribe():
            if callback in self.subscribers.get(key, []):
                self.subscribers[key].remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver an event to its subscribers; returns the number that succeeded."""
        delivered = 0
        for callback in list(self.subscribers.get(event.key, [])):
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                self.failed_deliveries += 1
                logger.error(f"Subscriber {getattr(callback, '__name__', callback)!r} failed on {event.key}: {e}", exc_info=True)
        return delivered

    def clear(self):
        self.subscribers.clear()
