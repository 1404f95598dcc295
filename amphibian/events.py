"""Typed publish/subscribe surface for core status events.

Components publish instances of the event classes below; collaborators
subscribe per class. The catalogue is fixed: subscribing to anything that is
not a known event class raises ``TypeError``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceJoined:
    """A worker authenticated and was registered with the pool."""

    device_id: str
    capability: str
    name: str = ""


@dataclass(frozen=True)
class DeviceLeft:
    """A worker left the pool (disconnect, eviction or shutdown)."""

    device_id: str
    reason: str


@dataclass(frozen=True)
class TaskCompleted:
    """A request finished; ``token_count`` stays 0 for embedding jobs."""

    task_id: str
    token_count: int = 0


@dataclass(frozen=True)
class TaskFailed:
    """A request or embedding job reached a failed terminal state."""

    task_id: str
    reason: str


@dataclass(frozen=True)
class FallbackUsed:
    """The core degraded to a simpler path; ``reason`` names why."""

    reason: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssociationFormed:
    """A co-occurrence pair crossed the link threshold."""

    pair_key: str
    belief: float
    weight: float


Event = DeviceJoined | DeviceLeft | TaskCompleted | TaskFailed | FallbackUsed | AssociationFormed

EVENT_TYPES: tuple[type, ...] = (
    DeviceJoined,
    DeviceLeft,
    TaskCompleted,
    TaskFailed,
    FallbackUsed,
    AssociationFormed,
)

E = TypeVar("E")


class EventBus:
    """Synchronous in-process event dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler for one event class.

        Args:
            event_type: One of the event classes in this module
            handler: Called with each published event of that class

        Returns:
            Function that removes the subscription
        """
        if event_type not in EVENT_TYPES:
            raise TypeError(f"Not an event type: {event_type!r}")
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers[event_type]
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver an event to its subscribers.

        Handler exceptions are logged and do not reach the publisher.
        Nothing is delivered after ``close()``.
        """
        if self._closed:
            logger.debug(f"Dropping {type(event).__name__} published after close")
            return

        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error ({type(event).__name__}): {e}", exc_info=True)

    def close(self) -> None:
        """Stop delivering events and drop all subscriptions."""
        self._closed = True
        self._handlers.clear()
