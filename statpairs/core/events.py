"""Simple pub/sub event bus for pair lifecycle notifications."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger()


# Event type constants
PAIR_OPENED = "pair_opened"
PAIR_EVALUATED = "pair_evaluated"
EXIT_SIGNAL = "exit_signal"
PAIR_CLOSED = "pair_closed"


class EventBus:
    """Synchronous pub/sub event bus.

    Callbacks run in subscription order. A failing subscriber is logged and
    never interrupts the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._log = logger.bind(component="event_bus")

    def subscribe(self, event_type: str, callback: Callable[..., Any]) -> None:
        self._subscribers[event_type].append(callback)
        self._log.debug("subscriber_added", event_type=event_type, callback=callback.__qualname__)

    def publish(self, event_type: str, **data: Any) -> None:
        subscribers = self._subscribers.get(event_type, [])
        if not subscribers:
            return

        for callback in subscribers:
            try:
                callback(**data)
            except Exception:
                self._log.exception(
                    "subscriber_error",
                    event_type=event_type,
                    callback=callback.__qualname__,
                )
