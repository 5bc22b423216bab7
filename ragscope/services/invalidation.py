from __future__ import annotations

import logging
from typing import Callable

from ragscope.domain.events import InvalidationEvent
from ragscope.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


InvalidationHandler = Callable[[InvalidationEvent], None]


class InvalidationBus:
    """Single channel for data-change signals.

    Mutation paths publish typed events here instead of clearing caches
    directly; caches subscribe and decide what to evict.
    """

    def __init__(self) -> None:
        self._handlers: list[InvalidationHandler] = []

    def subscribe(self, handler: InvalidationHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: InvalidationHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: InvalidationEvent) -> None:
        increment_counter(f"invalidation_events_total.{type(event).__name__}")
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:  # noqa: BLE001 - one faulty subscriber must not block the others
                logger.exception("invalidation_handler_failed event=%s", event)
