"""Async event bus and the per-transaction outbox feeding it."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Coroutine, Iterator
from typing import Any

from gigbook.events.types import EventType

logger = logging.getLogger(__name__)

Listener = Callable[[EventType, dict[str, Any]], Coroutine[Any, Any, None]]


class Outbox:
    """Events recorded during a unit of work, published only after commit."""

    def __init__(self) -> None:
        self._events: list[tuple[EventType, dict[str, Any]]] = []

    def add(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        self._events.append((event_type, data or {}))

    def __iter__(self) -> Iterator[tuple[EventType, dict[str, Any]]]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)


class EventBus:
    """Simple async pub/sub event bus."""

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = defaultdict(list)
        self._global_listeners: list[Listener] = []

    def on(self, event_type: EventType, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def on_all(self, listener: Listener) -> None:
        self._global_listeners.append(listener)

    def off(self, event_type: EventType, listener: Listener) -> None:
        if listener in self._listeners[event_type]:
            self._listeners[event_type].remove(listener)

    async def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        """Deliver one event; a failing listener is logged and skipped."""
        data = data or {}
        listeners = self._listeners.get(event_type, []) + self._global_listeners

        for listener in listeners:
            try:
                await listener(event_type, data)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in event listener for %s", event_type)

    async def publish(self, outbox: Outbox) -> None:
        """Deliver every event of a committed unit of work, in order."""
        for event_type, data in outbox:
            await self.emit(event_type, data)
