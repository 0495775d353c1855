"""Gigbook event system."""

from gigbook.events.bus import EventBus, Outbox
from gigbook.events.types import EventType

__all__ = ["EventBus", "EventType", "Outbox"]
