"""Tests for the event bus and outbox."""

from __future__ import annotations

import logging

from gigbook.events.bus import EventBus, Outbox
from gigbook.events.types import EventType


async def test_publish_delivers_outbox_in_order():
    bus = EventBus()
    seen = []

    async def on_any(event_type, data):
        seen.append(event_type)

    bus.on_all(on_any)
    outbox = Outbox()
    outbox.add(EventType.PROPOSAL_ACCEPTED, {"proposal_id": "p1"})
    outbox.add(EventType.PROJECT_CREATED)
    await bus.publish(outbox)
    assert seen == [EventType.PROPOSAL_ACCEPTED, EventType.PROJECT_CREATED]


async def test_typed_listener_and_off():
    bus = EventBus()
    seen = []

    async def on_signed(event_type, data):
        seen.append(data["contract_id"])

    bus.on(EventType.CONTRACT_SIGNED, on_signed)
    await bus.emit(EventType.CONTRACT_SIGNED, {"contract_id": "c1"})
    await bus.emit(EventType.CONTRACT_CANCELLED, {"contract_id": "c2"})
    bus.off(EventType.CONTRACT_SIGNED, on_signed)
    await bus.emit(EventType.CONTRACT_SIGNED, {"contract_id": "c3"})
    assert seen == ["c1"]


async def test_failing_listener_is_logged_and_skipped(caplog):
    bus = EventBus()
    seen = []

    async def broken(event_type, data):
        raise RuntimeError("listener bug")

    async def healthy(event_type, data):
        seen.append(event_type)

    bus.on(EventType.LEDGER_ENTRY_RECORDED, broken)
    bus.on_all(healthy)
    with caplog.at_level(logging.ERROR, logger="gigbook.events.bus"):
        await bus.emit(EventType.LEDGER_ENTRY_RECORDED)
    assert seen == [EventType.LEDGER_ENTRY_RECORDED]
    assert "Error in event listener" in caplog.text
