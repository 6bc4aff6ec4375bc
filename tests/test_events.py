"""Tests for the domain event bus."""
import json
import logging

import pytest
from sqlmodel import select

from models import DomainEventRecord, DomainEventType
from services.events import DomainEventBus, DomainEventRecorder, publish_safely


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(caplog):
    bus = DomainEventBus()
    received = []

    async def broken(event):
        raise RuntimeError("notification service down")

    async def healthy(event):
        received.append(event.payload)

    bus.subscribe(DomainEventType.CREATOR_FLAGGED, broken)
    bus.subscribe(DomainEventType.CREATOR_FLAGGED, healthy)

    with caplog.at_level(logging.ERROR, logger="services.events"):
        delivered = await bus.publish(bus.create_event(DomainEventType.CREATOR_FLAGGED, {"creator_id": 1}))

    assert delivered == 1
    assert received == [{"creator_id": 1}]
    assert any("broken" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_publish_without_subscribers_delivers_nothing():
    bus = DomainEventBus()
    assert await bus.publish(bus.create_event(DomainEventType.RESERVE_RELEASED, {})) == 0


@pytest.mark.asyncio
async def test_handlers_only_receive_their_event_type():
    bus = DomainEventBus()
    received = []

    async def handler(event):
        received.append(event.type)

    bus.subscribe(DomainEventType.RESERVE_RELEASED, handler)
    await bus.publish(bus.create_event(DomainEventType.CREATOR_FLAGGED, {}))
    await bus.publish(bus.create_event(DomainEventType.RESERVE_RELEASED, {}))

    assert received == [DomainEventType.RESERVE_RELEASED]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = DomainEventBus()
    received = []

    async def handler(event):
        received.append(event)

    unsubscribe = bus.subscribe(DomainEventType.VELOCITY_SPIKE_DETECTED, handler)
    unsubscribe()
    unsubscribe()

    assert await bus.publish(bus.create_event(DomainEventType.VELOCITY_SPIKE_DETECTED, {})) == 0
    assert received == []


@pytest.mark.asyncio
async def test_publish_safely_tolerates_missing_bus():
    await publish_safely(None, DomainEventType.CREATOR_FLAGGED, {"creator_id": 1})


@pytest.mark.asyncio
async def test_recorder_persists_events(session, session_factory):
    bus = DomainEventBus()
    bus.subscribe_all(DomainEventRecorder(session_factory))

    await publish_safely(bus, DomainEventType.RESERVE_RELEASED, {"creator_id": 7, "amount_cents": 200})

    record = (await session.exec(select(DomainEventRecord))).one()
    assert record.type == "RESERVE_RELEASED"
    assert json.loads(record.payload) == {"creator_id": 7, "amount_cents": 200}
