from __future__ import annotations

import logging

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.models import EventEnvelope, EventRecord
from app.infra.events import EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type="task.approved",
        tenant_id="tenant-a",
        payload={"task_id": "task-1"},
    )
    bus.subscribe("task.approved", handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert seen == [event.event_id]


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def broken(_event: EventEnvelope) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe("task.rejected", broken)
    bus.subscribe("*", lambda event: seen.append(event.event_type))

    event = EventEnvelope(event_type="task.rejected", tenant_id="tenant-a")
    with caplog.at_level(logging.ERROR, logger="app.infra.events"):
        with Session(engine) as session:
            bus.publish(event, session=session)
            session.commit()

    assert seen == ["task.rejected"]
    assert "event handler failed for task.rejected" in caplog.text


def test_unsubscribe_stops_delivery() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    bus.subscribe("project.created", handler)
    bus.unsubscribe("project.created", handler)
    with Session(engine) as session:
        bus.publish(EventEnvelope(event_type="project.created", tenant_id="tenant-a"), session=session)
        session.commit()

    assert seen == []
