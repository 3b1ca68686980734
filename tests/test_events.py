"""Tests for the in-process event bus and topic routing."""

from __future__ import annotations

import asyncio

import pytest

from src.models.dispatch import DispatchEvent
from src.models.enums import CaseState, DispatchEventType
from src.services.events import (
    DIAGNOSTICS_TOPIC,
    ESCALATIONS_TOPIC,
    InMemoryEventBus,
    topics_for,
)


def _transition(case_id: str, state: CaseState, **kwargs) -> DispatchEvent:
    return DispatchEvent(
        type=DispatchEventType.CASE_TRANSITIONED,
        case_id=case_id,
        state=state,
        **kwargs,
    )


class TestTopics:
    def test_case_reporter_and_responder_topics(self) -> None:
        event = _transition("c1", CaseState.ASSIGNED, reporter_id="r1", responder_id="d1")
        assert topics_for(event) == ["case:c1", "reporter:r1", "responder:d1"]

    def test_match_exhausted_goes_to_escalations(self) -> None:
        event = DispatchEvent(type=DispatchEventType.MATCH_EXHAUSTED, case_id="c1", reporter_id="r1")
        assert ESCALATIONS_TOPIC in topics_for(event), "doctors/operators listen on escalations"

    def test_diagnostics_topic(self) -> None:
        event = DispatchEvent(type=DispatchEventType.DIAGNOSTIC, detail={"code": "x"})
        assert topics_for(event) == [DIAGNOSTICS_TOPIC]


class TestInMemoryEventBus:
    async def test_delivers_in_publish_order_with_sequence(self) -> None:
        bus = InMemoryEventBus()
        sub = bus.subscribe("case:c1")
        for state in (CaseState.PENDING, CaseState.ASSIGNED, CaseState.EN_ROUTE):
            await bus.publish(_transition("c1", state))

        events = sub.drain()
        assert [e.state for e in events] == [CaseState.PENDING, CaseState.ASSIGNED, CaseState.EN_ROUTE]
        assert [e.sequence for e in events] == [1, 2, 3], "per-case sequence should increase by one"

    async def test_sequences_are_per_case(self) -> None:
        bus = InMemoryEventBus()
        first = await bus.publish(_transition("c1", CaseState.PENDING))
        other = await bus.publish(_transition("c2", CaseState.PENDING))
        second = await bus.publish(_transition("c1", CaseState.ASSIGNED))
        assert (first.sequence, other.sequence, second.sequence) == (1, 1, 2)

    async def test_unrelated_topics_not_delivered(self) -> None:
        bus = InMemoryEventBus()
        sub = bus.subscribe("case:c2")
        await bus.publish(_transition("c1", CaseState.PENDING))
        assert sub.drain() == [], "events for c1 must not reach c2 subscribers"

    async def test_closed_subscription_stops_receiving(self) -> None:
        bus = InMemoryEventBus()
        sub = bus.subscribe("case:c1")
        sub.close()
        await bus.publish(_transition("c1", CaseState.PENDING))
        assert sub.drain() == []

    async def test_get_times_out(self) -> None:
        bus = InMemoryEventBus()
        sub = bus.subscribe("case:c1")
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)

    async def test_recent_filters(self) -> None:
        bus = InMemoryEventBus(history_size=10)
        await bus.publish(_transition("c1", CaseState.PENDING))
        await bus.publish(DispatchEvent(type=DispatchEventType.MATCH_EXHAUSTED, case_id="c1"))
        await bus.publish(_transition("c2", CaseState.PENDING))

        assert len(bus.recent(case_id="c1")) == 2
        assert len(bus.recent(event_type=DispatchEventType.MATCH_EXHAUSTED)) == 1
        assert len(bus.recent()) == 3

    async def test_history_is_bounded(self) -> None:
        bus = InMemoryEventBus(history_size=2)
        for state in (CaseState.PENDING, CaseState.ASSIGNED, CaseState.RESOLVED):
            await bus.publish(_transition("c1", state))
        assert [e.state for e in bus.recent()] == [CaseState.ASSIGNED, CaseState.RESOLVED]

    async def test_terminal_case_releases_its_counter(self) -> None:
        bus = InMemoryEventBus()
        for index in range(50):
            case_id = f"c{index}"
            await bus.publish(_transition(case_id, CaseState.PENDING))
            await bus.publish(_transition(case_id, CaseState.CANCELLED))
        assert bus.active_cases == 0, "closed cases must not keep a live sequence counter"

    async def test_late_event_continues_closed_case_sequence(self) -> None:
        bus = InMemoryEventBus()
        await bus.publish(_transition("c1", CaseState.PENDING))
        closed = await bus.publish(_transition("c1", CaseState.RESOLVED))
        late = await bus.publish(
            DispatchEvent(type=DispatchEventType.DIAGNOSTIC, case_id="c1", detail={"code": "x"})
        )
        assert (closed.sequence, late.sequence) == (2, 3)
        assert bus.active_cases == 0

    async def test_retired_counters_are_bounded(self) -> None:
        bus = InMemoryEventBus(history_size=3)
        for index in range(10):
            await bus.publish(_transition(f"c{index}", CaseState.EXPIRED))
        assert len(bus._retired) == 3
        assert list(bus._retired) == ["c7", "c8", "c9"]
