"""Tests for distress signal intake: validation, id generation, deduplication."""

from __future__ import annotations

import asyncio
import math

import pytest
from pydantic import ValidationError

from src.models.dispatch import GeoPoint
from src.models.enums import CaseChannel, CaseState, DispatchEventType
from src.services.cases import CaseIdGenerator, CaseRepository
from src.services.errors import InvalidLocation, UnknownRecord
from src.services.intake import DistressIntake
from src.services.lifecycle import CaseLifecycleManager
from tests.helpers import DHAKA_REPORTER, point


@pytest.fixture
def cases(store) -> CaseRepository:
    return CaseRepository(store)


@pytest.fixture
def intake(cases, bus, fast_config) -> DistressIntake:
    return DistressIntake(cases, bus, fast_config)


class TestSubmit:
    async def test_creates_pending_case(self, intake, cases, bus) -> None:
        sub = bus.subscribe("reporter:mother-1")
        case = await intake.submit("mother-1", point(*DHAKA_REPORTER))

        assert case.state == CaseState.PENDING
        assert case.assigned_responder_id is None
        assert case.version == 1
        stored = await cases.get(case.id)
        assert stored.location.latitude == pytest.approx(DHAKA_REPORTER[0])

        events = sub.drain()
        assert [e.type for e in events] == [DispatchEventType.CASE_CREATED]
        assert events[0].case_id == case.id

    async def test_rejects_location_outside_region(self, intake, cases) -> None:
        with pytest.raises(InvalidLocation):
            await intake.submit("mother-1", point(51.5074, -0.1278))
        assert await cases.all_ids() == [], "rejected SOS must not create a case"

    def test_non_finite_coordinates_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GeoPoint(latitude=math.nan, longitude=90.0)

    async def test_open_case_is_returned_unchanged(self, intake, bus) -> None:
        first = await intake.submit("mother-1", point(*DHAKA_REPORTER))
        second = await intake.submit("mother-1", point(23.80, 90.40), CaseChannel.OFFLINE_FALLBACK)

        assert second.id == first.id, "an open case should be reused"
        assert second.location == first.location, "the existing case must not be modified"
        assert second.channel == CaseChannel.ONLINE
        created = bus.recent(event_type=DispatchEventType.CASE_CREATED)
        assert len(created) == 1, "duplicate submissions publish nothing"

    async def test_concurrent_submissions_share_one_case(self, intake, cases) -> None:
        results = await asyncio.gather(
            *(intake.submit("mother-1", point(*DHAKA_REPORTER)) for _ in range(5))
        )
        assert len({case.id for case in results}) == 1
        assert len(await cases.all_ids()) == 1

    async def test_new_case_after_terminal(self, intake, cases, registry, bus) -> None:
        lifecycle = CaseLifecycleManager(cases, registry, bus)
        first = await intake.submit("mother-1", point(*DHAKA_REPORTER))
        await lifecycle.cancel(first.id)

        second = await intake.submit("mother-1", point(*DHAKA_REPORTER))
        assert second.id != first.id, "a closed case must not swallow a new SOS"
        assert await intake.open_case_for("mother-1") == second

    async def test_reporters_are_independent(self, intake) -> None:
        a = await intake.submit("mother-1", point(*DHAKA_REPORTER))
        b = await intake.submit("mother-2", point(*DHAKA_REPORTER))
        assert a.id != b.id

    async def test_open_case_for_unknown_reporter(self, intake) -> None:
        assert await intake.open_case_for("nobody") is None

    async def test_get_returns_stored_case(self, intake) -> None:
        case = await intake.submit("mother-1", point(*DHAKA_REPORTER))
        assert (await intake.get(case.id)).reporter_id == "mother-1"
        with pytest.raises(UnknownRecord):
            await intake.get("missing")


class TestCaseIdGenerator:
    def test_ids_sort_in_creation_order(self) -> None:
        generate = CaseIdGenerator()
        ids = [generate() for _ in range(500)]
        assert ids == sorted(ids), "ids from one generator must be monotonic"
        assert len(set(ids)) == len(ids), "ids must be unique"

    def test_id_shape(self) -> None:
        case_id = CaseIdGenerator()()
        assert len(case_id) == 24
        int(case_id, 16)
