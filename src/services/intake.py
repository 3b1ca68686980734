"""Distress signal intake: validate, timestamp and persist SOS events."""

from __future__ import annotations

import structlog

from src.models.dispatch import Case, DispatchEvent, GeoPoint
from src.models.enums import CaseChannel, DispatchEventType
from src.services.cases import CaseIdGenerator, CaseRepository
from src.services.config import DispatchConfig
from src.services.errors import Conflict, InvalidLocation
from src.services.events import EventPublisher

logger = structlog.get_logger(__name__)


class DistressIntake:
    """Turns SOS submissions into pending cases.

    A reporter has at most one open case.  Submitting again while that
    case is still open (repeated taps, client retries, or the same SOS
    arriving both online and via the SMS gateway) returns the existing
    case unchanged and publishes nothing.
    """

    __slots__ = ("_cases", "_config", "_events", "_new_id")

    def __init__(
        self,
        cases: CaseRepository,
        events: EventPublisher,
        config: DispatchConfig | None = None,
        id_generator: CaseIdGenerator | None = None,
    ) -> None:
        self._cases = cases
        self._events = events
        self._config = config or DispatchConfig()
        self._new_id = id_generator or CaseIdGenerator()

    def validate_location(self, location: GeoPoint) -> None:
        if not self._config.region.contains(location.latitude, location.longitude):
            logger.warning(
                "intake.invalid_location",
                latitude=location.latitude,
                longitude=location.longitude,
            )
            raise InvalidLocation(location.latitude, location.longitude)

    async def submit(
        self,
        reporter_id: str,
        location: GeoPoint,
        channel: CaseChannel = CaseChannel.ONLINE,
    ) -> Case:
        """Create a pending case for *reporter_id*, or return their open one.

        Raises
        ------
        InvalidLocation
            Coordinates outside the configured service region.
        """
        self.validate_location(location)

        async with self._cases.reporter_locked(reporter_id):
            existing_id, index_version = await self._cases.indexed_case_id(reporter_id)
            if existing_id is not None:
                existing = await self._cases.find(existing_id)
                if existing is not None and not existing.is_terminal:
                    logger.info(
                        "intake.duplicate_submission",
                        reporter_id=reporter_id,
                        case_id=existing.id,
                        channel=channel.value,
                    )
                    return existing

            case = Case(
                id=self._new_id(),
                reporter_id=reporter_id,
                location=location,
                channel=channel,
            )
            case = await self._cases.write(case, expected_version=0)
            try:
                await self._cases.index_reporter(
                    reporter_id, case.id, expected_version=index_version
                )
            except Conflict:
                # Another process indexed a case for this reporter first.
                await self._cases.delete(case.id)
                winner_id, _ = await self._cases.indexed_case_id(reporter_id)
                winner = await self._cases.find(winner_id) if winner_id else None
                if winner is None or winner.is_terminal:
                    raise
                logger.info(
                    "intake.lost_index_race",
                    reporter_id=reporter_id,
                    case_id=winner.id,
                )
                return winner

            await self._events.publish(
                DispatchEvent(
                    type=DispatchEventType.CASE_CREATED,
                    case_id=case.id,
                    reporter_id=reporter_id,
                    state=case.state,
                    detail={
                        "channel": channel.value,
                        "latitude": location.latitude,
                        "longitude": location.longitude,
                    },
                )
            )

        logger.info(
            "intake.case_created",
            case_id=case.id,
            reporter_id=reporter_id,
            channel=channel.value,
        )
        return case

    async def open_case_for(self, reporter_id: str) -> Case | None:
        case_id, _ = await self._cases.indexed_case_id(reporter_id)
        if case_id is None:
            return None
        case = await self._cases.find(case_id)
        if case is None or case.is_terminal:
            return None
        return case

    async def get(self, case_id: str) -> Case:
        return await self._cases.get(case_id)
