"""Emergency dispatch service: the single entry point for SOS handling.

Wires the record store, event bus, responder registry, intake, matcher
and lifecycle manager together and runs one background matching task
per pending case.  The HTTP layer and the SMS gateway talk only to
:class:`DispatchService`.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Final

import structlog

from src.models.dispatch import (
    Case,
    CaseStatusView,
    DispatchEvent,
    GeoPoint,
    Profile,
    Responder,
)
from src.models.enums import (
    CaseChannel,
    CaseState,
    DispatchEventType,
    ReporterStatus,
    ResponderKind,
    ResponderStatus,
)
from src.services import fallback_codec
from src.services.acknowledgements import AcknowledgementBroker
from src.services.cases import CaseIdGenerator, CaseRepository
from src.services.config import DispatchConfig
from src.services.errors import (
    Conflict,
    DispatchError,
    MalformedPayload,
    StoreUnavailable,
)
from src.services.events import InMemoryEventBus, RedisEventBus, Subscription
from src.services.intake import DistressIntake
from src.services.lifecycle import CaseLifecycleManager
from src.services.matcher import Matcher
from src.services.profiles import InMemoryProfileDirectory, ProfileDirectory
from src.services.registry import ResponderRegistry
from src.services.store import RecordStore, stable_digest

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)

_CONSUMED_PREFIX: Final[str] = "fallback_consumed:"

# Reporter-facing copy, one line per status.
_STATUS_MESSAGES: Final[dict[ReporterStatus, str]] = {
    ReporterStatus.SEARCHING: "Looking for the nearest ambulance.",
    ReporterStatus.ASSIGNED: "An ambulance has accepted your SOS.",
    ReporterStatus.RESOLVED: "Your emergency has been marked resolved.",
    ReporterStatus.CANCELLED: "Your SOS was cancelled.",
    ReporterStatus.ESCALATED: (
        "No ambulance is free nearby. A doctor has been alerted and will contact you."
    ),
}
_EN_ROUTE_MESSAGE: Final[str] = "Your ambulance is on the way."


class DispatchService:
    """Emergency dispatch coordination for one deployment.

    Example usage::

        service = DispatchService()
        await service.update_responder(
            "driver-7", ResponderStatus.ONLINE, GeoPoint(latitude=23.75, longitude=90.38),
            kind=ResponderKind.DRIVER,
        )
        case = await service.submit_sos("mother-1", GeoPoint(latitude=23.7461, longitude=90.3742))
        # driver-7 receives assignment_proposed on "responder:driver-7"
        await service.acknowledge(case.id, "driver-7", accepted=True)

    Parameters
    ----------
    store:
        Versioned record store; defaults to a process-local one.
    events:
        Event bus; must support :meth:`InMemoryEventBus.subscribe`.
    config:
        Dispatch tunables.
    profiles:
        Lookup for responder names and phone numbers.
    auto_match:
        Start a background matcher for every new pending case.
    """

    __slots__ = (
        "_auto_match",
        "_broker",
        "_cases",
        "_config",
        "_events",
        "_intake",
        "_lifecycle",
        "_matcher",
        "_profiles",
        "_registry",
        "_store",
        "_tasks",
    )

    def __init__(
        self,
        *,
        store: RecordStore | None = None,
        events: InMemoryEventBus | None = None,
        config: DispatchConfig | None = None,
        profiles: ProfileDirectory | None = None,
        auto_match: bool = True,
    ) -> None:
        self._config = config or DispatchConfig()
        self._store = store or RecordStore()
        self._events = events or InMemoryEventBus()
        self._profiles = profiles or InMemoryProfileDirectory()
        self._auto_match = auto_match

        self._cases = CaseRepository(self._store)
        self._registry = ResponderRegistry(self._store, self._events, self._config)
        self._intake = DistressIntake(self._cases, self._events, self._config, CaseIdGenerator())
        self._lifecycle = CaseLifecycleManager(self._cases, self._registry, self._events)
        self._broker = AcknowledgementBroker()
        self._matcher = Matcher(
            self._registry,
            self._lifecycle,
            self._cases,
            self._broker,
            self._events,
            self._config,
        )
        self._tasks: dict[str, asyncio.Task[Case]] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, profiles: ProfileDirectory | None = None
    ) -> DispatchService:
        """Build the service from :class:`config.settings.Settings`."""
        redis_url = settings.redis_url or None
        store = RecordStore(redis_url=redis_url, namespace=settings.store_namespace)
        if redis_url:
            events: InMemoryEventBus = RedisEventBus(redis_url, namespace=settings.store_namespace)
        else:
            events = InMemoryEventBus()
        return cls(
            store=store,
            events=events,
            config=DispatchConfig.from_settings(settings),
            profiles=profiles,
        )

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------

    @property
    def config(self) -> DispatchConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def events(self) -> InMemoryEventBus:
        return self._events

    @property
    def registry(self) -> ResponderRegistry:
        return self._registry

    @property
    def lifecycle(self) -> CaseLifecycleManager:
        return self._lifecycle

    @property
    def matcher(self) -> Matcher:
        return self._matcher

    @property
    def broker(self) -> AcknowledgementBroker:
        return self._broker

    # ------------------------------------------------------------------
    # Reporter operations
    # ------------------------------------------------------------------

    async def submit_sos(
        self,
        reporter_id: str,
        location: GeoPoint,
        channel: CaseChannel = CaseChannel.ONLINE,
    ) -> Case:
        """Raise an SOS and start looking for a driver.

        Returns the reporter's already-open case if there is one.
        """
        case = await self._intake.submit(reporter_id, location, channel)
        if case.state == CaseState.PENDING:
            self._start_matching(case.id)
        return case

    async def cancel(
        self,
        case_id: str,
        actor: str = "reporter",
        expected_state: CaseState | None = None,
    ) -> Case:
        """Cancel a case and withdraw any offer still waiting on a responder.

        The cancel only applies to the state the caller saw:
        *expected_state*, or the state read on entry when omitted.  If the
        case moved on in between (a driver accepted, say), :class:`Conflict`
        is raised and the caller re-reads the case before trying again.
        """
        if expected_state is None:
            expected_state = (await self._cases.get(case_id)).state
        case = await self._lifecycle.cancel(case_id, actor=actor, expected_state=expected_state)
        self._broker.withdraw(case_id)
        task = self._tasks.get(case_id)
        if task is not None and not task.done():
            task.cancel()
        return case

    async def get_case(self, case_id: str) -> Case:
        return await self._intake.get(case_id)

    async def open_case_for(self, reporter_id: str) -> Case | None:
        return await self._intake.open_case_for(reporter_id)

    async def case_status(self, case_id: str) -> CaseStatusView:
        return await self.describe(await self._cases.get(case_id))

    async def describe(self, case: Case) -> CaseStatusView:
        """Render a case the way the reporter's screen shows it.

        An expired case is shown as ``escalated``: nobody could be
        matched and the case was handed to a human.
        """
        responder: Profile | None = None
        en_route = False

        if case.state == CaseState.PENDING:
            status = ReporterStatus.ESCALATED if case.escalated else ReporterStatus.SEARCHING
        elif case.state.holds_responder:
            status = ReporterStatus.ASSIGNED
            en_route = case.state == CaseState.EN_ROUTE
            responder = await self._responder_profile(case.assigned_responder_id)
        elif case.state == CaseState.RESOLVED:
            status = ReporterStatus.RESOLVED
        elif case.state == CaseState.CANCELLED:
            status = ReporterStatus.CANCELLED
        else:
            status = ReporterStatus.ESCALATED

        return CaseStatusView(
            case_id=case.id,
            status=status,
            message=_EN_ROUTE_MESSAGE if en_route else _STATUS_MESSAGES[status],
            responder=responder,
            responder_en_route=en_route,
            created_at=case.created_at,
            updated_at=case.updated_at,
        )

    # ------------------------------------------------------------------
    # Offline fallback
    # ------------------------------------------------------------------

    def encode_fallback(
        self,
        reporter_id: str,
        location: GeoPoint,
        case_ref: str | None = None,
    ) -> str:
        """Build the SMS payload a device sends when it cannot reach us."""
        self._intake.validate_location(location)
        return fallback_codec.encode(
            case_ref or fallback_codec.new_placeholder_id(),
            reporter_id,
            location,
            max_chars=self._config.fallback_max_chars,
        )

    async def decode_and_submit(self, text: str) -> Case:
        """Gateway entry point: decode a relayed SMS and raise the SOS.

        Each payload is consumed once.  A redelivered payload returns the
        reporter's case without creating anything.

        Raises
        ------
        MalformedPayload
            The message does not hold a valid payload.
        Conflict
            The payload was already consumed and no case is on record.
        """
        try:
            payload = fallback_codec.decode(text)
        except MalformedPayload as exc:
            logger.warning("dispatch.fallback_malformed", error=str(exc), length=len(text or ""))
            await self._events.publish(
                DispatchEvent(
                    type=DispatchEventType.DIAGNOSTIC,
                    detail={"code": "malformed_payload", "error": str(exc)},
                )
            )
            raise

        marker = _CONSUMED_PREFIX + stable_digest(
            f"{payload.case_ref}|{payload.reporter_id}|{payload.latitude:.6f}|{payload.longitude:.6f}"
        )
        if not await self._store.claim(marker, self._config.fallback_consumed_ttl_seconds):
            logger.info(
                "dispatch.fallback_duplicate_dropped",
                reporter_id=payload.reporter_id,
                case_ref=payload.case_ref,
            )
            case_id, _ = await self._cases.indexed_case_id(payload.reporter_id)
            existing = await self._cases.find(case_id) if case_id else None
            if existing is None:
                raise Conflict(marker, detail="Fallback payload was already consumed")
            return existing

        location = GeoPoint(latitude=payload.latitude, longitude=payload.longitude)
        try:
            case = await self.submit_sos(payload.reporter_id, location, CaseChannel.OFFLINE_FALLBACK)
        except StoreUnavailable:
            # Let the gateway redeliver once the store is back.
            await self._store.delete(marker)
            raise

        logger.info(
            "dispatch.fallback_submitted",
            case_id=case.id,
            case_ref=payload.case_ref,
            reporter_id=payload.reporter_id,
        )
        return case

    # ------------------------------------------------------------------
    # Responder operations
    # ------------------------------------------------------------------

    async def update_responder(
        self,
        responder_id: str,
        status: ResponderStatus,
        location: GeoPoint,
        kind: ResponderKind | None = None,
    ) -> Responder:
        return await self._registry.upsert_status(responder_id, status, location, kind)

    async def get_responder(self, responder_id: str) -> Responder:
        return await self._registry.get(responder_id)

    async def acknowledge(self, case_id: str, responder_id: str, accepted: bool) -> None:
        """Answer an open assignment offer.

        Raises
        ------
        Conflict
            There is no open offer for this responder on this case (it
            timed out, was withdrawn, or never existed).
        """
        if not self._broker.respond(case_id, responder_id, accepted):
            raise Conflict(
                f"offer:{case_id}:{responder_id}",
                detail=f"No open offer for responder {responder_id} on case {case_id}",
            )
        logger.info(
            "dispatch.offer_answered",
            case_id=case_id,
            responder_id=responder_id,
            accepted=accepted,
        )

    async def depart(self, case_id: str, responder_id: str) -> Case:
        return await self._lifecycle.depart(case_id, responder_id)

    async def resolve(
        self, case_id: str, responder_id: str | None = None, actor: str | None = None
    ) -> Case:
        return await self._lifecycle.resolve(case_id, responder_id=responder_id, actor=actor)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, topic: str) -> Subscription:
        return self._events.subscribe(topic)

    def subscribe_case(self, case_id: str) -> Subscription:
        return self._events.subscribe(f"case:{case_id}")

    def subscribe_reporter(self, reporter_id: str) -> Subscription:
        return self._events.subscribe(f"reporter:{reporter_id}")

    def subscribe_responder(self, responder_id: str) -> Subscription:
        return self._events.subscribe(f"responder:{responder_id}")

    # ------------------------------------------------------------------
    # Background matching
    # ------------------------------------------------------------------

    def is_matching(self, case_id: str) -> bool:
        task = self._tasks.get(case_id)
        return task is not None and not task.done()

    async def wait_for_match(self, case_id: str, timeout: float | None = None) -> Case:
        """Wait for the case's matcher to finish and return the case."""
        task = self._tasks.get(case_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await self._cases.get(case_id)

    async def resume_open_cases(self) -> int:
        """Restart matching for pending cases left by a previous process."""
        resumed = 0
        for case_id in await self._cases.all_ids():
            case = await self._cases.find(case_id)
            if case is not None and case.state == CaseState.PENDING and self._start_matching(case_id):
                resumed += 1
        if resumed:
            logger.info("dispatch.matching_resumed", cases=resumed)
        return resumed

    def _start_matching(self, case_id: str) -> bool:
        if not self._auto_match or self.is_matching(case_id):
            return False
        task = asyncio.create_task(self._match(case_id), name=f"match:{case_id}")
        self._tasks[case_id] = task
        task.add_done_callback(lambda done: self._matching_finished(case_id, done))
        return True

    async def _match(self, case_id: str) -> Case:
        try:
            case = await self._matcher.run(case_id)
        except DispatchError as exc:
            logger.error("dispatch.matching_failed", case_id=case_id, exc_info=True)
            await self._events.publish(
                DispatchEvent(
                    type=DispatchEventType.DIAGNOSTIC,
                    case_id=case_id,
                    detail={"code": "matching_failed", "error": str(exc)},
                )
            )
            raise
        logger.info("dispatch.matching_finished", case_id=case_id, state=case.state.value)
        return case

    def _matching_finished(self, case_id: str, task: asyncio.Task[Case]) -> None:
        if self._tasks.get(case_id) is task:
            del self._tasks[case_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "dispatch.matching_task_error",
                case_id=case_id,
                error=str(task.exception()),
            )

    async def _responder_profile(self, responder_id: str | None) -> Profile | None:
        if responder_id is None:
            return None
        profile = await self._profiles.get(responder_id)
        return profile or Profile(id=responder_id, display_name=responder_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self._events.close()
        await self._store.close()
        logger.info("dispatch.closed", cancelled_tasks=len(tasks))
