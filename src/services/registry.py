"""Responder registry: live status and location of drivers and doctors.

The external profile service owns who a responder *is*; the registry
only mirrors what the dispatch core needs to match them -- kind, status
and last-known location -- plus the case they are currently serving.

Invariant: a responder is ``busy`` exactly when ``assigned_case_id`` is
set.  Only :meth:`ResponderRegistry.mark_busy` and
:meth:`ResponderRegistry.mark_available` move a responder in or out of
``busy``.
"""

from __future__ import annotations

from collections.abc import Collection

import structlog

from src.models.dispatch import DispatchEvent, GeoPoint, Responder, utcnow
from src.models.enums import DispatchEventType, ResponderKind, ResponderStatus
from src.services.config import DispatchConfig
from src.services.errors import Conflict, UnknownRecord
from src.services.events import EventPublisher
from src.services.geo import haversine_km
from src.services.store import RecordStore

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "responder:"


def _key(responder_id: str) -> str:
    return f"{_KEY_PREFIX}{responder_id}"


class ResponderRegistry:
    """Directory of responder availability backed by the record store."""

    __slots__ = ("_config", "_events", "_store")

    def __init__(
        self,
        store: RecordStore,
        events: EventPublisher,
        config: DispatchConfig | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._config = config or DispatchConfig()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, responder_id: str) -> Responder | None:
        found = await self._store.get(_key(responder_id))
        if found is None:
            return None
        document, _version = found
        return Responder.model_validate(document)

    async def get(self, responder_id: str) -> Responder:
        responder = await self.find(responder_id)
        if responder is None:
            raise UnknownRecord("responder", responder_id)
        return responder

    async def snapshot(self, kind: ResponderKind | None = None) -> list[Responder]:
        responders: list[Responder] = []
        for key in await self._store.keys(_KEY_PREFIX):
            responder = await self.find(key[len(_KEY_PREFIX):])
            if responder is not None and (kind is None or responder.kind == kind):
                responders.append(responder)
        return responders

    # ------------------------------------------------------------------
    # Status updates from responder devices
    # ------------------------------------------------------------------

    async def upsert_status(
        self,
        responder_id: str,
        status: ResponderStatus,
        location: GeoPoint,
        kind: ResponderKind | None = None,
    ) -> Responder:
        """Record the latest status and location reported by a responder.

        Updates older than the stored fix are ignored and the stored
        record is returned unchanged.  A busy responder may keep sending
        location updates, but cannot go ``online``/``offline`` here; that
        happens when its case leaves the active states.
        """
        async with self._store.locked(_key(responder_id)):
            current = await self.find(responder_id)

            if current is None:
                if kind is None:
                    raise ValueError(f"kind is required to register responder {responder_id}")
                if status == ResponderStatus.BUSY:
                    raise ValueError("a responder becomes busy only through case assignment")
                responder = Responder(id=responder_id, kind=kind, status=status, location=location)
                await self._write(responder, expected_version=0)
                logger.info(
                    "registry.responder_registered",
                    responder_id=responder_id,
                    kind=kind.value,
                    status=status.value,
                )
                await self._announce(responder, reason="registered")
                return responder.model_copy(update={"version": 1})

            if location.captured_at < current.location.captured_at:
                logger.info(
                    "registry.stale_update_ignored",
                    responder_id=responder_id,
                    stored_at=current.location.captured_at.isoformat(),
                    received_at=location.captured_at.isoformat(),
                )
                return current

            if current.status == ResponderStatus.BUSY and status != ResponderStatus.BUSY:
                raise Conflict(
                    _key(responder_id),
                    current.version,
                    detail=f"Responder {responder_id} is serving case {current.assigned_case_id}",
                )
            if status == ResponderStatus.BUSY and current.status != ResponderStatus.BUSY:
                raise ValueError("a responder becomes busy only through case assignment")

            updated = current.model_copy(
                update={"status": status, "location": location, "updated_at": utcnow()}
            )
            version = await self._write(updated, expected_version=current.version)
            if current.status != status:
                logger.info(
                    "registry.status_changed",
                    responder_id=responder_id,
                    from_status=current.status.value,
                    to_status=status.value,
                )
                await self._announce(updated, reason="status_changed")
            return updated.model_copy(update={"version": version})

    # ------------------------------------------------------------------
    # Candidate search
    # ------------------------------------------------------------------

    @property
    def tiers(self) -> tuple[float, ...]:
        return self._config.radius_tiers_km

    async def candidates_in_tier(
        self,
        location: GeoPoint,
        kind: ResponderKind,
        tier_index: int,
        exclude: Collection[str] = (),
    ) -> list[Responder]:
        """Online responders of *kind* within one radius tier, nearest first."""
        radius_km = self.tiers[tier_index]
        return await self._within(location, kind, radius_km, exclude)

    async def find_candidates(
        self,
        location: GeoPoint,
        kind: ResponderKind,
        radius_km: float | None = None,
        exclude: Collection[str] = (),
    ) -> list[Responder]:
        """Online responders of *kind* ordered by great-circle distance.

        With an explicit *radius_km* only that radius is searched.
        Otherwise the configured tiers are tried in order and the first
        tier with anyone in it wins.

        Ties on distance go to the earliest ``location.captured_at``,
        then to the lower responder id.
        """
        if radius_km is not None:
            return await self._within(location, kind, radius_km, exclude)

        for tier_index, tier_km in enumerate(self.tiers):
            found = await self._within(location, kind, tier_km, exclude)
            if found:
                logger.debug(
                    "registry.candidates_found",
                    tier=tier_index,
                    radius_km=tier_km,
                    count=len(found),
                )
                return found
        return []

    async def _within(
        self,
        location: GeoPoint,
        kind: ResponderKind,
        radius_km: float,
        exclude: Collection[str],
    ) -> list[Responder]:
        scored: list[tuple[float, Responder]] = []
        for responder in await self.snapshot(kind):
            if responder.status != ResponderStatus.ONLINE or responder.id in exclude:
                continue
            distance = haversine_km(
                location.latitude,
                location.longitude,
                responder.location.latitude,
                responder.location.longitude,
            )
            if distance <= radius_km:
                scored.append((distance, responder))

        scored.sort(key=lambda item: (item[0], item[1].location.captured_at, item[1].id))
        return [responder for _distance, responder in scored]

    # ------------------------------------------------------------------
    # Assignment bookkeeping
    # ------------------------------------------------------------------

    async def mark_busy(self, responder_id: str, case_id: str) -> Responder:
        """Tie a responder to a case; fails with :class:`Conflict` unless online."""
        async with self._store.locked(_key(responder_id)):
            current = await self.get(responder_id)
            if current.status != ResponderStatus.ONLINE:
                raise Conflict(
                    _key(responder_id),
                    current.version,
                    detail=f"Responder {responder_id} is {current.status.value}, not online",
                )
            updated = current.model_copy(
                update={
                    "status": ResponderStatus.BUSY,
                    "assigned_case_id": case_id,
                    "updated_at": utcnow(),
                }
            )
            version = await self._write(updated, expected_version=current.version)
            logger.info("registry.responder_busy", responder_id=responder_id, case_id=case_id)
            await self._announce(updated, reason="assigned")
            return updated.model_copy(update={"version": version})

    async def mark_available(self, responder_id: str) -> Responder:
        """Release a responder back to ``online`` with no case."""
        async with self._store.locked(_key(responder_id)):
            current = await self.get(responder_id)
            updated = current.model_copy(
                update={
                    "status": ResponderStatus.ONLINE,
                    "assigned_case_id": None,
                    "updated_at": utcnow(),
                }
            )
            version = await self._write(updated, expected_version=current.version)
            logger.info(
                "registry.responder_available",
                responder_id=responder_id,
                released_case_id=current.assigned_case_id,
            )
            await self._announce(updated, reason="released")
            return updated.model_copy(update={"version": version})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _write(self, responder: Responder, *, expected_version: int) -> int:
        # Re-validate so the busy/assigned invariant is checked on every write.
        checked = Responder.model_validate(responder.model_dump())
        return await self._store.put(
            _key(checked.id), checked.model_dump(mode="json"), expected_version=expected_version
        )

    async def _announce(self, responder: Responder, *, reason: str) -> None:
        await self._events.publish(
            DispatchEvent(
                type=DispatchEventType.RESPONDER_UPDATED,
                responder_id=responder.id,
                detail={
                    "status": responder.status.value,
                    "assigned_case_id": responder.assigned_case_id,
                    "reason": reason,
                },
            )
        )
