"""Matcher: pairs a pending case with the nearest available responder.

Search policy
-------------
1. Candidates are online responders of the requested kind (drivers by
   default) inside the tightest radius tier, nearest first.
2. The nearest candidate gets an offer and has ``ack_timeout_seconds``
   to accept.  A rejection or timeout excludes that responder and the
   next nearest is tried.
3. After ``max_attempts_per_tier`` offers in a tier, or when the tier
   runs out of candidates, the search widens to the next tier.
4. When every tier is exhausted the case stays ``pending``, is flagged
   once with ``match_exhausted`` for doctors/operators, and a fresh round
   starts after the next backoff delay.  A case still unmatched after
   ``max_pending_wait_seconds`` is expired.

The matcher never holds the case lock while waiting for an answer.
Before committing an accepted offer, the lifecycle manager re-reads the
case, so a cancellation that landed in the meantime wins.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from dataclasses import dataclass

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.dispatch import Case, DispatchEvent, GeoPoint, Responder, utcnow
from src.models.enums import CaseState, DispatchEventType, ResponderKind
from src.services.acknowledgements import AcknowledgementBroker, OfferOutcome
from src.services.cases import CaseRepository
from src.services.config import DispatchConfig
from src.services.errors import Conflict, InvalidTransition, MatchExhausted, StoreUnavailable
from src.services.events import EventPublisher
from src.services.geo import haversine_km
from src.services.lifecycle import CaseLifecycleManager
from src.services.registry import ResponderRegistry

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class MatchRound:
    """Outcome of one pass over all radius tiers."""

    case: Case
    attempts: int
    assigned: bool = False

    @property
    def stopped(self) -> bool:
        """True when the case left ``pending`` for any reason."""
        return self.case.state != CaseState.PENDING


class Matcher:
    """Runs the offer/acknowledge loop for pending cases."""

    __slots__ = ("_broker", "_cases", "_config", "_events", "_lifecycle", "_registry")

    def __init__(
        self,
        registry: ResponderRegistry,
        lifecycle: CaseLifecycleManager,
        cases: CaseRepository,
        broker: AcknowledgementBroker,
        events: EventPublisher,
        config: DispatchConfig | None = None,
    ) -> None:
        self._registry = registry
        self._lifecycle = lifecycle
        self._cases = cases
        self._broker = broker
        self._events = events
        self._config = config or DispatchConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, case_id: str, kind: ResponderKind = ResponderKind.DRIVER) -> Case:
        """Keep matching *case_id* until it is assigned or leaves ``pending``."""
        round_index = 0
        while True:
            try:
                return await self.assign_once(case_id, kind)
            except MatchExhausted as exc:
                await self._lifecycle.escalate(case_id, exc.attempts)

            case = await self._cases.get(case_id)
            elapsed = (utcnow() - case.created_at).total_seconds()
            remaining = self._config.max_pending_wait_seconds - elapsed
            if remaining <= 0:
                return await self._expire(case_id)

            delay = min(self._config.backoff_for(round_index), remaining)
            logger.info(
                "matcher.round_exhausted",
                case_id=case_id,
                round=round_index,
                retry_in_seconds=delay,
            )
            await asyncio.sleep(delay)
            round_index += 1

    async def assign_once(self, case_id: str, kind: ResponderKind = ResponderKind.DRIVER) -> Case:
        """Run a single matching round.

        Returns the case once it is assigned or has left ``pending``.

        Raises
        ------
        MatchExhausted
            Every tier was tried and nobody accepted.
        """
        outcome = await self.match_round(case_id, kind)
        if outcome.assigned or outcome.stopped:
            return outcome.case
        raise MatchExhausted(case_id, outcome.case.match_attempts)

    async def match_round(
        self, case_id: str, kind: ResponderKind = ResponderKind.DRIVER
    ) -> MatchRound:
        """Make one pass over every radius tier for a pending case."""
        case = await self._cases.get(case_id)
        if case.state != CaseState.PENDING:
            return MatchRound(case=case, attempts=0)

        excluded: set[str] = set()
        attempts = 0
        for tier_index, radius_km in enumerate(self._registry.tiers):
            tier_attempts = 0
            while tier_attempts < self._config.max_attempts_per_tier:
                candidates = await self._candidates(case.location, kind, tier_index, excluded)
                if not candidates:
                    break
                responder = candidates[0]
                excluded.add(responder.id)
                tier_attempts += 1
                attempts += 1

                result = await self._offer(case, responder, tier_index, radius_km)
                if result is not None:
                    return MatchRound(
                        case=result,
                        attempts=attempts,
                        assigned=result.state == CaseState.ASSIGNED,
                    )

        case = await self._cases.get(case_id)
        logger.info(
            "matcher.tiers_exhausted",
            case_id=case_id,
            kind=kind.value,
            attempts=attempts,
        )
        return MatchRound(case=case, attempts=attempts)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _candidates(
        self,
        location: GeoPoint,
        kind: ResponderKind,
        tier_index: int,
        excluded: Collection[str],
    ) -> list[Responder]:
        return await self._registry.candidates_in_tier(location, kind, tier_index, excluded)

    async def _offer(
        self,
        case: Case,
        responder: Responder,
        tier_index: int,
        radius_km: float,
    ) -> Case | None:
        """Offer the case to one responder.

        Returns the case if it was assigned or left ``pending``; *None*
        when matching should move on to the next candidate.
        """
        counted = await self._lifecycle.record_attempt(case.id)
        if counted is None:
            return await self._cases.get(case.id)

        distance_km = haversine_km(
            case.location.latitude,
            case.location.longitude,
            responder.location.latitude,
            responder.location.longitude,
        )
        future = self._broker.open_offer(case.id, responder.id)
        await self._events.publish(
            DispatchEvent(
                type=DispatchEventType.ASSIGNMENT_PROPOSED,
                case_id=case.id,
                responder_id=responder.id,
                state=CaseState.PENDING,
                detail={
                    "distance_km": round(distance_km, 3),
                    "tier": tier_index,
                    "radius_km": radius_km,
                    "latitude": case.location.latitude,
                    "longitude": case.location.longitude,
                    "ack_timeout_seconds": self._config.ack_timeout_seconds,
                },
            )
        )
        logger.info(
            "matcher.offer_sent",
            case_id=case.id,
            responder_id=responder.id,
            distance_km=round(distance_km, 3),
            tier=tier_index,
        )

        outcome = await self._broker.wait(future, self._config.ack_timeout_seconds)

        if outcome == OfferOutcome.ACCEPTED:
            try:
                return await self._lifecycle.accept_match(case.id, responder.id)
            except InvalidTransition:
                # Cancelled (or otherwise moved on) while the responder answered.
                logger.info("matcher.accept_superseded", case_id=case.id, responder_id=responder.id)
                return await self._cases.get(case.id)
            except Conflict:
                logger.info("matcher.responder_unavailable", case_id=case.id, responder_id=responder.id)
                return None

        if outcome == OfferOutcome.WITHDRAWN:
            current = await self._cases.get(case.id)
            if current.state != CaseState.PENDING:
                return current

        logger.info(
            "matcher.offer_declined",
            case_id=case.id,
            responder_id=responder.id,
            outcome=outcome.value,
        )
        return None

    async def _expire(self, case_id: str) -> Case:
        try:
            return await self._lifecycle.expire(case_id)
        except InvalidTransition:
            return await self._cases.get(case_id)
