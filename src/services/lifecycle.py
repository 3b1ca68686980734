"""Assignment lifecycle manager: the per-case state machine.

::

    pending  --match_accepted-->          assigned
    assigned --departed-->                en_route
    en_route --resolved-->                resolved
    assigned --resolved-->                resolved
    pending  --cancel / timeout-->        cancelled
    pending  --no_match_after_max_wait--> expired
    assigned / en_route --cancel-->       cancelled

``resolved``, ``cancelled`` and ``expired`` are terminal.

Each transition runs under the case's record lock and is written with a
version compare-and-swap, so two concurrent triggers on the same case
cannot both commit: the loser sees either a changed state
(:class:`InvalidTransition`) or a changed version (:class:`Conflict`).
"""

from __future__ import annotations

import asyncio
from typing import Final

import structlog

from src.models.dispatch import Case, DispatchEvent, TransitionRecord, utcnow
from src.models.enums import CaseState, CaseTrigger, DispatchEventType
from src.services.cases import CaseRepository
from src.services.errors import Conflict, DispatchError, InvalidTransition
from src.services.events import EventPublisher
from src.services.registry import ResponderRegistry

logger = structlog.get_logger(__name__)


TRANSITIONS: Final[dict[tuple[CaseState, CaseTrigger], CaseState]] = {
    (CaseState.PENDING, CaseTrigger.MATCH_ACCEPTED): CaseState.ASSIGNED,
    (CaseState.ASSIGNED, CaseTrigger.DEPARTED): CaseState.EN_ROUTE,
    (CaseState.EN_ROUTE, CaseTrigger.RESOLVED): CaseState.RESOLVED,
    (CaseState.ASSIGNED, CaseTrigger.RESOLVED): CaseState.RESOLVED,
    (CaseState.PENDING, CaseTrigger.CANCEL): CaseState.CANCELLED,
    (CaseState.PENDING, CaseTrigger.TIMEOUT): CaseState.CANCELLED,
    (CaseState.PENDING, CaseTrigger.NO_MATCH_AFTER_MAX_WAIT): CaseState.EXPIRED,
    (CaseState.ASSIGNED, CaseTrigger.CANCEL): CaseState.CANCELLED,
    (CaseState.EN_ROUTE, CaseTrigger.CANCEL): CaseState.CANCELLED,
}

# Triggers that must come from the responder holding the case.
_RESPONDER_TRIGGERS: Final[frozenset[CaseTrigger]] = frozenset({CaseTrigger.DEPARTED})


def can_transition(state: CaseState, trigger: CaseTrigger) -> bool:
    return (state, trigger) in TRANSITIONS


def allowed_triggers(state: CaseState) -> list[CaseTrigger]:
    return [trigger for (source, trigger) in TRANSITIONS if source == state]


class CaseLifecycleManager:
    """Commits case transitions and keeps the registry in step."""

    __slots__ = ("_cases", "_events", "_registry")

    def __init__(
        self,
        cases: CaseRepository,
        registry: ResponderRegistry,
        events: EventPublisher,
    ) -> None:
        self._cases = cases
        self._registry = registry
        self._events = events

    # ------------------------------------------------------------------
    # Named transitions
    # ------------------------------------------------------------------

    async def accept_match(self, case_id: str, responder_id: str) -> Case:
        return await self.transition(
            case_id, CaseTrigger.MATCH_ACCEPTED, actor=responder_id, responder_id=responder_id
        )

    async def depart(self, case_id: str, responder_id: str) -> Case:
        return await self.transition(
            case_id, CaseTrigger.DEPARTED, actor=responder_id, responder_id=responder_id
        )

    async def resolve(self, case_id: str, responder_id: str | None = None, actor: str | None = None) -> Case:
        # A registered responder acting on a case is held to the assignment check.
        if responder_id is None and actor and await self._registry.find(actor) is not None:
            responder_id = actor
        return await self.transition(
            case_id,
            CaseTrigger.RESOLVED,
            actor=actor or responder_id or "system",
            responder_id=responder_id,
        )

    async def cancel(
        self,
        case_id: str,
        actor: str = "reporter",
        expected_state: CaseState | None = None,
    ) -> Case:
        return await self.transition(
            case_id, CaseTrigger.CANCEL, actor=actor, expected_state=expected_state
        )

    async def expire(self, case_id: str) -> Case:
        return await self.transition(case_id, CaseTrigger.NO_MATCH_AFTER_MAX_WAIT)

    # ------------------------------------------------------------------
    # Matching bookkeeping (no state change)
    # ------------------------------------------------------------------

    async def record_attempt(self, case_id: str) -> Case | None:
        """Count one offer against a pending case; *None* if no longer pending."""
        async with self._cases.locked(case_id):
            case = await self._cases.get(case_id)
            if case.state != CaseState.PENDING:
                return None
            updated = case.model_copy(
                update={"match_attempts": case.match_attempts + 1, "updated_at": utcnow()}
            )
            return await self._cases.write(updated, expected_version=case.version)

    async def escalate(self, case_id: str, attempts: int) -> bool:
        """Flag a pending case for human/doctor follow-up.

        Publishes ``match_exhausted`` the first time only; returns whether
        this call did so.
        """
        async with self._cases.locked(case_id):
            case = await self._cases.get(case_id)
            if case.state != CaseState.PENDING or case.escalated:
                return False
            updated = case.model_copy(update={"escalated": True, "updated_at": utcnow()})
            await self._cases.write(updated, expected_version=case.version)
            await self._events.publish(
                DispatchEvent(
                    type=DispatchEventType.MATCH_EXHAUSTED,
                    case_id=case.id,
                    reporter_id=case.reporter_id,
                    state=case.state,
                    detail={
                        "attempts": attempts,
                        "latitude": case.location.latitude,
                        "longitude": case.location.longitude,
                    },
                )
            )
        logger.warning("lifecycle.case_escalated", case_id=case_id, attempts=attempts)
        return True

    # ------------------------------------------------------------------
    # Generic transition
    # ------------------------------------------------------------------

    async def transition(
        self,
        case_id: str,
        trigger: CaseTrigger,
        *,
        actor: str = "system",
        responder_id: str | None = None,
        expected_version: int | None = None,
        expected_state: CaseState | None = None,
    ) -> Case:
        """Apply *trigger* to a case atomically.

        Parameters
        ----------
        case_id:
            Case to transition.
        trigger:
            The lifecycle trigger.
        actor:
            Who caused it; recorded in the case history.
        responder_id:
            Required for ``match_accepted`` and ``departed``.  For
            ``resolved`` it is optional, but when given it must be the
            assigned responder.
        expected_version:
            If given, the transition fails with :class:`Conflict` unless
            the case is still at this version.
        expected_state:
            If given, the transition fails with :class:`Conflict` unless
            the case is still in this state.  Callers pass the state they
            last observed so a trigger that lost a race is not applied to
            whatever the winner left behind.

        Raises
        ------
        InvalidTransition
            The trigger is not valid from the current state, or the
            responder does not hold the case.
        Conflict
            A concurrent writer changed the case or the responder.
        """
        async with self._cases.locked(case_id):
            case = await self._cases.get(case_id)

            if expected_version is not None and case.version != expected_version:
                await self._diagnose(case, "version_conflict", trigger=trigger.value)
                raise Conflict(case_id, expected_version)

            if expected_state is not None and case.state != expected_state:
                await self._diagnose(
                    case, "state_conflict", trigger=trigger.value, expected_state=expected_state.value
                )
                raise Conflict(
                    case_id,
                    detail=f"Case {case_id} is {case.state.value}, not {expected_state.value}",
                )

            target = TRANSITIONS.get((case.state, trigger))
            if target is None:
                await self._diagnose(case, "invalid_transition", trigger=trigger.value)
                raise InvalidTransition(case_id, case.state.value, trigger.value)

            problem = self._responder_problem(case, trigger, responder_id)
            if problem:
                await self._diagnose(case, "responder_mismatch", trigger=trigger.value)
                raise InvalidTransition(case_id, case.state.value, trigger.value, problem)

            if trigger == CaseTrigger.MATCH_ACCEPTED and responder_id is not None:
                committed = await self._commit_assignment(case, responder_id, actor)
            else:
                committed = await self._commit(case, trigger, target, actor)

            await self._events.publish(
                DispatchEvent(
                    type=DispatchEventType.CASE_TRANSITIONED,
                    case_id=committed.id,
                    reporter_id=committed.reporter_id,
                    responder_id=committed.assigned_responder_id or case.assigned_responder_id,
                    state=committed.state,
                    detail={
                        "from_state": case.state.value,
                        "trigger": trigger.value,
                        "actor": actor,
                    },
                )
            )

            if target.is_terminal and case.assigned_responder_id is not None:
                await self._release(committed, case.assigned_responder_id)

        logger.info(
            "lifecycle.transitioned",
            case_id=case_id,
            from_state=case.state.value,
            to_state=committed.state.value,
            trigger=trigger.value,
            actor=actor,
        )
        return committed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _responder_problem(case: Case, trigger: CaseTrigger, responder_id: str | None) -> str | None:
        if trigger == CaseTrigger.MATCH_ACCEPTED and not responder_id:
            return "responder_id is required"
        if trigger in _RESPONDER_TRIGGERS or (trigger == CaseTrigger.RESOLVED and responder_id):
            if responder_id != case.assigned_responder_id:
                return f"responder {responder_id} is not assigned to this case"
        return None

    async def _commit(
        self,
        case: Case,
        trigger: CaseTrigger,
        target: CaseState,
        actor: str,
        responder_id: str | None = None,
    ) -> Case:
        if target.holds_responder:
            assigned = responder_id or case.assigned_responder_id
        else:
            assigned = None
        now = utcnow()
        updated = case.model_copy(
            update={
                "state": target,
                "assigned_responder_id": assigned,
                "updated_at": now,
                "history": [
                    *case.history,
                    TransitionRecord(
                        from_state=case.state, to_state=target, trigger=trigger, actor=actor, at=now
                    ),
                ],
            }
        )
        return await self._cases.write(updated, expected_version=case.version)

    async def _commit_assignment(self, case: Case, responder_id: str, actor: str) -> Case:
        # Responder first: if it is no longer online the case stays untouched.
        try:
            await self._registry.mark_busy(responder_id, case.id)
        except Conflict:
            await self._diagnose(case, "responder_unavailable", responder_id=responder_id)
            raise
        try:
            return await self._commit(
                case, CaseTrigger.MATCH_ACCEPTED, CaseState.ASSIGNED, actor, responder_id
            )
        except (DispatchError, asyncio.CancelledError):
            logger.warning(
                "lifecycle.assignment_rolled_back",
                case_id=case.id,
                responder_id=responder_id,
            )
            await self._registry.mark_available(responder_id)
            raise

    async def _release(self, case: Case, responder_id: str) -> None:
        try:
            await self._registry.mark_available(responder_id)
        except DispatchError:
            logger.error(
                "lifecycle.responder_release_failed",
                case_id=case.id,
                responder_id=responder_id,
                exc_info=True,
            )
            await self._diagnose(case, "responder_release_failed", responder_id=responder_id)
            raise

    async def _diagnose(self, case: Case, code: str, **detail: str) -> None:
        logger.warning("lifecycle.rejected", case_id=case.id, state=case.state.value, code=code, **detail)
        await self._events.publish(
            DispatchEvent(
                type=DispatchEventType.DIAGNOSTIC,
                case_id=case.id,
                state=case.state,
                detail={"code": code, **detail},
            )
        )
