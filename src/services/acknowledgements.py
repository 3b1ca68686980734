"""In-flight assignment offers awaiting a responder's answer.

The matcher opens an offer and waits on it with a timeout; the
responder's device answers through :meth:`AcknowledgementBroker.respond`.
Waiting never holds a case lock, so a cancellation can withdraw the
offer while the matcher is still waiting.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)


class OfferOutcome(StrEnum):
    __slots__ = ()

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    WITHDRAWN = "withdrawn"


class AcknowledgementBroker:
    """Tracks one pending offer per (case, responder) pair."""

    __slots__ = ("_offers",)

    def __init__(self) -> None:
        self._offers: dict[tuple[str, str], asyncio.Future[OfferOutcome]] = {}

    def open_offer(self, case_id: str, responder_id: str) -> asyncio.Future[OfferOutcome]:
        key = (case_id, responder_id)
        previous = self._offers.get(key)
        if previous is not None and not previous.done():
            previous.set_result(OfferOutcome.WITHDRAWN)
        future: asyncio.Future[OfferOutcome] = asyncio.get_running_loop().create_future()
        self._offers[key] = future
        return future

    async def wait(
        self, future: asyncio.Future[OfferOutcome], timeout: float
    ) -> OfferOutcome:
        """Wait for the responder's answer; ``TIMED_OUT`` after *timeout* seconds."""
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except TimeoutError:
            if not future.done():
                future.set_result(OfferOutcome.TIMED_OUT)
            return future.result()
        finally:
            self._forget(future)

    def respond(self, case_id: str, responder_id: str, accepted: bool) -> bool:
        """Deliver a responder's answer; *False* when no offer is open."""
        future = self._offers.get((case_id, responder_id))
        if future is None or future.done():
            logger.info(
                "acknowledgements.no_open_offer",
                case_id=case_id,
                responder_id=responder_id,
            )
            return False
        future.set_result(OfferOutcome.ACCEPTED if accepted else OfferOutcome.REJECTED)
        return True

    def withdraw(self, case_id: str) -> int:
        """Withdraw every open offer for a case; returns how many were open."""
        withdrawn = 0
        for (offer_case, _responder), future in list(self._offers.items()):
            if offer_case == case_id and not future.done():
                future.set_result(OfferOutcome.WITHDRAWN)
                withdrawn += 1
        if withdrawn:
            logger.info("acknowledgements.withdrawn", case_id=case_id, count=withdrawn)
        return withdrawn

    def open_offers(self, responder_id: str | None = None) -> list[tuple[str, str]]:
        return [
            key for key, future in self._offers.items()
            if not future.done() and (responder_id is None or key[1] == responder_id)
        ]

    def _forget(self, future: asyncio.Future[OfferOutcome]) -> None:
        for key, candidate in list(self._offers.items()):
            if candidate is future:
                del self._offers[key]
