"""Tests for the in-flight offer broker."""

from __future__ import annotations

import asyncio

from src.services.acknowledgements import AcknowledgementBroker, OfferOutcome


class TestAcknowledgementBroker:
    async def test_accept(self) -> None:
        broker = AcknowledgementBroker()
        future = broker.open_offer("case-1", "driver-1")
        assert broker.respond("case-1", "driver-1", accepted=True) is True
        assert await broker.wait(future, timeout=1) == OfferOutcome.ACCEPTED

    async def test_reject(self) -> None:
        broker = AcknowledgementBroker()
        future = broker.open_offer("case-1", "driver-1")
        broker.respond("case-1", "driver-1", accepted=False)
        assert await broker.wait(future, timeout=1) == OfferOutcome.REJECTED

    async def test_timeout(self) -> None:
        broker = AcknowledgementBroker()
        future = broker.open_offer("case-1", "driver-1")
        assert await broker.wait(future, timeout=0.01) == OfferOutcome.TIMED_OUT
        assert broker.respond("case-1", "driver-1", accepted=True) is False, (
            "a late answer must not be delivered"
        )

    async def test_answer_while_waiting(self) -> None:
        broker = AcknowledgementBroker()
        future = broker.open_offer("case-1", "driver-1")
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, broker.respond, "case-1", "driver-1", True)
        assert await broker.wait(future, timeout=1) == OfferOutcome.ACCEPTED

    async def test_withdraw(self) -> None:
        broker = AcknowledgementBroker()
        future = broker.open_offer("case-1", "driver-1")
        assert broker.withdraw("case-1") == 1
        assert await broker.wait(future, timeout=1) == OfferOutcome.WITHDRAWN
        assert broker.open_offers() == []

    async def test_reopen_withdraws_previous(self) -> None:
        broker = AcknowledgementBroker()
        first = broker.open_offer("case-1", "driver-1")
        broker.open_offer("case-1", "driver-1")
        assert first.result() == OfferOutcome.WITHDRAWN

    async def test_respond_without_offer(self) -> None:
        broker = AcknowledgementBroker()
        assert broker.respond("case-1", "driver-1", accepted=True) is False

    async def test_open_offers_by_responder(self) -> None:
        broker = AcknowledgementBroker()
        broker.open_offer("case-1", "driver-1")
        broker.open_offer("case-2", "driver-2")
        assert broker.open_offers("driver-2") == [("case-2", "driver-2")]
