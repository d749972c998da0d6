"""Race tests: concurrent callers on separate connections to the same database.

Each coroutine below opens its own session (and so its own connection), the
way independent request handlers would. asyncio.gather lets their statements
interleave; the guarded updates must still let exactly one of them win.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from marketplace_settlement.domain.enums import OfferStatus
from marketplace_settlement.domain.exceptions import ConflictError, NotFoundError
from marketplace_settlement.infrastructure.database.engine import session_scope
from marketplace_settlement.infrastructure.database.repositories import (
    BuyerRequestRepository,
    EscrowRepository,
    OfferRepository,
)
from marketplace_settlement.schemas.settlement import MilestoneSpec
from marketplace_settlement.services.buyer_request_service import BuyerRequestService
from marketplace_settlement.services.escrow_service import EscrowService

BUYER = "buyer-1"
SELLERS = ["seller-1", "seller-2", "seller-3", "seller-4"]


def _split(outcomes: list) -> tuple[list, list]:
    wins = [o for o in outcomes if not isinstance(o, BaseException)]
    losses = [o for o in outcomes if isinstance(o, BaseException)]
    return wins, losses


class TestDoubleAccept:
    @pytest.mark.asyncio
    async def test_exactly_one_acceptance_wins(
        self, make_request, make_offer, coordinator, session_factory
    ) -> None:
        request = await make_request()
        offers = [await make_offer(request.id, seller) for seller in SELLERS]

        outcomes = await asyncio.gather(
            *(coordinator.accept(offer.id, BUYER) for offer in offers),
            return_exceptions=True,
        )
        wins, losses = _split(outcomes)

        assert len(wins) == 1
        assert len(losses) == len(offers) - 1
        assert all(isinstance(loss, ConflictError) for loss in losses)

        winner_id = wins[0].offer.id
        async with session_scope(session_factory) as session:
            stored = await OfferRepository(session).list_by_request(request.id)
            closed = await BuyerRequestRepository(session).get_by_id(request.id)
            accepted = await OfferRepository(session).count_by_status(
                request.id, OfferStatus.ACCEPTED
            )
            escrow = EscrowRepository(session)
            accounts = [await escrow.get_by_offer(offer.id) for offer in offers]

        assert closed.status == "CLOSED"
        assert accepted == 1
        assert {o.id: o.status for o in stored} == {
            o.id: ("ACCEPTED" if o.id == winner_id else "REJECTED") for o in offers
        }
        assert [a.offer_id for a in accounts if a is not None] == [winner_id]

    @pytest.mark.asyncio
    async def test_same_offer_accepted_twice_at_once(
        self, make_request, make_offer, coordinator
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)

        outcomes = await asyncio.gather(
            coordinator.accept(offer.id, BUYER),
            coordinator.accept(offer.id, BUYER),
            return_exceptions=True,
        )
        wins, losses = _split(outcomes)

        assert len(wins) == 1
        assert len(losses) == 1
        assert isinstance(losses[0], ConflictError)


class TestSweepVersusAccept:
    @pytest.mark.asyncio
    async def test_sweep_first_then_accept_conflicts(
        self, make_request, make_offer, coordinator, session_factory, clock, settings
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)
        clock.advance(timedelta(days=8))

        async with session_scope(session_factory) as session:
            service = BuyerRequestService(session, clock=clock, settings=settings)
            swept = await service.sweep_expired()
        assert swept == 1

        with pytest.raises(ConflictError):
            await coordinator.accept(offer.id, BUYER)

    @pytest.mark.asyncio
    async def test_accept_first_then_sweep_skips_request(
        self, make_request, make_offer, coordinator, session_factory, clock, settings
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)
        await coordinator.accept(offer.id, BUYER)
        clock.advance(timedelta(days=8))

        async with session_scope(session_factory) as session:
            service = BuyerRequestService(session, clock=clock, settings=settings)
            swept = await service.sweep_expired()
        assert swept == 0

    @pytest.mark.asyncio
    async def test_concurrent_sweep_and_accept_stay_consistent(
        self, make_request, make_offer, coordinator, session_factory, clock, settings
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)
        clock.advance(timedelta(days=8))

        async def sweep() -> int:
            async with session_scope(session_factory) as session:
                service = BuyerRequestService(session, clock=clock, settings=settings)
                return await service.sweep_expired()

        swept, accepted = await asyncio.gather(
            sweep(), coordinator.accept(offer.id, BUYER), return_exceptions=True
        )

        async with session_scope(session_factory) as session:
            stored_offer = await OfferRepository(session).get_by_id(offer.id)
            stored_request = await BuyerRequestRepository(session).get_by_id(request.id)

        assert stored_request.status == "CLOSED"
        if isinstance(accepted, BaseException):
            # The sweep won: nothing was accepted
            assert isinstance(accepted, ConflictError)
            assert swept == 1
            assert stored_offer.status == "PENDING"
        else:
            # The acceptance won: the sweep found nothing to close
            assert swept == 0
            assert stored_offer.status == "ACCEPTED"


class TestSubmitVersusAccept:
    @pytest.mark.asyncio
    async def test_no_pending_offer_survives_on_a_closed_request(
        self, make_request, make_offer, coordinator, offer_fields, session_factory
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id, SELLERS[0])

        submitted, accepted = await asyncio.gather(
            coordinator.submit(request.id, SELLERS[1], offer_fields("140.00")),
            coordinator.accept(offer.id, BUYER),
            return_exceptions=True,
        )

        assert not isinstance(accepted, BaseException)
        async with session_scope(session_factory) as session:
            stored = await OfferRepository(session).list_by_request(request.id)

        assert OfferStatus.PENDING not in {o.status for o in stored}
        if isinstance(submitted, BaseException):
            assert isinstance(submitted, ConflictError)
            assert len(stored) == 1
        else:
            assert len(stored) == 2


class TestRemoveVersusAccept:
    @pytest.mark.asyncio
    async def test_no_escrow_outlives_its_offer(
        self, make_request, make_offer, coordinator, session_factory, clock, settings
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)

        async def remove() -> None:
            async with session_scope(session_factory) as session:
                service = BuyerRequestService(session, clock=clock, settings=settings)
                await service.remove(request.id, BUYER)

        removed, accepted = await asyncio.gather(
            remove(), coordinator.accept(offer.id, BUYER), return_exceptions=True
        )

        async with session_scope(session_factory) as session:
            stored_request = await BuyerRequestRepository(session).get_by_id(request.id)
            stored_offer = await OfferRepository(session).get_by_id(offer.id)
            account = await EscrowRepository(session).get_by_offer(offer.id)

        if isinstance(removed, BaseException):
            # The acceptance won: the request and its escrow stay
            assert isinstance(removed, ConflictError)
            assert not isinstance(accepted, BaseException)
            assert stored_request.status == "CLOSED"
            assert stored_offer.status == "ACCEPTED"
            assert account is not None
        else:
            # The removal won: nothing was accepted
            assert isinstance(accepted, (ConflictError, NotFoundError))
            assert stored_request is None
            assert stored_offer is None
            assert account is None


class TestDoubleRelease:
    @pytest.mark.asyncio
    async def test_milestone_releases_once(
        self, make_request, make_offer, coordinator, session_factory, clock
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)
        result = await coordinator.accept(
            offer.id,
            BUYER,
            milestones=[
                MilestoneSpec(title="First", amount=Decimal("50.00")),
                MilestoneSpec(title="Second", amount=Decimal("100.00")),
            ],
        )
        account_id = result.escrow_account.id
        milestone_id = result.escrow_account.milestones[0].id
        async with session_scope(session_factory) as session:
            await EscrowService(session, clock=clock).approve_milestone(
                milestone_id, BUYER, approved=True
            )

        async def release():
            async with session_scope(session_factory) as session:
                return await EscrowService(session, clock=clock).release_funds(
                    milestone_id, offer.seller_id
                )

        outcomes = await asyncio.gather(release(), release(), release(), return_exceptions=True)
        wins, losses = _split(outcomes)

        assert len(wins) == 1
        assert all(isinstance(loss, ConflictError) for loss in losses)

        async with session_scope(session_factory) as session:
            account = await EscrowRepository(session).get_by_id(account_id)
        assert account.released_amount == Decimal("50.00")
        assert account.status == "FUNDED"
