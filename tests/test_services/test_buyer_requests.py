"""Tests for the buyer request lifecycle: create, close, sweep, remove."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pydantic
import pytest

from marketplace_settlement.domain.enums import EntityType, EventType
from marketplace_settlement.domain.exceptions import (
    BudgetRangeError,
    BuyerRequestNotFoundError,
    ConflictError,
    ForbiddenError,
    InvalidAmountError,
    ValidationError,
)
from marketplace_settlement.infrastructure.database.engine import session_scope
from marketplace_settlement.infrastructure.database.repositories import (
    EscrowRepository,
    EventRepository,
    OfferRepository,
)
from marketplace_settlement.schemas.settlement import BuyerRequestCreate
from marketplace_settlement.services.buyer_request_service import BuyerRequestService

BUYER = "buyer-1"
SELLER = "seller-1"
OTHER_SELLER = "seller-2"
STRANGER = "stranger-1"


def _utc(value):
    """SQLite hands timestamps back naive; they are stored as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@pytest.fixture
def service_in(clock, settings):
    def _service(session) -> BuyerRequestService:
        return BuyerRequestService(session, clock=clock, settings=settings)

    return _service


class TestCreate:
    @pytest.mark.asyncio
    async def test_new_request_is_open_with_default_horizon(self, make_request, clock) -> None:
        request = await make_request()

        assert request.status == "OPEN"
        assert request.buyer_id == BUYER
        assert request.budget_min == Decimal("100.00")
        assert request.budget_max == Decimal("200.00")
        assert _utc(request.expires_at) == clock.now() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_explicit_expiration(self, make_request, clock) -> None:
        expires_at = clock.now() + timedelta(hours=2)
        request = await make_request(expires_at=expires_at)
        assert _utc(request.expires_at) == expires_at

    @pytest.mark.asyncio
    async def test_inverted_budget_is_rejected(self, make_request) -> None:
        with pytest.raises(BudgetRangeError) as exc_info:
            await make_request(budget_min="300.00", budget_max="200.00")
        assert isinstance(exc_info.value, ValidationError)

    @pytest.mark.asyncio
    async def test_negative_budget_is_rejected(self, make_request) -> None:
        with pytest.raises(InvalidAmountError):
            await make_request(budget_min="-1.00", budget_max="200.00")

    @pytest.mark.asyncio
    async def test_equal_bounds_are_allowed(self, make_request) -> None:
        request = await make_request(budget_min="150.00", budget_max="150.00")
        assert request.budget_min == request.budget_max

    @pytest.mark.asyncio
    async def test_expiration_in_the_past_is_rejected(self, make_request, clock) -> None:
        with pytest.raises(ValidationError):
            await make_request(expires_at=clock.now() - timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, make_request, session_factory) -> None:
        request = await make_request()

        async with session_scope(session_factory) as session:
            events = await EventRepository(session).get_for_entity(
                EntityType.BUYER_REQUEST, request.id
            )
        assert [e.event_type for e in events] == [EventType.REQUEST_CREATED]
        assert events[0].actor == BUYER


class TestClose:
    @pytest.mark.asyncio
    async def test_owner_closes(self, make_request, session_factory, service_in) -> None:
        request = await make_request()

        async with session_scope(session_factory) as session:
            closed = await service_in(session).close(request.id, BUYER)

        assert closed.status == "CLOSED"

    @pytest.mark.asyncio
    async def test_missing_request(self, session_factory, service_in) -> None:
        with pytest.raises(BuyerRequestNotFoundError):
            async with session_scope(session_factory) as session:
                await service_in(session).close(uuid.uuid4(), BUYER)

    @pytest.mark.asyncio
    async def test_non_owner_is_forbidden(
        self, make_request, session_factory, service_in
    ) -> None:
        request = await make_request()

        with pytest.raises(ForbiddenError):
            async with session_scope(session_factory) as session:
                await service_in(session).close(request.id, STRANGER)

    @pytest.mark.asyncio
    async def test_closing_twice_conflicts(
        self, make_request, session_factory, service_in
    ) -> None:
        request = await make_request()
        async with session_scope(session_factory) as session:
            await service_in(session).close(request.id, BUYER)

        with pytest.raises(ConflictError):
            async with session_scope(session_factory) as session:
                await service_in(session).close(request.id, BUYER)


class TestSweepExpired:
    @pytest.mark.asyncio
    async def test_closes_only_expired_open_requests(
        self, make_request, session_factory, service_in, clock
    ) -> None:
        soon = await make_request(expires_at=clock.now() + timedelta(hours=1))
        later = await make_request(expires_at=clock.now() + timedelta(days=3))

        async with session_scope(session_factory) as session:
            closed = await service_in(session).sweep_expired(clock.now() + timedelta(hours=2))

        assert closed == 1
        async with session_scope(session_factory) as session:
            service = service_in(session)
            assert (await service.get(soon.id)).status == "CLOSED"
            assert (await service.get(later.id)).status == "OPEN"

    @pytest.mark.asyncio
    async def test_expiration_boundary_is_inclusive(
        self, make_request, session_factory, service_in, clock
    ) -> None:
        expires_at = clock.now() + timedelta(hours=1)
        await make_request(expires_at=expires_at)

        async with session_scope(session_factory) as session:
            assert await service_in(session).sweep_expired(expires_at) == 1

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(
        self, make_request, session_factory, service_in, clock
    ) -> None:
        for _ in range(3):
            await make_request()
        clock.advance(timedelta(days=8))

        async with session_scope(session_factory) as session:
            first = await service_in(session).sweep_expired(clock.now())
        async with session_scope(session_factory) as session:
            second = await service_in(session).sweep_expired(clock.now())

        assert first == 3
        assert second == 0

    @pytest.mark.asyncio
    async def test_already_closed_requests_are_not_counted(
        self, make_request, session_factory, service_in, clock
    ) -> None:
        request = await make_request()
        async with session_scope(session_factory) as session:
            await service_in(session).close(request.id, BUYER)
        clock.advance(timedelta(days=8))

        async with session_scope(session_factory) as session:
            assert await service_in(session).sweep_expired(clock.now()) == 0

    @pytest.mark.asyncio
    async def test_sweep_writes_one_event_per_closed_request(
        self, make_request, session_factory, service_in, clock
    ) -> None:
        request = await make_request()
        clock.advance(timedelta(days=8))

        async with session_scope(session_factory) as session:
            await service_in(session).sweep_expired(clock.now())
        async with session_scope(session_factory) as session:
            events = await EventRepository(session).get_for_entity(
                EntityType.BUYER_REQUEST, request.id
            )

        assert [e.event_type for e in events] == [
            EventType.REQUEST_CREATED,
            EventType.REQUEST_EXPIRED,
        ]
        assert events[-1].actor == "SYSTEM"


class TestRemove:
    @pytest.mark.asyncio
    async def test_removes_request_and_offers(
        self, make_request, make_offer, session_factory, service_in
    ) -> None:
        request = await make_request()
        await make_offer(request.id, SELLER)
        await make_offer(request.id, OTHER_SELLER, price="160.00")

        async with session_scope(session_factory) as session:
            await service_in(session).remove(request.id, BUYER)

        async with session_scope(session_factory) as session:
            assert await OfferRepository(session).list_by_request(request.id) == []
            with pytest.raises(BuyerRequestNotFoundError):
                await service_in(session).get(request.id)

    @pytest.mark.asyncio
    async def test_non_owner_cannot_remove(
        self, make_request, session_factory, service_in
    ) -> None:
        request = await make_request()

        with pytest.raises(ForbiddenError):
            async with session_scope(session_factory) as session:
                await service_in(session).remove(request.id, STRANGER)

    @pytest.mark.asyncio
    async def test_request_with_accepted_offer_is_kept(
        self, make_request, make_offer, coordinator, session_factory, service_in
    ) -> None:
        request = await make_request()
        offer = await make_offer(request.id)
        result = await coordinator.accept(offer.id, BUYER)

        with pytest.raises(ConflictError) as exc_info:
            async with session_scope(session_factory) as session:
                await service_in(session).remove(request.id, BUYER)
        assert exc_info.value.code == "BUYER_REQUEST_HAS_ACCEPTED_OFFER"

        async with session_scope(session_factory) as session:
            assert (await service_in(session).get(request.id)).status == "CLOSED"
            assert (await OfferRepository(session).get_by_id(offer.id)).status == "ACCEPTED"
            account = await EscrowRepository(session).get_by_offer(offer.id)
        assert account.id == result.escrow_account.id

    @pytest.mark.asyncio
    async def test_closed_request_without_acceptance_can_be_removed(
        self, make_request, make_offer, session_factory, service_in
    ) -> None:
        request = await make_request()
        await make_offer(request.id)
        async with session_scope(session_factory) as session:
            await service_in(session).close(request.id, BUYER)

        async with session_scope(session_factory) as session:
            await service_in(session).remove(request.id, BUYER)

        async with session_scope(session_factory) as session:
            with pytest.raises(BuyerRequestNotFoundError):
                await service_in(session).get(request.id)

    @pytest.mark.asyncio
    async def test_removal_is_audited(
        self, make_request, make_offer, session_factory, service_in
    ) -> None:
        request = await make_request()
        await make_offer(request.id, SELLER)
        await make_offer(request.id, OTHER_SELLER, price="160.00")

        async with session_scope(session_factory) as session:
            await service_in(session).remove(request.id, BUYER)

        async with session_scope(session_factory) as session:
            events = await EventRepository(session).get_for_entity(
                EntityType.BUYER_REQUEST, request.id
            )
        assert [e.event_type for e in events] == [
            EventType.REQUEST_CREATED,
            EventType.REQUEST_REMOVED,
        ]
        removed = events[-1]
        assert removed.old_status == "OPEN"
        assert removed.new_status == "REMOVED"
        assert removed.actor == BUYER
        assert removed.metadata_json == {"offers_removed": 2}

    @pytest.mark.asyncio
    async def test_refused_removal_is_not_audited(
        self, make_request, session_factory, service_in
    ) -> None:
        request = await make_request()

        with pytest.raises(ForbiddenError):
            async with session_scope(session_factory) as session:
                await service_in(session).remove(request.id, STRANGER)

        async with session_scope(session_factory) as session:
            events = await EventRepository(session).get_for_entity(
                EntityType.BUYER_REQUEST, request.id
            )
        assert [e.event_type for e in events] == [EventType.REQUEST_CREATED]


class TestSchema:
    def test_schema_rejects_naive_expiration(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            BuyerRequestCreate(
                title="t",
                category_id=1,
                budget_min=Decimal("1"),
                budget_max=Decimal("2"),
                expires_at=datetime(2030, 1, 1),
            )
