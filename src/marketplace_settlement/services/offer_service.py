"""Offer Service: submitting, accepting and rejecting offers.

Acceptance is the contended path. It runs as three guarded statements in
the caller's transaction:

    1. close the buyer request  (UPDATE ... WHERE status = 'OPEN')
    2. accept the offer         (UPDATE ... WHERE PENDING, unblocked and no
                                 ACCEPTED sibling)
    3. reject the siblings      (UPDATE ... WHERE PENDING, set-based)

Step 1 takes the request row's write lock, so a second acceptance on the
same request (or the expiration sweep) waits for the first to commit and
then matches zero rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from marketplace_settlement.domain.enums import EntityType, EventType, OfferStatus
from marketplace_settlement.domain.exceptions import (
    ConflictError,
    DuplicateOfferError,
    ForbiddenError,
    InvalidAmountError,
    OfferNotFoundError,
)
from marketplace_settlement.domain.state_machine import OfferStateMachine, fire_transition
from marketplace_settlement.infrastructure.database.orm_models import BuyerRequest, Offer
from marketplace_settlement.infrastructure.database.repositories import (
    EventRepository,
    OfferRepository,
)
from marketplace_settlement.logging_config import get_logger
from marketplace_settlement.services.buyer_request_service import BuyerRequestService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_settlement.clock import Clock
    from marketplace_settlement.config import Settings
    from marketplace_settlement.schemas.settlement import OfferCreate

logger = get_logger(__name__)


@dataclass
class AcceptedOffer:
    """The winning offer, its (now closed) request, and the siblings it beat."""

    offer: Offer
    buyer_request: BuyerRequest
    rejected: list[tuple[uuid.UUID, str]] = field(default_factory=list)

    @property
    def rejected_offer_ids(self) -> list[uuid.UUID]:
        return [offer_id for offer_id, _ in self.rejected]


class OfferService:
    """Manages offers against buyer requests."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._offer_repo = OfferRepository(session)
        self._event_repo = EventRepository(session)
        self._buyer_requests = BuyerRequestService(session, clock=clock, settings=settings)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        buyer_request_id: uuid.UUID,
        seller_id: str,
        fields: OfferCreate,
    ) -> Offer:
        """Create a PENDING offer against an OPEN buyer request."""
        if fields.price < 0:
            raise InvalidAmountError("price", fields.price)

        # Holds the request row until commit so a concurrent acceptance
        # cannot close it underneath this insert.
        request = await self._buyer_requests.lock_open(buyer_request_id)

        existing = await self._offer_repo.find_by_request_and_seller(buyer_request_id, seller_id)
        if existing is not None:
            raise DuplicateOfferError(str(buyer_request_id), seller_id)

        offer = Offer(
            buyer_request_id=buyer_request_id,
            seller_id=seller_id,
            product_id=fields.product_id,
            title=fields.title,
            description=fields.description,
            price=Decimal(fields.price),
            delivery_days=fields.delivery_days,
            status=OfferStatus.PENDING.value,
            is_blocked=False,
        )
        try:
            offer = await self._offer_repo.create(offer)
        except IntegrityError as err:
            raise DuplicateOfferError(str(buyer_request_id), seller_id) from err

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer.id,
            event_type=EventType.OFFER_SUBMITTED,
            old_status=None,
            new_status=OfferStatus.PENDING,
            actor=seller_id,
            metadata={"buyer_request_id": str(buyer_request_id), "price": str(offer.price)},
        )

        logger.info(
            "offer.submitted",
            offer_id=str(offer.id),
            buyer_request_id=str(buyer_request_id),
            seller_id=seller_id,
            price=str(offer.price),
            within_budget=request.budget_min <= offer.price <= request.budget_max,
        )
        return offer

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept(self, offer_id: uuid.UUID, buyer_id: str) -> AcceptedOffer:
        """Accept one offer, close its request, and reject every other PENDING offer."""
        offer, request = await self._get_with_request_or_raise(offer_id)
        if request.buyer_id != buyer_id:
            raise ForbiddenError("Only the owning buyer can accept offers on this request")

        fire_transition("offer", OfferStateMachine, offer.status, "accept")
        if offer.is_blocked:
            raise ConflictError(f"Offer {offer_id} is blocked", code="OFFER_BLOCKED")
        if await self._offer_repo.count_by_status(request.id, OfferStatus.ACCEPTED):
            raise ConflictError(
                f"Another offer on buyer request {request.id} is already accepted",
                code="OFFER_ALREADY_ACCEPTED",
            )

        await self._buyer_requests.close_for_acceptance(request, offer_id, actor=buyer_id)

        if not await self._offer_repo.accept_if_eligible(offer_id, request.id):
            raise ConflictError(
                f"Offer {offer_id} is no longer eligible for acceptance",
                code="OFFER_NOT_ELIGIBLE",
            )
        rejected = await self._offer_repo.reject_pending_siblings(request.id, offer_id)

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer_id,
            event_type=EventType.OFFER_ACCEPTED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.ACCEPTED,
            actor=buyer_id,
            metadata={"rejected_siblings": len(rejected)},
        )
        await self._event_repo.record_many(
            entity_type=EntityType.OFFER,
            entity_ids=[sibling_id for sibling_id, _ in rejected],
            event_type=EventType.OFFER_REJECTED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.REJECTED,
            actor=buyer_id,
            metadata={"accepted_offer_id": str(offer_id)},
        )

        logger.info(
            "offer.accepted",
            offer_id=str(offer_id),
            buyer_request_id=str(request.id),
            rejected_siblings=len(rejected),
        )
        return AcceptedOffer(
            offer=await self._get_or_raise(offer_id),
            buyer_request=await self._buyer_requests.get(request.id),
            rejected=rejected,
        )

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    async def reject(self, offer_id: uuid.UUID, buyer_id: str) -> Offer:
        offer, request = await self._get_with_request_or_raise(offer_id)
        if request.buyer_id != buyer_id:
            raise ForbiddenError("Only the owning buyer can reject offers on this request")

        fire_transition("offer", OfferStateMachine, offer.status, "reject")
        if not await self._offer_repo.reject_if_pending(offer_id):
            raise ConflictError(
                f"Offer {offer_id} changed state concurrently",
                code="OFFER_NOT_PENDING",
            )

        await self._event_repo.record(
            entity_type=EntityType.OFFER,
            entity_id=offer_id,
            event_type=EventType.OFFER_REJECTED,
            old_status=OfferStatus.PENDING,
            new_status=OfferStatus.REJECTED,
            actor=buyer_id,
        )

        logger.info("offer.rejected", offer_id=str(offer_id), by=buyer_id)
        return await self._get_or_raise(offer_id)

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def set_blocked(self, offer_id: uuid.UUID, blocked: bool, actor: str = "ADMIN") -> Offer:
        """Toggle the moderation flag. Status is left untouched."""
        if not await self._offer_repo.set_blocked(offer_id, blocked):
            raise OfferNotFoundError(str(offer_id))

        logger.info("offer.moderated", offer_id=str(offer_id), blocked=blocked, by=actor)
        return await self._get_or_raise(offer_id)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, offer_id: uuid.UUID) -> Offer:
        return await self._get_or_raise(offer_id)

    async def list_for_request(self, buyer_request_id: uuid.UUID) -> list[Offer]:
        """Every offer on a request, newest first."""
        await self._buyer_requests.get(buyer_request_id)
        return await self._offer_repo.list_by_request(buyer_request_id)

    async def _get_or_raise(self, offer_id: uuid.UUID) -> Offer:
        offer = await self._offer_repo.get_by_id(offer_id)
        if offer is None:
            raise OfferNotFoundError(str(offer_id))
        return offer

    async def _get_with_request_or_raise(
        self, offer_id: uuid.UUID
    ) -> tuple[Offer, BuyerRequest]:
        row = await self._offer_repo.get_with_request(offer_id)
        if row is None:
            raise OfferNotFoundError(str(offer_id))
        return row
