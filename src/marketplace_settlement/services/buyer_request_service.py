"""Buyer Request Service: the OPEN -> CLOSED lifecycle.

A request closes exactly once, whichever of the three triggers commits
first: the owner closing it, a winning offer being accepted, or the
expiration sweep. Each trigger is a conditional UPDATE on ``status = 'OPEN'``,
so the losers match zero rows.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from marketplace_settlement.clock import Clock, SystemClock
from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.domain.enums import (
    BuyerRequestStatus,
    EntityType,
    EventType,
    OfferStatus,
)
from marketplace_settlement.domain.exceptions import (
    BudgetRangeError,
    BuyerRequestNotFoundError,
    ConflictError,
    ForbiddenError,
    InvalidAmountError,
    ValidationError,
)
from marketplace_settlement.domain.state_machine import (
    BuyerRequestStateMachine,
    fire_transition,
)
from marketplace_settlement.infrastructure.database.orm_models import BuyerRequest
from marketplace_settlement.infrastructure.database.repositories import (
    BuyerRequestRepository,
    EventRepository,
    OfferRepository,
)
from marketplace_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_settlement.schemas.settlement import BuyerRequestCreate

logger = get_logger(__name__)

# Status written to the audit log for a deleted request
REMOVED = "REMOVED"


class BuyerRequestService:
    """Creates, closes, expires and removes buyer requests."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._request_repo = BuyerRequestRepository(session)
        self._offer_repo = OfferRepository(session)
        self._event_repo = EventRepository(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, buyer_id: str, fields: BuyerRequestCreate) -> BuyerRequest:
        """Post a new OPEN request that expires after the configured horizon."""
        if fields.budget_min < 0:
            raise InvalidAmountError("budget_min", fields.budget_min)
        if fields.budget_max < 0:
            raise InvalidAmountError("budget_max", fields.budget_max)
        if fields.budget_min > fields.budget_max:
            raise BudgetRangeError(fields.budget_min, fields.budget_max)

        now = self._clock.now()
        expires_at = fields.expires_at or now + self._settings.buyer_request_horizon
        if expires_at <= now:
            raise ValidationError(
                f"expires_at ({expires_at.isoformat()}) must be in the future",
                code="INVALID_EXPIRATION",
            )

        request = BuyerRequest(
            buyer_id=buyer_id,
            category_id=fields.category_id,
            title=fields.title,
            description=fields.description,
            budget_min=Decimal(fields.budget_min),
            budget_max=Decimal(fields.budget_max),
            status=BuyerRequestStatus.OPEN.value,
            expires_at=expires_at,
        )
        request = await self._request_repo.create(request)

        await self._event_repo.record(
            entity_type=EntityType.BUYER_REQUEST,
            entity_id=request.id,
            event_type=EventType.REQUEST_CREATED,
            old_status=None,
            new_status=BuyerRequestStatus.OPEN,
            actor=buyer_id,
            metadata={"expires_at": expires_at.isoformat()},
        )

        logger.info(
            "buyer_request.created",
            request_id=str(request.id),
            buyer_id=buyer_id,
            budget_min=str(fields.budget_min),
            budget_max=str(fields.budget_max),
        )
        return request

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def close(self, request_id: uuid.UUID, acting_user: str) -> BuyerRequest:
        """Owner closes an OPEN request."""
        request = await self._get_request_or_raise(request_id)
        if request.buyer_id != acting_user:
            raise ForbiddenError("Only the owning buyer can close this request")

        fire_transition("buyer request", BuyerRequestStateMachine, request.status, "close")
        if not await self._request_repo.close_if_open(request_id):
            raise ConflictError(
                f"Buyer request {request_id} was closed concurrently",
                code="BUYER_REQUEST_CLOSED",
            )

        await self._event_repo.record(
            entity_type=EntityType.BUYER_REQUEST,
            entity_id=request_id,
            event_type=EventType.REQUEST_CLOSED,
            old_status=BuyerRequestStatus.OPEN,
            new_status=BuyerRequestStatus.CLOSED,
            actor=acting_user,
        )

        logger.info("buyer_request.closed", request_id=str(request_id), by=acting_user)
        return await self._get_request_or_raise(request_id)

    async def close_for_acceptance(
        self, request: BuyerRequest, offer_id: uuid.UUID, actor: str
    ) -> None:
        """Close the request because one of its offers is being accepted.

        Must run before the offer itself is accepted: the conditional UPDATE
        takes the request's write lock, which orders concurrent acceptances.
        """
        fire_transition(
            "buyer request", BuyerRequestStateMachine, request.status, "accept_offer"
        )
        if not await self._request_repo.close_if_open(request.id):
            raise ConflictError(
                f"Buyer request {request.id} is no longer open",
                code="BUYER_REQUEST_CLOSED",
            )

        await self._event_repo.record(
            entity_type=EntityType.BUYER_REQUEST,
            entity_id=request.id,
            event_type=EventType.REQUEST_FULFILLED,
            old_status=BuyerRequestStatus.OPEN,
            new_status=BuyerRequestStatus.CLOSED,
            actor=actor,
            metadata={"offer_id": str(offer_id)},
        )

    async def lock_open(self, request_id: uuid.UUID) -> BuyerRequest:
        """Hold the request's write lock for the rest of the transaction.

        Raises NotFoundError if it does not exist and ConflictError unless
        it is still OPEN.
        """
        request = await self._get_request_or_raise(request_id)
        if request.status != BuyerRequestStatus.OPEN:
            raise ConflictError(
                f"Buyer request {request_id} is {request.status}, not OPEN",
                code="BUYER_REQUEST_CLOSED",
            )
        if not await self._request_repo.touch_if_open(request_id):
            raise ConflictError(
                f"Buyer request {request_id} was closed concurrently",
                code="BUYER_REQUEST_CLOSED",
            )
        return request

    # ------------------------------------------------------------------
    # Expiration Sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Close every OPEN request whose expiration has passed.

        One set-based UPDATE; a second run at the same instant closes nothing.
        """
        now = now or self._clock.now()
        closed_ids = await self._request_repo.close_expired(now)

        await self._event_repo.record_many(
            entity_type=EntityType.BUYER_REQUEST,
            entity_ids=closed_ids,
            event_type=EventType.REQUEST_EXPIRED,
            old_status=BuyerRequestStatus.OPEN,
            new_status=BuyerRequestStatus.CLOSED,
            metadata={"swept_at": now.isoformat()},
        )

        logger.info(
            "buyer_request.sweep_completed",
            closed=len(closed_ids),
            now=now.isoformat(),
        )
        return len(closed_ids)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove(self, request_id: uuid.UUID, acting_user: str) -> None:
        """Owner deletes a request and every offer on it.

        Refused once an offer has been accepted, since its escrow account
        still references that offer. The request row is locked before the
        check, so an acceptance cannot commit between the check and the delete.
        """
        request = await self._get_request_or_raise(request_id)
        if request.buyer_id != acting_user:
            raise ForbiddenError("Only the owning buyer can remove this request")

        if not await self._request_repo.lock(request_id):
            raise BuyerRequestNotFoundError(str(request_id))
        old_status = (await self._get_request_or_raise(request_id)).status

        accepted = await self._offer_repo.count_by_status(request_id, OfferStatus.ACCEPTED)
        if accepted:
            raise ConflictError(
                f"Buyer request {request_id} has an accepted offer and cannot be removed",
                code="BUYER_REQUEST_HAS_ACCEPTED_OFFER",
            )

        try:
            removed = await self._request_repo.delete_with_offers(request_id)
        except IntegrityError as err:
            # Something still references one of the offers
            raise ConflictError(
                f"Buyer request {request_id} is still referenced and cannot be removed",
                code="BUYER_REQUEST_HAS_ACCEPTED_OFFER",
            ) from err

        # The audit row outlives the request; events carry no foreign key
        await self._event_repo.record(
            entity_type=EntityType.BUYER_REQUEST,
            entity_id=request_id,
            event_type=EventType.REQUEST_REMOVED,
            old_status=old_status,
            new_status=REMOVED,
            actor=acting_user,
            metadata={"offers_removed": removed},
        )

        logger.info(
            "buyer_request.removed",
            request_id=str(request_id),
            by=acting_user,
            offers_removed=removed,
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, request_id: uuid.UUID) -> BuyerRequest:
        return await self._get_request_or_raise(request_id)

    async def _get_request_or_raise(self, request_id: uuid.UUID) -> BuyerRequest:
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise BuyerRequestNotFoundError(str(request_id))
        return request
