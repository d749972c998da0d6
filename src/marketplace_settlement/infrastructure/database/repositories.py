"""Repository classes for database access.

Repositories encapsulate all SQL and provide a clean interface to the
service layer. They accept an AsyncSession and never manage their own
transactions (that's the caller's responsibility).

Every state-changing method that guards an invariant is a single
conditional UPDATE ("set X only if still Y") and reports whether it
matched a row. The caller turns a miss into a ConflictError. No method
reads a status and then writes it back.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import case, delete, exists, func, select, update
from sqlalchemy.orm import aliased

from marketplace_settlement.domain.enums import (
    BuyerRequestStatus,
    EscrowStatus,
    MilestoneStatus,
    OfferStatus,
)
from marketplace_settlement.infrastructure.database.orm_models import (
    BuyerRequest,
    EscrowAccount,
    Milestone,
    Offer,
    SettlementEvent,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_settlement.domain.enums import EntityType, EventType


class BuyerRequestRepository:
    """Data access for buyer requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, request: BuyerRequest) -> BuyerRequest:
        self._session.add(request)
        await self._session.flush()
        return request

    async def get_by_id(self, request_id: uuid.UUID) -> BuyerRequest | None:
        """Fetch a request, overwriting any stale copy in the identity map."""
        result = await self._session.execute(
            select(BuyerRequest)
            .where(BuyerRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def close_if_open(self, request_id: uuid.UUID) -> bool:
        """OPEN -> CLOSED for one request. False if it was no longer OPEN."""
        result = await self._session.execute(
            update(BuyerRequest)
            .where(
                BuyerRequest.id == request_id,
                BuyerRequest.status == BuyerRequestStatus.OPEN.value,
            )
            .values(status=BuyerRequestStatus.CLOSED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def touch_if_open(self, request_id: uuid.UUID) -> bool:
        """Take the request's write lock, but only while it is still OPEN.

        Holding this lock until commit keeps a concurrent acceptance (which
        closes the same row) from interleaving with an offer insert.
        """
        result = await self._session.execute(
            update(BuyerRequest)
            .where(
                BuyerRequest.id == request_id,
                BuyerRequest.status == BuyerRequestStatus.OPEN.value,
            )
            .values(updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def lock(self, request_id: uuid.UUID) -> bool:
        """Take the request's write lock whatever its status.

        Acceptance closes this same row first, so once the lock is held an
        accepted offer either is already visible or can no longer appear.
        """
        result = await self._session.execute(
            update(BuyerRequest)
            .where(BuyerRequest.id == request_id)
            .values(updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def close_expired(self, now: datetime) -> list[uuid.UUID]:
        """Close every OPEN request whose expiration has passed, in one statement.

        Returns the ids that this statement actually closed.
        """
        result = await self._session.execute(
            update(BuyerRequest)
            .where(
                BuyerRequest.status == BuyerRequestStatus.OPEN.value,
                BuyerRequest.expires_at <= now,
            )
            .values(status=BuyerRequestStatus.CLOSED.value)
            .returning(BuyerRequest.id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars().all())

    async def delete_with_offers(self, request_id: uuid.UUID) -> int:
        """Remove a request and every offer that references it.

        Returns the number of offers removed.
        """
        offers = await self._session.execute(
            delete(Offer)
            .where(Offer.buyer_request_id == request_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            delete(BuyerRequest)
            .where(BuyerRequest.id == request_id)
            .execution_options(synchronize_session=False)
        )
        return offers.rowcount


class OfferRepository:
    """Data access for offers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, offer: Offer) -> Offer:
        self._session.add(offer)
        await self._session.flush()
        return offer

    async def get_by_id(self, offer_id: uuid.UUID) -> Offer | None:
        result = await self._session.execute(
            select(Offer)
            .where(Offer.id == offer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_with_request(
        self, offer_id: uuid.UUID
    ) -> tuple[Offer, BuyerRequest] | None:
        """Fetch an offer together with its parent buyer request."""
        result = await self._session.execute(
            select(Offer, BuyerRequest)
            .join(BuyerRequest, BuyerRequest.id == Offer.buyer_request_id)
            .where(Offer.id == offer_id)
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def find_by_request_and_seller(
        self, buyer_request_id: uuid.UUID, seller_id: str
    ) -> Offer | None:
        result = await self._session.execute(
            select(Offer).where(
                Offer.buyer_request_id == buyer_request_id,
                Offer.seller_id == seller_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_request(self, buyer_request_id: uuid.UUID) -> list[Offer]:
        """All offers on a request, newest first."""
        result = await self._session.execute(
            select(Offer)
            .where(Offer.buyer_request_id == buyer_request_id)
            .order_by(Offer.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_by_status(self, buyer_request_id: uuid.UUID, status: OfferStatus) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(Offer)
            .where(
                Offer.buyer_request_id == buyer_request_id,
                Offer.status == status.value,
            )
        )
        return int(result.scalar_one())

    async def accept_if_eligible(
        self, offer_id: uuid.UUID, buyer_request_id: uuid.UUID
    ) -> bool:
        """PENDING -> ACCEPTED, only if unblocked and no sibling is ACCEPTED."""
        sibling = aliased(Offer)
        already_accepted = exists().where(
            sibling.buyer_request_id == buyer_request_id,
            sibling.status == OfferStatus.ACCEPTED.value,
        )
        result = await self._session.execute(
            update(Offer)
            .where(
                Offer.id == offer_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.is_blocked.is_(False),
                ~already_accepted,
            )
            .values(status=OfferStatus.ACCEPTED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reject_pending_siblings(
        self, buyer_request_id: uuid.UUID, winner_id: uuid.UUID
    ) -> list[tuple[uuid.UUID, str]]:
        """Reject every other PENDING offer on the request in one statement.

        Returns (offer_id, seller_id) for each offer rejected here.
        """
        result = await self._session.execute(
            update(Offer)
            .where(
                Offer.buyer_request_id == buyer_request_id,
                Offer.id != winner_id,
                Offer.status == OfferStatus.PENDING.value,
            )
            .values(status=OfferStatus.REJECTED.value)
            .returning(Offer.id, Offer.seller_id)
            .execution_options(synchronize_session=False)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def reject_if_pending(self, offer_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            update(Offer)
            .where(
                Offer.id == offer_id,
                Offer.status == OfferStatus.PENDING.value,
            )
            .values(status=OfferStatus.REJECTED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_blocked(self, offer_id: uuid.UUID, blocked: bool) -> bool:
        result = await self._session.execute(
            update(Offer)
            .where(Offer.id == offer_id)
            .values(is_blocked=blocked)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class EscrowRepository:
    """Data access for escrow accounts and their milestones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, account: EscrowAccount) -> EscrowAccount:
        """Insert an account together with its milestone collection."""
        self._session.add(account)
        await self._session.flush()
        return account

    async def get_by_id(self, account_id: uuid.UUID) -> EscrowAccount | None:
        result = await self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_offer(self, offer_id: uuid.UUID) -> EscrowAccount | None:
        result = await self._session.execute(
            select(EscrowAccount)
            .where(EscrowAccount.offer_id == offer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def exists_for_offer(self, offer_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            select(exists().where(EscrowAccount.offer_id == offer_id))
        )
        return bool(result.scalar())

    async def get_milestone(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.id == milestone_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_milestone_with_account(
        self, milestone_id: uuid.UUID
    ) -> tuple[Milestone, EscrowAccount] | None:
        result = await self._session.execute(
            select(Milestone, EscrowAccount)
            .join(EscrowAccount, EscrowAccount.id == Milestone.escrow_account_id)
            .where(Milestone.id == milestone_id)
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def decide_milestone_if_pending(
        self,
        milestone_id: uuid.UUID,
        approved: bool,
        notes: str | None,
        decided_at: datetime,
    ) -> bool:
        """PENDING -> APPROVED / REJECTED with the buyer's decision stamped."""
        new_status = MilestoneStatus.APPROVED if approved else MilestoneStatus.REJECTED
        result = await self._session.execute(
            update(Milestone)
            .where(
                Milestone.id == milestone_id,
                Milestone.status == MilestoneStatus.PENDING.value,
            )
            .values(
                status=new_status.value,
                buyer_approved=approved,
                notes=notes,
                approved_at=decided_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_milestone_if_approved(
        self, milestone_id: uuid.UUID, released_at: datetime
    ) -> bool:
        """APPROVED (and buyer_approved) -> RELEASED. False on a double release."""
        result = await self._session.execute(
            update(Milestone)
            .where(
                Milestone.id == milestone_id,
                Milestone.status == MilestoneStatus.APPROVED.value,
                Milestone.buyer_approved.is_(True),
            )
            .values(status=MilestoneStatus.RELEASED.value, released_at=released_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit_release(self, account_id: uuid.UUID, amount: Decimal) -> bool:
        """Add a released milestone amount to the account in one statement.

        Matches only while the account is PENDING/FUNDED and the new total
        stays within total_amount. The status flips to RELEASED exactly when
        the account becomes fully released, FUNDED otherwise.
        """
        new_released = EscrowAccount.released_amount + amount
        result = await self._session.execute(
            update(EscrowAccount)
            .where(
                EscrowAccount.id == account_id,
                EscrowAccount.status.in_([s.value for s in EscrowStatus.releasable()]),
                new_released <= EscrowAccount.total_amount,
            )
            .values(
                released_amount=new_released,
                status=case(
                    (new_released >= EscrowAccount.total_amount, EscrowStatus.RELEASED.value),
                    else_=EscrowStatus.FUNDED.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition_status(
        self,
        account_id: uuid.UUID,
        from_statuses: Iterable[EscrowStatus],
        to_status: EscrowStatus,
    ) -> bool:
        """Move an account to ``to_status`` only if it is still in ``from_statuses``."""
        result = await self._session.execute(
            update(EscrowAccount)
            .where(
                EscrowAccount.id == account_id,
                EscrowAccount.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class EventRepository:
    """Data access for the append-only settlement audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> SettlementEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = SettlementEvent(
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type.value,
            old_status=str(old_status) if old_status is not None else None,
            new_status=str(new_status),
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def record_many(
        self,
        entity_type: EntityType,
        entity_ids: Iterable[uuid.UUID],
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> int:
        """Append one identical event per entity (used by set-based transitions)."""
        events = [
            SettlementEvent(
                entity_type=entity_type.value,
                entity_id=entity_id,
                event_type=event_type.value,
                old_status=str(old_status) if old_status is not None else None,
                new_status=str(new_status),
                actor=actor,
                metadata_json=metadata,
            )
            for entity_id in entity_ids
        ]
        if events:
            self._session.add_all(events)
            await self._session.flush()
        return len(events)

    async def get_for_entity(
        self, entity_type: EntityType, entity_id: uuid.UUID
    ) -> list[SettlementEvent]:
        """Fetch all events for one entity in chronological order."""
        result = await self._session.execute(
            select(SettlementEvent)
            .where(
                SettlementEvent.entity_type == entity_type.value,
                SettlementEvent.entity_id == entity_id,
            )
            .order_by(SettlementEvent.created_at.asc())
        )
        return list(result.scalars().all())
