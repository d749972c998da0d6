"""Escrow Service: escrow accounts and milestone-based fund release.

This is the application layer that coordinates between:
    - Domain state machines (transition guard)
    - Repositories (guarded conditional updates)
    - Event log (audit trail)

Every mutating call fires the state machine first so an illegal request
fails with a readable InvalidStateTransitionError, then issues a conditional
UPDATE whose WHERE clause re-checks the same precondition. A concurrent
caller that got there first makes the UPDATE match zero rows, which is
reported as a ConflictError. The caller's transaction is rolled back on any
error, so a release that fails halfway leaves nothing behind.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from marketplace_settlement.clock import Clock, SystemClock
from marketplace_settlement.domain.enums import (
    EntityType,
    EscrowStatus,
    EventType,
    MilestoneStatus,
)
from marketplace_settlement.domain.exceptions import (
    ConflictError,
    EscrowAccountNotFoundError,
    EscrowAlreadyExistsError,
    ForbiddenError,
    InvalidAmountError,
    MilestoneAmountError,
    MilestoneNotFoundError,
)
from marketplace_settlement.domain.state_machine import (
    EscrowAccountStateMachine,
    MilestoneStateMachine,
    fire_transition,
)
from marketplace_settlement.infrastructure.database.orm_models import (
    EscrowAccount,
    Milestone,
)
from marketplace_settlement.infrastructure.database.repositories import (
    EscrowRepository,
    EventRepository,
)
from marketplace_settlement.logging_config import get_logger
from marketplace_settlement.schemas.settlement import (
    EscrowAccountSnapshot,
    MilestoneSnapshot,
    MilestoneSpec,
    ReleaseFundsResult,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

DEFAULT_MILESTONE_TITLE = "Full payment"


class EscrowService:
    """Manages escrow accounts and the release of their milestones."""

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._escrow_repo = EscrowRepository(session)
        self._event_repo = EventRepository(session)

    # ------------------------------------------------------------------
    # Account Creation
    # ------------------------------------------------------------------

    async def create_account(
        self,
        offer_id: uuid.UUID,
        buyer_id: str,
        seller_id: str,
        total_amount: Decimal,
        milestones: Sequence[MilestoneSpec] | None = None,
    ) -> EscrowAccount:
        """Create a PENDING account and its PENDING milestones in one flush.

        Without a breakdown the account gets a single milestone covering
        the whole amount.
        """
        total_amount = Decimal(total_amount)
        if total_amount <= 0:
            raise InvalidAmountError("total_amount", total_amount)

        specs = list(milestones or [])
        if not specs:
            specs = [MilestoneSpec(title=DEFAULT_MILESTONE_TITLE, amount=total_amount)]

        for spec in specs:
            if spec.amount <= 0:
                raise InvalidAmountError("milestone amount", spec.amount)
        milestone_sum = sum((spec.amount for spec in specs), Decimal("0"))
        if milestone_sum != total_amount:
            raise MilestoneAmountError(total_amount, milestone_sum)

        if await self._escrow_repo.exists_for_offer(offer_id):
            raise EscrowAlreadyExistsError(str(offer_id))

        account = EscrowAccount(
            offer_id=offer_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=total_amount,
            released_amount=Decimal("0"),
            status=EscrowStatus.PENDING.value,
            milestones=[
                Milestone(
                    position=position,
                    title=spec.title,
                    description=spec.description,
                    amount=spec.amount,
                    status=MilestoneStatus.PENDING.value,
                    buyer_approved=False,
                )
                for position, spec in enumerate(specs)
            ],
        )
        try:
            account = await self._escrow_repo.create(account)
        except IntegrityError as err:
            # Lost the race on the unique offer_id
            raise EscrowAlreadyExistsError(str(offer_id)) from err

        await self._event_repo.record(
            entity_type=EntityType.ESCROW_ACCOUNT,
            entity_id=account.id,
            event_type=EventType.ESCROW_CREATED,
            old_status=None,
            new_status=EscrowStatus.PENDING,
            actor=buyer_id,
            metadata={
                "offer_id": str(offer_id),
                "total_amount": str(total_amount),
                "milestones": len(specs),
            },
        )

        logger.info(
            "escrow.created",
            account_id=str(account.id),
            offer_id=str(offer_id),
            total_amount=str(total_amount),
            milestones=len(specs),
        )
        return account

    # ------------------------------------------------------------------
    # Milestone Approval
    # ------------------------------------------------------------------

    async def approve_milestone(
        self,
        milestone_id: uuid.UUID,
        buyer_id: str,
        approved: bool,
        notes: str | None = None,
    ) -> Milestone:
        """Record the buyer's decision on a PENDING milestone."""
        milestone, account = await self._get_milestone_with_account_or_raise(milestone_id)
        if account.buyer_id != buyer_id:
            raise ForbiddenError("Only the escrow buyer can approve milestones")

        event_name = "approve" if approved else "reject"
        new_status = fire_transition(
            "milestone", MilestoneStateMachine, milestone.status, event_name
        )

        decided = await self._escrow_repo.decide_milestone_if_pending(
            milestone_id, approved=approved, notes=notes, decided_at=self._clock.now()
        )
        if not decided:
            raise ConflictError(
                f"Milestone {milestone_id} was decided by a concurrent request",
                code="MILESTONE_ALREADY_DECIDED",
            )

        await self._event_repo.record(
            entity_type=EntityType.MILESTONE,
            entity_id=milestone_id,
            event_type=(
                EventType.MILESTONE_APPROVED if approved else EventType.MILESTONE_REJECTED
            ),
            old_status=MilestoneStatus.PENDING,
            new_status=new_status,
            actor=buyer_id,
            metadata={"notes": notes} if notes else None,
        )

        logger.info(
            "escrow.milestone_decided",
            milestone_id=str(milestone_id),
            account_id=str(account.id),
            approved=approved,
        )
        return await self._get_milestone_or_raise(milestone_id)

    # ------------------------------------------------------------------
    # Fund Release
    # ------------------------------------------------------------------

    async def release_funds(
        self,
        milestone_id: uuid.UUID,
        seller_id: str,
        notes: str | None = None,
    ) -> ReleaseFundsResult:
        """Release one APPROVED milestone to the seller.

        The milestone update and the account credit run in the caller's
        transaction; either both land or neither does.
        """
        milestone, account = await self._get_milestone_with_account_or_raise(milestone_id)
        if account.seller_id != seller_id:
            raise ForbiddenError("Only the escrow seller can release funds")

        fire_transition("milestone", MilestoneStateMachine, milestone.status, "release")
        if not milestone.buyer_approved:
            raise ConflictError(
                f"Milestone {milestone_id} has not been approved by the buyer",
                code="MILESTONE_NOT_APPROVED",
            )

        old_account_status = account.status
        fully_released = account.released_amount + milestone.amount >= account.total_amount
        fire_transition(
            "escrow account",
            EscrowAccountStateMachine,
            old_account_status,
            "full_release" if fully_released else "partial_release",
        )

        released_at = self._clock.now()
        if not await self._escrow_repo.release_milestone_if_approved(milestone_id, released_at):
            raise ConflictError(
                f"Milestone {milestone_id} was released by a concurrent request",
                code="MILESTONE_ALREADY_RELEASED",
            )
        if not await self._escrow_repo.credit_release(account.id, milestone.amount):
            raise ConflictError(
                f"Escrow account {account.id} can no longer accept a release of "
                f"{milestone.amount}",
                code="ESCROW_RELEASE_REJECTED",
            )

        account = await self._get_account_or_raise(account.id)
        milestone = await self._get_milestone_or_raise(milestone_id)

        await self._event_repo.record(
            entity_type=EntityType.MILESTONE,
            entity_id=milestone_id,
            event_type=EventType.MILESTONE_RELEASED,
            old_status=MilestoneStatus.APPROVED,
            new_status=MilestoneStatus.RELEASED,
            actor=seller_id,
            metadata={"amount": str(milestone.amount), "notes": notes},
        )
        if account.status != old_account_status:
            await self._event_repo.record(
                entity_type=EntityType.ESCROW_ACCOUNT,
                entity_id=account.id,
                event_type=(
                    EventType.ESCROW_RELEASED
                    if account.status == EscrowStatus.RELEASED
                    else EventType.ESCROW_FUNDED
                ),
                old_status=old_account_status,
                new_status=account.status,
                actor=seller_id,
                metadata={"milestone_id": str(milestone_id)},
            )

        logger.info(
            "escrow.funds_released",
            milestone_id=str(milestone_id),
            account_id=str(account.id),
            amount=str(milestone.amount),
            released_amount=str(account.released_amount),
            status=account.status,
        )
        return ReleaseFundsResult(
            milestone=MilestoneSnapshot.model_validate(milestone),
            account=EscrowAccountSnapshot.model_validate(account),
        )

    # ------------------------------------------------------------------
    # Account Transitions
    # ------------------------------------------------------------------

    async def fund_account(self, account_id: uuid.UUID, buyer_id: str) -> EscrowAccount:
        """Buyer confirms the deposit: PENDING -> FUNDED."""
        account = await self._get_account_or_raise(account_id)
        if account.buyer_id != buyer_id:
            raise ForbiddenError("Only the escrow buyer can fund the account")

        return await self._transition(
            account,
            event_name="fund",
            event_type=EventType.ESCROW_FUNDED,
            actor=buyer_id,
        )

    async def dispute(
        self,
        account_id: uuid.UUID,
        actor_id: str,
        reason: str | None = None,
    ) -> EscrowAccount:
        """Either party freezes the account pending administrative review."""
        account = await self._get_account_or_raise(account_id)
        if actor_id not in (account.buyer_id, account.seller_id):
            raise ForbiddenError("Only a party to the escrow can raise a dispute")

        return await self._transition(
            account,
            event_name="dispute",
            event_type=EventType.ESCROW_DISPUTED,
            actor=actor_id,
            metadata={"reason": reason} if reason else None,
        )

    async def resolve_dispute(
        self, account_id: uuid.UUID, actor: str = "ADMIN"
    ) -> EscrowAccount:
        """Administrative resolution: DISPUTED -> FUNDED, releases may resume."""
        account = await self._get_account_or_raise(account_id)
        return await self._transition(
            account,
            event_name="resolve_dispute",
            event_type=EventType.ESCROW_DISPUTE_RESOLVED,
            actor=actor,
        )

    async def refund(self, account_id: uuid.UUID, actor: str = "ADMIN") -> EscrowAccount:
        """Administrative refund of whatever has not been released."""
        account = await self._get_account_or_raise(account_id)
        return await self._transition(
            account,
            event_name="refund",
            event_type=EventType.ESCROW_REFUNDED,
            actor=actor,
            metadata={"refunded_amount": str(account.remaining_amount)},
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_account(self, account_id: uuid.UUID) -> EscrowAccount:
        return await self._get_account_or_raise(account_id)

    async def get_account_for_offer(self, offer_id: uuid.UUID, user_id: str) -> EscrowAccount:
        """The account settling an offer, visible to its buyer and seller only."""
        account = await self._escrow_repo.get_by_offer(offer_id)
        if account is None:
            raise EscrowAccountNotFoundError(f"offer {offer_id}")
        self._ensure_party(account, user_id)
        return account

    async def get_milestone(self, milestone_id: uuid.UUID, user_id: str) -> Milestone:
        milestone, account = await self._get_milestone_with_account_or_raise(milestone_id)
        self._ensure_party(account, user_id)
        return milestone

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        account: EscrowAccount,
        event_name: str,
        event_type: EventType,
        actor: str,
        metadata: dict | None = None,
    ) -> EscrowAccount:
        """Fire ``event_name`` on the account and persist it with a guarded update."""
        old_status = account.status
        new_status = fire_transition(
            "escrow account", EscrowAccountStateMachine, old_status, event_name
        )

        moved = await self._escrow_repo.transition_status(
            account.id,
            from_statuses=[EscrowStatus(old_status)],
            to_status=EscrowStatus(new_status),
        )
        if not moved:
            raise ConflictError(
                f"Escrow account {account.id} changed state concurrently",
                code="ESCROW_CONCURRENT_UPDATE",
            )

        await self._event_repo.record(
            entity_type=EntityType.ESCROW_ACCOUNT,
            entity_id=account.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )

        logger.info(
            "escrow.status_changed",
            account_id=str(account.id),
            transition=event_name,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
        )
        return await self._get_account_or_raise(account.id)

    async def _get_account_or_raise(self, account_id: uuid.UUID) -> EscrowAccount:
        account = await self._escrow_repo.get_by_id(account_id)
        if account is None:
            raise EscrowAccountNotFoundError(str(account_id))
        return account

    async def _get_milestone_or_raise(self, milestone_id: uuid.UUID) -> Milestone:
        milestone = await self._escrow_repo.get_milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    async def _get_milestone_with_account_or_raise(
        self, milestone_id: uuid.UUID
    ) -> tuple[Milestone, EscrowAccount]:
        row = await self._escrow_repo.get_milestone_with_account(milestone_id)
        if row is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return row

    @staticmethod
    def _ensure_party(account: EscrowAccount, user_id: str) -> None:
        if user_id not in (account.buyer_id, account.seller_id):
            raise ForbiddenError("Only the escrow buyer or seller can view this account")
