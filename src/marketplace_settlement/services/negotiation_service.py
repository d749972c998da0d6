"""Negotiation Coordinator: the top-level submit / accept / reject entry points.

Each call runs in exactly one transaction:

    submit  -> OfferService.submit
    accept  -> OfferService.accept + EscrowService.create_account
    reject  -> OfferService.reject

and only after that transaction commits are the affected parties notified.
The invariants belong to the services; the coordinator sequences them and
hands back detached snapshots. A database integrity failure that slips past
the services' guards (a lost race on a unique index) is reported as a
ConflictError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from marketplace_settlement.clock import Clock, SystemClock
from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.domain.exceptions import ConflictError
from marketplace_settlement.infrastructure.database.engine import session_scope
from marketplace_settlement.logging_config import bound_context, get_logger
from marketplace_settlement.schemas.settlement import (
    EscrowAccountSnapshot,
    OfferAcceptanceResult,
    OfferSnapshot,
)
from marketplace_settlement.services.buyer_request_service import BuyerRequestService
from marketplace_settlement.services.escrow_service import EscrowService
from marketplace_settlement.services.notification_service import (
    LoggingNotifier,
    Notifier,
    dispatch,
)
from marketplace_settlement.services.offer_service import OfferService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_settlement.schemas.settlement import MilestoneSpec, OfferCreate

logger = get_logger(__name__)


class NegotiationCoordinator:
    """Orchestrates offers against buyer requests and opens escrow on acceptance."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()

    async def submit(
        self,
        buyer_request_id: uuid.UUID,
        seller_id: str,
        fields: OfferCreate,
    ) -> OfferSnapshot:
        """Submit an offer, then tell the request owner about it."""
        with bound_context(operation="offer.submit", actor=seller_id):
            try:
                async with session_scope(self._session_factory) as session:
                    offer = await self._offer_service(session).submit(
                        buyer_request_id, seller_id, fields
                    )
                    request = await BuyerRequestService(
                        session, clock=self._clock, settings=self._settings
                    ).get(buyer_request_id)
                    snapshot = OfferSnapshot.model_validate(offer)
                    owner_id = request.buyer_id
            except IntegrityError as err:
                raise self._conflict(err) from err

            await self._notify(
                owner_id,
                "New Offer Received",
                f"A seller offered {snapshot.price} on your request.",
                {
                    "buyer_request_id": str(buyer_request_id),
                    "offer_id": str(snapshot.id),
                    "price": str(snapshot.price),
                },
            )
            return snapshot

    async def accept(
        self,
        offer_id: uuid.UUID,
        buyer_id: str,
        milestones: Sequence[MilestoneSpec] | None = None,
    ) -> OfferAcceptanceResult:
        """Accept an offer and open its escrow account in the same transaction.

        ``milestones`` partitions the offer price; without it the account
        holds a single milestone for the full price.
        """
        with bound_context(operation="offer.accept", actor=buyer_id):
            try:
                async with session_scope(self._session_factory) as session:
                    accepted = await self._offer_service(session).accept(offer_id, buyer_id)
                    offer = accepted.offer
                    account = await EscrowService(session, clock=self._clock).create_account(
                        offer_id=offer.id,
                        buyer_id=buyer_id,
                        seller_id=offer.seller_id,
                        total_amount=offer.price,
                        milestones=milestones,
                    )
                    result = OfferAcceptanceResult(
                        offer=OfferSnapshot.model_validate(offer),
                        escrow_account=EscrowAccountSnapshot.model_validate(account),
                        rejected_offer_ids=accepted.rejected_offer_ids,
                    )
                    rejected = list(accepted.rejected)
            except IntegrityError as err:
                raise self._conflict(err) from err

            logger.info(
                "negotiation.accepted",
                offer_id=str(offer_id),
                escrow_account_id=str(result.escrow_account.id),
                rejected=len(rejected),
            )

            await self._notify(
                result.offer.seller_id,
                "Offer Accepted",
                "Your offer was accepted and an escrow account has been opened.",
                {
                    "offer_id": str(offer_id),
                    "escrow_account_id": str(result.escrow_account.id),
                },
            )
            for rejected_id, seller_id in rejected:
                await self._notify(
                    seller_id,
                    "Offer Not Selected",
                    "The buyer accepted another offer on this request.",
                    {
                        "offer_id": str(rejected_id),
                        "buyer_request_id": str(result.offer.buyer_request_id),
                    },
                )
            return result

    async def reject(self, offer_id: uuid.UUID, buyer_id: str) -> OfferSnapshot:
        """Reject one offer, then tell its seller."""
        with bound_context(operation="offer.reject", actor=buyer_id):
            async with session_scope(self._session_factory) as session:
                offer = await self._offer_service(session).reject(offer_id, buyer_id)
                snapshot = OfferSnapshot.model_validate(offer)

            await self._notify(
                snapshot.seller_id,
                "Offer Rejected",
                "The buyer declined your offer.",
                {"offer_id": str(offer_id), "buyer_request_id": str(snapshot.buyer_request_id)},
            )
            return snapshot

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _offer_service(self, session: AsyncSession) -> OfferService:
        return OfferService(session, clock=self._clock, settings=self._settings)

    async def _notify(self, user_id: str, title: str, message: str, payload: dict) -> None:
        await dispatch(
            self._notifier,
            user_id,
            title,
            message,
            payload,
            timeout=self._settings.notification_timeout_seconds,
            attempts=self._settings.notification_max_attempts,
        )

    @staticmethod
    def _conflict(err: IntegrityError) -> ConflictError:
        logger.warning("negotiation.integrity_conflict", error=str(err.orig))
        return ConflictError(
            "The request was modified concurrently; please retry",
            code="CONCURRENT_MODIFICATION",
        )
