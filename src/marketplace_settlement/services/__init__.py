"""Application services: use case orchestration."""

from marketplace_settlement.services.buyer_request_service import BuyerRequestService
from marketplace_settlement.services.escrow_service import EscrowService
from marketplace_settlement.services.negotiation_service import NegotiationCoordinator
from marketplace_settlement.services.notification_service import (
    LoggingNotifier,
    Notifier,
    dispatch,
)
from marketplace_settlement.services.offer_service import AcceptedOffer, OfferService

__all__ = [
    "AcceptedOffer",
    "BuyerRequestService",
    "EscrowService",
    "LoggingNotifier",
    "NegotiationCoordinator",
    "Notifier",
    "OfferService",
    "dispatch",
]
