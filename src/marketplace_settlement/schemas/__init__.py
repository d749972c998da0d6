"""Pydantic input and snapshot schemas."""

from marketplace_settlement.schemas.settlement import (
    BuyerRequestCreate,
    EscrowAccountSnapshot,
    MilestoneSnapshot,
    MilestoneSpec,
    OfferAcceptanceResult,
    OfferCreate,
    OfferSnapshot,
    ReleaseFundsResult,
)

__all__ = [
    "BuyerRequestCreate",
    "EscrowAccountSnapshot",
    "MilestoneSnapshot",
    "MilestoneSpec",
    "OfferAcceptanceResult",
    "OfferCreate",
    "OfferSnapshot",
    "ReleaseFundsResult",
]
