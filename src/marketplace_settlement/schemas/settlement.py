"""Pydantic schemas for the settlement engine's inputs and snapshots.

Input schemas carry the caller-supplied fields for a command. They only
constrain shape (lengths, required fields); business rules such as
budget_min <= budget_max or milestone sums are enforced by the services and
raise the domain ValidationError.

Snapshot schemas are detached, read-only views of ORM rows, safe to hand
back to callers after the transaction has closed.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Input Schemas
# ---------------------------------------------------------------------------


class BuyerRequestCreate(BaseModel):
    """Fields a buyer supplies when posting a request."""

    title: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=5000)
    category_id: int
    budget_min: Decimal = Field(..., decimal_places=2)
    budget_max: Decimal = Field(..., decimal_places=2)
    expires_at: AwareDatetime | None = Field(
        default=None,
        description="Explicit expiration; defaults to now + the configured horizon",
    )


class OfferCreate(BaseModel):
    """Fields a seller supplies when submitting an offer."""

    title: str | None = Field(default=None, max_length=100)
    description: str = Field(..., min_length=1, max_length=5000)
    price: Decimal = Field(..., decimal_places=2)
    product_id: int | None = None
    delivery_days: int = Field(default=7, ge=1, le=365)


class MilestoneSpec(BaseModel):
    """One slice of an escrow account's funds."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    amount: Decimal = Field(..., decimal_places=2)


# ---------------------------------------------------------------------------
# Snapshot Schemas
# ---------------------------------------------------------------------------


class OfferSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    buyer_request_id: uuid.UUID
    seller_id: str
    product_id: int | None
    title: str | None
    description: str
    price: Decimal
    delivery_days: int
    status: str
    is_blocked: bool
    created_at: datetime
    updated_at: datetime


class MilestoneSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_account_id: uuid.UUID
    position: int
    title: str
    description: str | None
    amount: Decimal
    status: str
    buyer_approved: bool
    notes: str | None
    approved_at: datetime | None
    released_at: datetime | None


class EscrowAccountSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    offer_id: uuid.UUID
    buyer_id: str
    seller_id: str
    total_amount: Decimal
    released_amount: Decimal
    status: str
    milestones: list[MilestoneSnapshot] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.released_amount


class ReleaseFundsResult(BaseModel):
    """Outcome of releasing one milestone."""

    milestone: MilestoneSnapshot
    account: EscrowAccountSnapshot
    message: str = "Funds released successfully"


class OfferAcceptanceResult(BaseModel):
    """Outcome of accepting an offer: the winner, its escrow, and the losers."""

    offer: OfferSnapshot
    escrow_account: EscrowAccountSnapshot
    rejected_offer_ids: list[uuid.UUID] = Field(default_factory=list)
