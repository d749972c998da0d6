"""SQLAlchemy 2.0 ORM models for the settlement engine.

Five tables:
    1. buyer_requests - A buyer's posted need with a budget range.
    2. offers - Sellers' proposals against a buyer request.
    3. escrow_accounts - Funds held for an accepted offer (one per offer).
    4. milestones - Partition of an escrow account's funds.
    5. settlement_events - Append-only audit log of every state transition.

Design decisions:
    - UUIDs as primary keys, portable ``Uuid`` type (PostgreSQL and SQLite).
    - Decimal for money (no floating point rounding in the application).
    - CHECK constraints on status values and monetary invariants, so a bug in
      the service layer still cannot persist released > total.
    - A partial unique index allows at most one ACCEPTED offer per request.
    - Child rows are keyed by parent id. The only ORM relationship is the
      one-directional EscrowAccount.milestones collection.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


# ---------------------------------------------------------------------------
# 1. buyer_requests
# ---------------------------------------------------------------------------
class BuyerRequest(TimestampMixin, Base):
    """A need posted by a buyer that sellers respond to with offers."""

    __tablename__ = "buyer_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    buyer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Identifier of the owning buyer",
    )
    category_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    budget_min: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    budget_max: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="OPEN",
        comment="OPEN or CLOSED (guarded by BuyerRequestStateMachine)",
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="The expiration sweep closes OPEN requests past this instant",
    )

    __table_args__ = (
        CheckConstraint("status IN ('OPEN', 'CLOSED')", name="ck_buyer_request_valid_status"),
        CheckConstraint("budget_min >= 0", name="ck_buyer_request_budget_non_negative"),
        CheckConstraint("budget_min <= budget_max", name="ck_buyer_request_budget_range"),
        Index("idx_buyer_request_buyer", "buyer_id"),
        Index("idx_buyer_request_category", "category_id"),
        Index("idx_buyer_request_status_expires", "status", "expires_at"),
        Index("idx_buyer_request_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BuyerRequest id={self.id} status={self.status} buyer={self.buyer_id}>"


# ---------------------------------------------------------------------------
# 2. offers
# ---------------------------------------------------------------------------
class Offer(TimestampMixin, Base):
    """A seller's priced proposal against a buyer request."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    buyer_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("buyer_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_id: Mapped[int | None] = mapped_column(Integer, nullable=True, default=None)

    title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    delivery_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="PENDING, ACCEPTED or REJECTED (guarded by OfferStateMachine)",
    )
    is_blocked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Admin moderation flag, independent of status",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACCEPTED', 'REJECTED')",
            name="ck_offer_valid_status",
        ),
        CheckConstraint("price >= 0", name="ck_offer_price_non_negative"),
        UniqueConstraint("buyer_request_id", "seller_id", name="uq_offer_request_seller"),
        Index(
            "uq_offer_one_accepted_per_request",
            "buyer_request_id",
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
        Index("idx_offer_request_status", "buyer_request_id", "status"),
        Index("idx_offer_seller", "seller_id"),
    )

    def __repr__(self) -> str:
        return f"<Offer id={self.id} status={self.status} price={self.price}>"


# ---------------------------------------------------------------------------
# 3. escrow_accounts
# ---------------------------------------------------------------------------
class EscrowAccount(TimestampMixin, Base):
    """Funds held for an accepted offer, released milestone by milestone."""

    __tablename__ = "escrow_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("offers.id"),
        nullable=False,
        unique=True,
        comment="The accepted offer this account settles (one-to-one)",
    )
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    released_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Sum of released milestones; never decreases",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Guarded by EscrowAccountStateMachine",
    )

    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        cascade="all, delete-orphan",
        order_by="Milestone.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'FUNDED', 'RELEASED', 'REFUNDED', 'DISPUTED')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("total_amount > 0", name="ck_escrow_positive_total"),
        CheckConstraint("released_amount >= 0", name="ck_escrow_released_non_negative"),
        CheckConstraint(
            "released_amount <= total_amount",
            name="ck_escrow_released_within_total",
        ),
        Index("idx_escrow_buyer", "buyer_id"),
        Index("idx_escrow_seller", "seller_id"),
        Index("idx_escrow_status", "status"),
    )

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.released_amount

    def __repr__(self) -> str:
        return (
            f"<EscrowAccount id={self.id} status={self.status} "
            f"released={self.released_amount}/{self.total_amount}>"
        )


# ---------------------------------------------------------------------------
# 4. milestones
# ---------------------------------------------------------------------------
class Milestone(TimestampMixin, Base):
    """A portion of an escrow account, released after buyer approval."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    escrow_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Zero-based order within the escrow account",
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Guarded by MilestoneStateMachine",
    )
    buyer_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'RELEASED')",
            name="ck_milestone_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint(
            "status <> 'RELEASED' OR buyer_approved",
            name="ck_milestone_release_requires_approval",
        ),
        UniqueConstraint("escrow_account_id", "position", name="uq_milestone_position"),
        Index("idx_milestone_escrow", "escrow_account_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 5. settlement_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class SettlementEvent(Base):
    """Immutable audit record of one state transition.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are issued
    at the application level.
    """

    __tablename__ = "settlement_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    entity_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="EntityType enum value (BUYER_REQUEST, OFFER, ...)",
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("idx_event_entity", "entity_type", "entity_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SettlementEvent {self.entity_type}:{self.entity_id} "
            f"{self.event_type} {self.old_status}->{self.new_status}>"
        )
