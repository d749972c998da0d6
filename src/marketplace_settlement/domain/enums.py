"""Domain enumerations for the settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy imports).
"""

from __future__ import annotations

import enum


class BuyerRequestStatus(enum.StrEnum):
    """Lifecycle states of a buyer request. CLOSED is absorbing."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class OfferStatus(enum.StrEnum):
    """Lifecycle states of a seller's offer.

    At most one offer per buyer request may be ACCEPTED.
    """

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow account.

    State transitions are enforced by EscrowAccountStateMachine.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    @classmethod
    def releasable(cls) -> tuple[EscrowStatus, ...]:
        """Statuses from which milestone funds may still be released."""
        return (cls.PENDING, cls.FUNDED)


class MilestoneStatus(enum.StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RELEASED = "RELEASED"


class EntityType(enum.StrEnum):
    """Kinds of records that appear in the settlement_events audit log."""

    BUYER_REQUEST = "BUYER_REQUEST"
    OFFER = "OFFER"
    ESCROW_ACCOUNT = "ESCROW_ACCOUNT"
    MILESTONE = "MILESTONE"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the settlement_events table.

    Every state transition produces exactly one event, written in the
    same transaction as the transition.
    """

    # Buyer request events
    REQUEST_CREATED = "REQUEST_CREATED"
    REQUEST_CLOSED = "REQUEST_CLOSED"
    REQUEST_EXPIRED = "REQUEST_EXPIRED"
    REQUEST_FULFILLED = "REQUEST_FULFILLED"
    REQUEST_REMOVED = "REQUEST_REMOVED"

    # Offer events
    OFFER_SUBMITTED = "OFFER_SUBMITTED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"

    # Escrow events
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_DISPUTED = "ESCROW_DISPUTED"
    ESCROW_DISPUTE_RESOLVED = "ESCROW_DISPUTE_RESOLVED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"

    # Milestone events
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_REJECTED = "MILESTONE_REJECTED"
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
