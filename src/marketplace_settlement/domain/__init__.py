"""Domain layer: pure business rules with zero persistence dependencies."""

from marketplace_settlement.domain.enums import (
    BuyerRequestStatus,
    EntityType,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    OfferStatus,
)
from marketplace_settlement.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from marketplace_settlement.domain.state_machine import (
    BuyerRequestStateMachine,
    EscrowAccountStateMachine,
    MilestoneStateMachine,
    OfferStateMachine,
    fire_transition,
    validate_transition,
)

__all__ = [
    "BuyerRequestStatus",
    "EntityType",
    "EscrowStatus",
    "EventType",
    "MilestoneStatus",
    "OfferStatus",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "SettlementError",
    "ValidationError",
    "BuyerRequestStateMachine",
    "EscrowAccountStateMachine",
    "MilestoneStateMachine",
    "OfferStateMachine",
    "fire_transition",
    "validate_transition",
]
