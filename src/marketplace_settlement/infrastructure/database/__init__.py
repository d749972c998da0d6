"""Database infrastructure: engine, ORM models, and repositories."""

from marketplace_settlement.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
    session_scope,
)
from marketplace_settlement.infrastructure.database.orm_models import (
    Base,
    BuyerRequest,
    EscrowAccount,
    Milestone,
    Offer,
    SettlementEvent,
)
from marketplace_settlement.infrastructure.database.repositories import (
    BuyerRequestRepository,
    EscrowRepository,
    EventRepository,
    OfferRepository,
)

__all__ = [
    "Base",
    "BuyerRequest",
    "EscrowAccount",
    "Milestone",
    "Offer",
    "SettlementEvent",
    "BuyerRequestRepository",
    "EscrowRepository",
    "EventRepository",
    "OfferRepository",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
    "session_scope",
]
