#!/usr/bin/env python3
"""Marketplace Settlement: End-to-End Simulation.

Walks three scenarios through the real services and database:

    Scenario 1: Negotiate and Settle
        - Buyer posts a request with a 100-200 budget
        - Three sellers offer 150, 180 and 250
        - Buyer accepts the 150 offer; the other two are rejected
        - Escrow opens with milestones 45 / 60 / 45, each approved and released

    Scenario 2: Double Accept
        - Two offers on the same request are accepted at the same moment
        - Exactly one acceptance wins; the other gets a conflict

    Scenario 3: Expiry
        - A request passes its expiry date and the sweep closes it
        - A late offer is refused

Usage:
    # Option A: PostgreSQL from DATABASE_URL / .env
    python simulation.py

    # Option B: throwaway SQLite file (no server needed)
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_settlement.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from marketplace_settlement.config import Settings, get_settings  # noqa: E402
from marketplace_settlement.domain.enums import EntityType  # noqa: E402
from marketplace_settlement.domain.exceptions import SettlementError  # noqa: E402
from marketplace_settlement.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    build_session_factory,
    init_db,
    session_scope,
)
from marketplace_settlement.infrastructure.database.repositories import (  # noqa: E402
    EventRepository,
)
from marketplace_settlement.schemas.settlement import (  # noqa: E402
    BuyerRequestCreate,
    MilestoneSpec,
    OfferCreate,
)
from marketplace_settlement.services.buyer_request_service import (  # noqa: E402
    BuyerRequestService,
)
from marketplace_settlement.services.escrow_service import EscrowService  # noqa: E402
from marketplace_settlement.services.negotiation_service import (  # noqa: E402
    NegotiationCoordinator,
)

BUYER = "buyer-ada"
SELLERS = ("seller-bo", "seller-cy", "seller-di")

# Module-level state
_engine = None
_session_factory = None
_settings: Settings | None = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Create the engine and tables for this run."""
    global _engine, _session_factory, _settings

    if use_sqlite:
        # A file rather than :memory: so concurrent sessions see one database
        db_path = Path(tempfile.mkdtemp(prefix="settlement-")) / "simulation.db"
        _settings = Settings(app_env="development", database_url=f"sqlite+aiosqlite:///{db_path}")
    else:
        _settings = get_settings()

    _engine = build_engine(_settings)
    _session_factory = build_session_factory(_engine)
    await init_db(_engine)
    logger.info("simulation.database_ready", dialect=_engine.dialect.name)


async def shutdown_database() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def coordinator() -> NegotiationCoordinator:
    return NegotiationCoordinator(session_factory=_session_factory, settings=_settings)


async def post_request(title: str, budget_min: str, budget_max: str):
    async with session_scope(_session_factory) as session:
        service = BuyerRequestService(session, settings=_settings)
        return await service.create(
            BUYER,
            BuyerRequestCreate(
                title=title,
                description=f"{title}, see attached sketch",
                category_id=3,
                budget_min=Decimal(budget_min),
                budget_max=Decimal(budget_max),
            ),
        )


def offer(price: str, pitch: str) -> OfferCreate:
    return OfferCreate(title=pitch, description=f"{pitch} for {price}", price=Decimal(price))


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_account(account) -> None:
    print(f"  Escrow {account.id} [{account.status}]")
    print(f"  Released {account.released_amount} of {account.total_amount}")
    for milestone in account.milestones:
        print(f"    #{milestone.position} {milestone.title:<12} {milestone.amount:>8} "
              f"{milestone.status}")


async def print_audit_trail(entity_type: EntityType, entity_id) -> None:
    """Print the recorded events for one entity."""
    async with session_scope(_session_factory) as session:
        events = await EventRepository(session).get_for_entity(entity_type, entity_id)
    print(f"\n  Audit trail ({entity_type.value}):")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "-"
        print(f"    {i}. [{evt.event_type}] {old} -> {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Negotiate and Settle
# ===========================================================================
async def scenario_1_negotiate_and_settle() -> None:
    banner("SCENARIO 1: Negotiate and Settle")
    negotiation = coordinator()

    section("Step 1: Buyer posts a request (budget 100-200)")
    request = await post_request("Walnut dining table", "100.00", "200.00")
    print(f"  Request {request.id} [{request.status}] expires {request.expires_at:%Y-%m-%d}")

    section("Step 2: Sellers make offers")
    offers = []
    for seller_id, price in zip(SELLERS, ("150.00", "180.00", "250.00"), strict=True):
        snapshot = await negotiation.submit(request.id, seller_id, offer(price, "Walnut table"))
        offers.append(snapshot)
        print(f"  {seller_id} offered {snapshot.price} [{snapshot.status}]")

    section("Step 3: Buyer accepts the 150 offer with three milestones")
    result = await negotiation.accept(
        offers[0].id,
        BUYER,
        milestones=[
            MilestoneSpec(title="Materials", amount=Decimal("45.00")),
            MilestoneSpec(title="Build", amount=Decimal("60.00")),
            MilestoneSpec(title="Delivery", amount=Decimal("45.00")),
        ],
    )
    print(f"  Accepted {result.offer.id}; rejected {len(result.rejected_offer_ids)} others")
    print_account(result.escrow_account)

    section("Step 4: Buyer approves and seller releases each milestone")
    seller_id = result.offer.seller_id
    for milestone in result.escrow_account.milestones:
        async with session_scope(_session_factory) as session:
            escrow = EscrowService(session)
            await escrow.approve_milestone(milestone.id, BUYER, approved=True)
        async with session_scope(_session_factory) as session:
            released = await EscrowService(session).release_funds(milestone.id, seller_id)
        print(f"  Released {milestone.title}: account now "
              f"{released.account.released_amount} [{released.account.status}]")

    section("Step 5: Final state")
    print_account(released.account)
    await print_audit_trail(EntityType.ESCROW_ACCOUNT, result.escrow_account.id)


# ===========================================================================
# Scenario 2: Double Accept
# ===========================================================================
async def scenario_2_double_accept() -> None:
    banner("SCENARIO 2: Double Accept")
    negotiation = coordinator()

    request = await post_request("Oak bookshelf", "80.00", "120.00")
    first = await negotiation.submit(request.id, SELLERS[0], offer("95.00", "Oak shelf"))
    second = await negotiation.submit(request.id, SELLERS[1], offer("110.00", "Oak shelf"))

    section("Both offers accepted at once")
    outcomes = await asyncio.gather(
        negotiation.accept(first.id, BUYER),
        negotiation.accept(second.id, BUYER),
        return_exceptions=True,
    )
    for submitted, outcome in zip((first, second), outcomes, strict=True):
        if isinstance(outcome, SettlementError):
            print(f"  Offer {submitted.id}: refused ({outcome.code})")
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            print(f"  Offer {submitted.id}: ACCEPTED, escrow {outcome.escrow_account.id}")

    await print_audit_trail(EntityType.BUYER_REQUEST, request.id)


# ===========================================================================
# Scenario 3: Expiry
# ===========================================================================
async def scenario_3_expiry() -> None:
    banner("SCENARIO 3: Expiry")
    negotiation = coordinator()

    request = await post_request("Pine desk", "50.00", "90.00")
    print(f"  Request {request.id} expires {request.expires_at:%Y-%m-%d %H:%M}")

    section("The sweep runs after the expiry date")
    async with session_scope(_session_factory) as session:
        service = BuyerRequestService(session, settings=_settings)
        closed = await service.sweep_expired(now=request.expires_at + timedelta(minutes=1))
    print(f"  Sweep closed {closed} request(s)")

    section("A late offer arrives")
    try:
        await negotiation.submit(request.id, SELLERS[2], offer("70.00", "Pine desk"))
    except SettlementError as exc:
        print(f"  Refused: {exc.code} ({exc.message})")

    await print_audit_trail(EntityType.BUYER_REQUEST, request.id)


SCENARIOS = {
    1: scenario_1_negotiate_and_settle,
    2: scenario_2_double_accept,
    3: scenario_3_expiry,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    """Run one scenario, or all of them when ``scenario`` is 0."""
    await init_database(use_sqlite=use_sqlite)
    try:
        if scenario == 0:
            for number in sorted(SCENARIOS):
                await SCENARIOS[number]()
            print("\n" + "=" * 70)
            print("  ALL SCENARIOS COMPLETED")
            print("=" * 70 + "\n")
        elif scenario in SCENARIOS:
            await SCENARIOS[scenario]()
        else:
            print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Settlement Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL.",
    )
    args = parser.parse_args()
    asyncio.run(run(scenario=args.scenario, use_sqlite=args.sqlite))
