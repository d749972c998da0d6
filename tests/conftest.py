"""Shared test fixtures for the settlement engine test suite.

Provides:
    - A fresh on-disk SQLite database per test (several sessions can race
      against it, which an in-memory database cannot do)
    - A fixed, manually advanced clock
    - Recording and failing notifiers
    - Factory fixtures for buyer requests, offers and accepted deals
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from marketplace_settlement.config import Settings
from marketplace_settlement.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    init_db,
    session_scope,
)
from marketplace_settlement.schemas.settlement import BuyerRequestCreate, OfferCreate
from marketplace_settlement.services.buyer_request_service import BuyerRequestService
from marketplace_settlement.services.negotiation_service import NegotiationCoordinator

BUYER = "buyer-1"
SELLER = "seller-1"


# ---------------------------------------------------------------------------
# Test Doubles
# ---------------------------------------------------------------------------


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now = self._now + delta


@dataclass
class SentNotification:
    user_id: str
    title: str
    message: str
    payload: dict[str, Any] | None


@dataclass
class RecordingNotifier:
    sent: list[SentNotification] = field(default_factory=list)

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append(SentNotification(user_id, title, message, payload))

    def titles_for(self, user_id: str) -> list[str]:
        return [n.title for n in self.sent if n.user_id == user_id]


class FailingNotifier:
    async def notify(self, user_id, title, message, payload=None) -> None:
        raise ConnectionError("notification backend unavailable")


class SlowNotifier:
    async def notify(self, user_id, title, message, payload=None) -> None:
        await asyncio.sleep(5)


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        buyer_request_expiration_days=7,
        expiration_sweep_interval_minutes=10,
        notification_timeout_seconds=0.2,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 1, 12, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def slow_notifier() -> SlowNotifier:
    return SlowNotifier()


@pytest.fixture
def make_coordinator(session_factory, clock, settings):
    def _make(notifier) -> NegotiationCoordinator:
        return NegotiationCoordinator(
            session_factory=session_factory,
            notifier=notifier,
            clock=clock,
            settings=settings,
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator, notifier) -> NegotiationCoordinator:
    return make_coordinator(notifier)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_request(session_factory, clock, settings):
    """Create an OPEN buyer request (budget 100-200 unless overridden)."""

    async def _make(
        buyer_id: str = BUYER,
        budget_min: str = "100.00",
        budget_max: str = "200.00",
        **overrides: Any,
    ):
        fields = BuyerRequestCreate(
            title=overrides.pop("title", "Custom oak bookshelf"),
            description=overrides.pop("description", "Two metres tall, five shelves"),
            category_id=overrides.pop("category_id", 1),
            budget_min=Decimal(budget_min),
            budget_max=Decimal(budget_max),
            **overrides,
        )
        async with session_scope(session_factory) as session:
            service = BuyerRequestService(session, clock=clock, settings=settings)
            return await service.create(buyer_id, fields)

    return _make


@pytest.fixture
def offer_fields():
    def _fields(price: str = "150.00", **overrides: Any) -> OfferCreate:
        return OfferCreate(
            title=overrides.pop("title", "Solid oak, delivered"),
            description=overrides.pop("description", "Hand finished, includes delivery"),
            price=Decimal(price),
            **overrides,
        )

    return _fields


@pytest.fixture
def make_offer(coordinator, offer_fields):
    """Submit an offer through the coordinator and return its snapshot."""

    async def _make(buyer_request_id, seller_id: str = SELLER, price: str = "150.00"):
        return await coordinator.submit(buyer_request_id, seller_id, offer_fields(price))

    return _make
