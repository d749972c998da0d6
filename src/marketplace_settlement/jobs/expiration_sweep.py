"""Periodic expiration sweep for buyer requests.

One APScheduler interval job closes every OPEN buyer request whose
expiration has passed. The job is the same single set-based UPDATE the
service exposes, so it is safe to run alongside live acceptances: a
request accepted first is no longer OPEN and is skipped, and an acceptance
that arrives after the sweep commits fails with ConflictError.

Usage:
    sweeper = ExpirationSweepScheduler()
    sweeper.start()        # inside a running event loop
    ...
    sweeper.shutdown()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketplace_settlement.clock import Clock, SystemClock
from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.infrastructure.database.engine import session_scope
from marketplace_settlement.logging_config import bound_context, get_logger
from marketplace_settlement.services.buyer_request_service import BuyerRequestService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

SWEEP_JOB_ID = "buyer_request_expiration_sweep"


class ExpirationSweepScheduler:
    """Runs BuyerRequestService.sweep_expired on a fixed interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )

    async def run_once(self) -> int:
        """Sweep in one transaction and return how many requests were closed."""
        with bound_context(operation="buyer_request.sweep", actor="SYSTEM"):
            try:
                async with session_scope(self._session_factory) as session:
                    service = BuyerRequestService(
                        session, clock=self._clock, settings=self._settings
                    )
                    return await service.sweep_expired(self._clock.now())
            except Exception:
                logger.exception("buyer_request.sweep_failed")
                raise

    def setup_jobs(self) -> None:
        interval = self._settings.expiration_sweep_interval_minutes
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=interval, timezone="UTC"),
            id=SWEEP_JOB_ID,
            name="Buyer request expiration sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("jobs.sweep_scheduled", job_id=SWEEP_JOB_ID, interval_minutes=interval)

    def start(self) -> bool:
        """Schedule the sweep and start the scheduler. Must run inside an event loop.

        Returns False without scheduling anything when the sweep is disabled.
        """
        if not self._settings.expiration_sweep_enabled:
            logger.info("jobs.sweep_disabled")
            return False
        self.setup_jobs()
        self.scheduler.start()
        logger.info("jobs.scheduler_started")
        return True

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("jobs.scheduler_stopped")
