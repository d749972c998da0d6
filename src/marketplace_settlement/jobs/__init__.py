"""Background jobs run on the APScheduler event-loop scheduler."""

from marketplace_settlement.jobs.expiration_sweep import (
    SWEEP_JOB_ID,
    ExpirationSweepScheduler,
)

__all__ = ["SWEEP_JOB_ID", "ExpirationSweepScheduler"]
