"""Best-effort notifications to buyers and sellers.

Delivery itself (email, push, chat) lives outside this package behind the
``Notifier`` protocol. Notifications are sent only after the settlement
transaction has committed, and a failed or slow notifier never surfaces to
the caller: ``dispatch`` retries transient connection errors with tenacity,
bounds the whole attempt by a timeout, then logs the failure and moves on.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_settlement.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: writes each notification to the structured log."""

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "notification.sent",
            user_id=user_id,
            title=title,
            message=message,
            payload=payload or {},
        )


async def _deliver(
    notifier: Notifier,
    user_id: str,
    title: str,
    message: str,
    payload: dict[str, Any] | None,
    attempts: int,
) -> None:
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.1, max=1),
        retry=retry_if_exception_type(ConnectionError),
        reraise=True,
    ):
        with attempt:
            await notifier.notify(user_id, title, message, payload)


async def dispatch(
    notifier: Notifier,
    user_id: str,
    title: str,
    message: str,
    payload: dict[str, Any] | None = None,
    timeout: float = 5.0,
    attempts: int = 3,
) -> bool:
    """Send one notification, bounded by ``timeout`` across all attempts.

    Returns False (after logging a warning) instead of raising when the
    notifier fails or times out.
    """
    try:
        await asyncio.wait_for(
            _deliver(notifier, user_id, title, message, payload, attempts),
            timeout=timeout,
        )
    except TimeoutError:
        logger.warning("notification.timeout", user_id=user_id, title=title, timeout=timeout)
        return False
    except Exception as exc:
        logger.warning(
            "notification.failed",
            user_id=user_id,
            title=title,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return False
    return True
