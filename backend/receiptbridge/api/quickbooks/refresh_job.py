"""
Background QuickBooks token refresh.

Keeps refresh tokens of inactive tenants from aging out. The sweep runs
inside the API process, daily at ``QB_REFRESH_JOB_HOUR`` UTC, and shares the
process-wide ``TokenLifecycleManager`` so it takes the same per-tenant locks
as request-time refreshes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from receiptbridge.core.config import (
    QB_REFRESH_JOB_HOUR,
    QB_REFRESH_JOB_ON_STARTUP,
    QB_REFRESH_JOB_STARTUP_DELAY,
)
from .deps import get_token_manager
from .errors import QuickBooksError
from .schemas import Connection
from .tokens import TokenLifecycleManager, as_utc, refresh_token_expiry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def is_stale(connection: Connection, manager: TokenLifecycleManager) -> bool:
    now = manager.clock()
    policy = manager.policy
    if now - as_utc(connection.refresh_token_created_at) < policy.background_threshold:
        return False
    last = as_utc(connection.last_refreshed_at)
    if last is not None and now - last < policy.background_min_spacing:
        return False
    return refresh_token_expiry(connection) > now


async def run_background_refresh_sweep(
    manager: Optional[TokenLifecycleManager] = None,
    trigger: str = "scheduled",
) -> SweepResult:
    manager = manager or get_token_manager()
    policy = manager.policy
    now = manager.clock()
    result = SweepResult()

    logger.info("Starting QuickBooks token refresh sweep (trigger: %s)", trigger)

    stale = await manager.store.list_stale(
        created_before=now - policy.background_threshold,
        refreshed_before=now - policy.background_min_spacing,
        now=now,
        limit=policy.sweep_batch_size,
    )
    if not stale:
        logger.info("No stale QuickBooks connections found")
        return result

    logger.info("Found %s stale QuickBooks connection(s) to refresh", len(stale))

    for index, connection in enumerate(stale):
        if index > 0:
            await manager.sleep(policy.sweep_delay)

        result.processed += 1
        age_days = (now - as_utc(connection.refresh_token_created_at)).days
        try:
            await manager.refresh_tenant(
                connection.tenant_id, only_if=lambda c: is_stale(c, manager)
            )
        except QuickBooksError as e:
            result.failed += 1
            msg = f"{connection.tenant_id} failed (token age: {age_days} days): {e}"
            result.errors.append(msg)
            logger.error("Background refresh: %s", msg)
            continue

        result.succeeded += 1
        logger.info("Background refresh: %s refreshed (token age: %s days)", connection.tenant_id, age_days)

    logger.info(
        "Background refresh complete: %s succeeded, %s failed out of %s",
        result.succeeded, result.failed, result.processed,
    )
    return result


def seconds_until(hour: int, now: datetime) -> float:
    run_at = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if run_at <= now:
        run_at += timedelta(days=1)
    return (run_at - now).total_seconds()


class RefreshScheduler:
    """Runs the sweep once a day, and optionally shortly after startup."""

    def __init__(
        self,
        manager: Optional[TokenLifecycleManager] = None,
        hour: int = QB_REFRESH_JOB_HOUR,
        run_on_startup: bool = QB_REFRESH_JOB_ON_STARTUP,
        startup_delay: float = QB_REFRESH_JOB_STARTUP_DELAY,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.hour = hour
        self.run_on_startup = run_on_startup
        self.startup_delay = startup_delay
        self.sleep = sleep
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._sweeping = False
        self._stopping = False

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())
        logger.info("QuickBooks token refresh sweep scheduled daily at %02d:00 UTC", self.hour)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stopping = True
        # a sweep in progress finishes so no rotated token is left unsaved
        if not self._sweeping:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self, trigger: str = "manual") -> Optional[SweepResult]:
        self._sweeping = True
        try:
            return await run_background_refresh_sweep(self.manager, trigger=trigger)
        except Exception:
            logger.exception("QuickBooks token refresh sweep (trigger: %s) failed", trigger)
            return None
        finally:
            self._sweeping = False

    async def _run(self) -> None:
        if self.run_on_startup:
            await self.sleep(self.startup_delay)
            await self.run_once("startup")
        while not self._stopping:
            await self.sleep(seconds_until(self.hour, self.clock()))
            await self.run_once("scheduled")
