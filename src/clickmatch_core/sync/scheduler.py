"""In-process job schedule using APScheduler.

Jobs:
- Order sync (every CLICKMATCH_SYNC_INTERVAL_MINUTES, default 5)
- Settlement reconciliation (every 6 hours)
- Ad-spend collection (hourly)

``max_instances=1`` and ``coalesce=True`` keep a slow run from piling up.
"""
import logging
import os
from datetime import timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .jobs import run_ad_spend_job, run_order_sync_job, run_settlement_job


logger = logging.getLogger(__name__)


DEFAULT_SYNC_INTERVAL_MINUTES = 5
SETTLEMENT_INTERVAL_HOURS = 6
AD_SPEND_INTERVAL_HOURS = 1


class SyncScheduler:
    """Schedule the sync, settlement and ad-spend jobs on the running loop.

    Usage:
        scheduler = SyncScheduler()
        scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(self, sync_interval_minutes: Optional[int] = None) -> None:
        self.sync_interval_minutes = sync_interval_minutes or int(
            os.getenv("CLICKMATCH_SYNC_INTERVAL_MINUTES", DEFAULT_SYNC_INTERVAL_MINUTES)
        )
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register jobs and start the scheduler (requires a running event loop)."""
        if self.running:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

        self._add_job(
            "order_sync",
            self._run_order_sync,
            IntervalTrigger(minutes=self.sync_interval_minutes),
        )
        self._add_job(
            "settlement",
            self._run_settlements,
            IntervalTrigger(hours=SETTLEMENT_INTERVAL_HOURS),
        )
        self._add_job(
            "ad_spend",
            self._run_ad_spend,
            IntervalTrigger(hours=AD_SPEND_INTERVAL_HOURS),
        )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started (order sync every %s min)", self.sync_interval_minutes
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Sync scheduler stopped")
        self._scheduler = None

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def _add_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[None]],
        trigger: IntervalTrigger,
    ) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    # Job bodies MUST be exception-safe; errors are logged, never raised.

    async def _run_order_sync(self) -> None:
        try:
            summary = await run_order_sync_job()
            logger.info("Scheduled order sync: %s", summary.to_dict())
        except Exception as exc:
            logger.error("Scheduled order sync failed: %s", exc, exc_info=True)

    async def _run_settlements(self) -> None:
        try:
            summary = await run_settlement_job()
            logger.info("Scheduled settlement run: %s", summary.to_dict())
        except Exception as exc:
            logger.error("Scheduled settlement run failed: %s", exc, exc_info=True)

    async def _run_ad_spend(self) -> None:
        try:
            summary = await run_ad_spend_job()
            logger.info("Scheduled ad-spend run: %s", summary.to_dict())
        except Exception as exc:
            logger.error("Scheduled ad-spend run failed: %s", exc, exc_info=True)
