"""Job entry points shared by the HTTP triggers, the scheduler and CLI scripts.

Each job opens its own SQLite connection, aiohttp session and (when
REDIS_URL is set) Redis client, and closes them when done.
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiohttp
from redis.asyncio import Redis

from ..storage.schema import connect
from ..storage.store import AttributionStore
from .ad_spend import AdSpendSummary, run_ad_spend_sync
from .service import OrderSyncService, SyncSummary
from .settlement import SettlementReconciler, SettlementSummary


logger = logging.getLogger(__name__)


@asynccontextmanager
async def job_resources(
    db_path: Optional[str | Path] = None,
) -> AsyncIterator[tuple[AttributionStore, aiohttp.ClientSession, Optional[Redis]]]:
    db_conn = connect(db_path)
    redis_url = os.getenv("REDIS_URL")
    redis = Redis.from_url(redis_url, decode_responses=False) if redis_url else None
    timeout = aiohttp.ClientTimeout(total=300, connect=30)

    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            yield AttributionStore(db_conn), session, redis
    finally:
        if redis is not None:
            await redis.aclose()
        db_conn.close()


async def run_order_sync_job(
    user_id: Optional[str] = None,
    connection_id: Optional[str] = None,
    lookback_days: Optional[int] = None,
    db_path: Optional[str | Path] = None,
) -> SyncSummary:
    async with job_resources(db_path) as (store, session, redis):
        service = OrderSyncService(store, session, redis=redis, lookback_days=lookback_days)
        return await service.run(user_id=user_id, connection_id=connection_id)


async def run_settlement_job(
    user_id: Optional[str] = None,
    connection_id: Optional[str] = None,
    db_path: Optional[str | Path] = None,
) -> SettlementSummary:
    async with job_resources(db_path) as (store, session, redis):
        reconciler = SettlementReconciler(store, session, redis=redis)
        return await reconciler.run(user_id=user_id, connection_id=connection_id)


async def run_ad_spend_job(db_path: Optional[str | Path] = None) -> AdSpendSummary:
    async with job_resources(db_path) as (store, session, _redis):
        return await run_ad_spend_sync(store, session)
