"""Order sync job: iterate connections, ingest each one, summarize.

One failing connection never fails the job; its outcome is recorded in
the per-connection detail and in ``sync_runs``.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

import aiohttp
from redis.asyncio import Redis

from ..connections.token_manager import TokenManager
from ..providers.base import default_raw_dir
from ..providers.exceptions import ConnectionNeedsReconnectError, ProviderError
from ..providers.registry import SUPPORTED_PROVIDERS, build_order_source, build_refresher
from ..schemas.records import ConnectionStatus, ExternalConnection
from ..storage.schema import record_sync_run, utc_now
from ..storage.store import AttributionStore
from .ingestion import ConnectionSyncResult, OrderIngestionService


logger = logging.getLogger(__name__)


DEFAULT_LOOKBACK_DAYS = 7
DEFAULT_CONCURRENCY = 4
JOB_NAME = "order_sync"


@dataclass
class SyncSummary:
    """Job-level totals plus per-connection detail."""

    synced: int = 0
    matched: int = 0
    errors: int = 0
    connections: list[ConnectionSyncResult] = field(default_factory=list)

    def add(self, result: ConnectionSyncResult) -> None:
        self.connections.append(result)
        self.synced += result.synced
        self.matched += result.matched
        self.errors += result.errors

    @property
    def needs_reconnect(self) -> list[str]:
        return [r.connection_id for r in self.connections if r.status == "needs_reconnect"]

    def to_dict(self) -> dict:
        return {
            "synced": self.synced,
            "matched": self.matched,
            "errors": self.errors,
            "needs_reconnect": self.needs_reconnect,
            "connections": [r.to_dict() for r in self.connections],
        }


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class OrderSyncService:
    """Run the ingest -> match -> aggregate pipeline over connections."""

    def __init__(
        self,
        store: AttributionStore,
        session: aiohttp.ClientSession,
        redis: Optional[Redis] = None,
        raw_dir: Optional[Path] = None,
        lookback_days: Optional[int] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
        source_factory: Callable = build_order_source,
        refresher_factory: Callable = build_refresher,
    ) -> None:
        """Initialize sync service.

        Args:
            store: Attribution store
            session: Shared aiohttp session for provider calls
            redis: Optional redis.asyncio client for token refresh locks
            raw_dir: Raw JSONL audit directory (defaults to CLICKMATCH_RAW_DIR)
            lookback_days: Window length (defaults to CLICKMATCH_SYNC_LOOKBACK_DAYS)
            concurrency: Parallel connections (defaults to CLICKMATCH_SYNC_CONCURRENCY)
            clock: Current time source
            source_factory: Builds the order source for a connection
            refresher_factory: Builds the token refresher for a provider
        """
        self.store = store
        self.session = session
        self.raw_dir = raw_dir if raw_dir is not None else default_raw_dir()
        self.lookback_days = lookback_days or _env_int(
            "CLICKMATCH_SYNC_LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS
        )
        self.concurrency = concurrency or _env_int(
            "CLICKMATCH_SYNC_CONCURRENCY", DEFAULT_CONCURRENCY
        )
        self.clock = clock
        self.source_factory = source_factory
        self.token_manager = TokenManager(
            store,
            refresher_for=lambda provider: refresher_factory(provider, session),
            redis=redis,
            clock=clock,
        )
        self.ingestion = OrderIngestionService(store)

    async def run(
        self,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> SyncSummary:
        """Sync every matching storefront connection.

        Args:
            user_id: Restrict to one user's connections
            connection_id: Restrict to one connection
            since: Window start (defaults to now - lookback)
            until: Window end (defaults to now)

        Returns:
            SyncSummary with {synced, matched, errors} and per-connection detail
        """
        until = until or self.clock()
        since = since or until - timedelta(days=self.lookback_days)

        connections = self.store.list_connections(
            user_id=user_id,
            connection_id=connection_id,
            providers=list(SUPPORTED_PROVIDERS),
        )
        logger.info(
            "Starting order sync: connections=%s window=%s..%s",
            len(connections),
            since.isoformat(),
            until.isoformat(),
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(connection: ExternalConnection) -> ConnectionSyncResult:
            async with semaphore:
                return await self.sync_connection(connection, since, until)

        results = await asyncio.gather(*(_bounded(c) for c in connections))

        summary = SyncSummary()
        for result in results:
            summary.add(result)

        logger.info(
            "Order sync finished: synced=%s matched=%s errors=%s needs_reconnect=%s",
            summary.synced,
            summary.matched,
            summary.errors,
            len(summary.needs_reconnect),
        )
        return summary

    async def sync_connection(
        self,
        connection: ExternalConnection,
        since: datetime,
        until: datetime,
    ) -> ConnectionSyncResult:
        """Sync one connection; never raises."""
        result = ConnectionSyncResult(connection.id, connection.provider)

        if connection.status == ConnectionStatus.NEEDS_RECONNECT:
            result.status = "needs_reconnect"
            result.message = "awaiting re-authentication"
            logger.info("Skipping connection %s: needs_reconnect", connection.id)
            self._record(result)
            return result

        if connection.status == ConnectionStatus.PENDING_VERIFICATION:
            result.status = "skipped"
            result.message = "pending verification"
            self._record(result)
            return result

        try:
            source = self.source_factory(
                connection,
                self.session,
                self.token_manager.token_source(connection.id),
                raw_dir=self.raw_dir,
            )
            result = await self.ingestion.ingest_connection(connection, source, since, until)
            self.store.touch_last_sync(connection.id, self.clock())

        except ConnectionNeedsReconnectError as exc:
            result.status = "needs_reconnect"
            result.message = exc.reason
            logger.warning("Connection %s needs reconnect: %s", connection.id, exc.reason)

        except (ProviderError, ValueError) as exc:
            result.status = "failed"
            result.errors += 1
            result.message = str(exc)[:500]
            logger.error(
                "Order sync failed for connection %s: %s", connection.id, exc, exc_info=True
            )

        except Exception as exc:
            result.status = "failed"
            result.errors += 1
            result.message = f"{type(exc).__name__}: {exc}"[:500]
            logger.error(
                "Unexpected error syncing connection %s: %s", connection.id, exc, exc_info=True
            )

        self._record(result)
        return result

    def _record(self, result: ConnectionSyncResult) -> None:
        record_sync_run(
            self.store.db_conn,
            JOB_NAME,
            result.connection_id,
            result.status,
            synced=result.synced,
            matched=result.matched,
            errors=result.errors,
            details=result.message,
        )
