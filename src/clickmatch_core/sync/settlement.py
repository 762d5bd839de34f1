"""Settlement reconciliation for marketplace orders.

Attaches payout figures to ingested orders that reached a
settlement-eligible status. Attribution columns and click events are
never read or written here.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import aiohttp
from redis.asyncio import Redis

from ..connections.token_manager import TokenManager
from ..providers.base import default_raw_dir
from ..providers.exceptions import ConnectionNeedsReconnectError, ProviderError
from ..providers.registry import SETTLEMENT_PROVIDERS, build_order_source, build_refresher
from ..schemas.records import SETTLEMENT_ELIGIBLE_STATUSES, ConnectionStatus, ExternalConnection
from ..storage.schema import record_sync_run
from ..storage.store import AttributionStore
from .ingestion import ConnectionSyncResult


logger = logging.getLogger(__name__)


JOB_NAME = "settlement"


@dataclass
class SettlementSummary:
    updated: int = 0
    errors: int = 0
    connections: list[ConnectionSyncResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "updated": self.updated,
            "errors": self.errors,
            "connections": [r.to_dict() for r in self.connections],
        }


class SettlementReconciler:
    """Fetch and store settlements for eligible unsettled orders."""

    def __init__(
        self,
        store: AttributionStore,
        session: aiohttp.ClientSession,
        redis: Optional[Redis] = None,
        raw_dir: Optional[Path] = None,
        source_factory: Callable = build_order_source,
        refresher_factory: Callable = build_refresher,
    ) -> None:
        self.store = store
        self.session = session
        self.raw_dir = raw_dir if raw_dir is not None else default_raw_dir()
        self.source_factory = source_factory
        self.token_manager = TokenManager(
            store,
            refresher_for=lambda provider: refresher_factory(provider, session),
            redis=redis,
        )

    async def run(
        self,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ) -> SettlementSummary:
        """Reconcile every settlement-capable connection sequentially."""
        summary = SettlementSummary()
        connections = self.store.list_connections(
            user_id=user_id,
            connection_id=connection_id,
            providers=list(SETTLEMENT_PROVIDERS),
        )

        for connection in connections:
            result = await self.reconcile_connection(connection)
            summary.connections.append(result)
            summary.updated += result.synced
            summary.errors += result.errors

        logger.info(
            "Settlement reconciliation finished: updated=%s errors=%s",
            summary.updated,
            summary.errors,
        )
        return summary

    async def reconcile_connection(self, connection: ExternalConnection) -> ConnectionSyncResult:
        result = ConnectionSyncResult(connection.id, connection.provider)

        if connection.status == ConnectionStatus.NEEDS_RECONNECT:
            result.status = "needs_reconnect"
            self._record(result)
            return result

        orders = self.store.orders_awaiting_settlement(
            connection.id, SETTLEMENT_ELIGIBLE_STATUSES
        )
        if not orders:
            logger.debug("No orders awaiting settlement on %s", connection.id)
            return result

        try:
            source = self.source_factory(
                connection,
                self.session,
                self.token_manager.token_source(connection.id),
                raw_dir=self.raw_dir,
            )
            settlements = await source.fetch_settlements(
                [order.external_line_item_id for order in orders]
            )
        except ConnectionNeedsReconnectError as exc:
            result.status = "needs_reconnect"
            result.message = exc.reason
            self._record(result)
            return result
        except (ProviderError, ValueError) as exc:
            result.status = "failed"
            result.errors += 1
            result.message = str(exc)[:500]
            logger.error(
                "Settlement fetch failed for connection %s: %s", connection.id, exc, exc_info=True
            )
            self._record(result)
            return result
        except Exception as exc:
            result.status = "failed"
            result.errors += 1
            result.message = f"{type(exc).__name__}: {exc}"[:500]
            logger.error(
                "Unexpected error fetching settlements for %s: %s", connection.id, exc, exc_info=True
            )
            self._record(result)
            return result

        by_line_item = {s.external_line_item_id: s for s in settlements}
        for order in orders:
            settlement = by_line_item.get(order.external_line_item_id)
            if settlement is None:
                continue
            if self.store.apply_settlement(order.id, settlement):
                result.synced += 1

        logger.info(
            "Connection %s: %s/%s orders settled",
            connection.id,
            result.synced,
            len(orders),
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
            errors=result.errors,
            details=result.message,
        )
