"""Order ingestion: normalize, upsert, match and aggregate per order line.

All writes for one order line happen in one transaction, in order:
product upsert -> order insert (with attribution) -> click conversion ->
link/campaign increments. Re-ingesting a known line only refreshes its
status and amounts.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from ..attribution.aggregates import AggregateUpdater
from ..attribution.matcher import AttributionMatcher
from ..providers.base import ProviderClient
from ..providers.exceptions import OrderPayloadError
from ..providers.normalizer import normalize_order
from ..providers.registry import mapping_for
from ..schemas.records import AttributionStrategy, ExternalConnection, NormalizedOrder
from ..storage.schema import utc_now
from ..storage.store import AttributionStore


logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    """What happened to one order line."""

    MATCHED = "matched"
    UNATTRIBUTED = "unattributed"
    UPDATED = "updated"


@dataclass
class ConnectionSyncResult:
    """Per-connection outcome of a sync pass."""

    connection_id: str
    provider: str
    status: str = "success"
    synced: int = 0
    matched: int = 0
    errors: int = 0
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "provider": self.provider,
            "status": self.status,
            "synced": self.synced,
            "matched": self.matched,
            "errors": self.errors,
            "message": self.message,
        }


class OrderIngestionService:
    """Ingest normalized orders for one connection at a time."""

    def __init__(
        self,
        store: AttributionStore,
        matcher: Optional[AttributionMatcher] = None,
        updater: Optional[AggregateUpdater] = None,
    ) -> None:
        self.store = store
        self.matcher = matcher or AttributionMatcher(store)
        self.updater = updater or AggregateUpdater(store)

    def ingest_order(self, order: NormalizedOrder, now: Optional[datetime] = None) -> IngestOutcome:
        """Upsert one order line; attribute it only when it is new."""
        with self.store.transaction():
            product_id = None
            if order.external_product_id:
                product_id = self.store.upsert_product(
                    order.connection_id,
                    order.user_id,
                    order.external_product_id,
                    name=order.product_name,
                    price=order.product_price,
                )

            existing = self.store.get_order(*order.composite_key)
            if existing is not None:
                self.store.update_order_mutable_fields(order)
                return IngestOutcome.UPDATED

            match = self.matcher.match(order, product_id=product_id, now=now)
            order_id = self.store.insert_order(
                order,
                product_id=product_id,
                tracking_link_id=match.link.id if match.link else None,
                click_id=match.click.click_id if match.click else None,
                campaign_id=match.campaign.id if match.campaign else None,
                attribution_strategy=match.strategy.value,
            )

            if order_id is None:
                # Inserted concurrently since our read
                self.store.update_order_mutable_fields(order)
                return IngestOutcome.UPDATED

            if not match.matched:
                return IngestOutcome.UNATTRIBUTED

            converted = self.updater.apply(
                order_id, match, order.total_amount, converted_at=now or utc_now()
            )
            if not converted:
                self.store.clear_order_attribution(order_id, AttributionStrategy.NONE.value)
                return IngestOutcome.UNATTRIBUTED

            logger.info(
                "Order %s/%s attributed to link %s (%s)",
                order.external_order_id,
                order.external_line_item_id,
                match.link.id if match.link else match.click.tracking_link_id,
                match.strategy.value,
            )
            return IngestOutcome.MATCHED

    def ingest_payloads(
        self,
        connection: ExternalConnection,
        raw_orders: list[dict],
        result: Optional[ConnectionSyncResult] = None,
    ) -> ConnectionSyncResult:
        """Normalize and ingest raw provider orders; per-order errors are counted."""
        result = result or ConnectionSyncResult(connection.id, connection.provider)
        mapping = mapping_for(connection.provider)

        for raw_order in raw_orders:
            try:
                lines = normalize_order(raw_order, mapping, connection)
            except (OrderPayloadError, ValidationError) as exc:
                result.errors += 1
                logger.warning("Skipping malformed order on %s: %s", connection.id, exc)
                continue
            except Exception as exc:
                result.errors += 1
                logger.error(
                    "Unexpected error normalizing order on %s: %s", connection.id, exc, exc_info=True
                )
                continue

            for line in lines:
                try:
                    outcome = self.ingest_order(line)
                except Exception as exc:
                    result.errors += 1
                    logger.error(
                        "Failed to ingest order %s/%s on %s: %s",
                        line.external_order_id,
                        line.external_line_item_id,
                        connection.id,
                        exc,
                        exc_info=True,
                    )
                    continue

                result.synced += 1
                if outcome == IngestOutcome.MATCHED:
                    result.matched += 1

        if result.errors:
            result.status = "partial"
        return result

    async def ingest_connection(
        self,
        connection: ExternalConnection,
        source: ProviderClient,
        since: datetime,
        until: datetime,
    ) -> ConnectionSyncResult:
        """Fetch the window from the provider and ingest every order.

        Provider errors while listing propagate to the caller.
        """
        raw_orders = await source.fetch_orders(since, until)
        result = self.ingest_payloads(connection, raw_orders)
        logger.info(
            "Connection %s (%s): synced=%s matched=%s errors=%s",
            connection.id,
            connection.provider,
            result.synced,
            result.matched,
            result.errors,
        )
        return result
