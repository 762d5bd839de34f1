"""Attribution store - raw SQL access to links, clicks, connections and orders.

Pipeline writes (product/order upserts, click conversion, aggregate
increments) do not commit; callers group them with ``transaction()`` so an
order's ingest, conversion and aggregate update land together.
Standalone writes commit on their own.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from ..schemas.records import (
    Campaign,
    ClickEvent,
    ConnectionStatus,
    ExternalConnection,
    LinkStatus,
    NormalizedOrder,
    OrderStatus,
    SettlementInfo,
    StoredOrder,
    TrackingLink,
)
from .schema import format_ts, utc_now


logger = logging.getLogger(__name__)


ROAS_SQL = "CASE WHEN spent > 0 THEN CAST(ROUND(revenue * 100.0 / spent) AS INTEGER) ELSE 0 END"


class AttributionStore:
    """SQLite-backed persistence for the attribution pipeline."""

    def __init__(self, db_conn: sqlite3.Connection) -> None:
        """Initialize store.

        Args:
            db_conn: SQLite connection (row_factory=sqlite3.Row)
        """
        self.db_conn = db_conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on success, roll back on any exception."""
        try:
            yield
        except BaseException:
            self.db_conn.rollback()
            raise
        else:
            self.db_conn.commit()

    # ------------------------------------------------------------------
    # Tracking links
    # ------------------------------------------------------------------

    def create_link(self, link: TrackingLink) -> None:
        self.db_conn.execute(
            """
            INSERT INTO tracking_links (
                id, user_id, target_url, utm_source, utm_medium, utm_campaign,
                product_id, campaign_id, status, clicks, conversions, revenue,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                link.id,
                link.user_id,
                link.target_url,
                link.utm_source,
                link.utm_medium,
                link.utm_campaign,
                link.product_id,
                link.campaign_id,
                link.status.value,
                link.clicks,
                link.conversions,
                link.revenue,
                format_ts(link.created_at or utc_now()),
            ),
        )
        self.db_conn.commit()

    def get_link(self, link_id: str) -> Optional[TrackingLink]:
        row = self.db_conn.execute(
            "SELECT * FROM tracking_links WHERE id=?", (link_id,)
        ).fetchone()
        return TrackingLink.model_validate(dict(row)) if row else None

    def latest_active_link_for_product(
        self, user_id: str, product_id: int
    ) -> Optional[TrackingLink]:
        """Most recently created active link the user built for a product."""
        row = self.db_conn.execute(
            """
            SELECT * FROM tracking_links
            WHERE user_id=? AND product_id=? AND status=?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (user_id, product_id, LinkStatus.ACTIVE.value),
        ).fetchone()
        return TrackingLink.model_validate(dict(row)) if row else None

    def links_for_utm_campaign(
        self, user_id: str, utm_campaign: str
    ) -> list[TrackingLink]:
        """Links carrying a campaign string, newest first (any status)."""
        rows = self.db_conn.execute(
            """
            SELECT * FROM tracking_links
            WHERE user_id=? AND utm_campaign=?
            ORDER BY created_at DESC, rowid DESC
            """,
            (user_id, utm_campaign),
        ).fetchall()
        return [TrackingLink.model_validate(dict(row)) for row in rows]

    def increment_link_aggregates(self, link_id: str, revenue: float) -> None:
        """Add one conversion and its revenue to a link (no commit)."""
        self.db_conn.execute(
            """
            UPDATE tracking_links
            SET conversions = conversions + 1,
                revenue = revenue + ?
            WHERE id=?
            """,
            (revenue, link_id),
        )

    # ------------------------------------------------------------------
    # Click events
    # ------------------------------------------------------------------

    def record_click(self, click: ClickEvent, unique_window_start: datetime) -> ClickEvent:
        """Insert a click, flag uniqueness and bump the link's click counter.

        A click is unique when no click from the same IP and user agent hit
        the same link since ``unique_window_start``. Only unique clicks
        increment ``tracking_links.clicks``.

        Returns:
            The stored click with id and is_unique populated
        """
        with self.transaction():
            duplicate = self.db_conn.execute(
                """
                SELECT 1 FROM click_events
                WHERE tracking_link_id=? AND ip_address IS ? AND user_agent IS ?
                  AND created_at>=?
                LIMIT 1
                """,
                (
                    click.tracking_link_id,
                    click.ip_address,
                    click.user_agent,
                    format_ts(unique_window_start),
                ),
            ).fetchone()
            is_unique = duplicate is None

            cursor = self.db_conn.execute(
                """
                INSERT INTO click_events (
                    tracking_link_id, user_id, click_id, created_at, referrer,
                    user_agent, ip_address, fbp, fbc, is_unique
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    click.tracking_link_id,
                    click.user_id,
                    click.click_id,
                    format_ts(click.created_at),
                    click.referrer,
                    click.user_agent,
                    click.ip_address,
                    click.fbp,
                    click.fbc,
                    int(is_unique),
                ),
            )

            if is_unique:
                self.db_conn.execute(
                    "UPDATE tracking_links SET clicks = clicks + 1 WHERE id=?",
                    (click.tracking_link_id,),
                )

        return click.model_copy(update={"id": cursor.lastrowid, "is_unique": is_unique})

    def get_click(self, click_id: str) -> Optional[ClickEvent]:
        row = self.db_conn.execute(
            "SELECT * FROM click_events WHERE click_id=?", (click_id,)
        ).fetchone()
        return ClickEvent.model_validate(dict(row)) if row else None

    def latest_unconverted_click(
        self,
        link_ids: list[str],
        window_start: datetime,
        window_end: datetime,
        excluded_prefix: str,
    ) -> Optional[ClickEvent]:
        """Most recent eligible click on any of the given links."""
        if not link_ids:
            return None

        placeholders = ",".join("?" for _ in link_ids)
        row = self.db_conn.execute(
            f"""
            SELECT * FROM click_events
            WHERE tracking_link_id IN ({placeholders})
              AND is_converted=0
              AND created_at>=? AND created_at<=?
              AND substr(click_id, 1, ?) != ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (
                *link_ids,
                format_ts(window_start),
                format_ts(window_end),
                len(excluded_prefix),
                excluded_prefix,
            ),
        ).fetchone()
        return ClickEvent.model_validate(dict(row)) if row else None

    def latest_unconverted_click_for_user(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        excluded_prefix: str,
    ) -> Optional[ClickEvent]:
        """Most recent eligible click across all of a user's active links."""
        row = self.db_conn.execute(
            """
            SELECT c.* FROM click_events c
            JOIN tracking_links l ON l.id = c.tracking_link_id
            WHERE l.user_id=? AND l.status=?
              AND c.is_converted=0
              AND c.created_at>=? AND c.created_at<=?
              AND substr(c.click_id, 1, ?) != ?
            ORDER BY c.created_at DESC, c.id DESC
            LIMIT 1
            """,
            (
                user_id,
                LinkStatus.ACTIVE.value,
                format_ts(window_start),
                format_ts(window_end),
                len(excluded_prefix),
                excluded_prefix,
            ),
        ).fetchone()
        return ClickEvent.model_validate(dict(row)) if row else None

    def mark_click_converted(
        self, click_row_id: int, order_id: int, converted_at: datetime
    ) -> bool:
        """Flip is_converted exactly once (no commit).

        Returns:
            False when another writer converted the click first
        """
        cursor = self.db_conn.execute(
            """
            UPDATE click_events
            SET is_converted=1, converted_order_id=?, converted_at=?
            WHERE id=? AND is_converted=0
            """,
            (order_id, format_ts(converted_at), click_row_id),
        )
        return cursor.rowcount == 1

    def count_converted_clicks(self, link_id: str) -> int:
        row = self.db_conn.execute(
            "SELECT COUNT(*) FROM click_events WHERE tracking_link_id=? AND is_converted=1",
            (link_id,),
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # External connections
    # ------------------------------------------------------------------

    def save_connection(self, connection: ExternalConnection) -> None:
        """Insert or replace a connection's credentials (re-authentication)."""
        self.db_conn.execute(
            """
            INSERT INTO external_connections (
                id, user_id, provider, access_token, refresh_token,
                token_expires_at, status, metadata_json, last_sync_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                access_token=excluded.access_token,
                refresh_token=excluded.refresh_token,
                token_expires_at=excluded.token_expires_at,
                status=excluded.status,
                metadata_json=excluded.metadata_json,
                updated_at=CURRENT_TIMESTAMP
            """,
            (
                connection.id,
                connection.user_id,
                connection.provider,
                connection.access_token,
                connection.refresh_token,
                format_ts(connection.token_expires_at),
                connection.status.value,
                json.dumps(connection.metadata, separators=(",", ":")),
                format_ts(connection.last_sync_at),
            ),
        )
        self.db_conn.commit()

    def get_connection(self, connection_id: str) -> Optional[ExternalConnection]:
        row = self.db_conn.execute(
            "SELECT * FROM external_connections WHERE id=?", (connection_id,)
        ).fetchone()
        return self._row_to_connection(row) if row else None

    def list_connections(
        self,
        user_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        providers: Optional[list[str]] = None,
    ) -> list[ExternalConnection]:
        """List connections, optionally filtered by owner, id or provider."""
        clauses = []
        params: list = []
        if user_id:
            clauses.append("user_id=?")
            params.append(user_id)
        if connection_id:
            clauses.append("id=?")
            params.append(connection_id)
        if providers:
            clauses.append(f"provider IN ({','.join('?' for _ in providers)})")
            params.extend(providers)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db_conn.execute(
            f"SELECT * FROM external_connections {where} ORDER BY id", params
        ).fetchall()
        return [self._row_to_connection(row) for row in rows]

    def swap_connection_tokens(
        self,
        connection_id: str,
        expected_refresh_token: Optional[str],
        expected_access_token: Optional[str],
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        """Replace both tokens and expiry if nobody refreshed since our read.

        The previously read access token is part of the guard so providers
        without refresh tokens (client-credential grants) stay single-flight.

        Returns:
            False when the stored tokens no longer match
        """
        cursor = self.db_conn.execute(
            """
            UPDATE external_connections
            SET access_token=?, refresh_token=?, token_expires_at=?,
                status=?, updated_at=CURRENT_TIMESTAMP
            WHERE id=? AND refresh_token IS ? AND access_token IS ?
            """,
            (
                access_token,
                refresh_token,
                format_ts(expires_at),
                ConnectionStatus.CONNECTED.value,
                connection_id,
                expected_refresh_token,
                expected_access_token,
            ),
        )
        self.db_conn.commit()
        return cursor.rowcount == 1

    def set_connection_status(
        self, connection_id: str, status: ConnectionStatus
    ) -> None:
        self.db_conn.execute(
            """
            UPDATE external_connections
            SET status=?, updated_at=CURRENT_TIMESTAMP
            WHERE id=?
            """,
            (status.value, connection_id),
        )
        self.db_conn.commit()

    def touch_last_sync(self, connection_id: str, synced_at: datetime) -> None:
        self.db_conn.execute(
            "UPDATE external_connections SET last_sync_at=? WHERE id=?",
            (format_ts(synced_at), connection_id),
        )
        self.db_conn.commit()

    def _row_to_connection(self, row: sqlite3.Row) -> ExternalConnection:
        data = dict(row)
        data["metadata"] = json.loads(data.pop("metadata_json") or "{}")
        return ExternalConnection.model_validate(data)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def upsert_product(
        self,
        connection_id: str,
        user_id: str,
        external_product_id: str,
        name: Optional[str] = None,
        price: Optional[float] = None,
        stock: Optional[int] = None,
    ) -> int:
        """Upsert a product snapshot (no commit).

        Returns:
            Product row id
        """
        self.db_conn.execute(
            """
            INSERT INTO products (connection_id, user_id, external_product_id, name, price, stock)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(connection_id, external_product_id)
            DO UPDATE SET
                name=COALESCE(excluded.name, products.name),
                price=COALESCE(excluded.price, products.price),
                stock=COALESCE(excluded.stock, products.stock),
                updated_at=CURRENT_TIMESTAMP
            """,
            (connection_id, user_id, external_product_id, name, price, stock),
        )
        row = self.db_conn.execute(
            "SELECT id FROM products WHERE connection_id=? AND external_product_id=?",
            (connection_id, external_product_id),
        ).fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def get_order(
        self, connection_id: str, external_order_id: str, external_line_item_id: str
    ) -> Optional[StoredOrder]:
        row = self.db_conn.execute(
            """
            SELECT * FROM orders
            WHERE connection_id=? AND external_order_id=? AND external_line_item_id=?
            """,
            (connection_id, external_order_id, external_line_item_id),
        ).fetchone()
        return StoredOrder.model_validate(dict(row)) if row else None

    def get_order_by_id(self, order_id: int) -> Optional[StoredOrder]:
        row = self.db_conn.execute(
            "SELECT * FROM orders WHERE id=?", (order_id,)
        ).fetchone()
        return StoredOrder.model_validate(dict(row)) if row else None

    def count_orders(self, connection_id: str) -> int:
        row = self.db_conn.execute(
            "SELECT COUNT(*) FROM orders WHERE connection_id=?", (connection_id,)
        ).fetchone()
        return row[0]

    def insert_order(
        self,
        order: NormalizedOrder,
        product_id: Optional[int],
        tracking_link_id: Optional[str],
        click_id: Optional[str],
        campaign_id: Optional[str],
        attribution_strategy: str,
    ) -> Optional[int]:
        """Insert a new order with its attribution (no commit).

        Returns:
            New row id, or None if the composite key already exists
        """
        attribution = order.attribution
        cursor = self.db_conn.execute(
            """
            INSERT INTO orders (
                connection_id, user_id, provider, external_order_id,
                external_line_item_id, product_id, product_name, quantity,
                total_amount, shipping_fee, currency, raw_status, status,
                ordered_at, tracking_link_id, click_id, campaign_id,
                utm_source, utm_medium, utm_campaign, attribution_strategy
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connection_id, external_order_id, external_line_item_id)
            DO NOTHING
            """,
            (
                order.connection_id,
                order.user_id,
                order.provider,
                order.external_order_id,
                order.external_line_item_id,
                product_id,
                order.product_name,
                order.quantity,
                order.total_amount,
                order.shipping_fee,
                order.currency,
                order.raw_status,
                order.status.value,
                format_ts(order.ordered_at),
                tracking_link_id,
                click_id,
                campaign_id,
                attribution.utm_source,
                attribution.utm_medium,
                attribution.utm_campaign,
                attribution_strategy,
            ),
        )
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    def clear_order_attribution(self, order_id: int, strategy: str) -> None:
        """Drop link/click/campaign from an order whose click conversion lost a race."""
        self.db_conn.execute(
            """
            UPDATE orders
            SET tracking_link_id=NULL, click_id=NULL, campaign_id=NULL,
                attribution_strategy=?
            WHERE id=?
            """,
            (strategy, order_id),
        )

    def update_order_mutable_fields(self, order: NormalizedOrder) -> None:
        """Refresh status and amounts of an existing order (no commit).

        Attribution columns are never written here.
        """
        self.db_conn.execute(
            """
            UPDATE orders
            SET status=?, raw_status=?, total_amount=?, shipping_fee=?,
                quantity=?, updated_at=CURRENT_TIMESTAMP
            WHERE connection_id=? AND external_order_id=? AND external_line_item_id=?
            """,
            (
                order.status.value,
                order.raw_status,
                order.total_amount,
                order.shipping_fee,
                order.quantity,
                order.connection_id,
                order.external_order_id,
                order.external_line_item_id,
            ),
        )

    def orders_awaiting_settlement(
        self, connection_id: str, statuses: frozenset[OrderStatus]
    ) -> list[StoredOrder]:
        """Settlement-eligible orders with no settlement data yet."""
        status_values = sorted(s.value for s in statuses)
        placeholders = ",".join("?" for _ in status_values)
        rows = self.db_conn.execute(
            f"""
            SELECT * FROM orders
            WHERE connection_id=? AND settlement_amount IS NULL
              AND status IN ({placeholders})
            ORDER BY id
            """,
            (connection_id, *status_values),
        ).fetchall()
        return [StoredOrder.model_validate(dict(row)) for row in rows]

    def apply_settlement(self, order_id: int, settlement: SettlementInfo) -> bool:
        """Write settlement figures once.

        Returns:
            False when the order already carries settlement data
        """
        cursor = self.db_conn.execute(
            """
            UPDATE orders
            SET settlement_amount=?, settlement_commission=?,
                settlement_commission_rate=?, settlement_status=?,
                settle_expect_date=?, updated_at=CURRENT_TIMESTAMP
            WHERE id=? AND settlement_amount IS NULL
            """,
            (
                settlement.settlement_amount,
                settlement.total_commission,
                settlement.commission_rate,
                settlement.settle_status,
                settlement.settle_expect_date,
                order_id,
            ),
        )
        self.db_conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def create_campaign(self, campaign: Campaign) -> None:
        self.db_conn.execute(
            """
            INSERT INTO campaigns (
                id, user_id, name, external_campaign_id, conversions, revenue,
                spent, roas
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                campaign.id,
                campaign.user_id,
                campaign.name,
                campaign.external_campaign_id,
                campaign.conversions,
                campaign.revenue,
                campaign.spent,
            ),
        )
        self.db_conn.execute(
            f"UPDATE campaigns SET roas = {ROAS_SQL} WHERE id=?", (campaign.id,)
        )
        self.db_conn.commit()

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = self.db_conn.execute(
            "SELECT * FROM campaigns WHERE id=?", (campaign_id,)
        ).fetchone()
        return Campaign.model_validate(dict(row)) if row else None

    def campaigns_by_external_id(self) -> dict[str, Campaign]:
        rows = self.db_conn.execute(
            "SELECT * FROM campaigns WHERE external_campaign_id IS NOT NULL"
        ).fetchall()
        return {
            row["external_campaign_id"]: Campaign.model_validate(dict(row))
            for row in rows
        }

    def increment_campaign_aggregates(self, campaign_id: str, revenue: float) -> None:
        """Add one conversion and its revenue, then recompute ROAS (no commit)."""
        self.db_conn.execute(
            """
            UPDATE campaigns
            SET conversions = conversions + 1,
                revenue = revenue + ?,
                updated_at=CURRENT_TIMESTAMP
            WHERE id=?
            """,
            (revenue, campaign_id),
        )
        self.db_conn.execute(
            f"UPDATE campaigns SET roas = {ROAS_SQL} WHERE id=?", (campaign_id,)
        )

    def set_campaign_spent(self, campaign_id: str, spent: float) -> None:
        """Replace ad spend from the spend source and recompute ROAS."""
        with self.transaction():
            self.db_conn.execute(
                "UPDATE campaigns SET spent=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (spent, campaign_id),
            )
            self.db_conn.execute(
                f"UPDATE campaigns SET roas = {ROAS_SQL} WHERE id=?", (campaign_id,)
            )
