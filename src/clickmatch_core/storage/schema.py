"""SQLite schema definitions for the attribution store.

Database: data/clickmatch.db (WAL mode)
Tables: tracking_links, click_events, external_connections, products,
orders, campaigns, sync_runs
"""
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

DEFAULT_DB_PATH = "data/clickmatch.db"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a sortable UTC string (naive values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_db_path(db_path: str | Path | None = None) -> Path:
    return Path(db_path or os.getenv("CLICKMATCH_DB_PATH", DEFAULT_DB_PATH))


def connect(db_path: str | Path | None = None, initialize: bool = True) -> sqlite3.Connection:
    """Open a connection with row access by name and the schema applied.

    Args:
        db_path: Path to SQLite database file (defaults to CLICKMATCH_DB_PATH)
        initialize: Apply the schema first; False when it was applied at startup

    Returns:
        sqlite3.Connection usable across threads of one request or job
    """
    path = resolve_db_path(db_path)
    if initialize:
        init_database(path)

    conn = sqlite3.connect(path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_database(db_path: str | Path) -> None:
    """Initialize attribution database with schema.

    Creates tables if they don't exist.
    Enables WAL mode for concurrent reads.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    try:
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        current_version = cursor.fetchone()[0] or 0

        if current_version < SCHEMA_VERSION:
            _apply_schema(conn)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info("Database schema initialized (version %s)", SCHEMA_VERSION)
        else:
            logger.debug("Database schema up to date (version %s)", current_version)

    finally:
        conn.close()


def _apply_schema(conn: sqlite3.Connection) -> None:
    """Apply database schema.

    Args:
        conn: SQLite connection (in transaction)
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT,
            external_campaign_id TEXT,
            conversions INTEGER NOT NULL DEFAULT 0,
            revenue REAL NOT NULL DEFAULT 0,
            spent REAL NOT NULL DEFAULT 0,
            roas INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_campaigns_external
        ON campaigns(external_campaign_id)
        WHERE external_campaign_id IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS external_connections (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            access_token TEXT,
            refresh_token TEXT,
            token_expires_at TEXT,
            status TEXT NOT NULL DEFAULT 'connected',
            metadata_json TEXT NOT NULL DEFAULT '{}',
            last_sync_at TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            connection_id TEXT NOT NULL REFERENCES external_connections(id),
            user_id TEXT NOT NULL,
            external_product_id TEXT NOT NULL,
            name TEXT,
            price REAL,
            stock INTEGER,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(connection_id, external_product_id)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tracking_links (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            target_url TEXT NOT NULL,
            utm_source TEXT,
            utm_medium TEXT,
            utm_campaign TEXT,
            product_id INTEGER REFERENCES products(id),
            campaign_id TEXT REFERENCES campaigns(id),
            status TEXT NOT NULL DEFAULT 'active',
            clicks INTEGER NOT NULL DEFAULT 0,
            conversions INTEGER NOT NULL DEFAULT 0,
            revenue REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_links_user_product
        ON tracking_links(user_id, product_id, created_at)
        WHERE product_id IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_links_user_campaign
        ON tracking_links(user_id, utm_campaign)
        WHERE utm_campaign IS NOT NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS click_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tracking_link_id TEXT NOT NULL REFERENCES tracking_links(id),
            user_id TEXT NOT NULL,
            click_id TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL,
            referrer TEXT,
            user_agent TEXT,
            ip_address TEXT,
            fbp TEXT,
            fbc TEXT,
            is_unique INTEGER NOT NULL DEFAULT 1,
            is_converted INTEGER NOT NULL DEFAULT 0,
            converted_order_id INTEGER,
            converted_at TEXT
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_clicks_link_unconverted
        ON click_events(tracking_link_id, created_at)
        WHERE is_converted = 0
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_clicks_user_created
        ON click_events(user_id, created_at)
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            connection_id TEXT NOT NULL REFERENCES external_connections(id),
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            external_order_id TEXT NOT NULL,
            external_line_item_id TEXT NOT NULL,
            product_id INTEGER REFERENCES products(id),
            product_name TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            total_amount REAL NOT NULL DEFAULT 0,
            shipping_fee REAL NOT NULL DEFAULT 0,
            currency TEXT,
            raw_status TEXT,
            status TEXT NOT NULL,
            ordered_at TEXT,
            tracking_link_id TEXT REFERENCES tracking_links(id) ON DELETE RESTRICT,
            click_id TEXT,
            campaign_id TEXT,
            utm_source TEXT,
            utm_medium TEXT,
            utm_campaign TEXT,
            attribution_strategy TEXT,
            settlement_amount REAL,
            settlement_commission REAL,
            settlement_commission_rate REAL,
            settlement_status TEXT,
            settle_expect_date TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(connection_id, external_order_id, external_line_item_id)
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_orders_settlement
        ON orders(connection_id, status)
        WHERE settlement_amount IS NULL
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_name TEXT NOT NULL,
            connection_id TEXT,
            status TEXT NOT NULL,
            synced INTEGER NOT NULL DEFAULT 0,
            matched INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            details TEXT,
            finished_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_sync_runs_job
        ON sync_runs(job_name, finished_at)
        """
    )


def record_sync_run(
    conn: sqlite3.Connection,
    job_name: str,
    connection_id: Optional[str],
    status: str,
    synced: int = 0,
    matched: int = 0,
    errors: int = 0,
    details: Optional[str] = None,
) -> None:
    """Record the outcome of one job for one connection.

    Args:
        conn: SQLite connection
        job_name: 'order_sync', 'settlement' or 'ad_spend'
        connection_id: Connection processed (None for account-wide jobs)
        status: 'success', 'partial', 'skipped' or 'failed'
        synced: Orders (or rows) written
        matched: Orders attributed
        errors: Per-item failures
        details: Optional summary message
    """
    conn.execute(
        """
        INSERT INTO sync_runs
            (job_name, connection_id, status, synced, matched, errors, details)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (job_name, connection_id, status, synced, matched, errors, details),
    )
    conn.commit()
