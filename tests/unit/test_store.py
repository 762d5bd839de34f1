"""Unit tests for the SQLite schema and attribution store."""
import sqlite3
from datetime import datetime, timezone

import pytest

from src.clickmatch_core.schemas.records import (
    Campaign,
    ClickEvent,
    ConnectionStatus,
    ExternalConnection,
)
from src.clickmatch_core.storage.schema import (
    SCHEMA_VERSION,
    format_ts,
    parse_ts,
    record_sync_run,
)


def test_schema_version_recorded(store):
    row = store.db_conn.execute("SELECT MAX(version) FROM schema_version").fetchone()

    assert row[0] == SCHEMA_VERSION


def test_timestamps_roundtrip_as_utc():
    kst = datetime.fromisoformat("2025-03-10T21:00:00+09:00")

    assert format_ts(kst) == "2025-03-10T12:00:00.000000+00:00"
    assert parse_ts(format_ts(kst)) == kst
    assert format_ts(datetime(2025, 3, 10, 12, 0)) == "2025-03-10T12:00:00.000000+00:00"


def test_connection_metadata_and_status(store):
    store.save_connection(
        ExternalConnection(
            id="conn_1",
            user_id="u",
            provider="shopify",
            access_token="shpat",
            metadata={"shop_domain": "s.myshopify.com"},
        )
    )
    store.set_connection_status("conn_1", ConnectionStatus.TOKEN_EXPIRED)

    connection = store.get_connection("conn_1")
    assert connection.metadata == {"shop_domain": "s.myshopify.com"}
    assert connection.status == ConnectionStatus.TOKEN_EXPIRED
    assert [c.id for c in store.list_connections(providers=["naver"])] == []


def test_swap_tokens_is_conditional(store):
    store.save_connection(
        ExternalConnection(id="conn_1", user_id="u", provider="naver", access_token="a1")
    )

    assert store.swap_connection_tokens("conn_1", None, "a1", "a2", None, None)
    assert not store.swap_connection_tokens("conn_1", None, "a1", "a3", None, None)
    assert store.get_connection("conn_1").access_token == "a2"


def test_click_id_is_unique(store, product_link):
    click = ClickEvent(
        tracking_link_id=product_link.id,
        user_id="user_1",
        click_id="clk_1_aaaaaaaa",
        created_at=datetime(2025, 3, 9, tzinfo=timezone.utc),
    )
    store.record_click(click, unique_window_start=click.created_at)

    with pytest.raises(sqlite3.IntegrityError):
        store.record_click(click, unique_window_start=click.created_at)

    # The failed insert was rolled back with its counter update
    assert store.get_link(product_link.id).clicks == 1


def test_create_campaign_computes_roas(store):
    store.create_campaign(Campaign(id="c1", user_id="u", revenue=250.0, spent=100.0))

    assert store.get_campaign("c1").roas == 250


def test_record_sync_run(store):
    record_sync_run(store.db_conn, "order_sync", "conn_1", "partial", synced=3, errors=1)

    row = store.db_conn.execute("SELECT * FROM sync_runs").fetchone()
    assert row["status"] == "partial"
    assert row["synced"] == 3
    assert row["errors"] == 1
