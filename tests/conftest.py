"""Shared fixtures: a fresh SQLite store per test."""
from datetime import datetime, timezone

import pytest

from src.clickmatch_core.schemas.records import (
    Campaign,
    ConnectionStatus,
    ExternalConnection,
    TrackingLink,
)
from src.clickmatch_core.storage import AttributionStore, connect


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "clickmatch.db"


@pytest.fixture
def store(db_path):
    """AttributionStore backed by a temporary database."""
    conn = connect(db_path)
    yield AttributionStore(conn)
    conn.close()


@pytest.fixture
def naver_connection(store):
    connection = ExternalConnection(
        id="conn_naver",
        user_id="user_1",
        provider="naver",
        access_token="tok-naver",
        token_expires_at=datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc),
        status=ConnectionStatus.CONNECTED,
        metadata={"application_id": "app-1"},
    )
    store.save_connection(connection)
    return connection


@pytest.fixture
def campaign(store):
    campaign = Campaign(id="cmp_1", user_id="user_1", name="Spring launch", spent=100000.0)
    store.create_campaign(campaign)
    return campaign


@pytest.fixture
def product_id(store, naver_connection):
    with store.transaction():
        return store.upsert_product(
            naver_connection.id, "user_1", "P-100", name="Gold Necklace", price=30000.0
        )


@pytest.fixture
def product_link(store, product_id, campaign):
    link = TrackingLink(
        id="lnk_product",
        user_id="user_1",
        target_url="https://smartstore.naver.com/shop/products/100",
        utm_source="instagram",
        utm_medium="social",
        utm_campaign="spring_launch",
        product_id=product_id,
        campaign_id=campaign.id,
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    store.create_link(link)
    return link
