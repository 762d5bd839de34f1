"""Seed a local database with a demo campaign, tracking links and clicks."""
import random
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.clickmatch_core.schemas.records import (
    Campaign,
    ClickEvent,
    ConnectionStatus,
    ExternalConnection,
    LinkStatus,
    TrackingLink,
)
from src.clickmatch_core.storage import AttributionStore, connect, utc_now
from src.clickmatch_core.tracking.click_capture import UNIQUE_CLICK_WINDOW, mint_click_id

# Configuration
DB_PATH = "data/clickmatch.db"
USER_ID = "demo_user"
DAYS_BACK = 7

# Scenarios to seed
SCENARIOS = [
    {
        "link_id": "lnk_gold_necklace",
        "product_id": "1001",
        "name": "Gold Necklace",
        "price": 85000.0,
        "utm_campaign": "gold_necklace_scale",
        "daily_clicks": 40,
        "status": LinkStatus.ACTIVE,
    },
    {
        "link_id": "lnk_winter_scarf",
        "product_id": "1002",
        "name": "Winter Scarf",
        "price": 32000.0,
        "utm_campaign": "winter_scarf_clearance",
        "daily_clicks": 12,
        "status": LinkStatus.PAUSED,
    },
]


def seed_data():
    conn = connect(DB_PATH)
    store = AttributionStore(conn)
    now = utc_now()

    print(f"Seeding clicks for the last {DAYS_BACK} days...")

    store.save_connection(
        ExternalConnection(
            id="conn_demo_naver",
            user_id=USER_ID,
            provider="naver",
            access_token="demo-token",
            token_expires_at=now + timedelta(hours=3),
            status=ConnectionStatus.CONNECTED,
            metadata={"application_id": "demo-app"},
        )
    )
    store.create_campaign(
        Campaign(id="cmp_demo", user_id=USER_ID, name="Demo campaign", spent=150000.0)
    )

    for scenario in SCENARIOS:
        with store.transaction():
            product_id = store.upsert_product(
                "conn_demo_naver",
                USER_ID,
                scenario["product_id"],
                name=scenario["name"],
                price=scenario["price"],
            )
        store.create_link(
            TrackingLink(
                id=scenario["link_id"],
                user_id=USER_ID,
                target_url=f"https://smartstore.naver.com/demo/products/{scenario['product_id']}",
                utm_source="instagram",
                utm_medium="social",
                utm_campaign=scenario["utm_campaign"],
                product_id=product_id,
                campaign_id="cmp_demo",
                status=scenario["status"],
                created_at=now - timedelta(days=DAYS_BACK + 1),
            )
        )

        for day in range(DAYS_BACK):
            for i in range(scenario["daily_clicks"]):
                clicked_at = now - timedelta(days=day, minutes=random.randint(0, 1439))
                store.record_click(
                    ClickEvent(
                        tracking_link_id=scenario["link_id"],
                        user_id=USER_ID,
                        click_id=mint_click_id(clicked_at),
                        created_at=clicked_at,
                        ip_address=f"10.0.{day}.{i}",
                        user_agent="Mozilla/5.0 (demo)",
                    ),
                    unique_window_start=clicked_at - UNIQUE_CLICK_WINDOW,
                )

    conn.close()
    print("Database seeded with demo links and clicks.")


if __name__ == "__main__":
    seed_data()
