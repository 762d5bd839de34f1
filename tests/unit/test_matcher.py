"""Unit tests for the attribution matcher and aggregate updates."""
from datetime import datetime, timedelta, timezone

from src.clickmatch_core.attribution.aggregates import AggregateUpdater, compute_roas
from src.clickmatch_core.attribution.matcher import AttributionMatcher
from src.clickmatch_core.schemas.records import (
    AttributionParams,
    AttributionStrategy,
    ClickEvent,
    LinkStatus,
    NormalizedOrder,
    TrackingLink,
)
from src.clickmatch_core.tracking.click_capture import mint_bot_click_id, mint_click_id


ORDERED_AT = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _record_click(store, link_id: str, at: datetime, click_id: str = None, ip: str = None):
    click = ClickEvent(
        tracking_link_id=link_id,
        user_id="user_1",
        click_id=click_id or mint_click_id(at),
        created_at=at,
        ip_address=ip or f"10.0.0.{int(at.timestamp()) % 250}",
        user_agent="Mozilla/5.0",
    )
    return store.record_click(click, unique_window_start=at - timedelta(hours=1))


def _order(**overrides) -> NormalizedOrder:
    values = dict(
        connection_id="conn_naver",
        user_id="user_1",
        provider="naver",
        external_order_id="ORD-1",
        external_line_item_id="ORD-1-1",
        external_product_id="P-100",
        total_amount=30000.0,
        ordered_at=ORDERED_AT,
    )
    values.update(overrides)
    return NormalizedOrder(**values)


def _link(store, link_id: str, **overrides) -> TrackingLink:
    values = dict(
        id=link_id,
        user_id="user_1",
        target_url="https://example.com/",
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    values.update(overrides)
    link = TrackingLink(**values)
    store.create_link(link)
    return link


def test_compute_roas():
    """ROAS is revenue / spent as a rounded whole percentage."""
    assert compute_roas(300000, 100000) == 300
    assert compute_roas(1, 3) == 33
    assert compute_roas(2, 3) == 67
    assert compute_roas(500, 0) == 0


def test_product_strategy_picks_latest_click(store, product_id, product_link):
    """With clicks at T1 < T2 on the product's link, T2 wins."""
    _record_click(store, product_link.id, ORDERED_AT - timedelta(hours=5))
    latest = _record_click(store, product_link.id, ORDERED_AT - timedelta(hours=1))

    result = AttributionMatcher(store).match(_order(), product_id=product_id)

    assert result.matched
    assert result.strategy == AttributionStrategy.PRODUCT
    assert result.click.click_id == latest.click_id
    assert result.link.id == product_link.id
    assert result.campaign.id == "cmp_1"


def test_clicks_after_order_or_outside_window_are_ignored(store, product_id, product_link):
    _record_click(store, product_link.id, ORDERED_AT + timedelta(minutes=5))
    _record_click(store, product_link.id, ORDERED_AT - timedelta(days=31))

    result = AttributionMatcher(store).match(_order(), product_id=product_id)

    assert not result.matched
    assert result.strategy == AttributionStrategy.NONE


def test_bot_click_ids_never_match(store, product_id, product_link):
    """Rows carrying a synthetic bot id are excluded from every strategy."""
    at = ORDERED_AT - timedelta(hours=1)
    _record_click(store, product_link.id, at, click_id=mint_bot_click_id(at))

    result = AttributionMatcher(store).match(_order(), product_id=product_id)

    assert not result.matched


def test_utm_strategy_when_product_has_no_link(store, naver_connection):
    """A recovered campaign string finds clicks on links carrying it."""
    link = _link(store, "lnk_utm", utm_campaign="spring_launch", status=LinkStatus.PAUSED)
    click = _record_click(store, link.id, ORDERED_AT - timedelta(days=2))

    order = _order(attribution=AttributionParams(utm_campaign="spring_launch"))
    result = AttributionMatcher(store).match(order, product_id=None)

    assert result.strategy == AttributionStrategy.UTM
    assert result.click.click_id == click.click_id
    assert result.campaign is None


def test_recency_strategy_uses_active_links_only(store, naver_connection):
    active = _link(store, "lnk_active")
    paused = _link(store, "lnk_paused", status=LinkStatus.PAUSED)
    expected = _record_click(store, active.id, ORDERED_AT - timedelta(hours=3))
    _record_click(store, paused.id, ORDERED_AT - timedelta(hours=1))

    result = AttributionMatcher(store).match(_order(external_product_id=None))

    assert result.strategy == AttributionStrategy.RECENCY
    assert result.click.click_id == expected.click_id


def test_converted_clicks_are_not_matched_again(store, product_id, product_link):
    click = _record_click(store, product_link.id, ORDERED_AT - timedelta(hours=1))
    with store.transaction():
        store.mark_click_converted(click.id, 999, ORDERED_AT)

    result = AttributionMatcher(store).match(_order(), product_id=product_id)

    assert not result.matched


def test_aggregate_updater_increments_link_and_campaign(store, product_id, product_link):
    _record_click(store, product_link.id, ORDERED_AT - timedelta(hours=1))
    match = AttributionMatcher(store).match(_order(), product_id=product_id)

    with store.transaction():
        assert AggregateUpdater(store).apply(1, match, 300000.0, converted_at=ORDERED_AT)

    link = store.get_link(product_link.id)
    campaign = store.get_campaign("cmp_1")
    assert link.conversions == 1
    assert link.revenue == 300000.0
    assert campaign.conversions == 1
    assert campaign.roas == 300
    assert store.count_converted_clicks(product_link.id) == link.conversions


def test_aggregate_updater_loses_race(store, product_id, product_link):
    """A click converted by another writer yields no increments."""
    _record_click(store, product_link.id, ORDERED_AT - timedelta(hours=1))
    match = AttributionMatcher(store).match(_order(), product_id=product_id)

    with store.transaction():
        store.mark_click_converted(match.click.id, 42, ORDERED_AT)
        assert AggregateUpdater(store).apply(43, match, 1000.0) is False

    assert store.get_link(product_link.id).conversions == 0
    assert store.get_campaign("cmp_1").conversions == 0
