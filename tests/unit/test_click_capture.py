"""Unit tests for click capture (redirect decision and persistence)."""
import re
from datetime import datetime, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from src.clickmatch_core.schemas.records import ClickEvent, LinkStatus, TrackingLink
from src.clickmatch_core.tracking.click_capture import (
    CLICK_ID_COOKIE,
    CLICK_PARAM,
    CLICK_TIME_COOKIE,
    LINK_ID_COOKIE,
    CaptureOutcome,
    ClickCaptureService,
    build_destination_url,
    is_bot_user_agent,
    is_synthetic_click_id,
    mint_bot_click_id,
    mint_click_id,
)


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
BROWSER_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)


def _link(**overrides) -> TrackingLink:
    values = dict(
        id="lnk_1",
        user_id="user_1",
        target_url="https://example.com/product?ref=ig",
        utm_source="instagram",
        utm_medium="social",
        utm_campaign="spring",
    )
    values.update(overrides)
    return TrackingLink(**values)


def test_mint_click_id_format():
    """Click ids embed the epoch milliseconds and a base36 suffix."""
    click_id = mint_click_id(NOW)

    assert re.fullmatch(r"clk_\d{13}_[0-9a-z]{8}", click_id)
    assert str(int(NOW.timestamp() * 1000)) in click_id
    assert mint_click_id(NOW) != click_id


def test_bot_click_ids_are_synthetic():
    assert is_synthetic_click_id(mint_bot_click_id(NOW))
    assert not is_synthetic_click_id(mint_click_id(NOW))
    assert not is_synthetic_click_id(None)


def test_is_bot_user_agent():
    assert is_bot_user_agent("facebookexternalhit/1.1")
    assert is_bot_user_agent("Mozilla/5.0 (compatible; Googlebot/2.1)")
    assert is_bot_user_agent("curl/8.4.0")
    assert not is_bot_user_agent(BROWSER_UA)
    assert not is_bot_user_agent(None)


def test_build_destination_url_keeps_existing_params():
    """UTM params and the click id are appended to the target URL."""
    url = build_destination_url(_link(), "clk_1_abc")

    query = parse_qs(urlparse(url).query)
    assert query["ref"] == ["ig"]
    assert query["utm_source"] == ["instagram"]
    assert query["utm_campaign"] == ["spring"]
    assert query[CLICK_PARAM] == ["clk_1_abc"]


def test_build_destination_url_uses_naver_names():
    """Naver storefront destinations get nt_* parameters instead of utm_*."""
    link = _link(target_url="https://smartstore.naver.com/shop/products/1")

    query = parse_qs(urlparse(build_destination_url(link, "clk_1_abc")).query)

    assert query["nt_source"] == ["instagram"]
    assert query["nt_medium"] == ["social"]
    assert query["nt_detail"] == ["spring"]
    assert "utm_campaign" not in query


def test_capture_unknown_link():
    store = MagicMock()
    store.get_link.return_value = None

    result = ClickCaptureService(store).capture("missing")

    assert result.outcome == CaptureOutcome.NOT_FOUND
    assert result.destination_url is None


def test_capture_paused_link_redirects_to_fallback():
    """Paused links redirect to the fallback without a click or cookies."""
    store = MagicMock()
    store.get_link.return_value = _link(status=LinkStatus.PAUSED)

    result = ClickCaptureService(store, fallback_url="https://example.com/").capture(
        "lnk_1", user_agent=BROWSER_UA
    )

    assert result.outcome == CaptureOutcome.INACTIVE
    assert result.destination_url == "https://example.com/"
    assert result.click is None
    assert result.cookies == {}


def test_capture_bot_gets_synthetic_id_and_no_click():
    """Crawlers are redirected but nothing is recorded."""
    store = MagicMock()
    store.get_link.return_value = _link()

    result = ClickCaptureService(store).capture(
        "lnk_1", user_agent="facebookexternalhit/1.1", now=NOW
    )

    assert result.outcome == CaptureOutcome.BOT
    assert result.click is None
    assert is_synthetic_click_id(result.click_id)
    assert result.click_id in result.destination_url
    store.record_click.assert_not_called()


def test_capture_human_builds_click_and_cookies():
    store = MagicMock()
    store.get_link.return_value = _link()

    result = ClickCaptureService(store).capture(
        "lnk_1",
        user_agent=BROWSER_UA,
        referrer="https://instagram.com/",
        ip_address="203.0.113.7",
        fbp="fb.1.123.456",
        now=NOW,
    )

    assert result.outcome == CaptureOutcome.TRACKED
    assert result.click.click_id == result.click_id
    assert result.click.user_id == "user_1"
    assert result.click.fbp == "fb.1.123.456"
    assert result.cookies[CLICK_ID_COOKIE] == result.click_id
    assert result.cookies[LINK_ID_COOKIE] == "lnk_1"
    assert result.cookies[CLICK_TIME_COOKIE] == str(int(NOW.timestamp() * 1000))
    store.record_click.assert_not_called()


def test_persist_click_refuses_synthetic_ids():
    store = MagicMock()
    click = ClickEvent(
        tracking_link_id="lnk_1",
        user_id="user_1",
        click_id=mint_bot_click_id(NOW),
        created_at=NOW,
    )

    assert ClickCaptureService(store).persist_click(click) is None
    store.record_click.assert_not_called()


def test_persist_click_swallows_store_errors():
    """Persistence failures are logged, never raised into the response path."""
    store = MagicMock()
    store.record_click.side_effect = RuntimeError("database is locked")
    click = ClickEvent(
        tracking_link_id="lnk_1", user_id="user_1", click_id=mint_click_id(NOW), created_at=NOW
    )

    assert ClickCaptureService(store).persist_click(click) is None


@pytest.mark.integration
def test_persist_click_counts_only_unique_clicks(store, product_link):
    """Repeat clicks from the same browser within an hour do not bump clicks."""
    service = ClickCaptureService(store)

    def _click(minute: int, ip: str) -> ClickEvent:
        created = NOW.replace(minute=minute)
        return ClickEvent(
            tracking_link_id=product_link.id,
            user_id="user_1",
            click_id=mint_click_id(created),
            created_at=created,
            ip_address=ip,
            user_agent=BROWSER_UA,
        )

    first = service.persist_click(_click(0, "203.0.113.7"))
    repeat = service.persist_click(_click(10, "203.0.113.7"))
    other = service.persist_click(_click(20, "198.51.100.2"))

    assert first.is_unique is True
    assert repeat.is_unique is False
    assert other.is_unique is True
    assert store.get_link(product_link.id).clicks == 2
    assert store.get_click(repeat.click_id) is not None
