"""Unit tests for the mapping-driven order normalizer."""
import pytest

from src.clickmatch_core.providers.exceptions import OrderPayloadError
from src.clickmatch_core.providers.mappings import (
    CAFE24_MAPPING,
    NAVER_MAPPING,
    SHOPIFY_MAPPING,
)
from src.clickmatch_core.providers.normalizer import (
    extract_campaign_signal,
    map_status,
    normalize_order,
    resolve_path,
)
from src.clickmatch_core.schemas.records import ExternalConnection, OrderStatus


def _connection(provider: str) -> ExternalConnection:
    return ExternalConnection(id=f"conn_{provider}", user_id="user_1", provider=provider)


def _shopify_order(**overrides) -> dict:
    order = {
        "id": "gid://shopify/Order/1001",
        "createdAt": "2025-03-10T09:00:00Z",
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "UNFULFILLED",
        "cancelledAt": None,
        "totalPriceSet": {"shopMoney": {"amount": "90.00", "currencyCode": "USD"}},
        "customerJourneySummary": {},
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/LineItem/1",
                        "title": "Gold Necklace",
                        "quantity": 2,
                        "variant": {"product": {"id": "gid://shopify/Product/55"}},
                        "originalUnitPriceSet": {"shopMoney": {"amount": "40.00"}},
                        "discountedTotalSet": {"shopMoney": {"amount": "80.00"}},
                    }
                },
                {
                    "node": {
                        "id": "gid://shopify/LineItem/2",
                        "title": "Gift Box",
                        "quantity": 1,
                        "variant": None,
                        "discountedTotalSet": {"shopMoney": {"amount": "10.00"}},
                    }
                },
            ]
        },
    }
    order.update(overrides)
    return order


def test_resolve_path_handles_missing_and_lists():
    data = {"a": {"b": [{"c": 1}]}}

    assert resolve_path(data, "a.b.0.c") == 1
    assert resolve_path(data, "a.b.5.c") is None
    assert resolve_path(data, "a.x.y") is None


def test_normalize_shopify_order_one_record_per_line():
    """Each line item becomes its own normalized order."""
    lines = normalize_order(_shopify_order(), SHOPIFY_MAPPING, _connection("shopify"))

    assert len(lines) == 2
    first, second = lines
    assert first.external_order_id == "gid://shopify/Order/1001"
    assert first.external_line_item_id == "gid://shopify/LineItem/1"
    assert first.external_product_id == "gid://shopify/Product/55"
    assert first.quantity == 2
    assert first.total_amount == 80.0
    assert first.product_price == 40.0
    assert first.currency == "USD"
    assert first.status == OrderStatus.PAID
    assert first.ordered_at.year == 2025
    assert second.external_product_id is None
    assert second.total_amount == 10.0


def test_shopify_status_precedence():
    """Cancellation beats fulfillment, fulfillment beats payment."""
    cancelled = _shopify_order(
        cancelledAt="2025-03-11T00:00:00Z", displayFulfillmentStatus="FULFILLED"
    )
    fulfilled = _shopify_order(displayFulfillmentStatus="FULFILLED")
    refunded = _shopify_order(displayFinancialStatus="REFUNDED")

    assert map_status({"order": cancelled}, SHOPIFY_MAPPING) == OrderStatus.CANCELLED
    assert map_status({"order": fulfilled}, SHOPIFY_MAPPING) == OrderStatus.DELIVERED
    assert map_status({"order": refunded}, SHOPIFY_MAPPING) == OrderStatus.RETURNED
    assert map_status({"order": {}}, SHOPIFY_MAPPING) == OrderStatus.UNKNOWN


def test_signal_waterfall_lastvisit_wins():
    """lastVisit UTM parameters are preferred over firstVisit."""
    order = _shopify_order(
        customerJourneySummary={
            "lastVisit": {"utmParameters": {"campaign": "spring", "source": "ig"}},
            "firstVisit": {"utmParameters": {"campaign": "winter"}},
        }
    )

    signal = extract_campaign_signal({"order": order}, SHOPIFY_MAPPING)

    assert signal.utm_campaign == "spring"
    assert signal.utm_source == "ig"
    assert signal.evidence == "lastVisit.utmParameters"


def test_signal_waterfall_falls_back_to_landing_page():
    """Landing page query is parsed when no UTM object carries a campaign."""
    order = _shopify_order(
        customerJourneySummary={
            "lastVisit": {
                "utmParameters": {},
                "landingPage": "https://shop.example.com/?utm_source=tt&utm_campaign=launch",
            },
        }
    )

    signal = extract_campaign_signal({"order": order}, SHOPIFY_MAPPING)

    assert signal.utm_campaign == "launch"
    assert signal.evidence == "landingPage"


def test_signal_waterfall_empty_when_nothing_found():
    signal = extract_campaign_signal({"order": _shopify_order()}, SHOPIFY_MAPPING)

    assert signal.utm_campaign is None
    assert signal.evidence is None


def test_normalize_naver_product_order():
    """Naver rows are already one line each; inflow params use nt_* names."""
    raw = {
        "orderId": "2025031012345",
        "productOrderId": "2025031099901",
        "orderDate": "2025-03-10T18:00:00.000+09:00",
        "originProductNo": 7001,
        "productName": "Gold Necklace",
        "productPrice": 30000,
        "quantity": 1,
        "totalPaymentAmount": 33000,
        "shippingFee": 3000,
        "productOrderStatus": "PURCHASE_DECIDED",
        "inflowPath": "nt_source=instagram&nt_medium=social&nt_detail=spring",
    }

    (line,) = normalize_order(raw, NAVER_MAPPING, _connection("naver"))

    assert line.external_line_item_id == "2025031099901"
    assert line.external_product_id == "7001"
    assert line.total_amount == 33000.0
    assert line.shipping_fee == 3000.0
    assert line.status == OrderStatus.PURCHASE_DECIDED
    assert line.raw_status == "PURCHASE_DECIDED"
    assert line.attribution.utm_campaign == "spring"
    assert line.attribution.evidence == "inflowPath"
    assert line.ordered_at.utcoffset().total_seconds() == 9 * 3600


def test_cafe24_status_prefixes():
    """Cafe24 cancellation/return/exchange codes map by prefix."""
    for code, expected in (
        ("N40", OrderStatus.DELIVERED),
        ("C40", OrderStatus.CANCELLED),
        ("R10", OrderStatus.RETURNED),
        ("E20", OrderStatus.EXCHANGED),
        ("Z99", OrderStatus.UNKNOWN),
    ):
        context = {"order": {}, "line": {"order_status": code}}
        assert map_status(context, CAFE24_MAPPING) == expected


def test_normalize_cafe24_defaults_quantity():
    raw = {
        "order_id": "20250310-0000012",
        "order_date": "2025-03-10T10:00:00+09:00",
        "items": [
            {
                "order_item_code": "20250310-0000012-01",
                "product_no": 12,
                "payment_amount": "15000.00",
                "order_status": "N10",
            }
        ],
    }

    (line,) = normalize_order(raw, CAFE24_MAPPING, _connection("cafe24"))

    assert line.quantity == 1
    assert line.total_amount == 15000.0
    assert line.status == OrderStatus.PAID


def test_normalize_rejects_missing_ids():
    """Orders without an id, or with an id-less line, are malformed."""
    with pytest.raises(OrderPayloadError):
        normalize_order({"items": []}, CAFE24_MAPPING, _connection("cafe24"))

    with pytest.raises(OrderPayloadError) as exc_info:
        normalize_order(
            {"order_id": "1", "items": [{"product_no": 1}]},
            CAFE24_MAPPING,
            _connection("cafe24"),
        )
    assert "line item without id" in str(exc_info.value)


def test_normalize_rejects_non_numeric_amount():
    raw = {
        "orderId": "1",
        "productOrderId": "1-1",
        "totalPaymentAmount": "lots",
    }

    with pytest.raises(OrderPayloadError):
        normalize_order(raw, NAVER_MAPPING, _connection("naver"))


@pytest.mark.parametrize("edges", [["not-an-object"], [{"node": "not-an-object"}], [None]])
def test_non_object_line_items_raise_payload_error(edges):
    order = _shopify_order(lineItems={"edges": edges})

    with pytest.raises(OrderPayloadError) as exc_info:
        normalize_order(order, SHOPIFY_MAPPING, _connection("shopify"))

    assert exc_info.value.order_ref == "gid://shopify/Order/1001"
