"""Unit tests for provider clients (mocked HTTP, no real API calls)."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.clickmatch_core.providers.base import parse_retry_after
from src.clickmatch_core.providers.cafe24 import Cafe24OrderSource
from src.clickmatch_core.providers.exceptions import (
    ProviderApiError,
    ProviderAuthError,
    TransientProviderError,
)
from src.clickmatch_core.providers.naver import NaverOrderSource, commission_rate
from src.clickmatch_core.providers.registry import (
    SETTLEMENT_PROVIDERS,
    SUPPORTED_PROVIDERS,
    UnsupportedProviderError,
    build_order_source,
)
from src.clickmatch_core.providers.shopify import ShopifyOrderSource
from src.clickmatch_core.schemas.records import ExternalConnection


SINCE = datetime(2025, 3, 3, 0, 0, tzinfo=timezone.utc)
UNTIL = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


def _response(status: int = 200, json_data=None, text: str = "", headers=None):
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.headers = headers or {}
    mock_response.json.return_value = json_data
    mock_response.text.return_value = text
    mock_response.__aenter__.return_value = mock_response
    return mock_response


@pytest.fixture
def mock_session():
    """Mock aiohttp ClientSession."""
    return MagicMock()


@pytest.fixture
def token_source():
    source = MagicMock()
    source.get_access_token = AsyncMock(return_value="tok-1")
    source.force_refresh = AsyncMock(return_value="tok-2")
    return source


def _connection(provider: str, **metadata) -> ExternalConnection:
    return ExternalConnection(
        id=f"conn_{provider}", user_id="user_1", provider=provider, metadata=metadata
    )


@pytest.fixture
def naver_source(mock_session, token_source):
    return NaverOrderSource(_connection("naver"), mock_session, token_source)


def test_registry_lists_providers():
    assert set(SUPPORTED_PROVIDERS) == {"shopify", "naver", "cafe24"}
    assert SETTLEMENT_PROVIDERS == ("naver",)


def test_build_order_source_rejects_unknown_provider(mock_session, token_source):
    with pytest.raises(UnsupportedProviderError):
        build_order_source(_connection("meta"), mock_session, token_source)


def test_sources_require_store_identifiers(mock_session, token_source):
    with pytest.raises(ValueError):
        ShopifyOrderSource(_connection("shopify"), mock_session, token_source)
    with pytest.raises(ValueError):
        Cafe24OrderSource(_connection("cafe24"), mock_session, token_source)


@pytest.mark.asyncio
async def test_naver_fetch_orders_single_page(naver_source, mock_session):
    mock_session.request.return_value = _response(
        json_data={"data": {"contents": [{"productOrderId": "1"}, {"productOrderId": "2"}]}}
    )

    orders = await naver_source.fetch_orders(SINCE, UNTIL)

    assert [o["productOrderId"] for o in orders] == ["1", "2"]
    args, kwargs = mock_session.request.call_args
    assert args[0] == "POST"
    assert args[1].endswith("/last-changed-statuses")
    assert kwargs["json"]["lastChangedFrom"] == "2025-03-03T09:00:00.000+09:00"
    assert kwargs["json"]["pageSize"] == 100
    assert kwargs["headers"]["Authorization"] == "Bearer tok-1"


@pytest.mark.asyncio
async def test_naver_long_window_is_split_per_day(naver_source, mock_session):
    mock_session.request.return_value = _response(json_data={"data": []})

    await naver_source.fetch_orders(SINCE, SINCE + timedelta(days=2, hours=6))

    assert mock_session.request.call_count == 3


@pytest.mark.asyncio
async def test_retry_on_429_honours_retry_after(naver_source, mock_session):
    """429 responses are retried, using Retry-After when present."""
    mock_session.request.side_effect = [
        _response(status=429, headers={"Retry-After": "2"}),
        _response(json_data={"data": []}),
    ]

    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        orders = await naver_source.fetch_orders(SINCE, UNTIL)

    assert orders == []
    mock_sleep.assert_awaited_once_with(2.0)


def test_parse_retry_after_forms():
    now = datetime(2015, 10, 21, 7, 27, 0, tzinfo=timezone.utc)

    assert parse_retry_after("2", now) == 2.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now) == 60.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:00:00 GMT", now) == 0.0
    assert parse_retry_after("soon", now) is None
    assert parse_retry_after(None, now) is None


@pytest.mark.asyncio
async def test_unparseable_retry_after_falls_back_to_backoff(naver_source, mock_session):
    mock_session.request.side_effect = [
        _response(status=429, headers={"Retry-After": "soon"}),
        _response(json_data={"data": []}),
    ]

    with patch.object(naver_source, "_calculate_backoff", return_value=0.75):
        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            orders = await naver_source.fetch_orders(SINCE, UNTIL)

    assert orders == []
    mock_sleep.assert_awaited_once_with(0.75)


@pytest.mark.asyncio
async def test_retries_exhausted_raise_transient_error(naver_source, mock_session):
    mock_session.request.return_value = _response(status=503)

    with patch("asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(TransientProviderError) as exc_info:
            await naver_source.fetch_orders(SINCE, UNTIL)

    assert exc_info.value.status == 503
    assert mock_session.request.call_count == NaverOrderSource.MAX_RETRY_ATTEMPTS + 1


@pytest.mark.asyncio
async def test_client_error_is_not_retried(naver_source, mock_session):
    mock_session.request.return_value = _response(status=400, text="bad window")

    with pytest.raises(ProviderApiError) as exc_info:
        await naver_source.fetch_orders(SINCE, UNTIL)

    assert exc_info.value.status == 400
    assert mock_session.request.call_count == 1


@pytest.mark.asyncio
async def test_401_forces_one_refresh(naver_source, mock_session, token_source):
    """A rejected token is refreshed once and the request resent."""
    mock_session.request.side_effect = [
        _response(status=401, text="invalid token tok-1"),
        _response(json_data={"data": []}),
    ]

    await naver_source.fetch_orders(SINCE, UNTIL)

    token_source.force_refresh.assert_awaited_once()
    second_headers = mock_session.request.call_args_list[1].kwargs["headers"]
    assert second_headers["Authorization"] == "Bearer tok-2"


@pytest.mark.asyncio
async def test_repeated_401_raises_with_redacted_body(naver_source, mock_session):
    mock_session.request.side_effect = [
        _response(status=401, text="invalid token tok-1"),
        _response(status=401, text="invalid token tok-2"),
    ]

    with pytest.raises(ProviderAuthError) as exc_info:
        await naver_source.fetch_orders(SINCE, UNTIL)

    assert "tok-2" not in exc_info.value.body
    assert "[REDACTED]" in exc_info.value.body


@pytest.mark.asyncio
async def test_naver_settlements(naver_source, mock_session):
    mock_session.request.return_value = _response(
        json_data={
            "data": [
                {
                    "orderId": "ORD-1",
                    "productOrderId": "PO-1",
                    "settleAmount": 28500,
                    "totalCommission": 1500,
                    "saleAmount": 30000,
                    "settleStatus": "SETTLED",
                    "settleExpectDate": "2025-03-20",
                },
                {"productOrderId": "PO-2", "settleAmount": "n/a"},
                {"settleAmount": 1},
            ]
        }
    )

    settlements = await naver_source.fetch_settlements(["PO-1", "PO-2"])

    assert len(settlements) == 1
    settlement = settlements[0]
    assert settlement.external_line_item_id == "PO-1"
    assert settlement.settlement_amount == 28500.0
    assert settlement.commission_rate == 5.0
    assert mock_session.request.call_args.kwargs["json"] == {"productOrderIds": ["PO-1", "PO-2"]}


@pytest.mark.asyncio
async def test_naver_settlements_batched_by_100(naver_source, mock_session):
    mock_session.request.return_value = _response(json_data={"data": []})

    await naver_source.fetch_settlements([f"PO-{i}" for i in range(250)])

    batches = [c.kwargs["json"]["productOrderIds"] for c in mock_session.request.call_args_list]
    assert [len(b) for b in batches] == [100, 100, 50]


def test_commission_rate():
    assert commission_rate(1500, 30000) == 5.0
    assert commission_rate(1, 3) == 33.33
    assert commission_rate(100, 0) == 0.0


@pytest.mark.asyncio
async def test_shopify_root_errors_raise(mock_session, token_source):
    """Root-level GraphQL errors arrive with HTTP 200 and must fail the call."""
    source = ShopifyOrderSource(
        _connection("shopify", shop_domain="test-shop.myshopify.com"),
        mock_session,
        token_source,
        api_version="2024-10",
    )
    mock_session.request.return_value = _response(
        json_data={"errors": [{"message": "Access denied for orders field"}]}
    )

    with pytest.raises(ProviderApiError) as exc_info:
        await source.fetch_orders(SINCE, UNTIL)

    assert "Access denied" in str(exc_info.value)


@pytest.mark.asyncio
async def test_shopify_paginates_with_cursor(mock_session, token_source):
    source = ShopifyOrderSource(
        _connection("shopify", shop_domain="test-shop.myshopify.com"),
        mock_session,
        token_source,
        api_version="2024-10",
    )
    mock_session.request.side_effect = [
        _response(json_data={"data": {"orders": {
            "nodes": [{"id": "gid://shopify/Order/1"}],
            "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
        }}}),
        _response(json_data={"data": {"orders": {
            "nodes": [{"id": "gid://shopify/Order/2"}],
            "pageInfo": {"hasNextPage": False, "endCursor": None},
        }}}),
    ]

    orders = await source.fetch_orders(SINCE, UNTIL)

    assert [o["id"] for o in orders] == ["gid://shopify/Order/1", "gid://shopify/Order/2"]
    first, second = mock_session.request.call_args_list
    assert first.args[1] == "https://test-shop.myshopify.com/admin/api/2024-10/graphql.json"
    assert first.kwargs["headers"]["X-Shopify-Access-Token"] == "tok-1"
    assert second.kwargs["json"]["variables"]["cursor"] == "c1"


@pytest.mark.asyncio
async def test_cafe24_uses_mall_local_dates(mock_session, token_source):
    source = Cafe24OrderSource(_connection("cafe24", mall_id="mymall"), mock_session, token_source)
    mock_session.request.return_value = _response(json_data={"orders": [{"order_id": "A"}]})

    orders = await source.fetch_orders(SINCE, datetime(2025, 3, 3, 20, 0, tzinfo=timezone.utc))

    assert orders == [{"order_id": "A"}]
    args, kwargs = mock_session.request.call_args
    assert args == ("GET", "https://mymall.cafe24api.com/api/v2/admin/orders")
    assert kwargs["params"]["start_date"] == "2025-03-03"
    assert kwargs["params"]["end_date"] == "2025-03-04"
    assert kwargs["headers"]["X-Cafe24-Api-Version"] == "2024-06-01"


@pytest.mark.asyncio
async def test_raw_pages_written_as_jsonl(tmp_path, mock_session, token_source):
    source = NaverOrderSource(_connection("naver"), mock_session, token_source, raw_dir=tmp_path)

    path = await source.write_raw_page("orders", [{"productOrderId": "1"}])

    assert path.parent == tmp_path
    assert path.name.startswith("raw_naver_orders_")
    assert '"connection_id":"conn_naver"' in path.read_text()
    assert await source.write_raw_page("orders", []) is None
