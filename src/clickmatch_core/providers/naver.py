"""Naver Commerce order and settlement source."""
import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo

from ..schemas.records import SettlementInfo
from .base import ProviderClient
from .exceptions import OrderPayloadError, ProviderApiError


logger = logging.getLogger(__name__)


NAVER_COMMERCE_BASE_URL = "https://api.commerce.naver.com"
NAVER_TIMEZONE = ZoneInfo("Asia/Seoul")

PAGE_SIZE = 100
SETTLEMENT_BATCH_SIZE = 100
# last-changed-statuses accepts at most a 24 hour window per query
MAX_QUERY_WINDOW = timedelta(hours=24)


def _naver_ts(value: datetime) -> str:
    return value.astimezone(NAVER_TIMEZONE).isoformat(timespec="milliseconds")


def _contents(result: Any) -> list[dict]:
    data = result.get("data") if isinstance(result, dict) else None
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("contents") or []
    return []


def commission_rate(total_commission: float, sale_amount: float) -> float:
    """Commission as a percentage of the sale, two decimals; 0 without a sale."""
    if not sale_amount:
        return 0.0
    rate = Decimal(str(total_commission)) / Decimal(str(sale_amount)) * 100
    return float(rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class NaverOrderSource(ProviderClient):
    """Async client for Naver Commerce product orders and settlements."""

    PROVIDER = "naver"

    def __init__(self, *args, base_url: str = NAVER_COMMERCE_BASE_URL, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.base_url = base_url

    async def fetch_orders(self, since: datetime, until: datetime) -> list[dict]:
        """Fetch product orders whose status changed in [since, until].

        Each returned item is one product order (line item).
        """
        url = f"{self.base_url}/external/v1/pay-order/seller/product-orders/last-changed-statuses"
        all_orders: list[dict] = []

        window_start = since
        while window_start < until:
            window_end = min(window_start + MAX_QUERY_WINDOW, until)
            page_number = 1

            while True:
                result = await self._request(
                    "POST",
                    url,
                    json_body={
                        "lastChangedFrom": _naver_ts(window_start),
                        "lastChangedTo": _naver_ts(window_end),
                        "pageNumber": page_number,
                        "pageSize": PAGE_SIZE,
                    },
                )
                contents = _contents(result)
                all_orders.extend(contents)
                await self.write_raw_page("orders", contents)

                if len(contents) < PAGE_SIZE:
                    break
                page_number += 1

            window_start = window_end

        logger.info(
            "Fetched %s Naver product orders for connection %s",
            len(all_orders),
            self.connection.id,
        )
        return all_orders

    async def fetch_settlements(self, line_item_ids: list[str]) -> list[SettlementInfo]:
        """Fetch settlement figures in batches of at most 100 product orders."""
        url = f"{self.base_url}/external/v1/settlements/product-orders"
        settlements: list[SettlementInfo] = []

        for offset in range(0, len(line_item_ids), SETTLEMENT_BATCH_SIZE):
            batch = line_item_ids[offset:offset + SETTLEMENT_BATCH_SIZE]
            result = await self._request("POST", url, json_body={"productOrderIds": batch})
            items = _contents(result)
            await self.write_raw_page("settlements", items)

            for item in items:
                try:
                    settlement = self._parse_settlement(item)
                except OrderPayloadError as exc:
                    logger.warning("Skipping settlement item: %s", exc)
                    continue
                if settlement is not None:
                    settlements.append(settlement)

        logger.info(
            "Fetched %s Naver settlements for %s product orders",
            len(settlements),
            len(line_item_ids),
        )
        return settlements

    def _parse_settlement(self, item: dict) -> Optional[SettlementInfo]:
        product_order_id = item.get("productOrderId")
        if not product_order_id:
            logger.warning("Settlement item without productOrderId: %s", str(item)[:200])
            return None

        try:
            settle_amount = float(item.get("settleAmount") or 0)
            total_commission = float(item.get("totalCommission") or 0)
            sale_amount = float(item.get("saleAmount") or 0)
        except (TypeError, ValueError) as exc:
            raise OrderPayloadError(
                self.PROVIDER, f"invalid settlement amounts: {exc}", str(product_order_id)
            )

        return SettlementInfo(
            external_order_id=item.get("orderId"),
            external_line_item_id=str(product_order_id),
            settlement_amount=settle_amount,
            total_commission=total_commission,
            commission_rate=commission_rate(total_commission, sale_amount),
            sale_amount=sale_amount,
            settle_status=item.get("settleStatus"),
            settle_expect_date=item.get("settleExpectDate"),
        )

    def _check_envelope(self, json_data: Any) -> None:
        if not isinstance(json_data, dict):
            raise ProviderApiError(self.PROVIDER, 200, f"unexpected response: {str(json_data)[:200]}")
