"""Shopify order source (GraphQL Admin API).

Fetches orders updated inside the sync window together with the
customerJourneySummary visit data used for the campaign signal.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any

from .base import ProviderClient
from .exceptions import ProviderApiError


logger = logging.getLogger(__name__)


DEFAULT_API_VERSION = "2024-10"

ORDERS_QUERY = """
query($query: String!, $cursor: String) {
  orders(first: 100, query: $query, after: $cursor, sortKey: UPDATED_AT) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      name
      createdAt
      cancelledAt
      displayFinancialStatus
      displayFulfillmentStatus
      totalPriceSet {
        shopMoney {
          amount
          currencyCode
        }
      }
      customerJourneySummary {
        firstVisit {
          landingPage
          referrerUrl
          utmParameters {
            campaign
            source
            medium
            term
            content
          }
        }
        lastVisit {
          landingPage
          referrerUrl
          utmParameters {
            campaign
            source
            medium
            term
            content
          }
        }
      }
      lineItems(first: 250) {
        edges {
          node {
            id
            title
            quantity
            variant {
              id
              product {
                id
              }
            }
            originalUnitPriceSet {
              shopMoney {
                amount
              }
            }
            originalTotalSet {
              shopMoney {
                amount
                currencyCode
              }
            }
            discountedTotalSet {
              shopMoney {
                amount
              }
            }
          }
        }
      }
    }
  }
}
"""


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class ShopifyOrderSource(ProviderClient):
    """Async order source for one Shopify store connection."""

    PROVIDER = "shopify"

    def __init__(self, *args, api_version: str | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.shop_domain = self.connection.metadata.get("shop_domain")
        if not self.shop_domain:
            raise ValueError(f"Connection {self.connection.id} has no shop_domain")
        self.api_version = api_version or os.getenv("SHOPIFY_API_VERSION", DEFAULT_API_VERSION)
        self.graphql_endpoint = (
            f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"
        )

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"X-Shopify-Access-Token": access_token}

    def _check_envelope(self, json_data: Any) -> None:
        # Root-level GraphQL errors arrive with HTTP 200
        if isinstance(json_data, dict) and json_data.get("errors"):
            error_messages = [
                e.get("message", str(e)) if isinstance(e, dict) else str(e)
                for e in json_data["errors"]
            ]
            raise ProviderApiError(
                self.PROVIDER, 200, f"GraphQL root errors: {'; '.join(error_messages)}"
            )

    async def fetch_orders(self, since: datetime, until: datetime) -> list[dict]:
        """Fetch orders updated in [since, until].

        Returns:
            List of Order nodes
        """
        query_filter = f"updated_at:>={_iso_utc(since)} updated_at:<={_iso_utc(until)}"

        all_orders: list[dict] = []
        cursor = None

        while True:
            payload = {
                "query": ORDERS_QUERY,
                "variables": {"query": query_filter, "cursor": cursor},
            }
            result = await self._request("POST", self.graphql_endpoint, json_body=payload)

            try:
                orders_data = result["data"]["orders"]
                nodes = orders_data["nodes"]
                page_info = orders_data["pageInfo"]
            except (KeyError, TypeError):
                raise ProviderApiError(self.PROVIDER, 200, "response missing data.orders")

            all_orders.extend(nodes)
            await self.write_raw_page("orders", nodes)

            if not page_info.get("hasNextPage"):
                break
            cursor = page_info["endCursor"]

        logger.info(
            "Fetched %s Shopify orders for %s (%s..%s)",
            len(all_orders),
            self.shop_domain,
            since.isoformat(),
            until.isoformat(),
        )
        return all_orders
