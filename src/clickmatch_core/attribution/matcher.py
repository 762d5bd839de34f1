"""Attribution matcher - pick the click that caused an order.

Strict priority, first success wins:
- product: the user's newest active link for the order's product, its
  newest unconverted click
- utm: links whose utm_campaign equals the order's recovered campaign,
  newest unconverted click among them
- recency: newest unconverted click across the user's active links
  (last-click-wins approximation)

Every strategy only considers clicks inside the attribution window ending
at the order time. Synthetic bot click ids are never eligible.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..schemas.records import (
    AttributionStrategy,
    Campaign,
    ClickEvent,
    NormalizedOrder,
    TrackingLink,
)
from ..storage.schema import utc_now
from ..storage.store import AttributionStore
from ..tracking.click_capture import BOT_CLICK_ID_PREFIX


logger = logging.getLogger(__name__)


ATTRIBUTION_WINDOW = timedelta(days=30)


@dataclass
class MatchResult:
    """Matcher output; all None with strategy NONE when unattributed."""

    link: Optional[TrackingLink] = None
    click: Optional[ClickEvent] = None
    campaign: Optional[Campaign] = None
    strategy: AttributionStrategy = AttributionStrategy.NONE

    @property
    def matched(self) -> bool:
        return self.click is not None


class AttributionMatcher:
    """Find the single best unconverted ClickEvent for a canonical order."""

    def __init__(
        self,
        store: AttributionStore,
        window: timedelta = ATTRIBUTION_WINDOW,
    ) -> None:
        self.store = store
        self.window = window

    def match(
        self,
        order: NormalizedOrder,
        product_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> MatchResult:
        """Run the strategies in priority order.

        Args:
            order: Normalized order line
            product_id: Stored product row id for the order's product, if known
            now: Window end when the order carries no timestamp
        """
        window_end = order.ordered_at or now or utc_now()
        window_start = window_end - self.window

        click, strategy = None, AttributionStrategy.NONE

        if product_id is not None:
            link = self.store.latest_active_link_for_product(order.user_id, product_id)
            if link is not None:
                click = self.store.latest_unconverted_click(
                    [link.id], window_start, window_end, BOT_CLICK_ID_PREFIX
                )
                strategy = AttributionStrategy.PRODUCT

        if click is None and order.attribution.utm_campaign:
            links = self.store.links_for_utm_campaign(
                order.user_id, order.attribution.utm_campaign
            )
            click = self.store.latest_unconverted_click(
                [link.id for link in links], window_start, window_end, BOT_CLICK_ID_PREFIX
            )
            strategy = AttributionStrategy.UTM

        if click is None:
            click = self.store.latest_unconverted_click_for_user(
                order.user_id, window_start, window_end, BOT_CLICK_ID_PREFIX
            )
            strategy = AttributionStrategy.RECENCY

        if click is None:
            logger.debug(
                "No eligible click for order %s/%s",
                order.external_order_id,
                order.external_line_item_id,
            )
            return MatchResult()

        link = self.store.get_link(click.tracking_link_id)
        campaign = None
        if link is not None and link.campaign_id:
            campaign = self.store.get_campaign(link.campaign_id)

        logger.debug(
            "Order %s/%s matched click %s via %s",
            order.external_order_id,
            order.external_line_item_id,
            click.click_id,
            strategy.value,
        )
        return MatchResult(link=link, click=click, campaign=campaign, strategy=strategy)
