"""Conversion and revenue aggregates on links and campaigns."""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..storage.schema import utc_now
from ..storage.store import AttributionStore
from .matcher import MatchResult


logger = logging.getLogger(__name__)


def compute_roas(revenue: float, spent: float) -> int:
    """Return on ad spend as a whole percentage; 0 when nothing was spent."""
    if not spent or spent <= 0:
        return 0
    ratio = Decimal(str(revenue)) / Decimal(str(spent)) * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AggregateUpdater:
    """Convert a matched click and add the order to its link and campaign.

    Runs inside the caller's transaction and never commits.
    """

    def __init__(self, store: AttributionStore) -> None:
        self.store = store

    def apply(
        self,
        order_id: int,
        match: MatchResult,
        revenue: float,
        converted_at: Optional[datetime] = None,
    ) -> bool:
        """Flip the click to converted, then increment aggregates.

        Returns:
            False when the click was already converted by another writer;
            nothing is incremented in that case
        """
        if match.click is None or match.click.id is None:
            return False

        converted = self.store.mark_click_converted(
            match.click.id, order_id, converted_at or utc_now()
        )
        if not converted:
            logger.info(
                "Click %s already converted by another writer, skipping aggregates",
                match.click.click_id,
            )
            return False

        self.store.increment_link_aggregates(match.click.tracking_link_id, revenue)

        if match.campaign is not None:
            self.store.increment_campaign_aggregates(match.campaign.id, revenue)

        return True
