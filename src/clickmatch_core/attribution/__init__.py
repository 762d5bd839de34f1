"""Order-to-click attribution and aggregate updates."""
from .aggregates import AggregateUpdater, compute_roas
from .matcher import ATTRIBUTION_WINDOW, AttributionMatcher, MatchResult

__all__ = [
    "ATTRIBUTION_WINDOW",
    "AggregateUpdater",
    "AttributionMatcher",
    "MatchResult",
    "compute_roas",
]
