"""External order sources and the declarative normalizer."""
from .base import ProviderClient
from .cafe24 import Cafe24OrderSource
from .exceptions import (
    ConnectionNeedsReconnectError,
    OrderPayloadError,
    ProviderApiError,
    ProviderAuthError,
    ProviderError,
    TokenRefreshError,
    TokenRefreshLockedError,
    TransientProviderError,
)
from .mappings import CAFE24_MAPPING, NAVER_MAPPING, SHOPIFY_MAPPING, ProviderMapping
from .naver import NaverOrderSource
from .normalizer import extract_campaign_signal, map_status, normalize_order, resolve_path
from .shopify import ShopifyOrderSource

__all__ = [
    "CAFE24_MAPPING",
    "Cafe24OrderSource",
    "ConnectionNeedsReconnectError",
    "NAVER_MAPPING",
    "NaverOrderSource",
    "OrderPayloadError",
    "ProviderApiError",
    "ProviderAuthError",
    "ProviderClient",
    "ProviderError",
    "ProviderMapping",
    "SHOPIFY_MAPPING",
    "ShopifyOrderSource",
    "TokenRefreshError",
    "TokenRefreshLockedError",
    "TransientProviderError",
    "extract_campaign_signal",
    "map_status",
    "normalize_order",
    "resolve_path",
]
