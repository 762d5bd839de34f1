"""Provider lookup: order source, token refresher and field mapping per provider."""
from pathlib import Path
from typing import Optional

import aiohttp

from ..connections.refreshers import (
    Cafe24TokenRefresher,
    NaverTokenRefresher,
    StaticTokenRefresher,
    TokenRefresher,
)
from ..schemas.records import ExternalConnection
from .base import ProviderClient, TokenSource
from .cafe24 import Cafe24OrderSource
from .mappings import PROVIDER_MAPPINGS, ProviderMapping
from .naver import NaverOrderSource
from .shopify import ShopifyOrderSource


ORDER_SOURCES: dict[str, type[ProviderClient]] = {
    "shopify": ShopifyOrderSource,
    "naver": NaverOrderSource,
    "cafe24": Cafe24OrderSource,
}

SUPPORTED_PROVIDERS = tuple(ORDER_SOURCES)

SETTLEMENT_PROVIDERS = tuple(
    provider
    for provider, source_cls in ORDER_SOURCES.items()
    if source_cls.supports_settlements()
)


class UnsupportedProviderError(ValueError):
    """Raised for a connection whose provider has no order source."""


def mapping_for(provider: str) -> ProviderMapping:
    try:
        return PROVIDER_MAPPINGS[provider]
    except KeyError:
        raise UnsupportedProviderError(f"No field mapping for provider {provider!r}")


def build_order_source(
    connection: ExternalConnection,
    session: aiohttp.ClientSession,
    token_source: TokenSource,
    raw_dir: Optional[Path] = None,
) -> ProviderClient:
    """Instantiate the order source for a connection's provider."""
    source_cls = ORDER_SOURCES.get(connection.provider)
    if source_cls is None:
        raise UnsupportedProviderError(
            f"No order source for provider {connection.provider!r}"
        )
    return source_cls(connection, session, token_source, raw_dir=raw_dir)


def build_refresher(provider: str, session: aiohttp.ClientSession) -> TokenRefresher:
    """Return the refresh grant for a provider."""
    if provider == "cafe24":
        return Cafe24TokenRefresher(session)
    if provider == "naver":
        return NaverTokenRefresher(session)
    return StaticTokenRefresher(provider)
