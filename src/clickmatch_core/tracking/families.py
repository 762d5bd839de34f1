"""Storefront families and their attribution parameter names.

Most destinations understand the UTM triple. Some storefronts only report
their own inflow parameters back through the order API, so a click bound
for them carries the triple under the family's names instead. The same
table decodes those names when an order's inflow data is ingested.
"""
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qs, urlparse


@dataclass(frozen=True)
class StorefrontFamily:
    """Attribution parameter naming used by a group of storefront hosts."""

    name: str
    hosts: tuple[str, ...]
    source_param: str
    medium_param: str
    campaign_param: str

    def matches_host(self, host: str) -> bool:
        host = host.lower()
        return any(host == h or host.endswith("." + h) for h in self.hosts)

    @property
    def param_names(self) -> tuple[str, str, str]:
        return (self.source_param, self.medium_param, self.campaign_param)


UTM_FAMILY = StorefrontFamily(
    name="utm",
    hosts=(),
    source_param="utm_source",
    medium_param="utm_medium",
    campaign_param="utm_campaign",
)

STOREFRONT_FAMILIES: tuple[StorefrontFamily, ...] = (
    StorefrontFamily(
        name="naver",
        hosts=("smartstore.naver.com", "brand.naver.com", "shopping.naver.com"),
        source_param="nt_source",
        medium_param="nt_medium",
        campaign_param="nt_detail",
    ),
)


def family_for_url(url: Optional[str]) -> StorefrontFamily:
    """Return the family whose hosts include the URL's host (UTM by default)."""
    if not url:
        return UTM_FAMILY

    host = urlparse(url).hostname or ""
    for family in STOREFRONT_FAMILIES:
        if family.matches_host(host):
            return family
    return UTM_FAMILY


def encode_attribution_params(
    family: StorefrontFamily,
    utm_source: Optional[str],
    utm_medium: Optional[str],
    utm_campaign: Optional[str],
) -> dict[str, str]:
    """Translate the UTM triple into the family's parameter names.

    Empty values are dropped.
    """
    values = (utm_source, utm_medium, utm_campaign)
    return {name: value for name, value in zip(family.param_names, values) if value}


def _first(params: Mapping, key: str) -> Optional[str]:
    value = params.get(key)
    if isinstance(value, list):
        value = value[0] if value else None
    return value or None


def decode_campaign(
    params: str | Mapping | None,
    family: Optional[StorefrontFamily] = None,
) -> Optional[dict]:
    """Recover the UTM triple from a query string, URL or parsed mapping.

    Family-specific names are tried before the UTM names. Only a result
    carrying a campaign counts as a signal.

    Args:
        params: URL, bare query string, or mapping of parameter values
        family: Restrict decoding to one family plus UTM

    Returns:
        dict with utm_source/utm_medium/utm_campaign, or None
    """
    if not params:
        return None

    if isinstance(params, str):
        text = params
        if "://" in text:
            text = urlparse(text).query
        elif text.startswith("?"):
            text = text[1:]
        mapping: Mapping = parse_qs(text)
    else:
        mapping = params

    candidates = [family] if family else list(STOREFRONT_FAMILIES)
    candidates.append(UTM_FAMILY)

    for candidate in candidates:
        campaign = _first(mapping, candidate.campaign_param)
        if campaign:
            return {
                "utm_source": _first(mapping, candidate.source_param),
                "utm_medium": _first(mapping, candidate.medium_param),
                "utm_campaign": campaign,
            }

    return None
