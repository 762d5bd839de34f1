"""Click capture for tracking-link redirects.

Mints the click identifier, decides bot vs. human, builds the destination
URL with attribution parameters, and persists the ClickEvent. Persistence
is meant to run after the response is sent; failures there are logged
and never reach the visitor.
"""
import logging
import os
import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from ..schemas.records import ClickEvent, TrackingLink
from ..storage.schema import utc_now
from ..storage.store import AttributionStore
from .families import encode_attribution_params, family_for_url


logger = logging.getLogger(__name__)


CLICK_ID_PREFIX = "clk_"
BOT_CLICK_ID_PREFIX = "clk_bot_"
CLICK_ID_SUFFIX_LENGTH = 8
_BASE36 = string.digits + string.ascii_lowercase

# Query parameter carrying the click id to the destination
CLICK_PARAM = "cm_click"

CLICK_ID_COOKIE = "cm_click_id"
LINK_ID_COOKIE = "cm_tracking_link"
CLICK_TIME_COOKIE = "cm_click_time"
COOKIE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

UNIQUE_CLICK_WINDOW = timedelta(hours=1)

DEFAULT_FALLBACK_URL = "/"

BOT_USER_AGENT_PATTERN = re.compile(
    r"bot|crawl|spider|slurp|scrape|fetch|preview|headless|lighthouse|"
    r"facebookexternalhit|meta-externalagent|embedly|quora link|whatsapp|"
    r"telegram|skypeuripreview|vkshare|pinterest|bitlybot|curl/|wget/|"
    r"python-requests|aiohttp|httpx|go-http-client|okhttp|java/|apache-httpclient|"
    r"yeti|daum|petalbot|bingpreview|google-inspectiontool|adsbot",
    re.IGNORECASE,
)


def _epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def mint_click_id(now: Optional[datetime] = None) -> str:
    """Timestamp plus random base36 suffix, e.g. ``clk_1760000000000_k3v9a0zq``."""
    now = now or utc_now()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(CLICK_ID_SUFFIX_LENGTH))
    return f"{CLICK_ID_PREFIX}{_epoch_ms(now)}_{suffix}"


def mint_bot_click_id(now: Optional[datetime] = None) -> str:
    """Synthetic id for crawler hits; never persisted."""
    now = now or utc_now()
    return f"{BOT_CLICK_ID_PREFIX}{_epoch_ms(now)}"


def is_synthetic_click_id(click_id: Optional[str]) -> bool:
    return bool(click_id) and click_id.startswith(BOT_CLICK_ID_PREFIX)


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    return BOT_USER_AGENT_PATTERN.search(user_agent) is not None


def _append_params(url: str, params: dict[str, str]) -> str:
    u = urlparse(url)
    q = dict(parse_qsl(u.query, keep_blank_values=True))
    q.update(params)
    new_q = urlencode(q, doseq=True)
    return urlunparse((u.scheme, u.netloc, u.path, u.params, new_q, u.fragment))


def build_destination_url(link: TrackingLink, click_id: str) -> str:
    """Append the link's attribution parameters and the click id.

    The UTM triple is renamed for storefront families with their own
    inflow parameter names. Parameters already on the target URL are kept
    unless overwritten.
    """
    family = family_for_url(link.target_url)
    params = encode_attribution_params(
        family, link.utm_source, link.utm_medium, link.utm_campaign
    )
    params[CLICK_PARAM] = click_id
    return _append_params(link.target_url, params)


class CaptureOutcome(str, Enum):
    """Result kinds of a redirect hit."""

    TRACKED = "tracked"
    BOT = "bot"
    INACTIVE = "inactive"
    NOT_FOUND = "not_found"


@dataclass
class CaptureResult:
    """What the redirect handler needs to answer one hit."""

    outcome: CaptureOutcome
    destination_url: Optional[str] = None
    click_id: Optional[str] = None
    clicked_at: Optional[datetime] = None
    link: Optional[TrackingLink] = None
    click: Optional[ClickEvent] = None
    cookies: dict[str, str] = field(default_factory=dict)


class ClickCaptureService:
    """Resolve a tracking link hit into a redirect plus a pending ClickEvent."""

    def __init__(
        self,
        store: AttributionStore,
        fallback_url: Optional[str] = None,
    ) -> None:
        self.store = store
        self.fallback_url = fallback_url or os.getenv(
            "CLICKMATCH_FALLBACK_URL", DEFAULT_FALLBACK_URL
        )

    def capture(
        self,
        tracking_link_id: str,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None,
        ip_address: Optional[str] = None,
        fbp: Optional[str] = None,
        fbc: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CaptureResult:
        """Decide how to answer a redirect hit. Nothing is written here.

        Returns:
            CaptureResult; ``click`` is set only for human hits on active links
        """
        link = self.store.get_link(tracking_link_id)
        if link is None:
            logger.info("Unknown tracking link: %s", tracking_link_id)
            return CaptureResult(outcome=CaptureOutcome.NOT_FOUND)

        if not link.is_active:
            logger.info(
                "Tracking link %s is %s, redirecting to fallback",
                tracking_link_id,
                link.status.value,
            )
            return CaptureResult(
                outcome=CaptureOutcome.INACTIVE,
                destination_url=self.fallback_url,
                link=link,
            )

        now = now or utc_now()

        if is_bot_user_agent(user_agent):
            click_id = mint_bot_click_id(now)
            logger.debug("Bot hit on %s (ua=%s)", tracking_link_id, (user_agent or "")[:80])
            return CaptureResult(
                outcome=CaptureOutcome.BOT,
                destination_url=build_destination_url(link, click_id),
                click_id=click_id,
                clicked_at=now,
                link=link,
            )

        click_id = mint_click_id(now)
        click = ClickEvent(
            tracking_link_id=link.id,
            user_id=link.user_id,
            click_id=click_id,
            created_at=now,
            referrer=referrer,
            user_agent=user_agent,
            ip_address=ip_address,
            fbp=fbp,
            fbc=fbc,
        )

        return CaptureResult(
            outcome=CaptureOutcome.TRACKED,
            destination_url=build_destination_url(link, click_id),
            click_id=click_id,
            clicked_at=now,
            link=link,
            click=click,
            cookies={
                CLICK_ID_COOKIE: click_id,
                LINK_ID_COOKIE: link.id,
                CLICK_TIME_COOKIE: str(_epoch_ms(now)),
            },
        )

    def persist_click(self, click: ClickEvent) -> Optional[ClickEvent]:
        """Background task: store the click.

        This function MUST be exception-safe; all errors are caught and logged.
        """
        if is_synthetic_click_id(click.click_id):
            logger.warning("Refusing to persist synthetic click id %s", click.click_id)
            return None

        try:
            stored = self.store.record_click(
                click, unique_window_start=click.created_at - UNIQUE_CLICK_WINDOW
            )
            logger.debug(
                "Recorded click %s on %s (unique=%s)",
                stored.click_id,
                stored.tracking_link_id,
                stored.is_unique,
            )
            return stored
        except Exception as exc:
            logger.error(
                "Failed to persist click %s for link %s: %s",
                click.click_id,
                click.tracking_link_id,
                exc,
                exc_info=True,
            )
            return None
