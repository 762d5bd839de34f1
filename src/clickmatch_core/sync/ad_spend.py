"""Meta Marketing API ad-spend source.

Sums campaign-level spend and writes it to ``campaigns.spent`` for
campaigns linked by ``external_campaign_id``; ROAS is recomputed with it.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiohttp

from ..providers.base import default_raw_dir
from ..providers.exceptions import ProviderApiError, TransientProviderError
from ..storage.schema import record_sync_run
from ..storage.store import AttributionStore


logger = logging.getLogger(__name__)


GRAPH_API_VERSION = "v18.0"
JOB_NAME = "ad_spend"


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class AdSpendSummary:
    accounts: int = 0
    campaigns_seen: int = 0
    campaigns_updated: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "accounts": self.accounts,
            "campaigns_seen": self.campaigns_seen,
            "campaigns_updated": self.campaigns_updated,
            "errors": self.errors,
            "messages": self.messages,
        }


class MetaSpendCollector:
    """Async collector for campaign spend on one Meta ad account."""

    def __init__(
        self,
        access_token: str,
        ad_account_id: str,
        session: aiohttp.ClientSession,
        raw_dir: Optional[Path] = None,
    ) -> None:
        """Initialize Meta spend collector.

        Args:
            access_token: Meta Marketing API access token
            ad_account_id: Ad account ID (with or without 'act_' prefix)
            session: aiohttp session for requests
            raw_dir: Directory for raw JSONL audit logs
        """
        self._access_token = access_token

        if not ad_account_id.startswith("act_"):
            ad_account_id = f"act_{ad_account_id}"
        self.ad_account_id = ad_account_id

        self.session = session
        self.raw_dir = Path(raw_dir) if raw_dir is not None else default_raw_dir()

    def _redact(self, text: str) -> str:
        if not text:
            return text
        return text.replace(self._access_token, "[REDACTED]")

    async def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        async with self.session.get(url, params=params) as response:
            if response.status != 200:
                error_body = self._redact(await response.text())
                logger.error("Meta API error (%s): %s", response.status, error_body[:500])
                if response.status == 429 or response.status >= 500:
                    raise TransientProviderError("meta", f"HTTP {response.status}", response.status)
                raise ProviderApiError("meta", response.status, error_body)
            return await response.json()

    async def fetch_campaign_spend(
        self,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> dict[str, float]:
        """Total spend per Meta campaign id.

        Args:
            since: Range start; lifetime spend when omitted
            until: Range end (defaults to today)

        Returns:
            {campaign_id: spend}
        """
        url = f"https://graph.facebook.com/{GRAPH_API_VERSION}/{self.ad_account_id}/insights"
        params = {
            "access_token": self._access_token,
            "level": "campaign",
            "fields": "campaign_id,campaign_name,spend",
            "limit": "1000",
        }
        if since:
            until = until or date.today()
            params["time_range"] = json.dumps(
                {"since": since.isoformat(), "until": until.isoformat()}
            )
        else:
            params["date_preset"] = "maximum"

        rows: list[dict] = []
        result = await self._get_json(url, params)
        rows.extend(result.get("data", []))

        while "paging" in result and "next" in result["paging"]:
            result = await self._get_json(result["paging"]["next"])
            rows.extend(result.get("data", []))

        await self._write_raw(rows)

        spend: dict[str, float] = {}
        for row in rows:
            campaign_id = row.get("campaign_id")
            if not campaign_id:
                logger.warning("Skipping insights row with missing campaign_id")
                continue
            spend[campaign_id] = spend.get(campaign_id, 0.0) + (
                _safe_float(row.get("spend")) or 0.0
            )

        logger.info(
            "Fetched spend for %s campaigns on %s", len(spend), self.ad_account_id
        )
        return spend

    async def _write_raw(self, rows: list[dict]) -> None:
        if not rows:
            return
        fetched_at = datetime.now(timezone.utc)
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        jsonl_path = self.raw_dir / f"raw_meta_campaign_spend_{fetched_at.date().isoformat()}.jsonl"

        async with aiofiles.open(jsonl_path, mode="a", encoding="utf-8") as handle:
            for row in rows:
                envelope = {
                    "source": "meta",
                    "level": "campaign",
                    "ad_account_id": self.ad_account_id,
                    "fetched_at": fetched_at.isoformat(),
                    "response_item": row,
                }
                await handle.write(json.dumps(envelope, separators=(",", ":")) + "\n")


def apply_spend(store: AttributionStore, spend_by_campaign: dict[str, float]) -> int:
    """Write spend to linked campaigns and recompute their ROAS.

    Returns:
        Number of campaigns updated
    """
    updated = 0
    for external_id, campaign in store.campaigns_by_external_id().items():
        if external_id not in spend_by_campaign:
            continue
        store.set_campaign_spent(campaign.id, spend_by_campaign[external_id])
        updated += 1
    return updated


def _meta_accounts(store: AttributionStore) -> list[tuple[str, str, str]]:
    """(label, access_token, ad_account_id) for each configured Meta account."""
    accounts = []
    for connection in store.list_connections(providers=["meta"]):
        ad_account_id = connection.metadata.get("ad_account_id")
        if connection.access_token and ad_account_id:
            accounts.append((connection.id, connection.access_token, ad_account_id))

    if not accounts:
        token = os.getenv("META_ACCESS_TOKEN")
        account_id = os.getenv("META_AD_ACCOUNT_ID")
        if token and account_id:
            accounts.append(("env", token, account_id))
    return accounts


async def run_ad_spend_sync(
    store: AttributionStore,
    session: aiohttp.ClientSession,
    raw_dir: Optional[Path] = None,
) -> AdSpendSummary:
    """Collect spend for every Meta account and apply it to campaigns."""
    summary = AdSpendSummary()
    accounts = _meta_accounts(store)
    if not accounts:
        logger.warning("No Meta ad account configured, skipping ad-spend sync")
        summary.messages.append("no meta ad account configured")
        return summary

    results = await asyncio.gather(
        *(
            MetaSpendCollector(token, account_id, session, raw_dir).fetch_campaign_spend()
            for _, token, account_id in accounts
        ),
        return_exceptions=True,
    )

    for (label, _, account_id), result in zip(accounts, results):
        summary.accounts += 1
        if isinstance(result, BaseException):
            if not isinstance(result, (TransientProviderError, ProviderApiError, aiohttp.ClientError)):
                raise result
            summary.errors += 1
            summary.messages.append(f"{account_id}: {result}")
            record_sync_run(store.db_conn, JOB_NAME, label, "failed", errors=1, details=str(result)[:500])
            continue

        updated = apply_spend(store, result)
        summary.campaigns_seen += len(result)
        summary.campaigns_updated += updated
        record_sync_run(store.db_conn, JOB_NAME, label, "success", synced=updated)

    logger.info(
        "Ad-spend sync finished: accounts=%s updated=%s errors=%s",
        summary.accounts,
        summary.campaigns_updated,
        summary.errors,
    )
    return summary
