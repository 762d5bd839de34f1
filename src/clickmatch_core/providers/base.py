"""Shared HTTP behaviour for external order sources.

Every provider client goes through ``ProviderClient._request``: the access
token comes from the connection's token source (refreshed before expiry),
429/5xx/network errors are retried with exponential backoff and jitter,
and a 401 forces one token refresh before the request is retried.
"""
import asyncio
import json
import logging
import os
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Optional, Protocol

import aiofiles
import aiohttp

from ..schemas.records import ExternalConnection, SettlementInfo
from .exceptions import (
    ProviderApiError,
    ProviderAuthError,
    TransientProviderError,
)


logger = logging.getLogger(__name__)


DEFAULT_RAW_DIR = "data/raw"


def _redact(text: str, token: Optional[str]) -> str:
    if not text or not token:
        return text
    return text.replace(token, "[REDACTED]")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date).

    Returns None when the header is missing or unparseable.
    """
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


class TokenSource(Protocol):
    """Access-token provider bound to one connection."""

    async def get_access_token(self) -> str: ...

    async def force_refresh(self) -> str: ...


class ProviderClient:
    """Base async client for one external connection.

    Subclasses implement ``fetch_orders`` and ``_auth_headers``.
    """

    PROVIDER = "provider"

    MAX_RETRY_ATTEMPTS = 6
    RETRY_BASE_DELAY = 0.5  # seconds
    RETRY_MULTIPLIER = 2.0
    RETRY_MAX_DELAY = 30.0  # seconds
    RETRY_JITTER_MS = 250  # milliseconds

    REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)

    def __init__(
        self,
        connection: ExternalConnection,
        session: aiohttp.ClientSession,
        token_source: TokenSource,
        raw_dir: Optional[Path] = None,
    ) -> None:
        """Initialize provider client.

        Args:
            connection: Connection whose orders are read
            session: Injected aiohttp ClientSession
            token_source: Supplies (and refreshes) the access token
            raw_dir: Directory for raw JSONL audit logs (None disables)
        """
        self.connection = connection
        self.session = session
        self.token_source = token_source
        self.raw_dir = Path(raw_dir) if raw_dir else None
        self._last_token: Optional[str] = None

    async def fetch_orders(self, since: datetime, until: datetime) -> list[dict]:
        """Return raw order payloads changed or created in [since, until]."""
        raise NotImplementedError

    async def fetch_settlements(self, line_item_ids: list[str]) -> list[SettlementInfo]:
        """Return settlement figures for the given line items."""
        raise NotImplementedError(f"{self.PROVIDER} has no settlement API")

    @classmethod
    def supports_settlements(cls) -> bool:
        return cls.fetch_settlements is not ProviderClient.fetch_settlements

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _check_envelope(self, json_data: Any) -> None:
        """Hook for provider-level error envelopes inside a 200 response."""

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> Any:
        """Authenticated request with a single forced refresh on 401.

        Raises:
            ProviderAuthError: Token still rejected after a refresh
            ProviderApiError: Non-retryable 4xx
            TransientProviderError: Retries exhausted
        """
        token = await self.token_source.get_access_token()
        try:
            return await self._send(method, url, token, json_body, params, retry)
        except ProviderAuthError as exc:
            if exc.status != 401:
                raise
            logger.warning(
                "%s rejected access token for connection %s, forcing refresh",
                self.PROVIDER,
                self.connection.id,
            )
            token = await self.token_source.force_refresh()
            return await self._send(method, url, token, json_body, params, retry)

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        json_body: Optional[dict],
        params: Optional[dict],
        retry: bool,
    ) -> Any:
        self._last_token = token
        headers = {"Content-Type": "application/json", **self._auth_headers(token)}

        attempt = 0
        while True:
            attempt += 1

            try:
                async with self.session.request(
                    method,
                    url,
                    json=json_body,
                    params=params,
                    headers=headers,
                    timeout=self.REQUEST_TIMEOUT,
                ) as resp:
                    if resp.status == 429:
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            raise TransientProviderError(
                                self.PROVIDER, f"HTTP 429 after {attempt} attempts", 429
                            )

                        delay = parse_retry_after(resp.headers.get("Retry-After"))
                        if delay is not None:
                            logger.warning(
                                "%s HTTP 429, Retry-After=%ss, attempt=%s",
                                self.PROVIDER,
                                delay,
                                attempt,
                            )
                        else:
                            delay = self._calculate_backoff(attempt)
                            logger.warning(
                                "%s HTTP 429, backoff=%.2fs, attempt=%s",
                                self.PROVIDER,
                                delay,
                                attempt,
                            )

                        await asyncio.sleep(delay)
                        continue

                    if 500 <= resp.status < 600:
                        if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                            raise TransientProviderError(
                                self.PROVIDER,
                                f"HTTP {resp.status} after {attempt} attempts",
                                resp.status,
                            )

                        delay = self._calculate_backoff(attempt)
                        logger.warning(
                            "%s HTTP %s, backoff=%.2fs, attempt=%s",
                            self.PROVIDER,
                            resp.status,
                            delay,
                            attempt,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if resp.status in (401, 403):
                        body = _redact(await resp.text(), token)
                        raise ProviderAuthError(self.PROVIDER, resp.status, body)

                    if 400 <= resp.status < 500:
                        body = _redact(await resp.text(), token)
                        logger.error(
                            "%s HTTP %s (non-retryable): %s",
                            self.PROVIDER,
                            resp.status,
                            body[:500],
                        )
                        raise ProviderApiError(self.PROVIDER, resp.status, body)

                    json_data = await resp.json(content_type=None)
                    self._check_envelope(json_data)
                    return json_data

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if not retry or attempt > self.MAX_RETRY_ATTEMPTS:
                    raise TransientProviderError(
                        self.PROVIDER, f"Network error after {attempt} attempts: {e}"
                    ) from e

                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "%s network error: %s, backoff=%.2fs, attempt=%s",
                    self.PROVIDER,
                    e,
                    delay,
                    attempt,
                )
                await asyncio.sleep(delay)
                continue

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff with jitter.

        Args:
            attempt: Current retry attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.RETRY_BASE_DELAY * (self.RETRY_MULTIPLIER ** (attempt - 1)),
            self.RETRY_MAX_DELAY,
        )
        jitter = random.uniform(0, self.RETRY_JITTER_MS / 1000.0)
        return delay + jitter

    async def write_raw_page(self, label: str, items: list[dict]) -> Optional[Path]:
        """Append fetched payloads to the raw JSONL audit log.

        Returns:
            Path written, or None when raw logging is disabled
        """
        if self.raw_dir is None or not items:
            return None

        fetched_at = datetime.now(timezone.utc)
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        jsonl_path = (
            self.raw_dir
            / f"raw_{self.PROVIDER}_{label}_{fetched_at.date().isoformat()}.jsonl"
        )

        async with aiofiles.open(jsonl_path, mode="a", encoding="utf-8") as handle:
            for item in items:
                envelope = {
                    "source": self.PROVIDER,
                    "connection_id": self.connection.id,
                    "fetched_at": fetched_at.isoformat(),
                    "response_item": item,
                }
                await handle.write(json.dumps(envelope, separators=(",", ":")) + "\n")

        logger.debug("Wrote %s %s items to %s", len(items), label, jsonl_path)
        return jsonl_path


def default_raw_dir() -> Path:
    return Path(os.getenv("CLICKMATCH_RAW_DIR", DEFAULT_RAW_DIR))
