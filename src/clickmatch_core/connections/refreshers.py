"""Provider token refresh grants.

Each refresher performs exactly one call to the provider's token endpoint
and returns the new credentials. Retrying, persistence and state
transitions belong to the TokenManager.
"""
import asyncio
import base64
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

import aiohttp
import bcrypt

from ..providers.exceptions import TokenRefreshError
from ..schemas.records import ExternalConnection


NAVER_COMMERCE_BASE_URL = "https://api.commerce.naver.com"
CAFE24_TIMEZONE = ZoneInfo("Asia/Seoul")


@dataclass
class RefreshedTokens:
    """Credentials returned by a refresh grant."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


class TokenRefresher(Protocol):
    async def refresh(self, connection: ExternalConnection) -> RefreshedTokens: ...


class StaticTokenRefresher:
    """Providers whose tokens never expire (Shopify offline tokens).

    A rejected static token cannot be renewed without the user.
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider

    async def refresh(self, connection: ExternalConnection) -> RefreshedTokens:
        raise TokenRefreshError(
            f"{self.provider} tokens cannot be refreshed (connection {connection.id})"
        )


async def _read_token_response(resp: aiohttp.ClientResponse, provider: str) -> dict:
    if resp.status != 200:
        body = await resp.text()
        raise TokenRefreshError(
            f"{provider} token endpoint returned HTTP {resp.status}: {body[:200]}"
        )
    try:
        data = await resp.json(content_type=None)
    except ValueError as exc:
        raise TokenRefreshError(f"{provider} token response is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TokenRefreshError(f"{provider} token response is not an object")
    if not data.get("access_token"):
        raise TokenRefreshError(f"{provider} token response missing access_token")
    return data


class Cafe24TokenRefresher:
    """OAuth refresh-token grant against a Cafe24 mall."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> None:
        self.session = session
        self.client_id = client_id or os.getenv("CAFE24_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("CAFE24_CLIENT_SECRET")

    async def refresh(self, connection: ExternalConnection) -> RefreshedTokens:
        mall_id = connection.metadata.get("mall_id")
        if not mall_id:
            raise TokenRefreshError(f"Connection {connection.id} has no mall_id")
        if not self.client_id or not self.client_secret:
            raise TokenRefreshError("CAFE24_CLIENT_ID and CAFE24_CLIENT_SECRET must be set")
        if not connection.refresh_token:
            raise TokenRefreshError(f"Connection {connection.id} has no refresh token")

        basic = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()
        ).decode()

        try:
            async with self.session.post(
                f"https://{mall_id}.cafe24api.com/api/v2/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": connection.refresh_token,
                },
                headers={
                    "Authorization": f"Basic {basic}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            ) as resp:
                data = await _read_token_response(resp, "cafe24")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TokenRefreshError(f"cafe24 token request failed: {exc}") from exc

        try:
            expires_at = parse_cafe24_expiry(data.get("expires_at"))
        except (TypeError, ValueError) as exc:
            raise TokenRefreshError(f"cafe24 token response has a bad expires_at: {exc}") from exc

        return RefreshedTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or connection.refresh_token,
            expires_at=expires_at,
        )


def parse_cafe24_expiry(value: Optional[str]) -> Optional[datetime]:
    """Cafe24 reports expiry as mall-local time without an offset."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=CAFE24_TIMEZONE)
    return parsed.astimezone(timezone.utc)


def naver_client_secret_sign(client_id: str, client_secret: str, timestamp_ms: int) -> str:
    """bcrypt-hash ``{client_id}_{timestamp}`` with the secret as salt, base64 encoded."""
    hashed = bcrypt.hashpw(
        f"{client_id}_{timestamp_ms}".encode("utf-8"),
        client_secret.encode("utf-8"),
    )
    return base64.b64encode(hashed).decode("utf-8")


class NaverTokenRefresher:
    """Client-credential grant for the Naver Commerce API.

    Naver issues no refresh token; a new access token is requested with a
    signed client secret whenever the old one nears expiry.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = NAVER_COMMERCE_BASE_URL,
    ) -> None:
        self.session = session
        self.base_url = base_url

    async def refresh(self, connection: ExternalConnection) -> RefreshedTokens:
        client_id = connection.metadata.get("client_id")
        client_secret = connection.metadata.get("client_secret")
        if not client_id or not client_secret:
            raise TokenRefreshError(
                f"Connection {connection.id} is missing client_id/client_secret"
            )

        timestamp_ms = int(time.time() * 1000)
        try:
            sign = naver_client_secret_sign(client_id, client_secret, timestamp_ms)
        except ValueError as exc:
            raise TokenRefreshError(f"Invalid Naver client secret: {exc}") from exc

        try:
            async with self.session.post(
                f"{self.base_url}/external/v1/oauth2/token",
                data={
                    "client_id": client_id,
                    "timestamp": str(timestamp_ms),
                    "client_secret_sign": sign,
                    "grant_type": "client_credentials",
                    "type": "SELF",
                },
            ) as resp:
                data = await _read_token_response(resp, "naver")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TokenRefreshError(f"naver token request failed: {exc}") from exc

        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError) as exc:
            raise TokenRefreshError(f"naver token response has a bad expires_in: {exc}") from exc
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            if expires_in
            else None
        )

        return RefreshedTokens(
            access_token=data["access_token"],
            refresh_token=None,
            expires_at=expires_at,
        )
