"""Access-token lifecycle for external connections.

State machine per connection::

    connected -> token_expired -> connected
                               -> needs_reconnect (terminal until re-auth)

Refresh is single-flight per connection: an in-process asyncio lock, an
optional Redis lock across processes, and a conditional token swap keyed
on the tokens read before refreshing. A process that loses the swap
adopts the winner's token instead of refreshing again.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import aiohttp
from redis.asyncio import Redis
from redis.asyncio.lock import Lock as AsyncRedisLock

from ..providers.exceptions import (
    ConnectionNeedsReconnectError,
    ProviderError,
    TokenRefreshError,
    TokenRefreshLockedError,
)
from ..schemas.records import ConnectionStatus, ExternalConnection
from ..storage.schema import utc_now
from ..storage.store import AttributionStore
from .refreshers import TokenRefresher


logger = logging.getLogger(__name__)


DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)

# Refresher errors that count as a failed attempt
REFRESH_FAILURES = (TokenRefreshError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def needs_refresh(
    connection: ExternalConnection,
    now: Optional[datetime] = None,
    margin: timedelta = DEFAULT_REFRESH_MARGIN,
) -> bool:
    """True when the access token is missing, marked expired, or near expiry.

    Connections without an expiry (static tokens) never need a refresh.
    """
    if connection.status == ConnectionStatus.TOKEN_EXPIRED:
        return True
    if not connection.access_token:
        return True
    if connection.token_expires_at is None:
        return False
    now = now or utc_now()
    return connection.token_expires_at - margin <= now


class TokenManager:
    """Hand out valid access tokens, refreshing them when needed."""

    MAX_REFRESH_ATTEMPTS = 2
    REFRESH_RETRY_DELAY = 1.0  # seconds
    LOCK_TTL_SECONDS = 60
    LOCK_WAIT_SECONDS = 15

    def __init__(
        self,
        store: AttributionStore,
        refresher_for: Callable[[str], TokenRefresher],
        redis: Optional[Redis] = None,
        margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize token manager.

        Args:
            store: Attribution store holding the connections
            refresher_for: Maps a provider name to its refresher
            redis: Optional redis.asyncio client for cross-process locking
            margin: Refresh this long before the stored expiry
            clock: Current time source
        """
        self.store = store
        self.refresher_for = refresher_for
        self.redis = redis
        self.margin = margin
        self.clock = clock
        # connection id -> (lock, number of callers holding or waiting)
        self._local_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _load(self, connection_id: str) -> ExternalConnection:
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ProviderError(f"Unknown connection {connection_id}")
        if connection.status == ConnectionStatus.NEEDS_RECONNECT:
            raise ConnectionNeedsReconnectError(connection_id, "awaiting re-authentication")
        return connection

    async def get_access_token(self, connection_id: str) -> str:
        """Return a usable access token, refreshing first if it expired.

        Raises:
            ConnectionNeedsReconnectError: Connection is (or just became) terminal
            TokenRefreshLockedError: Another process kept the refresh lock
        """
        connection = self._load(connection_id)
        if not needs_refresh(connection, self.clock(), self.margin):
            return connection.access_token
        return await self._refresh(connection_id, force=False)

    async def force_refresh(
        self, connection_id: str, rejected_token: Optional[str] = None
    ) -> str:
        """Refresh after the provider rejected ``rejected_token``.

        If the stored token already differs from the rejected one, another
        worker refreshed in the meantime and its token is returned.
        """
        return await self._refresh(connection_id, force=True, rejected_token=rejected_token)

    async def _refresh(
        self, connection_id: str, force: bool, rejected_token: Optional[str] = None
    ) -> str:
        lock, users = self._local_locks.get(connection_id, (asyncio.Lock(), 0))
        self._local_locks[connection_id] = (lock, users + 1)
        try:
            async with lock:
                redis_lock = await self._acquire_redis_lock(connection_id)
                try:
                    return await self._refresh_locked(connection_id, force, rejected_token)
                finally:
                    await self._release_lock_best_effort(redis_lock)
        finally:
            lock, users = self._local_locks[connection_id]
            if users <= 1:
                del self._local_locks[connection_id]
            else:
                self._local_locks[connection_id] = (lock, users - 1)

    async def _refresh_locked(
        self, connection_id: str, force: bool, rejected_token: Optional[str]
    ) -> str:
        # Re-read under the lock; a previous holder may have refreshed already.
        connection = self._load(connection_id)
        if not force:
            if not needs_refresh(connection, self.clock(), self.margin):
                return connection.access_token
        elif rejected_token and connection.access_token != rejected_token:
            return connection.access_token

        if connection.status != ConnectionStatus.TOKEN_EXPIRED:
            self.store.set_connection_status(connection_id, ConnectionStatus.TOKEN_EXPIRED)
            logger.info(
                "Access token expired for connection %s (%s), refreshing",
                connection_id,
                connection.provider,
            )

        refresher = self.refresher_for(connection.provider)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.MAX_REFRESH_ATTEMPTS + 1):
            try:
                tokens = await refresher.refresh(connection)
            except REFRESH_FAILURES as exc:
                last_error = exc
                logger.warning(
                    "Token refresh failed for connection %s (attempt %s/%s): %s",
                    connection_id,
                    attempt,
                    self.MAX_REFRESH_ATTEMPTS,
                    exc,
                )
                if attempt < self.MAX_REFRESH_ATTEMPTS:
                    await asyncio.sleep(self.REFRESH_RETRY_DELAY)
                continue

            swapped = self.store.swap_connection_tokens(
                connection_id,
                expected_refresh_token=connection.refresh_token,
                expected_access_token=connection.access_token,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
            )
            if swapped:
                logger.info(
                    "Refreshed token for connection %s, expires_at=%s",
                    connection_id,
                    tokens.expires_at.isoformat() if tokens.expires_at else None,
                )
                return tokens.access_token

            winner = self._load(connection_id)
            logger.info(
                "Connection %s was refreshed concurrently, using stored token",
                connection_id,
            )
            return winner.access_token

        self.store.set_connection_status(connection_id, ConnectionStatus.NEEDS_RECONNECT)
        logger.error(
            "Connection %s marked needs_reconnect after %s failed refresh attempts",
            connection_id,
            self.MAX_REFRESH_ATTEMPTS,
        )
        raise ConnectionNeedsReconnectError(connection_id, str(last_error)) from last_error

    async def _acquire_redis_lock(self, connection_id: str) -> Optional[AsyncRedisLock]:
        if self.redis is None:
            return None

        lock_key = f"clickmatch:token_refresh:{connection_id}"
        lock = AsyncRedisLock(
            self.redis,
            name=lock_key,
            timeout=self.LOCK_TTL_SECONDS,
            blocking=True,
            blocking_timeout=self.LOCK_WAIT_SECONDS,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise TokenRefreshLockedError(connection_id, lock_key)
        return lock

    async def _release_lock_best_effort(self, lock: Optional[AsyncRedisLock]) -> None:
        if lock is None:
            return
        try:
            await lock.release()
        except Exception as e:
            logger.error("Failed to release token refresh lock: %s", e)

    def token_source(self, connection_id: str) -> "ConnectionTokenSource":
        return ConnectionTokenSource(self, connection_id)


class ConnectionTokenSource:
    """TokenManager view bound to one connection, used by provider clients."""

    def __init__(self, manager: TokenManager, connection_id: str) -> None:
        self.manager = manager
        self.connection_id = connection_id
        self._current: Optional[str] = None

    async def get_access_token(self) -> str:
        self._current = await self.manager.get_access_token(self.connection_id)
        return self._current

    async def force_refresh(self) -> str:
        self._current = await self.manager.force_refresh(self.connection_id, self._current)
        return self._current
