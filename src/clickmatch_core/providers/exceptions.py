"""Custom exceptions for external provider access."""
from typing import Optional


class ProviderError(Exception):
    """Base exception for all external provider errors."""


class TransientProviderError(ProviderError):
    """Raised when retries on network/429/5xx errors are exhausted."""

    def __init__(self, provider: str, message: str, status: Optional[int] = None):
        self.provider = provider
        self.status = status
        super().__init__(f"{provider}: {message}")


class ProviderApiError(ProviderError):
    """Raised for non-retryable HTTP 4xx responses or malformed envelopes."""

    def __init__(self, provider: str, status: int, body: str):
        self.provider = provider
        self.status = status
        self.body = body
        super().__init__(f"{provider}: HTTP {status} (non-retryable): {body[:200]}")


class ProviderAuthError(ProviderApiError):
    """Raised on HTTP 401/403; the access token was rejected."""


class OrderPayloadError(ProviderError):
    """Raised when one raw order cannot be normalized."""

    def __init__(self, provider: str, message: str, order_ref: Optional[str] = None):
        self.provider = provider
        self.order_ref = order_ref
        super().__init__(f"{provider} order {order_ref or '?'}: {message}")


class TokenRefreshError(ProviderError):
    """Raised when the provider's refresh endpoint rejects a refresh attempt."""


class TokenRefreshLockedError(ProviderError):
    """Raised when another process holds the refresh lock for a connection."""

    def __init__(self, connection_id: str, lock_key: str):
        self.connection_id = connection_id
        self.lock_key = lock_key
        super().__init__(
            f"Token refresh lock already held for connection={connection_id}, key={lock_key}"
        )


class ConnectionNeedsReconnectError(ProviderError):
    """Raised when a connection is in terminal needs_reconnect state.

    Batch jobs skip the connection instead of retrying it.
    """

    def __init__(self, connection_id: str, reason: str = "refresh failed"):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Connection {connection_id} needs reconnect: {reason}")
