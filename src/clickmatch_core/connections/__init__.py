"""External connection credentials and token refresh."""
from .refreshers import (
    Cafe24TokenRefresher,
    NaverTokenRefresher,
    RefreshedTokens,
    StaticTokenRefresher,
)
from .token_manager import ConnectionTokenSource, TokenManager, needs_refresh

__all__ = [
    "Cafe24TokenRefresher",
    "ConnectionTokenSource",
    "NaverTokenRefresher",
    "RefreshedTokens",
    "StaticTokenRefresher",
    "TokenManager",
    "needs_refresh",
]
