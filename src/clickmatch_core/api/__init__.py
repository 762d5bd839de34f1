"""clickmatch HTTP surface: tracking redirects and sync triggers."""
from .auth import require_api_key, require_cron_secret
from .redirect import router as redirect_router
from .routes import router

__all__ = ["redirect_router", "require_api_key", "require_cron_secret", "router"]
