"""clickmatch FastAPI application entry point."""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.redirect import router as redirect_router
from .api.routes import router as api_router
from .storage.schema import init_database, resolve_db_path
from .sync.scheduler import SyncScheduler


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


def _scheduler_enabled() -> bool:
    return os.getenv("CLICKMATCH_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Schema is applied once; request handlers open plain connections
    init_database(resolve_db_path())

    scheduler = None
    if _scheduler_enabled():
        scheduler = SyncScheduler()
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="clickmatch API",
        version="0.1.0",
        description="Click capture, order sync and attribution engine",
        lifespan=lifespan,
    )

    app.include_router(redirect_router)
    app.include_router(api_router)

    return app


app = create_app()
