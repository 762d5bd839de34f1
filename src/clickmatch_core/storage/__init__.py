"""SQLite persistence for tracking links, clicks, connections and orders."""
from .schema import connect, format_ts, init_database, parse_ts, record_sync_run, utc_now
from .store import AttributionStore

__all__ = [
    "AttributionStore",
    "connect",
    "format_ts",
    "init_database",
    "parse_ts",
    "record_sync_run",
    "utc_now",
]
