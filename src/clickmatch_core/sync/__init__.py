"""Order sync, settlement reconciliation and ad-spend jobs.

Persists to:
- SQLite: data/clickmatch.db (orders, aggregates, sync_runs)
- JSONL: data/raw/*.jsonl (immutable provider audit logs)
"""
from .ad_spend import MetaSpendCollector, apply_spend, run_ad_spend_sync
from .ingestion import ConnectionSyncResult, IngestOutcome, OrderIngestionService
from .jobs import run_ad_spend_job, run_order_sync_job, run_settlement_job
from .scheduler import SyncScheduler
from .service import OrderSyncService, SyncSummary
from .settlement import SettlementReconciler, SettlementSummary

__all__ = [
    "ConnectionSyncResult",
    "IngestOutcome",
    "MetaSpendCollector",
    "OrderIngestionService",
    "OrderSyncService",
    "SettlementReconciler",
    "SettlementSummary",
    "SyncScheduler",
    "SyncSummary",
    "apply_spend",
    "run_ad_spend_job",
    "run_ad_spend_sync",
    "run_order_sync_job",
    "run_settlement_job",
]
