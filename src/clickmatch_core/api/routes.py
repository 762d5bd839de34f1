"""FastAPI routes for sync triggers (user-facing and scheduled)."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..sync.jobs import run_ad_spend_job, run_order_sync_job, run_settlement_job
from .auth import require_api_key, require_cron_secret


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sync"])


class OrderSyncRequest(BaseModel):
    """Request payload for a user-triggered order sync."""

    user_id: str = Field(..., description="User whose connections are synced")
    connection_id: Optional[str] = Field(
        None, description="Restrict the sync to one connection"
    )
    lookback_days: Optional[int] = Field(
        None, ge=1, le=90, description="Window length in days (default 7)"
    )


class ConnectionResult(BaseModel):
    connection_id: str
    provider: str
    status: str
    synced: int = 0
    matched: int = 0
    errors: int = 0
    message: Optional[str] = None


class OrderSyncResponse(BaseModel):
    """Totals for the whole run plus per-connection detail."""

    synced: int = Field(..., description="Order lines inserted or updated")
    matched: int = Field(..., description="Order lines attributed to a click")
    errors: int = Field(..., description="Per-order and per-connection failures")
    needs_reconnect: list[str] = Field(
        default_factory=list, description="Connections awaiting re-authentication"
    )
    connections: list[ConnectionResult] = Field(default_factory=list)


class SettlementResponse(BaseModel):
    updated: int
    errors: int
    connections: list[ConnectionResult] = Field(default_factory=list)


class AdSpendResponse(BaseModel):
    accounts: int
    campaigns_seen: int
    campaigns_updated: int
    errors: int
    messages: list[str] = Field(default_factory=list)


async def _order_sync(
    user_id: Optional[str],
    connection_id: Optional[str] = None,
    lookback_days: Optional[int] = None,
) -> OrderSyncResponse:
    try:
        summary = await run_order_sync_job(
            user_id=user_id,
            connection_id=connection_id,
            lookback_days=lookback_days,
        )
    except Exception as exc:
        logger.error("Order sync run failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Order sync failed",
        )
    return OrderSyncResponse(**summary.to_dict())


@router.post(
    "/sync/orders",
    response_model=OrderSyncResponse,
    dependencies=[Depends(require_api_key)],
    summary="Sync orders for one user",
    description=(
        "Pulls recent orders from the user's connected storefronts, attributes "
        "new orders to clicks and returns {synced, matched, errors}."
    ),
)
async def sync_orders(payload: OrderSyncRequest) -> OrderSyncResponse:
    logger.info(
        "User order sync requested: user_id=%s, connection_id=%s",
        payload.user_id,
        payload.connection_id,
    )
    return await _order_sync(payload.user_id, payload.connection_id, payload.lookback_days)


@router.post(
    "/cron/sync-orders",
    response_model=OrderSyncResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Scheduled order sync for all connections",
)
async def cron_sync_orders() -> OrderSyncResponse:
    return await _order_sync(user_id=None)


@router.post(
    "/cron/settlements",
    response_model=SettlementResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Scheduled settlement reconciliation",
)
async def cron_settlements() -> SettlementResponse:
    try:
        summary = await run_settlement_job()
    except Exception as exc:
        logger.error("Settlement run failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Settlement reconciliation failed",
        )
    return SettlementResponse(**summary.to_dict())


@router.post(
    "/cron/ad-spend",
    response_model=AdSpendResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Scheduled ad-spend collection",
)
async def cron_ad_spend() -> AdSpendResponse:
    try:
        summary = await run_ad_spend_job()
    except Exception as exc:
        logger.error("Ad-spend run failed: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Ad-spend collection failed",
        )
    return AdSpendResponse(**summary.to_dict())
