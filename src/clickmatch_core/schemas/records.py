"""Pydantic models for attribution records and normalized provider payloads."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class LinkStatus(str, Enum):
    """Tracking link lifecycle status."""

    ACTIVE = "active"
    PAUSED = "paused"


class ConnectionStatus(str, Enum):
    """External connection token state."""

    CONNECTED = "connected"
    PENDING_VERIFICATION = "pending_verification"
    TOKEN_EXPIRED = "token_expired"
    NEEDS_RECONNECT = "needs_reconnect"


class OrderStatus(str, Enum):
    """Canonical order status shared by every storefront."""

    PENDING = "pending"
    PAID = "paid"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    PURCHASE_DECIDED = "purchase_decided"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    EXCHANGED = "exchanged"
    UNKNOWN = "unknown"


SETTLEMENT_ELIGIBLE_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.PURCHASE_DECIDED}
)


class AttributionStrategy(str, Enum):
    """Which matcher strategy produced an order's attribution."""

    PRODUCT = "product"
    UTM = "utm"
    RECENCY = "recency"
    NONE = "none"


class TrackingLink(BaseModel):
    """Shareable redirect link representing one ad placement."""

    id: str
    user_id: str
    target_url: str
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    product_id: Optional[int] = None
    campaign_id: Optional[str] = None
    status: LinkStatus = LinkStatus.ACTIVE
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == LinkStatus.ACTIVE


class ClickEvent(BaseModel):
    """One recorded visit through a tracking link."""

    id: Optional[int] = None
    tracking_link_id: str
    user_id: str
    click_id: str = Field(..., description="Opaque identifier also set as a cookie")
    created_at: datetime
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    fbp: Optional[str] = Field(None, description="Meta browser pixel id (_fbp cookie)")
    fbc: Optional[str] = Field(None, description="Meta click id (_fbc cookie)")
    is_unique: bool = True
    is_converted: bool = False
    converted_order_id: Optional[int] = None
    converted_at: Optional[datetime] = None


class ExternalConnection(BaseModel):
    """Credentials and token state for one connected storefront or ad account."""

    id: str
    user_id: str
    provider: str = Field(..., description="shopify|naver|cafe24")
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    metadata: dict = Field(
        default_factory=dict,
        description="Provider-specific settings (shop_domain, mall_id, application_id, ...)",
    )
    last_sync_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"ExternalConnection(id={self.id!r}, provider={self.provider!r}, "
            f"status={self.status.value!r})"
        )


class Product(BaseModel):
    """Storefront product snapshot, unique per (connection, external_product_id)."""

    id: Optional[int] = None
    connection_id: str
    user_id: str
    external_product_id: str
    name: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[int] = None


class Campaign(BaseModel):
    """Ad campaign aggregate."""

    id: str
    user_id: str
    name: Optional[str] = None
    external_campaign_id: Optional[str] = None
    conversions: int = 0
    revenue: float = 0.0
    spent: float = 0.0
    roas: int = 0


class AttributionParams(BaseModel):
    """Campaign signal recovered from an order's storefront attribution fields."""

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    evidence: Optional[str] = Field(None, description="Where the signal was found")


class NormalizedOrder(BaseModel):
    """Canonical order line produced by the generic normalizer."""

    connection_id: str
    user_id: str
    provider: str
    external_order_id: str
    external_line_item_id: str
    external_product_id: Optional[str] = None
    product_name: Optional[str] = None
    product_price: Optional[float] = None
    quantity: int = 1
    total_amount: float = 0.0
    shipping_fee: float = 0.0
    currency: Optional[str] = None
    raw_status: Optional[str] = None
    status: OrderStatus = OrderStatus.UNKNOWN
    ordered_at: Optional[datetime] = None
    attribution: AttributionParams = Field(default_factory=AttributionParams)

    @property
    def composite_key(self) -> tuple[str, str, str]:
        return (self.connection_id, self.external_order_id, self.external_line_item_id)


class StoredOrder(BaseModel):
    """Order row as persisted."""

    id: int
    connection_id: str
    user_id: str
    external_order_id: str
    external_line_item_id: str
    product_id: Optional[int] = None
    total_amount: float = 0.0
    status: OrderStatus = OrderStatus.UNKNOWN
    raw_status: Optional[str] = None
    tracking_link_id: Optional[str] = None
    click_id: Optional[str] = None
    campaign_id: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    attribution_strategy: Optional[AttributionStrategy] = None
    settlement_amount: Optional[float] = None
    settlement_commission: Optional[float] = None
    settlement_commission_rate: Optional[float] = None
    settlement_status: Optional[str] = None
    settle_expect_date: Optional[str] = None


class SettlementInfo(BaseModel):
    """Marketplace-reported payout figures for one order line."""

    external_order_id: Optional[str] = None
    external_line_item_id: str
    settlement_amount: float
    total_commission: float
    commission_rate: float
    sale_amount: float
    settle_status: Optional[str] = None
    settle_expect_date: Optional[str] = None
