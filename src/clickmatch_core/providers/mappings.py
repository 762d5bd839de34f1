"""Declarative per-provider field mappings.

Paths are dotted lookups evaluated against ``{"order": <raw order>,
"line": <raw line item>}``. A field lists candidate paths; the first one
that resolves to a non-empty value wins. Provider field names appear only
here and in the provider clients.
"""
from dataclasses import dataclass, field
from typing import Optional

from ..schemas.records import OrderStatus
from ..tracking.families import STOREFRONT_FAMILIES, UTM_FAMILY, StorefrontFamily


Paths = tuple[str, ...]


@dataclass(frozen=True)
class StatusRule:
    """Map one status field to the canonical enum.

    ``when_present`` applies when the field holds any value (e.g. a
    cancellation timestamp). Otherwise the value is looked up in ``exact``
    and then by prefix in ``prefixes``.
    """

    path: str
    exact: dict[str, OrderStatus] = field(default_factory=dict)
    prefixes: dict[str, OrderStatus] = field(default_factory=dict)
    when_present: Optional[OrderStatus] = None


@dataclass(frozen=True)
class SignalSource:
    """Where a storefront exposes the campaign signal for an order.

    kind:
        ``params`` - object with campaign/source/medium keys
        ``query``  - bare query string of attribution parameters
        ``url``    - URL whose query carries attribution parameters
    """

    path: str
    kind: str
    label: str


@dataclass(frozen=True)
class ProviderMapping:
    provider: str
    order_id: Paths
    line_item_id: Paths
    line_items: Optional[str] = None
    line_item_node: Optional[str] = None
    ordered_at: Paths = ()
    currency: Paths = ()
    product_id: Paths = ()
    product_name: Paths = ()
    product_price: Paths = ()
    quantity: Paths = ()
    total_amount: Paths = ()
    shipping_fee: Paths = ()
    raw_status: Paths = ()
    status_rules: tuple[StatusRule, ...] = ()
    signal_sources: tuple[SignalSource, ...] = ()
    family: StorefrontFamily = UTM_FAMILY


def _family(name: str) -> StorefrontFamily:
    return next(f for f in STOREFRONT_FAMILIES if f.name == name)


SHOPIFY_MAPPING = ProviderMapping(
    provider="shopify",
    order_id=("order.id",),
    line_items="lineItems.edges",
    line_item_node="node",
    line_item_id=("line.id",),
    ordered_at=("order.createdAt",),
    currency=("order.totalPriceSet.shopMoney.currencyCode",),
    product_id=("line.variant.product.id", "line.product.id"),
    product_name=("line.title", "line.name"),
    product_price=("line.originalUnitPriceSet.shopMoney.amount",),
    quantity=("line.quantity",),
    total_amount=(
        "line.discountedTotalSet.shopMoney.amount",
        "line.originalTotalSet.shopMoney.amount",
    ),
    raw_status=("order.displayFinancialStatus",),
    status_rules=(
        StatusRule(path="order.cancelledAt", when_present=OrderStatus.CANCELLED),
        StatusRule(
            path="order.displayFinancialStatus",
            exact={
                "REFUNDED": OrderStatus.RETURNED,
                "VOIDED": OrderStatus.CANCELLED,
            },
        ),
        StatusRule(
            path="order.displayFulfillmentStatus",
            exact={
                "FULFILLED": OrderStatus.DELIVERED,
                "PARTIALLY_FULFILLED": OrderStatus.SHIPPING,
                "IN_PROGRESS": OrderStatus.SHIPPING,
            },
        ),
        StatusRule(
            path="order.displayFinancialStatus",
            exact={
                "PAID": OrderStatus.PAID,
                "PARTIALLY_PAID": OrderStatus.PAID,
                "PARTIALLY_REFUNDED": OrderStatus.PAID,
                "PENDING": OrderStatus.PENDING,
                "AUTHORIZED": OrderStatus.PENDING,
                "EXPIRED": OrderStatus.CANCELLED,
            },
        ),
    ),
    signal_sources=(
        SignalSource(
            path="order.customerJourneySummary.lastVisit.utmParameters",
            kind="params",
            label="lastVisit.utmParameters",
        ),
        SignalSource(
            path="order.customerJourneySummary.firstVisit.utmParameters",
            kind="params",
            label="firstVisit.utmParameters",
        ),
        SignalSource(
            path="order.customerJourneySummary.lastVisit.landingPage",
            kind="url",
            label="landingPage",
        ),
        SignalSource(
            path="order.customerJourneySummary.lastVisit.referrerUrl",
            kind="url",
            label="referrerUrl",
        ),
    ),
)


NAVER_MAPPING = ProviderMapping(
    provider="naver",
    order_id=("order.orderId",),
    line_item_id=("order.productOrderId",),
    ordered_at=("order.orderDate", "order.paymentDate"),
    product_id=("order.originProductNo", "order.productId"),
    product_name=("order.productName",),
    product_price=("order.productPrice", "order.unitPrice"),
    quantity=("order.quantity",),
    total_amount=("order.totalPaymentAmount",),
    shipping_fee=("order.shippingFee", "order.deliveryFeeAmount"),
    raw_status=("order.productOrderStatus",),
    status_rules=(
        StatusRule(
            path="order.productOrderStatus",
            exact={
                "PAYMENT_WAITING": OrderStatus.PENDING,
                "PAYED": OrderStatus.PAID,
                "DELIVERING": OrderStatus.SHIPPING,
                "DELIVERED": OrderStatus.DELIVERED,
                "PURCHASE_DECIDED": OrderStatus.PURCHASE_DECIDED,
                "EXCHANGED": OrderStatus.EXCHANGED,
                "CANCELED": OrderStatus.CANCELLED,
                "CANCELLED": OrderStatus.CANCELLED,
                "CANCELED_BY_NOPAYMENT": OrderStatus.CANCELLED,
                "RETURNED": OrderStatus.RETURNED,
            },
        ),
    ),
    signal_sources=(
        SignalSource(path="order.inflowPathType", kind="query", label="inflowPathType"),
        SignalSource(path="order.inflowPath", kind="query", label="inflowPath"),
    ),
    family=_family("naver"),
)


CAFE24_MAPPING = ProviderMapping(
    provider="cafe24",
    order_id=("order.order_id",),
    line_items="items",
    line_item_id=("line.order_item_code",),
    ordered_at=("order.order_date", "order.payment_date"),
    currency=("order.currency",),
    product_id=("line.product_no",),
    product_name=("line.product_name",),
    product_price=("line.product_price",),
    quantity=("line.quantity",),
    total_amount=("line.payment_amount", "line.product_price"),
    raw_status=("line.order_status",),
    status_rules=(
        StatusRule(
            path="line.order_status",
            exact={
                "N00": OrderStatus.PENDING,
                "N10": OrderStatus.PAID,
                "N20": OrderStatus.PAID,
                "N21": OrderStatus.PAID,
                "N22": OrderStatus.PAID,
                "N30": OrderStatus.SHIPPING,
                "N40": OrderStatus.DELIVERED,
                "N50": OrderStatus.PURCHASE_DECIDED,
            },
            prefixes={
                "C": OrderStatus.CANCELLED,
                "R": OrderStatus.RETURNED,
                "E": OrderStatus.EXCHANGED,
            },
        ),
    ),
)


PROVIDER_MAPPINGS: dict[str, ProviderMapping] = {
    mapping.provider: mapping
    for mapping in (SHOPIFY_MAPPING, NAVER_MAPPING, CAFE24_MAPPING)
}
