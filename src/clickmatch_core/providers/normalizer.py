"""Generic order normalizer driven by a ProviderMapping.

Turns one raw provider order into canonical NormalizedOrder lines:

- Status: ordered StatusRules, first rule that maps wins (else ``unknown``)
- Campaign signal: ordered SignalSources, first one carrying a campaign wins
  (e.g. lastVisit UTM, firstVisit UTM, landing page, referrer)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..schemas.records import (
    AttributionParams,
    ExternalConnection,
    NormalizedOrder,
    OrderStatus,
)
from ..tracking.families import decode_campaign
from .exceptions import OrderPayloadError
from .mappings import ProviderMapping, SignalSource


logger = logging.getLogger(__name__)


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted path through dicts (and list indexes); None if absent."""
    current = data
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, list):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            current = current.get(key)
        else:
            return None
    return current


def _first_value(context: dict, paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = resolve_path(context, path)
        if value is not None and value != "":
            return value
    return None


def _to_float(value: Any, field_name: str, mapping: ProviderMapping, order_ref: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise OrderPayloadError(
            mapping.provider, f"{field_name} is not numeric: {value!r}", order_ref
        )


def _to_datetime(value: Any, mapping: ProviderMapping, order_ref: str) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise OrderPayloadError(
                mapping.provider, f"unparseable order date {value!r}", order_ref
            )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def map_status(context: dict, mapping: ProviderMapping) -> OrderStatus:
    """Apply the mapping's status rules in order."""
    for rule in mapping.status_rules:
        value = resolve_path(context, rule.path)
        if value is None or value == "":
            continue

        if rule.when_present is not None:
            return rule.when_present

        raw = str(value).upper()
        if raw in rule.exact:
            return rule.exact[raw]
        for prefix, status in rule.prefixes.items():
            if raw.startswith(prefix):
                return status

    return OrderStatus.UNKNOWN


def _signal_from_source(value: Any, source: SignalSource, mapping: ProviderMapping) -> Optional[dict]:
    if source.kind == "params":
        if not isinstance(value, dict) or not value.get("campaign"):
            return None
        return {
            "utm_source": value.get("source"),
            "utm_medium": value.get("medium"),
            "utm_campaign": value.get("campaign"),
        }

    if source.kind in ("query", "url"):
        if not isinstance(value, str):
            return None
        try:
            return decode_campaign(value, mapping.family)
        except ValueError as exc:
            logger.warning("Failed to parse %s %s: %s", source.label, value[:100], exc)
            return None

    raise ValueError(f"Unknown signal source kind: {source.kind}")


def extract_campaign_signal(context: dict, mapping: ProviderMapping) -> AttributionParams:
    """Walk the signal waterfall; empty AttributionParams when nothing matches."""
    for source in mapping.signal_sources:
        value = resolve_path(context, source.path)
        if value is None or value == "":
            continue
        signal = _signal_from_source(value, source, mapping)
        if signal:
            return AttributionParams(**signal, evidence=source.label)
    return AttributionParams()


def _line_items(raw_order: dict, mapping: ProviderMapping, order_ref: str) -> list[dict]:
    if mapping.line_items is None:
        return [raw_order]

    items = resolve_path({"order": raw_order}, f"order.{mapping.line_items}")
    if items is None:
        return []
    if not isinstance(items, list):
        raise OrderPayloadError(mapping.provider, "line items are not a list", order_ref)

    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise OrderPayloadError(mapping.provider, "line item is not an object", order_ref)
        if mapping.line_item_node:
            item = item.get(mapping.line_item_node) or {}
            if not isinstance(item, dict):
                raise OrderPayloadError(
                    mapping.provider, "line item node is not an object", order_ref
                )
        lines.append(item)
    return lines


def normalize_order(
    raw_order: dict,
    mapping: ProviderMapping,
    connection: ExternalConnection,
) -> list[NormalizedOrder]:
    """Normalize one raw provider order into one NormalizedOrder per line item.

    Raises:
        OrderPayloadError: The order (or one of its lines) lacks required fields
    """
    if not isinstance(raw_order, dict):
        raise OrderPayloadError(mapping.provider, "order payload is not an object")

    order_id = _first_value({"order": raw_order}, mapping.order_id)
    if order_id is None:
        raise OrderPayloadError(mapping.provider, "missing order id")
    order_ref = str(order_id)

    normalized: list[NormalizedOrder] = []
    for line in _line_items(raw_order, mapping, order_ref):
        context = {"order": raw_order, "line": line}

        line_item_id = _first_value(context, mapping.line_item_id)
        if line_item_id is None:
            raise OrderPayloadError(mapping.provider, "line item without id", order_ref)

        quantity_value = _first_value(context, mapping.quantity)
        try:
            quantity = int(quantity_value) if quantity_value is not None else 1
        except (TypeError, ValueError):
            raise OrderPayloadError(
                mapping.provider, f"quantity is not an integer: {quantity_value!r}", order_ref
            )

        product_id = _first_value(context, mapping.product_id)
        raw_status = _first_value(context, mapping.raw_status)

        normalized.append(
            NormalizedOrder(
                connection_id=connection.id,
                user_id=connection.user_id,
                provider=mapping.provider,
                external_order_id=order_ref,
                external_line_item_id=str(line_item_id),
                external_product_id=str(product_id) if product_id is not None else None,
                product_name=_first_value(context, mapping.product_name),
                product_price=_to_float(
                    _first_value(context, mapping.product_price), "product_price", mapping, order_ref
                ),
                quantity=quantity,
                total_amount=_to_float(
                    _first_value(context, mapping.total_amount), "total_amount", mapping, order_ref
                ) or 0.0,
                shipping_fee=_to_float(
                    _first_value(context, mapping.shipping_fee), "shipping_fee", mapping, order_ref
                ) or 0.0,
                currency=_first_value(context, mapping.currency),
                raw_status=str(raw_status) if raw_status is not None else None,
                status=map_status(context, mapping),
                ordered_at=_to_datetime(
                    _first_value(context, mapping.ordered_at), mapping, order_ref
                ),
                attribution=extract_campaign_signal(context, mapping),
            )
        )

    if not normalized:
        raise OrderPayloadError(mapping.provider, "order has no line items", order_ref)

    return normalized
