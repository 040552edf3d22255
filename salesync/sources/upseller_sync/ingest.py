"""Mapping of aggregator order payloads into canonical sale records."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Tuple
from zoneinfo import ZoneInfo

from salesync.common.ledger.schemas import (
    DEFAULT_PRODUCT,
    NormalizationResult,
    RejectedRow,
    SaleRecord,
    build_record,
    parse_date,
    parse_number,
)

CANCELED_STATUS = "Cancelado"
REFUNDED_STATUS = "Reembolsado"

PLATFORM_NAMES = {
    "mercado": "Mercado Livre",
    "mercado libre": "Mercado Livre",
    "mercado livre": "Mercado Livre",
    "meli": "Mercado Livre",
    "shopee": "Shopee",
    "shein": "Shein",
    "amazon": "Amazon",
    "tiktok": "TikTok Shop",
    "magalu": "Magalu",
}


def map_platform(raw: Any) -> str:
    name = str(raw or "").strip()
    return PLATFORM_NAMES.get(name.lower(), name)


def _number(value: Any, default: float = 0.0) -> float:
    parsed = parse_number(value)
    return default if parsed is None else parsed


def _count(item: Mapping[str, Any]) -> float:
    count = _number(item.get("productCount"), 0.0)
    return count if count > 0 else 1.0


@dataclass(frozen=True)
class OrderClassification:
    order_total: float
    items_sum: float
    refunded: bool
    canceled: bool

    @property
    def status(self) -> str:
        return CANCELED_STATUS if self.canceled else ""


def classify_order_status(order: Mapping[str, Any]) -> OrderClassification:
    """Resolve the order total and its refund / cancel state.

    An order reported with ``orderAmount == 0`` whose items still carry prices
    was refunded after the sale happened; it counts as a sale priced at the
    item sum. An order whose platform state mentions "cancel" and that is not
    such a refund is canceled.
    """

    items = order.get("orderItemList") or []
    items_sum = sum(_number(item.get("price")) * _count(item) for item in items)
    raw_total = _number(order.get("orderAmount"))
    order_total = raw_total if raw_total > 0 else items_sum
    refunded = raw_total == 0 and items_sum > 0
    platform_state = str(order.get("orderStatePlatform") or "").lower()
    canceled = "cancel" in platform_state and not refunded
    return OrderClassification(
        order_total=order_total,
        items_sum=items_sum,
        refunded=refunded,
        canceled=canceled,
    )


def _order_lines(order: Mapping[str, Any]) -> List[Dict[str, Any]]:
    classification = classify_order_status(order)
    items = order.get("orderItemList") or []
    base = {
        "order_id": order.get("orderNumber") or "",
        "date": order.get("orderPayTime") or order.get("orderCreateTime"),
        "store": order.get("shopName") or "",
        "platform": map_platform(order.get("platform")),
        "status": classification.status,
        "client_name": order.get("buyerAccount") or order.get("buyerName") or "",
    }

    if not items or classification.items_sum <= 0:
        # No item detail, or item prices that cannot carry the order total
        return [
            {
                **base,
                "product": DEFAULT_PRODUCT,
                "ad_name": DEFAULT_PRODUCT,
                "variation": "",
                "quantity": 1,
                "total": round(classification.order_total, 2),
                "unit_price": round(classification.order_total, 2),
            }
        ]

    ratio = classification.order_total / classification.items_sum
    lines: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for item in items:
        price = _number(item.get("price"))
        count = _count(item)
        product = str(item.get("productName") or DEFAULT_PRODUCT).strip() or DEFAULT_PRODUCT
        variation = str(item.get("productAttr") or "").strip()
        line_total = round(price * count * ratio, 2)
        key = (product, variation)
        if key in lines:
            # same product and variation twice in one order: one ledger line
            existing = lines[key]
            existing["quantity"] += count
            existing["total"] = round(existing["total"] + line_total, 2)
            continue
        lines[key] = {
            **base,
            "product": product,
            "ad_name": product,
            "variation": variation,
            "sku": item.get("productSku") or item.get("variationSku") or "",
            "quantity": count,
            "total": line_total,
            "unit_price": round(price * ratio, 2),
            "cancel_reason": item.get("cancelReason") or "",
            "image": item.get("productImg") or "",
        }
    return list(lines.values())


def _validate_lines(
    lines: Iterable[Tuple[int, Dict[str, Any]]],
    *,
    tz: ZoneInfo | None,
) -> NormalizationResult:
    result = NormalizationResult()
    for index, line in lines:
        parsed_date = parse_date(line.get("date"), tz)
        if parsed_date is None:
            result.rejected.append(RejectedRow(index, f"Pedido {line.get('order_id') or '?'} sem data"))
            continue
        if not line.get("total") or line["total"] <= 0:
            result.rejected.append(RejectedRow(index, f"Pedido {line.get('order_id') or '?'} com total zerado"))
            continue
        try:
            record = build_record({**line, "date": parsed_date, "sale_channel": "online"})
        except ValueError as exc:
            result.rejected.append(RejectedRow(index, str(exc)))
            continue
        result.records.append(record)
    return result


def map_order_index(orders: Iterable[Mapping[str, Any]], *, tz: ZoneInfo | None = None) -> NormalizationResult:
    """Order-index payloads: one record per distinct product/variation of each order."""

    def lines() -> Iterable[Tuple[int, Dict[str, Any]]]:
        for index, order in enumerate(orders, start=1):
            for line in _order_lines(order):
                yield index, line

    return _validate_lines(lines(), tz=tz)


def map_profit_report(orders: Iterable[Mapping[str, Any]], *, tz: ZoneInfo | None = None) -> NormalizationResult:
    """Report payloads: one order-level ``Geral`` record per order."""

    def lines() -> Iterable[Tuple[int, Dict[str, Any]]]:
        for index, order in enumerate(orders, start=1):
            amount = round(_number(order.get("orderAmount")), 2)
            yield index, {
                "order_id": order.get("orderNumber") or order.get("platformOrderId") or "",
                "date": order.get("orderCreateTime") or order.get("userOrderCreateDate"),
                "store": order.get("shopName") or "",
                "product": DEFAULT_PRODUCT,
                "ad_name": DEFAULT_PRODUCT,
                "variation": "",
                "quantity": 1,
                "total": amount,
                "unit_price": amount,
                "platform": map_platform(order.get("platform")),
                "status": REFUNDED_STATUS if _number(order.get("buyerRefundAmount")) > 0 else "",
            }

    return _validate_lines(lines(), tz=tz)


def itemized_order_ids(records: Iterable[SaleRecord]) -> List[str]:
    """Order ids that are stored per item (not as an order-level placeholder)."""

    return sorted(
        {
            record.order_id
            for record in records
            if record.order_id and not (record.product == DEFAULT_PRODUCT and record.variation == "")
        }
    )
