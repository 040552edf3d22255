"""Mapping of Sisplan query rows into canonical sale records."""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from salesync.common.ledger.schemas import (
    DEFAULT_PRODUCT,
    NormalizationResult,
    RejectedRow,
    build_record,
    parse_date,
    parse_number,
    strip_accents,
)

SISPLAN_STORE = "Fabrica"
SISPLAN_PLATFORM = "Sisplan"
SALE_CHANNEL = "atacado"

MAPPABLE_FIELDS = (
    "order_id",
    "date",
    "product",
    "ad_name",
    "variation",
    "sku",
    "quantity",
    "total",
    "unit_price",
    "state",
    "status",
    "cancel_by",
    "cancel_reason",
    "image",
    "client_name",
    "codcli",
    "nome_fantasia",
    "cnpj_cpf",
)

_ID_UNSAFE_RE = re.compile(r"[^A-Z0-9]+")


class ColumnLookup:
    """Resolve ``column_mapping`` entries against a row, ignoring column-name case."""

    def __init__(self, column_mapping: Mapping[str, str], row_keys: Iterable[str]) -> None:
        by_upper = {str(key).strip().upper(): key for key in row_keys}
        self.columns: Dict[str, str] = {}
        for field_name, source_column in column_mapping.items():
            if field_name not in MAPPABLE_FIELDS or not source_column:
                continue
            key = by_upper.get(str(source_column).strip().upper())
            if key is not None:
                self.columns[field_name] = key

    def get(self, row: Mapping[str, Any], field_name: str) -> Any:
        key = self.columns.get(field_name)
        if key is None:
            return None
        value = row.get(key)
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


def _id_part(value: Any) -> str:
    return _ID_UNSAFE_RE.sub("", strip_accents(str(value or "")).upper())[:24]


def synthetic_order_id(date_value: Any, store: str, product: str, client: Any = None) -> str:
    """Stable id for legacy rows that carry no order number.

    The client code (or name) keeps same-day sales of one product to different
    customers apart.
    """

    day = date_value.strftime("%Y%m%d")
    parts = [_id_part(store), _id_part(client), _id_part(product)]
    return "SP-" + day + "-" + "-".join(part for part in parts if part)


def map_rows(
    rows: Iterable[Mapping[str, Any]],
    column_mapping: Mapping[str, str],
    *,
    tz: ZoneInfo | None = None,
) -> NormalizationResult:
    result = NormalizationResult()
    lookup: Optional[ColumnLookup] = None
    for index, row in enumerate(rows, start=1):
        if lookup is None:
            lookup = ColumnLookup(column_mapping, row.keys())

        parsed_date = parse_date(lookup.get(row, "date"), tz)
        if parsed_date is None:
            result.rejected.append(RejectedRow(index, "Data inválida"))
            continue
        total = parse_number(lookup.get(row, "total"))
        if total is None or total <= 0:
            result.rejected.append(RejectedRow(index, "Total inválido"))
            continue
        quantity = parse_number(lookup.get(row, "quantity")) or 1.0

        product = lookup.get(row, "product") or DEFAULT_PRODUCT
        order_id = lookup.get(row, "order_id")
        if order_id is None:
            client = lookup.get(row, "codcli") or lookup.get(row, "client_name")
            order_id = synthetic_order_id(parsed_date, SISPLAN_STORE, str(product), client)

        values: Dict[str, Any] = {
            name: lookup.get(row, name)
            for name in MAPPABLE_FIELDS
            if name not in {"date", "total", "quantity", "unit_price"}
        }
        values.update(
            {
                "order_id": order_id,
                "date": parsed_date,
                "product": product,
                "ad_name": values.get("ad_name") or product,
                "quantity": quantity,
                "total": total,
                "unit_price": parse_number(lookup.get(row, "unit_price")),
                "store": SISPLAN_STORE,
                "platform": SISPLAN_PLATFORM,
                "sale_channel": SALE_CHANNEL,
            }
        )
        try:
            record = build_record(values)
        except ValueError as exc:
            result.rejected.append(RejectedRow(index, str(exc)))
            continue
        result.records.append(record)
    return result
