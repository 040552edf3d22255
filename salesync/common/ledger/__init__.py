from .schemas import (
    NormalizationResult,
    RejectedRow,
    SaleRecord,
    build_record,
    dedupe_by_ledger_key,
    is_canceled_status,
    normalize_rows,
    parse_date,
    parse_number,
    split_variation_and_size,
    variation_from_sku,
)
from .service import UpsertTotals, purge_placeholder_rows, upsert_sales

__all__ = [
    "NormalizationResult",
    "RejectedRow",
    "SaleRecord",
    "UpsertTotals",
    "build_record",
    "dedupe_by_ledger_key",
    "is_canceled_status",
    "normalize_rows",
    "parse_date",
    "parse_number",
    "purge_placeholder_rows",
    "split_variation_and_size",
    "upsert_sales",
    "variation_from_sku",
]
