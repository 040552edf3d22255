"""Manual ingestion lane: an operator-supplied ``.xlsx`` export loaded into the ledger."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import openpyxl

from salesync.common.json_logger import JsonLogger, log_event
from salesync.common.ledger import normalize_rows, upsert_sales
from salesync.common.ledger.schemas import SaleChannel

PIPELINE_NAME = "spreadsheet_import"
MAX_REPORTED_ERRORS = 50


@dataclass
class ImportResult:
    rows: int = 0
    inserted: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    missing_columns: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.missing_columns

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "rows": self.rows,
            "inserted": self.inserted,
            "updated": self.updated,
            "errors": self.errors,
            "missingColumns": self.missing_columns,
        }


def read_sheet_rows(path: Path) -> List[Dict[str, Any]]:
    """Rows of the first sheet as ``{header: cell}``; fully blank lines are skipped."""

    workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        header_row = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
        headers = [str(h).strip() if h is not None else "" for h in header_row]
        rows: List[Dict[str, Any]] = []
        for row in sheet.iter_rows(min_row=2, values_only=True):
            if all(cell is None or str(cell).strip() == "" for cell in row):
                continue
            rows.append({headers[i]: row[i] if i < len(row) else None for i in range(len(headers)) if headers[i]})
        return rows
    finally:
        workbook.close()


async def import_spreadsheet(
    path: Path,
    *,
    database_url: str,
    logger: JsonLogger,
    channel: SaleChannel = "online",
) -> ImportResult:
    logger = logger.bind(pipeline=PIPELINE_NAME)
    rows = read_sheet_rows(path)
    normalized = normalize_rows(rows, channel=channel)
    result = ImportResult(missing_columns=list(normalized.missing_columns))
    if normalized.missing_columns:
        log_event(
            logger=logger,
            phase="normalize",
            status="error",
            message="required columns not found",
            file=str(path),
            missing_columns=normalized.missing_columns,
        )
        return result

    result.errors = [f"Linha {row.index}: {row.reason}" for row in normalized.rejected[:MAX_REPORTED_ERRORS]]
    if normalized.rejected:
        log_event(
            logger=logger,
            phase="normalize",
            status="warn",
            message="spreadsheet rows rejected",
            file=str(path),
            rejected=len(normalized.rejected),
        )

    totals = await upsert_sales(normalized.records, channel, database_url=database_url, logger=logger)
    result.rows = len(normalized.records)
    result.inserted = totals.inserted
    result.updated = totals.updated
    log_event(
        logger=logger,
        phase="summary",
        message="spreadsheet imported",
        file=str(path),
        rows=result.rows,
        inserted=result.inserted,
        updated=result.updated,
    )
    return result
