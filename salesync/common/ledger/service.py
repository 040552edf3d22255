from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from salesync.common.db import is_sqlite_url, session_scope
from salesync.common.db_tables import LEDGER_KEY_COLUMNS, sales
from salesync.common.json_logger import JsonLogger, log_event

from .schemas import DEFAULT_PRODUCT, SaleRecord, dedupe_by_ledger_key

BULK_UPSERT_BATCH_SIZE = 500

LedgerKey = Tuple[str, str, str]


@dataclass
class UpsertTotals:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated

    def add(self, inserted: int, updated: int) -> None:
        self.inserted += inserted
        self.updated += updated


def _batched(iterable: Iterable[Dict[str, Any]], size: int) -> Iterable[List[Dict[str, Any]]]:
    batch: List[Dict[str, Any]] = []
    for item in iterable:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _row_key(row: Dict[str, Any]) -> LedgerKey:
    return tuple(row[column] for column in LEDGER_KEY_COLUMNS)  # type: ignore[return-value]


def _make_upsert(rows: List[Dict[str, Any]], *, use_sqlite: bool):
    stmt = (sqlite_insert if use_sqlite else pg_insert)(sales).values(rows)
    update_cols = {
        col: stmt.excluded[col]
        for col in rows[0].keys()
        if col not in LEDGER_KEY_COLUMNS
    }
    update_cols["updated_at"] = sa.func.now()
    return stmt.on_conflict_do_update(
        index_elements=list(LEDGER_KEY_COLUMNS),
        set_=update_cols,
    )


async def _existing_keys(session: AsyncSession, keys: Sequence[LedgerKey]) -> set[LedgerKey]:
    key_columns = [sales.c[column] for column in LEDGER_KEY_COLUMNS]
    stmt = sa.select(*key_columns).where(sa.tuple_(*key_columns).in_(list(keys)))
    result = await session.execute(stmt)
    return {tuple(row) for row in result}  # type: ignore[misc]


async def _upsert_chunk(
    session: AsyncSession,
    rows: List[Dict[str, Any]],
    *,
    use_sqlite: bool,
) -> Tuple[int, int]:
    """Upsert one chunk inside the caller's transaction; return ``(inserted, updated)``."""

    stmt = _make_upsert(rows, use_sqlite=use_sqlite)
    if use_sqlite:
        existing = await _existing_keys(session, [_row_key(row) for row in rows])
        await session.execute(stmt)
        inserted = sum(1 for row in rows if _row_key(row) not in existing)
        return inserted, len(rows) - inserted

    # xmax is 0 only for tuples created by this statement
    stmt = stmt.returning(sa.literal_column("(xmax = 0)").label("inserted"))
    result = await session.execute(stmt)
    flags = [bool(row.inserted) for row in result]
    inserted = sum(flags)
    return inserted, len(flags) - inserted


async def upsert_sales(
    records: Iterable[SaleRecord],
    channel: str,
    *,
    database_url: str,
    logger: JsonLogger,
    batch_size: int = BULK_UPSERT_BATCH_SIZE,
) -> UpsertTotals:
    """Apply ``records`` to the ledger with last-write-wins semantics per ledger key.

    Each sub-batch commits in its own transaction. A failing sub-batch is rolled
    back and the error propagates; sub-batches committed before it remain.
    """

    deduped = dedupe_by_ledger_key(records)
    totals = UpsertTotals()
    if not deduped:
        return totals

    use_sqlite = is_sqlite_url(database_url)
    rows = [record.to_row(channel) for record in deduped]

    async with session_scope(database_url) as session:
        for batch_no, chunk in enumerate(_batched(rows, batch_size), start=1):
            try:
                async with session.begin():
                    inserted, updated = await _upsert_chunk(session, chunk, use_sqlite=use_sqlite)
            except Exception as exc:
                log_event(
                    logger=logger,
                    phase="ledger",
                    status="error",
                    message="ledger sub-batch rolled back",
                    batch_no=batch_no,
                    batch_rows=len(chunk),
                    committed={"inserted": totals.inserted, "updated": totals.updated},
                    error=str(exc),
                )
                raise
            totals.add(inserted, updated)
            log_event(
                logger=logger,
                phase="ledger",
                message="ledger sub-batch committed",
                batch_no=batch_no,
                batch_rows=len(chunk),
                inserted=inserted,
                updated=updated,
            )

    log_event(
        logger=logger,
        phase="ledger",
        message="ledger upsert complete",
        channel=channel,
        received=len(rows),
        inserted=totals.inserted,
        updated=totals.updated,
    )
    return totals


async def purge_placeholder_rows(
    *,
    database_url: str,
    order_ids: Iterable[str],
    logger: JsonLogger,
) -> int:
    """Delete order-level ``Geral`` rows of orders that now have item-level lines.

    Report-mode syncs wrote one placeholder row per order; once the same order
    is stored per item the placeholder would double count it.
    """

    ids = sorted({order_id for order_id in order_ids if order_id})
    if not ids:
        return 0
    deleted = 0
    async with session_scope(database_url) as session:
        async with session.begin():
            for chunk in _batched(({"order_id": order_id} for order_id in ids), BULK_UPSERT_BATCH_SIZE):
                stmt = (
                    sa.delete(sales)
                    .where(sales.c.order_id.in_([row["order_id"] for row in chunk]))
                    .where(sales.c.product == DEFAULT_PRODUCT)
                    .where(sales.c.variation == "")
                )
                result = await session.execute(stmt)
                deleted += result.rowcount or 0
    if deleted:
        log_event(
            logger=logger,
            phase="ledger",
            message="purged superseded order-level placeholder rows",
            orders=len(ids),
            deleted=deleted,
        )
    return deleted
