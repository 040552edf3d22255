from datetime import datetime

import pytest
import sqlalchemy as sa

from salesync.common.db import session_scope
from salesync.common.db_tables import sales
from salesync.sources.sisplan_sync.main import NO_ROWS_MESSAGE, run_sync
from salesync.sync.outcome import INACTIVE_MESSAGE
from salesync.sync.settings_store import SISPLAN, STATUS_ERROR, STATUS_SUCCESS, SettingsStore

COMPLETE_SETTINGS = {
    "active": True,
    "host": "erp.local",
    "database_path": "/data/SISPLAN.FDB",
    "fb_user": "SYSDBA",
    "fb_password": "masterkey",
    "sql_query": "SELECT * FROM VENDAS",
    "column_mapping": {"date": "DATA", "product": "PRODUTO", "total": "TOTAL", "quantity": "QTD"},
}


@pytest.fixture
def store(database_url, logger, encryption_key) -> SettingsStore:
    return SettingsStore(database_url=database_url, logger=logger)


def _query_returning(rows):
    calls = []

    async def query(options, sql):
        calls.append((options, sql))
        return rows

    query.calls = calls
    return query


@pytest.mark.asyncio
async def test_inactive_integration_is_skipped(store, database_url, logger) -> None:
    query = _query_returning([])

    result = await run_sync(database_url=database_url, logger=logger, store=store, query=query)

    assert result.skipped and not result.success
    assert result.message == INACTIVE_MESSAGE
    assert query.calls == []
    status = await store.status(SISPLAN)
    assert status.last_sync_status == STATUS_ERROR
    assert status.last_sync_message == INACTIVE_MESSAGE


@pytest.mark.asyncio
async def test_incomplete_settings_record_error(store, database_url, logger) -> None:
    await store.update(SISPLAN, {"active": True, "host": "erp.local"})

    result = await run_sync(database_url=database_url, logger=logger, store=store, query=_query_returning([]))

    assert not result.success
    assert "database_path" in result.message and "fb_password" in result.message
    status = await store.status(SISPLAN)
    assert status.last_sync_status == STATUS_ERROR


@pytest.mark.asyncio
async def test_rows_upserted_as_wholesale(store, database_url, logger) -> None:
    await store.update(SISPLAN, COMPLETE_SETTINGS)
    query = _query_returning(
        [
            {"DATA": datetime(2026, 5, 4, 10, 0), "PRODUTO": "Vestido", "TOTAL": 300, "QTD": 3},
            {"DATA": datetime(2026, 5, 4, 11, 0), "PRODUTO": "Blusa", "TOTAL": 80, "QTD": 1},
            {"DATA": None, "PRODUTO": "Saia", "TOTAL": 50, "QTD": 1},
        ]
    )

    result = await run_sync(database_url=database_url, logger=logger, store=store, query=query)

    assert result.success
    assert (result.rows, result.inserted, result.updated) == (2, 2, 0)
    options, sql = query.calls[0]
    assert options.password == "masterkey" and options.charset == "WIN1252"
    assert sql == "SELECT * FROM VENDAS"

    async with session_scope(database_url) as session:
        rows = (await session.execute(sa.select(sales.c.store, sales.c.sale_channel, sales.c.platform))).all()
    assert set(rows) == {("Fabrica", "atacado", "Sisplan")}

    status = await store.status(SISPLAN)
    assert status.last_sync_status == STATUS_SUCCESS
    assert status.last_sync_rows == 2
    assert status.last_sync_message == result.message


@pytest.mark.asyncio
async def test_empty_result_is_success(store, database_url, logger) -> None:
    await store.update(SISPLAN, COMPLETE_SETTINGS)

    result = await run_sync(database_url=database_url, logger=logger, store=store, query=_query_returning([]))

    assert result.success and result.message == NO_ROWS_MESSAGE
    assert (await store.status(SISPLAN)).last_sync_message == NO_ROWS_MESSAGE


@pytest.mark.asyncio
async def test_query_failure_recorded(store, database_url, logger) -> None:
    await store.update(SISPLAN, COMPLETE_SETTINGS)

    async def broken(options, sql):
        raise ConnectionRefusedError("connection refused by erp.local:3050")

    result = await run_sync(database_url=database_url, logger=logger, store=store, query=broken)

    assert not result.success
    assert "connection refused" in result.message
    status = await store.status(SISPLAN)
    assert status.last_sync_status == STATUS_ERROR
    assert status.last_sync_rows == 0
