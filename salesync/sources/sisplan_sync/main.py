from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List

from salesync.common.json_logger import JsonLogger, log_event, timed_event
from salesync.common.ledger import upsert_sales
from salesync.sources.sisplan_sync.connector import FirebirdOptions, query_firebird
from salesync.sources.sisplan_sync.ingest import SALE_CHANNEL, map_rows
from salesync.sync.outcome import INACTIVE_MESSAGE, SyncResult, incomplete_config_message, synced_message
from salesync.sync.settings_store import SISPLAN, STATUS_ERROR, STATUS_SUCCESS, SettingsStore, SisplanSettings

PIPELINE_NAME = "sisplan_sync"
NO_ROWS_MESSAGE = "Nenhum registro encontrado."

QueryFn = Callable[[FirebirdOptions, str], Awaitable[List[Dict[str, Any]]]]


def firebird_options(settings: SisplanSettings) -> FirebirdOptions:
    return FirebirdOptions(
        host=settings.host,
        port=settings.port,
        database=settings.database_path,
        user=settings.fb_user,
        password=settings.fb_password,
    )


async def run_sync(
    *,
    database_url: str,
    logger: JsonLogger,
    store: SettingsStore | None = None,
    query: QueryFn = query_firebird,
) -> SyncResult:
    """Pull the configured Sisplan query into the ledger and persist the run status."""

    logger = logger.bind(pipeline=PIPELINE_NAME)
    store = store or SettingsStore(database_url=database_url, logger=logger)
    settings = await store.load_sisplan()

    if not settings.active:
        log_event(logger=logger, phase="init", status="warn", message="integration not active; skipping")
        await store.record_status(SISPLAN, STATUS_ERROR, INACTIVE_MESSAGE, 0)
        return SyncResult(False, INACTIVE_MESSAGE, skipped=True)

    missing = settings.missing_fields()
    if missing:
        message = incomplete_config_message(missing)
        log_event(logger=logger, phase="init", status="error", message=message, missing=missing)
        await store.record_status(SISPLAN, STATUS_ERROR, message, 0)
        return SyncResult(False, message, skipped=True)

    try:
        options = firebird_options(settings)
        with timed_event(logger=logger, phase="fetch", message="firebird query executed", host=settings.host):
            rows = await query(options, settings.sql_query)

        if not rows:
            await store.record_status(SISPLAN, STATUS_SUCCESS, NO_ROWS_MESSAGE, 0)
            return SyncResult(True, NO_ROWS_MESSAGE)

        mapped = map_rows(rows, settings.column_mapping)
        log_event(
            logger=logger,
            phase="normalize",
            status="warn" if mapped.rejected else "ok",
            message="firebird rows mapped",
            fetched=len(rows),
            valid=len(mapped.records),
            rejected=len(mapped.rejected),
        )

        totals = await upsert_sales(mapped.records, SALE_CHANNEL, database_url=database_url, logger=logger)
        rows_synced = len(mapped.records)
        message = synced_message(totals.inserted, totals.updated, rows_synced, unit="registros")
        await store.record_status(SISPLAN, STATUS_SUCCESS, message, rows_synced)
        log_event(logger=logger, phase="summary", message=message, rows=rows_synced)
        return SyncResult(True, message, rows=rows_synced, inserted=totals.inserted, updated=totals.updated)
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        log_event(
            logger=logger,
            phase="summary",
            status="error",
            message="sync failed",
            error=message,
            error_type=exc.__class__.__name__,
        )
        await store.record_status(SISPLAN, STATUS_ERROR, message, 0)
        return SyncResult(False, message)
