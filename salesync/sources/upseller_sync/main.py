from __future__ import annotations

from datetime import date, datetime
from functools import partial
from pathlib import Path
from typing import AsyncContextManager, Callable, Iterable

import openpyxl

from salesync.common.date_utils import resolve_sync_window
from salesync.common.json_logger import JsonLogger, log_event, timed_event
from salesync.common.ledger import SaleRecord, purge_placeholder_rows, upsert_sales
from salesync.exceptions import UpstreamError, is_login_related
from salesync.sources.upseller_sync.api import FetchResult, UpsellerClient
from salesync.sources.upseller_sync.captcha import CaptchaSolver
from salesync.sources.upseller_sync.ingest import itemized_order_ids, map_order_index, map_profit_report
from salesync.sources.upseller_sync.login import (
    LoginCredentials,
    LoginDriver,
    SessionManager,
    playwright_login_driver,
)
from salesync.sources.upseller_sync.mailbox import VerificationMailbox
from salesync.sync.outcome import (
    INACTIVE_MESSAGE,
    NO_ORDERS_MESSAGE,
    SyncResult,
    incomplete_config_message,
    synced_message,
)
from salesync.sync.settings_store import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    UPSELLER,
    SettingsStore,
    UpsellerSessionStore,
    UpsellerSettings,
)

PIPELINE_NAME = "upseller_sync"
SALE_CHANNEL = "online"
FETCH_MODE_REPORT = "report"
FETCH_MODE_ORDERS = "orders"

BACKUP_COLUMNS = (
    "order_id",
    "date",
    "store",
    "platform",
    "product",
    "variation",
    "sku",
    "quantity",
    "unit_price",
    "total",
    "status",
    "client_name",
)


def build_session_manager(
    *,
    settings: UpsellerSettings,
    store: SettingsStore,
    logger: JsonLogger,
    mailbox_timeout: float = 120.0,
    driver_factory: Callable[[], AsyncContextManager[LoginDriver]] | None = None,
) -> SessionManager:
    async def probe(cookies: str) -> bool:
        return await UpsellerClient(cookies, logger=logger).is_logged_in()

    mailbox = None
    if settings.mailbox_configured:
        mailbox = VerificationMailbox(
            host=settings.imap_host,
            port=settings.imap_port,
            user=settings.imap_user,
            password=settings.imap_pass,
            logger=logger,
        )
    return SessionManager(
        credentials=LoginCredentials(settings.upseller_email, settings.upseller_password),
        store=UpsellerSessionStore(store),
        probe=probe,
        driver_factory=driver_factory
        or partial(playwright_login_driver, login_url=settings.upseller_url, logger=logger),
        solver=CaptchaSolver(settings.anticaptcha_key, logger=logger),
        mailbox=mailbox,
        logger=logger,
        mailbox_timeout=mailbox_timeout,
    )


def write_backup(records: Iterable[SaleRecord], directory: Path, *, run_id: str) -> Path:
    """Write the mapped batch to an .xlsx file for manual inspection."""

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"upseller_{run_id}.xlsx"
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "vendas"
    sheet.append(list(BACKUP_COLUMNS))
    for record in records:
        row = record.to_row(SALE_CHANNEL)
        row["date"] = record.date.replace(tzinfo=None)
        sheet.append([row[column] for column in BACKUP_COLUMNS])
    workbook.save(path)
    return path


def _resolve_window(
    settings: UpsellerSettings,
    *,
    days: int | None,
    start: date | None,
    end: date | None,
    reference: datetime | None,
) -> tuple[date, date]:
    cutoff, today = resolve_sync_window(days or settings.default_days or 90, reference=reference)
    return start or cutoff, end or today


async def _fetch(client: UpsellerClient, mode: str, start: date, end: date) -> FetchResult:
    if mode == FETCH_MODE_REPORT:
        return await client.fetch_profit_report(start, end)
    return await client.fetch_orders(start, end)


async def run_sync(
    *,
    database_url: str,
    logger: JsonLogger,
    store: SettingsStore | None = None,
    days: int | None = None,
    start: date | None = None,
    end: date | None = None,
    reference: datetime | None = None,
    backup_dir: Path | None = None,
    mailbox_timeout: float = 120.0,
    session_manager_factory: Callable[..., SessionManager] = build_session_manager,
    client_factory: Callable[..., UpsellerClient] = UpsellerClient,
) -> SyncResult:
    """Run one aggregator sync and persist its status; never raises for pipeline failures."""

    logger = logger.bind(pipeline=PIPELINE_NAME)
    store = store or SettingsStore(database_url=database_url, logger=logger)
    settings = await store.load_upseller()

    if not settings.active:
        log_event(logger=logger, phase="init", status="warn", message="integration not active; skipping")
        await store.record_status(UPSELLER, STATUS_ERROR, INACTIVE_MESSAGE, 0)
        return SyncResult(False, INACTIVE_MESSAGE, skipped=True)

    missing = settings.missing_fields()
    if missing:
        message = incomplete_config_message(missing)
        log_event(logger=logger, phase="init", status="error", message=message, missing=missing)
        await store.record_status(UPSELLER, STATUS_ERROR, message, 0)
        return SyncResult(False, message, skipped=True)

    session_manager: SessionManager | None = None
    try:
        window_start, window_end = _resolve_window(settings, days=days, start=start, end=end, reference=reference)
        mode = settings.fetch_mode if settings.fetch_mode in {FETCH_MODE_REPORT, FETCH_MODE_ORDERS} else FETCH_MODE_ORDERS
        log_event(
            logger=logger,
            phase="init",
            message="sync window resolved",
            start_date=window_start,
            end_date=window_end,
            fetch_mode=mode,
        )

        session_manager = session_manager_factory(
            settings=settings, store=store, logger=logger, mailbox_timeout=mailbox_timeout
        )
        with timed_event(logger=logger, phase="session", message="session ready"):
            credential = await session_manager.ensure_session()

        client = client_factory(credential.cookies, logger=logger)
        with timed_event(logger=logger, phase="fetch", message="orders fetched", fetch_mode=mode):
            fetched = await _fetch(client, mode, window_start, window_end)

        if not fetched.orders:
            if fetched.failed_platforms:
                raise UpstreamError(
                    "Nenhum pedido obtido; falha em: "
                    + "; ".join(f"{name} ({error})" for name, error in sorted(fetched.failed_platforms.items()))
                )
            await store.record_status(UPSELLER, STATUS_SUCCESS, NO_ORDERS_MESSAGE, 0)
            return SyncResult(True, NO_ORDERS_MESSAGE)

        mapped = (map_profit_report if mode == FETCH_MODE_REPORT else map_order_index)(fetched.orders)
        if mapped.rejected:
            log_event(
                logger=logger,
                phase="normalize",
                status="warn",
                message="order lines rejected",
                rejected=len(mapped.rejected),
                sample=[{"index": row.index, "reason": row.reason} for row in mapped.rejected[:5]],
            )

        if backup_dir is not None:
            path = write_backup(mapped.records, backup_dir, run_id=logger.run_id)
            log_event(logger=logger, phase="backup", message="batch backup written", path=str(path))

        if mode == FETCH_MODE_ORDERS:
            await purge_placeholder_rows(
                database_url=database_url,
                order_ids=itemized_order_ids(mapped.records),
                logger=logger,
            )

        totals = await upsert_sales(mapped.records, SALE_CHANNEL, database_url=database_url, logger=logger)
        rows = len(mapped.records)
        message = synced_message(totals.inserted, totals.updated, rows)
        if fetched.failed_platforms:
            message = f"{message} Falha em: {', '.join(sorted(fetched.failed_platforms))}."
        await store.record_status(UPSELLER, STATUS_SUCCESS, message, rows)
        log_event(logger=logger, phase="summary", message=message, rows=rows, orders=len(fetched.orders))
        return SyncResult(True, message, rows=rows, inserted=totals.inserted, updated=totals.updated)
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
        await store.record_status(UPSELLER, STATUS_ERROR, message, 0)
        if is_login_related(exc):
            if session_manager is not None:
                await session_manager.invalidate()
            else:
                await UpsellerSessionStore(store).clear_session()
        return SyncResult(False, message)

