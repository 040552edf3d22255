from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

from salesync.common.db import dispose_engines, run_alembic_upgrade
from salesync.common.json_logger import JsonLogger, get_logger, log_event
from salesync.sync.settings_store import INTEGRATIONS, UPSELLER


def _parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {raw!r}") from None


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str), flush=True)


async def _run_scheduler(logger: JsonLogger) -> int:
    """Run the sync supervisor until SIGINT/SIGTERM."""

    from salesync.config import get_config
    from salesync.sync.scheduler import build_supervisor

    supervisor = build_supervisor(database_url=get_config().database_url, logger=logger)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    scheduled = await supervisor.start_all()
    log_event(logger=logger, phase="scheduler", message="scheduler running", scheduled=scheduled)
    try:
        await stop_event.wait()
    finally:
        log_event(logger=logger, phase="scheduler", message="shutdown signal received")
        await supervisor.shutdown()
        await dispose_engines()
    return 0


async def _run_sync(args: argparse.Namespace, logger: JsonLogger) -> int:
    from salesync.config import get_config
    from salesync.sync.scheduler import build_supervisor

    supervisor = build_supervisor(database_url=get_config().database_url, logger=logger)
    options = {}
    if args.integration == UPSELLER:
        options = {"days": args.days, "start": args.start, "end": args.end, "backup_dir": args.backup_dir}
        options["mailbox_timeout"] = float(get_config().mailbox_timeout_seconds)
    try:
        result = await supervisor.run_sync(args.integration, **options)
    finally:
        await dispose_engines()
    _print_json(result.as_dict())
    return 0 if result.success else 1


async def _run_import(args: argparse.Namespace, logger: JsonLogger) -> int:
    from salesync.config import get_config
    from salesync.sources.spreadsheet_import.ingest import import_spreadsheet

    try:
        result = await import_spreadsheet(
            args.path,
            database_url=get_config().database_url,
            logger=logger,
            channel=args.channel,
        )
    finally:
        await dispose_engines()
    _print_json(result.as_dict())
    return 0 if result.success else 1


async def _show_status(args: argparse.Namespace, logger: JsonLogger) -> int:
    from salesync.config import get_config
    from salesync.sync.settings_store import SettingsStore

    store = SettingsStore(database_url=get_config().database_url, logger=logger)
    try:
        status = await store.status(args.integration)
    finally:
        await dispose_engines()
    _print_json(status.as_dict())
    return 0


async def _captcha_balance(logger: JsonLogger) -> int:
    from salesync.config import get_config
    from salesync.sources.upseller_sync.captcha import CaptchaSolver
    from salesync.sync.settings_store import SettingsStore

    store = SettingsStore(database_url=get_config().database_url, logger=logger)
    try:
        settings = await store.load_upseller()
    finally:
        await dispose_engines()
    if not settings.anticaptcha_key:
        print("[captcha] no anti-captcha key configured", file=sys.stderr)
        return 1
    balance = await CaptchaSolver(settings.anticaptcha_key, logger=logger).balance()
    _print_json({"balance": balance})
    return 0


async def _sisplan_admin(args: argparse.Namespace, logger: JsonLogger) -> int:
    from salesync.config import get_config
    from salesync.sources.sisplan_sync.connector import check_connection, preview_query
    from salesync.sources.sisplan_sync.main import firebird_options
    from salesync.sync.settings_store import SettingsStore

    store = SettingsStore(database_url=get_config().database_url, logger=logger)
    try:
        settings = await store.load_sisplan()
    finally:
        await dispose_engines()
    options = firebird_options(settings)
    if args.command == "sisplan-ping":
        await check_connection(options)
        log_event(logger=logger, phase="sisplan", message="firebird connection ok", host=settings.host)
        _print_json({"success": True})
        return 0
    sql = args.sql or settings.sql_query
    if not sql:
        print("[sisplan] no query configured", file=sys.stderr)
        return 1
    _print_json(await preview_query(options, sql, limit=args.limit))
    return 0


def _encrypt_stdin() -> int:
    from salesync.crypto import encrypt_secret

    secret = sys.stdin.read().rstrip("\n")
    if not secret:
        print("[encrypt] nothing to encrypt on stdin", file=sys.stderr)
        return 1
    print(encrypt_secret(secret))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="salesync", description="Sales ledger synchronisation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run one sync for an integration and exit")
    sync_parser.add_argument("integration", choices=INTEGRATIONS)
    sync_parser.add_argument("--days", type=int, default=None, help="Window size in days (aggregator only)")
    sync_parser.add_argument("--start", type=_parse_day, default=None, help="Window start, YYYY-MM-DD")
    sync_parser.add_argument("--end", type=_parse_day, default=None, help="Window end, YYYY-MM-DD")
    sync_parser.add_argument("--backup-dir", dest="backup_dir", type=Path, default=None, help="Write an .xlsx copy of the batch")

    import_parser = subparsers.add_parser("import-sheet", help="Import an .xlsx sales export")
    import_parser.add_argument("path", type=Path)
    import_parser.add_argument("--channel", choices=("online", "atacado", "manual"), default="online")

    subparsers.add_parser("scheduler", help="Run periodic syncs until terminated")

    status_parser = subparsers.add_parser("status", help="Print the last sync status of an integration")
    status_parser.add_argument("integration", choices=INTEGRATIONS)

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    upgrade_parser = db_sub.add_parser("upgrade", help="Run Alembic upgrade")
    upgrade_parser.add_argument("revision", nargs="?", default="head")

    subparsers.add_parser("encrypt", help="Encrypt a secret read from stdin")
    subparsers.add_parser("captcha-balance", help="Print the anti-captcha account balance")
    subparsers.add_parser("sisplan-ping", help="Check the Firebird connection")
    preview_parser = subparsers.add_parser("sisplan-preview", help="Run the Sisplan query limited to a few rows")
    preview_parser.add_argument("--sql", default=None, help="Query to preview instead of the configured one")
    preview_parser.add_argument("--limit", type=int, default=10)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.command == "encrypt":
        return _encrypt_stdin()

    if args.command == "db" and args.db_command == "upgrade":
        from salesync.config import get_config

        runtime_config = get_config()
        run_alembic_upgrade(
            revision=args.revision,
            database_url=runtime_config.database_url,
            alembic_config_path=runtime_config.alembic_config,
        )
        return 0

    logger = get_logger()
    try:
        if args.command == "sync":
            return asyncio.run(_run_sync(args, logger))
        if args.command == "import-sheet":
            return asyncio.run(_run_import(args, logger))
        if args.command == "scheduler":
            return asyncio.run(_run_scheduler(logger))
        if args.command == "status":
            return asyncio.run(_show_status(args, logger))
        if args.command == "captcha-balance":
            return asyncio.run(_captcha_balance(logger))
        if args.command in ("sisplan-ping", "sisplan-preview"):
            return asyncio.run(_sisplan_admin(args, logger))
    finally:
        logger.close()

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
