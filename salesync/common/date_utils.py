"""Shared helpers for timezone-aware sync window calculations."""
from __future__ import annotations

import os
from datetime import date, datetime, timedelta
from typing import Tuple
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "America/Sao_Paulo"


def get_timezone() -> ZoneInfo:
    """Return the configured pipeline timezone.

    The timezone can be overridden via the ``PIPELINE_TIMEZONE`` environment
    variable. Sync windows and dates without an explicit offset are resolved
    in this zone regardless of the machine locale.
    """

    name = os.getenv("PIPELINE_TIMEZONE", DEFAULT_TIMEZONE)
    return ZoneInfo(name)


def aware_now(tz: ZoneInfo | None = None) -> datetime:
    """Return ``datetime.now`` in the configured timezone."""

    timezone = tz or get_timezone()
    return datetime.now(timezone)


def local_today(reference: datetime | None = None, tz: ZoneInfo | None = None) -> date:
    current = reference or aware_now(tz)
    if current.tzinfo is not None:
        current = current.astimezone(tz or get_timezone())
    return current.date()


def resolve_sync_window(
    default_days: int,
    *,
    reference: datetime | None = None,
    tz: ZoneInfo | None = None,
) -> Tuple[date, date]:
    """Return ``(cutoff, today)`` where cutoff is ``default_days`` before today.

    With ``default_days=90`` and a local date of 2026-03-01 the window is
    2025-12-01 .. 2026-03-01 (both inclusive).
    """

    if default_days < 1:
        raise ValueError("default_days must be a positive integer")
    today = local_today(reference, tz)
    return today - timedelta(days=default_days), today


def localize(value: datetime, tz: ZoneInfo | None = None) -> datetime:
    """Attach the pipeline timezone to naive datetimes; leave aware ones unchanged."""

    if value.tzinfo is None:
        return value.replace(tzinfo=tz or get_timezone())
    return value
