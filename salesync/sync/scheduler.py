"""Periodic and manual sync triggers, one handle per integration.

Each integration owns an :class:`IntegrationHandle` holding its APScheduler job
and an in-flight flag. A trigger that finds the flag set is rejected with
:class:`AlreadyRunning` rather than queued. Integrations never wait on each
other.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from salesync.common.date_utils import get_timezone
from salesync.common.json_logger import JsonLogger, log_event
from salesync.exceptions import AlreadyRunning, ConfigurationError
from salesync.sources.sisplan_sync.main import run_sync as run_sisplan
from salesync.sources.upseller_sync.main import run_sync as run_upseller
from salesync.sync.outcome import SyncResult
from salesync.sync.settings_store import SISPLAN, STATUS_ERROR, UPSELLER, SettingsStore

Runner = Callable[..., Awaitable[SyncResult]]


@dataclass
class IntegrationHandle:
    name: str
    runner: Runner
    job: Optional[Job] = None
    running: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def scheduled(self) -> bool:
        return self.job is not None


def default_runners(*, database_url: str, store: SettingsStore) -> Dict[str, Runner]:
    return {
        UPSELLER: partial(run_upseller, database_url=database_url, store=store),
        SISPLAN: partial(run_sisplan, database_url=database_url, store=store),
    }


class SyncSupervisor:
    def __init__(
        self,
        *,
        store: SettingsStore,
        logger: JsonLogger,
        runners: Mapping[str, Runner],
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.store = store
        self.logger = logger.bind(component="scheduler")
        self.scheduler = scheduler or AsyncIOScheduler(timezone=get_timezone())
        self.handles: Dict[str, IntegrationHandle] = {
            name: IntegrationHandle(name=name, runner=runner) for name, runner in runners.items()
        }

    def handle(self, name: str) -> IntegrationHandle:
        try:
            return self.handles[name]
        except KeyError:
            raise ConfigurationError(f"Unknown integration: {name}") from None

    async def run_sync(self, name: str, **options: Any) -> SyncResult:
        """Run one sync now; raises :class:`AlreadyRunning` if one is in flight for ``name``."""

        handle = self.handle(name)
        if handle.running:
            raise AlreadyRunning(name)
        handle.running = True
        try:
            return await handle.runner(logger=self.logger.bind(integration=name), **options)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            log_event(
                logger=self.logger,
                phase="run",
                status="error",
                message="sync raised; recording error status",
                integration=name,
                error=message,
                error_type=exc.__class__.__name__,
            )
            await self.store.record_status(name, STATUS_ERROR, message, 0)
            return SyncResult(False, message)
        finally:
            handle.running = False

    async def _scheduled_run(self, name: str) -> None:
        try:
            result = await self.run_sync(name)
        except AlreadyRunning:
            log_event(
                logger=self.logger,
                phase="run",
                status="warn",
                message="previous sync still running; tick skipped",
                integration=name,
            )
            return
        log_event(
            logger=self.logger,
            phase="run",
            status="ok" if result.success else "warn",
            message="scheduled sync finished",
            integration=name,
            result=result.as_dict(),
        )

    async def start(self, name: str) -> bool:
        """Schedule ``name`` at its configured interval; a no-op when already scheduled or inactive."""

        handle = self.handle(name)
        async with handle.lock:
            if handle.scheduled:
                return True
            settings = await self.store.load(name)
            if not settings.active:
                log_event(
                    logger=self.logger,
                    phase="schedule",
                    message="integration not active; not scheduled",
                    integration=name,
                )
                return False
            interval = max(int(settings.sync_interval_minutes or 1), 1)
            handle.job = self.scheduler.add_job(
                self._scheduled_run,
                "interval",
                minutes=interval,
                args=[name],
                id=f"sync:{name}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            log_event(
                logger=self.logger,
                phase="schedule",
                message="integration scheduled",
                integration=name,
                interval_minutes=interval,
            )
            return True

    async def stop(self, name: str) -> None:
        handle = self.handle(name)
        async with handle.lock:
            self._remove_job(handle)

    def _remove_job(self, handle: IntegrationHandle) -> None:
        if handle.job is None:
            return
        if self.scheduler.get_job(handle.job.id) is not None:
            self.scheduler.remove_job(handle.job.id)
        handle.job = None
        log_event(logger=self.logger, phase="schedule", message="integration unscheduled", integration=handle.name)

    async def restart(self, name: str) -> bool:
        await self.stop(name)
        return await self.start(name)

    async def start_all(self) -> Dict[str, bool]:
        if not self.scheduler.running:
            self.scheduler.start()
        return {name: await self.start(name) for name in self.handles}

    async def shutdown(self) -> None:
        for name in self.handles:
            await self.stop(name)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def apply_settings(self, name: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Persist settings changes and reschedule the integration; returns the masked view."""

        settings = await self.store.update(name, changes)
        await self.restart(name)
        return settings.masked()


def build_supervisor(*, database_url: str, logger: JsonLogger) -> SyncSupervisor:
    store = SettingsStore(database_url=database_url, logger=logger)
    return SyncSupervisor(
        store=store,
        logger=logger,
        runners=default_runners(database_url=database_url, store=store),
    )
