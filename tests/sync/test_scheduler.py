import asyncio

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from salesync.exceptions import AlreadyRunning, ConfigurationError
from salesync.sync.outcome import SyncResult
from salesync.sync.scheduler import SyncSupervisor
from salesync.sync.settings_store import SISPLAN, STATUS_ERROR, UPSELLER, SettingsStore


@pytest.fixture
def store(database_url, logger) -> SettingsStore:
    return SettingsStore(database_url=database_url, logger=logger)


def _supervisor(store, logger, **runners) -> SyncSupervisor:
    async def idle(**_options):
        return SyncResult(True, "ok")

    runners = {UPSELLER: idle, SISPLAN: idle, **runners}
    return SyncSupervisor(store=store, logger=logger, runners=runners, scheduler=AsyncIOScheduler())


@pytest.mark.asyncio
async def test_second_trigger_rejected_while_running(store, logger) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    calls = []

    async def slow(**options):
        calls.append(options)
        started.set()
        await release.wait()
        return SyncResult(True, "done", rows=4)

    supervisor = _supervisor(store, logger, sisplan=slow)
    first = asyncio.create_task(supervisor.run_sync(SISPLAN))
    await started.wait()

    with pytest.raises(AlreadyRunning):
        await supervisor.run_sync(SISPLAN)
    # other integrations are independent
    assert (await supervisor.run_sync(UPSELLER)).success

    release.set()
    result = await first
    assert result.rows == 4
    assert len(calls) == 1
    assert supervisor.handle(SISPLAN).running is False


@pytest.mark.asyncio
async def test_scheduled_tick_skips_when_busy(store, logger, log_stream) -> None:
    supervisor = _supervisor(store, logger)
    supervisor.handle(SISPLAN).running = True

    await supervisor._scheduled_run(SISPLAN)

    assert "tick skipped" in log_stream.getvalue()


@pytest.mark.asyncio
async def test_runner_exception_recorded_as_error(store, logger) -> None:
    async def broken(**_options):
        raise RuntimeError("firebird went away")

    supervisor = _supervisor(store, logger, sisplan=broken)

    result = await supervisor.run_sync(SISPLAN)

    assert not result.success
    assert result.message == "firebird went away"
    status = await store.status(SISPLAN)
    assert status.last_sync_status == STATUS_ERROR
    assert supervisor.handle(SISPLAN).running is False


@pytest.mark.asyncio
async def test_start_schedules_active_integrations_once(store, logger) -> None:
    await store.update(SISPLAN, {"active": True, "sync_interval_minutes": 2})
    supervisor = _supervisor(store, logger)

    assert await supervisor.start(SISPLAN) is True
    job = supervisor.handle(SISPLAN).job
    assert await supervisor.start(SISPLAN) is True
    assert supervisor.handle(SISPLAN).job is job
    assert job.id == "sync:sisplan"
    assert job.trigger.interval.total_seconds() == 120

    assert await supervisor.start(UPSELLER) is False
    assert not supervisor.handle(UPSELLER).scheduled


@pytest.mark.asyncio
async def test_stop_and_settings_change_reschedule(store, logger) -> None:
    await store.update(SISPLAN, {"active": True, "sync_interval_minutes": 5})
    supervisor = _supervisor(store, logger)
    await supervisor.start(SISPLAN)

    await supervisor.stop(SISPLAN)
    assert not supervisor.handle(SISPLAN).scheduled
    assert supervisor.scheduler.get_job("sync:sisplan") is None

    masked = await supervisor.apply_settings(SISPLAN, {"sync_interval_minutes": 15})
    assert masked["sync_interval_minutes"] == 15
    job = supervisor.scheduler.get_job("sync:sisplan")
    assert job is not None
    assert job.trigger.interval.total_seconds() == 900

    await supervisor.apply_settings(SISPLAN, {"active": False})
    assert supervisor.scheduler.get_job("sync:sisplan") is None


@pytest.mark.asyncio
async def test_unknown_integration(store, logger) -> None:
    supervisor = _supervisor(store, logger)

    with pytest.raises(ConfigurationError):
        await supervisor.run_sync("bling")
