from datetime import datetime, timezone

import pytest
import sqlalchemy as sa

from salesync.common.db import session_scope
from salesync.common.db_tables import upseller_settings
from salesync.crypto import MASKED_VALUE
from salesync.exceptions import ConfigurationError
from salesync.sources.upseller_sync.login import SessionCredential
from salesync.sync.settings_store import (
    SISPLAN,
    STATUS_ERROR,
    STATUS_SUCCESS,
    UPSELLER,
    SettingsStore,
    UpsellerSessionStore,
)


@pytest.fixture
def store(database_url, logger, encryption_key) -> SettingsStore:
    return SettingsStore(database_url=database_url, logger=logger)


@pytest.mark.asyncio
async def test_defaults_when_no_row(store: SettingsStore) -> None:
    settings = await store.load_upseller()

    assert settings.active is False
    assert settings.missing_fields() == ["upseller_email", "upseller_password", "anticaptcha_key"]
    assert (await store.status(SISPLAN)).last_sync_status is None


@pytest.mark.asyncio
async def test_secrets_encrypted_at_rest_and_masked(store: SettingsStore, database_url: str) -> None:
    settings = await store.update(
        UPSELLER,
        {"active": True, "upseller_email": "ops@example.com", "upseller_password": "hunter2", "anticaptcha_key": "ak-1"},
    )

    assert settings.upseller_password == "hunter2"
    masked = settings.masked()
    assert masked["upseller_password"] == MASKED_VALUE
    assert masked["anticaptcha_key"] == MASKED_VALUE
    assert masked["imap_pass"] == ""
    assert masked["upseller_email"] == "ops@example.com"

    async with session_scope(database_url) as session:
        stored = (await session.execute(sa.select(upseller_settings.c.upseller_password_encrypted))).scalar_one()
    assert "hunter2" not in stored
    assert stored.count(":") == 2


@pytest.mark.asyncio
async def test_masked_submission_keeps_stored_secret(store: SettingsStore) -> None:
    await store.update(SISPLAN, {"fb_password": "masterkey", "host": "erp.local"})

    settings = await store.update(SISPLAN, {"fb_password": MASKED_VALUE, "host": "erp2.local"})

    assert settings.fb_password == "masterkey"
    assert settings.host == "erp2.local"


@pytest.mark.asyncio
async def test_empty_secret_clears_it(store: SettingsStore) -> None:
    await store.update(SISPLAN, {"fb_password": "masterkey"})

    settings = await store.update(SISPLAN, {"fb_password": ""})

    assert settings.fb_password == ""
    assert "fb_password" in settings.missing_fields()


@pytest.mark.asyncio
async def test_unknown_setting_rejected(store: SettingsStore) -> None:
    with pytest.raises(ConfigurationError):
        await store.update(UPSELLER, {"session_cookies_encrypted": "x"})
    with pytest.raises(ConfigurationError):
        await store.load("bling")


@pytest.mark.asyncio
async def test_undecryptable_secret_treated_as_unset(store: SettingsStore, database_url: str) -> None:
    await store.update(UPSELLER, {"upseller_email": "ops@example.com", "anticaptcha_key": "ak-1"})
    async with session_scope(database_url) as session:
        async with session.begin():
            await session.execute(sa.update(upseller_settings).values(anticaptcha_key_encrypted="00:11:22"))

    settings = await store.load_upseller()

    assert settings.anticaptcha_key == ""
    assert settings.upseller_email == "ops@example.com"


@pytest.mark.asyncio
async def test_record_status_round_trip(store: SettingsStore) -> None:
    await store.record_status(SISPLAN, STATUS_ERROR, "Firebird indisponível", 0)
    await store.record_status(SISPLAN, STATUS_SUCCESS, "Sincronizado: 3 inseridos", 3)

    status = await store.status(SISPLAN)

    assert status.last_sync_status == STATUS_SUCCESS
    assert status.last_sync_rows == 3
    assert status.last_sync_at is not None and status.last_sync_at.tzinfo is not None
    assert status.as_dict()["lastSyncMessage"] == "Sincronizado: 3 inseridos"


@pytest.mark.asyncio
async def test_session_store_save_load_clear(store: SettingsStore) -> None:
    sessions = UpsellerSessionStore(store)
    assert await sessions.load_session() is None

    saved_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    await sessions.save_session(SessionCredential(cookies='[{"name": "sid"}]', session_id="abc", saved_at=saved_at))

    loaded = await sessions.load_session()
    assert loaded is not None
    assert loaded.cookies == '[{"name": "sid"}]'
    assert loaded.session_id == "abc"
    assert loaded.saved_at == saved_at

    await sessions.clear_session()
    assert await sessions.load_session() is None
