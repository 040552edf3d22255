"""Persistence of integration settings, sync status and the aggregator session credential.

Secrets are stored encrypted and only decrypted in memory here. Reads for
display go through ``masked()`` which never exposes them.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa

from salesync.common.db import session_scope
from salesync.common.db_tables import sisplan_settings, upseller_settings
from salesync.common.json_logger import JsonLogger, log_event
from salesync.crypto import MASKED_VALUE, decrypt_secret, encrypt_secret, mask_secret
from salesync.exceptions import ConfigurationError, IntegrityError
from salesync.sources.upseller_sync.login import DEFAULT_LOGIN_URL, SessionCredential

SETTINGS_ROW_ID = 1
UPSELLER = "upseller"
SISPLAN = "sisplan"
INTEGRATIONS = (UPSELLER, SISPLAN)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class SyncStatus:
    active: bool = False
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_sync_message: Optional[str] = None
    last_sync_rows: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastSyncStatus": self.last_sync_status,
            "lastSyncMessage": self.last_sync_message,
            "lastSyncRows": self.last_sync_rows,
        }


@dataclass
class UpsellerSettings:
    active: bool = False
    upseller_email: str = ""
    upseller_password: str = ""
    upseller_url: str = DEFAULT_LOGIN_URL
    anticaptcha_key: str = ""
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_user: str = ""
    imap_pass: str = ""
    sync_interval_minutes: int = 60
    default_days: int = 90
    fetch_mode: str = "orders"
    status: SyncStatus = field(default_factory=SyncStatus)

    SECRET_FIELDS = {
        "upseller_password": "upseller_password_encrypted",
        "anticaptcha_key": "anticaptcha_key_encrypted",
        "imap_pass": "imap_pass_encrypted",
    }
    REQUIRED_FIELDS = ("upseller_email", "upseller_password", "anticaptcha_key")

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    @property
    def mailbox_configured(self) -> bool:
        return bool(self.imap_user and self.imap_pass)

    def masked(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "status"}
        for name in self.SECRET_FIELDS:
            data[name] = mask_secret(data[name])
        data.update(self.status.as_dict())
        return data


@dataclass
class SisplanSettings:
    active: bool = False
    host: str = ""
    port: int = 3050
    database_path: str = ""
    fb_user: str = ""
    fb_password: str = ""
    sql_query: str = ""
    column_mapping: Dict[str, str] = field(default_factory=dict)
    sync_interval_minutes: int = 5
    status: SyncStatus = field(default_factory=SyncStatus)

    SECRET_FIELDS = {"fb_password": "fb_password_encrypted"}
    REQUIRED_FIELDS = ("host", "database_path", "fb_user", "fb_password", "sql_query")

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED_FIELDS if not getattr(self, name)]

    def masked(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "status"}
        for name in self.SECRET_FIELDS:
            data[name] = mask_secret(data[name])
        data.update(self.status.as_dict())
        return data


_TABLES = {UPSELLER: upseller_settings, SISPLAN: sisplan_settings}
_MODELS = {UPSELLER: UpsellerSettings, SISPLAN: SisplanSettings}


def _table(integration: str) -> sa.Table:
    try:
        return _TABLES[integration]
    except KeyError:
        raise ConfigurationError(f"Unknown integration: {integration}") from None


class SettingsStore:
    def __init__(self, *, database_url: str, logger: JsonLogger) -> None:
        self.database_url = database_url
        self.logger = logger.bind(component="settings")

    async def _fetch_row(self, integration: str) -> Optional[Mapping[str, Any]]:
        table = _table(integration)
        async with session_scope(self.database_url) as session:
            result = await session.execute(sa.select(table).where(table.c.id == SETTINGS_ROW_ID))
            row = result.mappings().first()
        return dict(row) if row is not None else None

    async def _write_row(self, integration: str, values: Dict[str, Any]) -> None:
        table = _table(integration)
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        async with session_scope(self.database_url) as session:
            async with session.begin():
                exists = (
                    await session.execute(sa.select(table.c.id).where(table.c.id == SETTINGS_ROW_ID))
                ).scalar_one_or_none()
                if exists is None:
                    await session.execute(sa.insert(table).values(id=SETTINGS_ROW_ID, **values))
                else:
                    await session.execute(
                        sa.update(table).where(table.c.id == SETTINGS_ROW_ID).values(**values)
                    )

    def _decrypt(self, integration: str, column: str, token: Optional[str]) -> str:
        if not token:
            return ""
        try:
            return decrypt_secret(token)
        except IntegrityError as exc:
            log_event(
                logger=self.logger,
                phase="settings",
                status="warn",
                message="stored secret could not be decrypted; treating as unset",
                integration=integration,
                column=column,
                error=str(exc),
            )
            return ""

    @staticmethod
    def _status_from_row(row: Mapping[str, Any]) -> SyncStatus:
        return SyncStatus(
            active=bool(row.get("active")),
            last_sync_at=_as_utc(row.get("last_sync_at")),
            last_sync_status=row.get("last_sync_status"),
            last_sync_message=row.get("last_sync_message"),
            last_sync_rows=int(row.get("last_sync_rows") or 0),
        )

    async def load_upseller(self) -> UpsellerSettings:
        row = await self._fetch_row(UPSELLER)
        if row is None:
            return UpsellerSettings()
        defaults = UpsellerSettings()
        return UpsellerSettings(
            active=bool(row["active"]),
            upseller_email=row.get("upseller_email") or "",
            upseller_password=self._decrypt(UPSELLER, "upseller_password", row.get("upseller_password_encrypted")),
            upseller_url=row.get("upseller_url") or defaults.upseller_url,
            anticaptcha_key=self._decrypt(UPSELLER, "anticaptcha_key", row.get("anticaptcha_key_encrypted")),
            imap_host=row.get("imap_host") or defaults.imap_host,
            imap_port=int(row.get("imap_port") or defaults.imap_port),
            imap_user=row.get("imap_user") or "",
            imap_pass=self._decrypt(UPSELLER, "imap_pass", row.get("imap_pass_encrypted")),
            sync_interval_minutes=int(row.get("sync_interval_minutes") or defaults.sync_interval_minutes),
            default_days=int(row.get("default_days") or defaults.default_days),
            fetch_mode=row.get("fetch_mode") or defaults.fetch_mode,
            status=self._status_from_row(row),
        )

    async def load_sisplan(self) -> SisplanSettings:
        row = await self._fetch_row(SISPLAN)
        if row is None:
            return SisplanSettings()
        defaults = SisplanSettings()
        return SisplanSettings(
            active=bool(row["active"]),
            host=row.get("host") or "",
            port=int(row.get("port") or defaults.port),
            database_path=row.get("database_path") or "",
            fb_user=row.get("fb_user") or "",
            fb_password=self._decrypt(SISPLAN, "fb_password", row.get("fb_password_encrypted")),
            sql_query=row.get("sql_query") or "",
            column_mapping=dict(row.get("column_mapping") or {}),
            sync_interval_minutes=int(row.get("sync_interval_minutes") or defaults.sync_interval_minutes),
            status=self._status_from_row(row),
        )

    async def load(self, integration: str) -> UpsellerSettings | SisplanSettings:
        if integration == UPSELLER:
            return await self.load_upseller()
        if integration == SISPLAN:
            return await self.load_sisplan()
        raise ConfigurationError(f"Unknown integration: {integration}")

    async def update(self, integration: str, changes: Mapping[str, Any]) -> UpsellerSettings | SisplanSettings:
        """Persist editable settings; a secret submitted as the mask keeps its stored value."""

        model = _MODELS.get(integration)
        if model is None:
            raise ConfigurationError(f"Unknown integration: {integration}")
        editable = {f.name for f in fields(model) if f.name != "status"}
        unknown = sorted(set(changes) - editable)
        if unknown:
            raise ConfigurationError(f"Unknown {integration} settings: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for name, value in changes.items():
            column = model.SECRET_FIELDS.get(name)
            if column is None:
                values[name] = value
                continue
            if value == MASKED_VALUE:
                continue
            values[column] = encrypt_secret(value) if value else None

        if values:
            await self._write_row(integration, values)
        log_event(
            logger=self.logger,
            phase="settings",
            message="settings updated",
            integration=integration,
            changed=sorted(changes),
        )
        return await self.load(integration)

    async def record_status(self, integration: str, status: str, message: str, rows: int = 0) -> None:
        await self._write_row(
            integration,
            {
                "last_sync_at": datetime.now(timezone.utc),
                "last_sync_status": status,
                "last_sync_message": message,
                "last_sync_rows": rows,
            },
        )

    async def status(self, integration: str) -> SyncStatus:
        row = await self._fetch_row(integration)
        return self._status_from_row(row) if row is not None else SyncStatus()


class UpsellerSessionStore:
    """Session credential persistence backed by the aggregator settings row."""

    def __init__(self, store: SettingsStore) -> None:
        self._store = store

    async def load_session(self) -> Optional[SessionCredential]:
        row = await self._store._fetch_row(UPSELLER)
        if not row or not row.get("session_cookies_encrypted") or not row.get("session_saved_at"):
            return None
        cookies = self._store._decrypt(UPSELLER, "session_cookies", row["session_cookies_encrypted"])
        if not cookies:
            return None
        session_id = self._store._decrypt(UPSELLER, "session_id", row.get("session_id_encrypted")) or None
        return SessionCredential(cookies=cookies, session_id=session_id, saved_at=_as_utc(row["session_saved_at"]))

    async def save_session(self, credential: SessionCredential) -> None:
        await self._store._write_row(
            UPSELLER,
            {
                "session_cookies_encrypted": encrypt_secret(credential.cookies),
                "session_id_encrypted": encrypt_secret(credential.session_id) if credential.session_id else None,
                "session_saved_at": credential.saved_at,
            },
        )

    async def clear_session(self) -> None:
        await self._store._write_row(
            UPSELLER,
            {"session_cookies_encrypted": None, "session_id_encrypted": None, "session_saved_at": None},
        )

