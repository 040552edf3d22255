"""
CONFIG.PY: SINGLE SOURCE OF TRUTH (SSOT)

This module is the ONLY place allowed to read process-level environment
variables, with two exceptions read lazily on each call: the credential vault
master key (``salesync.crypto``) and ``PIPELINE_TIMEZONE``
(``salesync.common.date_utils``), so both work without a database URL.

Integration settings (UpSeller / Sisplan credentials, intervals, column
mappings) live in the database and are read through
``salesync.sync.settings_store``; they are not part of this object.

To use a config value, import:

    from salesync.config import get_config

The object is loaded once on first use and cached. Missing or invalid
required values fail early with ``ConfigError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from salesync.exceptions import ConfigurationError


PROJECT_ROOT = Path(__file__).resolve().parents[1]

# OS env overrides values from .env
load_dotenv(PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

DEFAULT_RUN_ENV = "dev"
DEFAULT_PIPELINE_TIMEZONE = "America/Sao_Paulo"
DEFAULT_ALEMBIC_CONFIG = "alembic.ini"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ConfigurationError):
    """Raised when configuration cannot be loaded."""


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _optional_env(key: str, default: str = "") -> str:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)


@dataclass(slots=True, frozen=True)
class Config:
    database_url: str
    run_env: str
    pipeline_timezone: str
    alembic_config: str
    json_log_file: str
    etl_headless: bool
    browser_executable: str
    mailbox_timeout_seconds: int

    @classmethod
    def load_from_env(cls) -> Config:
        database_url = _require_env("DATABASE_URL")
        etl_headless = _parse_bool(_optional_env("ETL_HEADLESS", "true"), key="ETL_HEADLESS")
        mailbox_timeout_seconds = _parse_int(
            _optional_env("MAILBOX_TIMEOUT_SECONDS", "120"), key="MAILBOX_TIMEOUT_SECONDS"
        )
        if mailbox_timeout_seconds <= 0:
            message = "Config key MAILBOX_TIMEOUT_SECONDS must be positive"
            logger.error(message)
            raise ConfigError(message)

        return cls(
            database_url=database_url,
            run_env=_optional_env("RUN_ENV", DEFAULT_RUN_ENV),
            pipeline_timezone=_optional_env("PIPELINE_TIMEZONE", DEFAULT_PIPELINE_TIMEZONE),
            alembic_config=_optional_env("ALEMBIC_CONFIG", DEFAULT_ALEMBIC_CONFIG),
            json_log_file=_optional_env("JSON_LOG_FILE"),
            etl_headless=etl_headless,
            browser_executable=_optional_env("BROWSER_EXECUTABLE"),
            mailbox_timeout_seconds=mailbox_timeout_seconds,
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.load_from_env()
