import io
import sys
from pathlib import Path

import pytest
import sqlalchemy as sa

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from salesync.common.db_tables import metadata  # noqa: E402
from salesync.common.json_logger import JsonLogger  # noqa: E402
from salesync.crypto import KEY_ENV_VAR  # noqa: E402

TEST_ENCRYPTION_KEY = "0f" * 32


def create_tables(database_url: str) -> None:
    engine = sa.create_engine(database_url.replace("+aiosqlite", ""))
    metadata.create_all(engine)
    engine.dispose()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"
    create_tables(url)
    return url


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> JsonLogger:
    return JsonLogger(run_id="test-run", stream=log_stream, log_file_path=None)


@pytest.fixture
def encryption_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv(KEY_ENV_VAR, TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY
