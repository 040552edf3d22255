"""Firebird access for the on-premise Sisplan ERP.

The Sisplan database was created under the WIN1252 code page and declares no
usable connection charset, so text columns are decoded with ``charset`` passed
explicitly at connect time. This module is the only place that talks to
``firebird-driver``.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, List

from firebird.driver import connect

DEFAULT_PORT = 3050
LEGACY_CHARSET = "WIN1252"
PREVIEW_LIMIT = 10
PING_SQL = "SELECT 1 FROM RDB$DATABASE"

_LEADING_SELECT_RE = re.compile(r"^\s*SELECT\b", re.IGNORECASE)


@dataclass(frozen=True)
class FirebirdOptions:
    host: str
    database: str
    user: str
    password: str
    port: int = DEFAULT_PORT
    charset: str = LEGACY_CHARSET

    @property
    def dsn(self) -> str:
        return f"{self.host}/{self.port or DEFAULT_PORT}:{self.database}"

    def __repr__(self) -> str:
        return (
            f"FirebirdOptions(host={self.host!r}, port={self.port!r}, database={self.database!r}, "
            f"user={self.user!r}, charset={self.charset!r})"
        )


def _run_query(options: FirebirdOptions, sql: str) -> List[Dict[str, Any]]:
    with connect(options.dsn, user=options.user, password=options.password, charset=options.charset) as con:
        with con.cursor() as cursor:
            cursor.execute(sql)
            columns = [column[0].strip() for column in cursor.description or ()]
            rows = cursor.fetchall()
    return [dict(zip(columns, row)) for row in rows]


async def query_firebird(options: FirebirdOptions, sql: str) -> List[Dict[str, Any]]:
    """Run the operator-supplied ``sql`` on a fresh connection and return rows keyed by column name.

    The statement is executed as given; callers are trusted administrators.
    """

    return await asyncio.to_thread(_run_query, options, sql)


async def check_connection(options: FirebirdOptions) -> bool:
    await query_firebird(options, PING_SQL)
    return True


def preview_sql(sql: str, limit: int = PREVIEW_LIMIT) -> str:
    return _LEADING_SELECT_RE.sub(f"SELECT FIRST {int(limit)}", sql.strip(), count=1)


async def preview_query(options: FirebirdOptions, sql: str, *, limit: int = PREVIEW_LIMIT) -> Dict[str, Any]:
    rows = await query_firebird(options, preview_sql(sql, limit))
    columns = list(rows[0].keys()) if rows else []
    return {"columns": columns, "rows": rows, "total_preview": len(rows)}
