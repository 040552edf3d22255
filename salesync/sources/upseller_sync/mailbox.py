from __future__ import annotations

import asyncio
import email
import imaplib
import re
import ssl
import time
from dataclasses import dataclass
from functools import partial
from datetime import datetime, timedelta, timezone
from email import policy
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Tuple

from salesync.common.json_logger import JsonLogger, log_event
from salesync.exceptions import VerificationTimeout

DEFAULT_IMAP_HOST = "imap.gmail.com"
DEFAULT_IMAP_PORT = 993
DEFAULT_SUBJECT = "UpSeller"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 4.0
# socket timeout for every blocking IMAP call
IMAP_CALL_TIMEOUT_SECONDS = 20.0
CLOCK_SKEW_TOLERANCE = timedelta(seconds=30)

SUBJECT_CODE_RE = re.compile(r"(\d{4,8})")
BODY_CODE_RE = re.compile(r"\b(\d{4,8})\b")
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass
class MailboxMessage:
    uid: bytes
    received_at: datetime
    subject: str
    body: str


def extract_code(subject: str, body: str) -> Optional[str]:
    match = SUBJECT_CODE_RE.search(subject or "")
    if match:
        return match.group(1)
    match = BODY_CODE_RE.search(body or "")
    return match.group(1) if match else None


def _message_text(message: EmailMessage) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    content = part.get_content()
    if part.get_content_subtype() == "html":
        content = _TAG_RE.sub(" ", content)
    return content


def _internal_date(header: bytes) -> datetime:
    parsed = imaplib.Internaldate2tuple(header)
    if parsed is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)


def _default_connect(host: str, port: int, *, timeout: float = IMAP_CALL_TIMEOUT_SECONDS) -> imaplib.IMAP4:
    return imaplib.IMAP4_SSL(host, port, ssl_context=ssl.create_default_context(), timeout=timeout)


class VerificationMailbox:
    """Reads one-time login codes the aggregator sends by e-mail.

    Each ``fetch_code`` call holds an exclusive IMAP session; concurrent callers
    for the same account wait for each other so one cannot delete the message
    another is waiting for.
    """

    _locks: ClassVar[Dict[Tuple[str, str], asyncio.Lock]] = {}

    def __init__(
        self,
        *,
        user: str,
        password: str,
        logger: JsonLogger,
        host: str = DEFAULT_IMAP_HOST,
        port: int = DEFAULT_IMAP_PORT,
        subject: str = DEFAULT_SUBJECT,
        connect: Callable[[str, int], imaplib.IMAP4] | None = None,
        call_timeout: float = IMAP_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host or DEFAULT_IMAP_HOST
        self.port = int(port or DEFAULT_IMAP_PORT)
        self.user = user
        self._password = password
        self.subject = subject
        self._connect = connect or partial(_default_connect, timeout=call_timeout)
        self._sleep = sleep
        self._clock = clock
        self.logger = logger.bind(component="mailbox")

    def _lock(self) -> asyncio.Lock:
        key = (self.host, self.user)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    # blocking IMAP helpers, always run in a worker thread

    def _open(self) -> imaplib.IMAP4:
        conn = self._connect(self.host, self.port)
        conn.login(self.user, self._password)
        conn.select("INBOX")
        return conn

    def _search(self, conn: imaplib.IMAP4) -> List[bytes]:
        status, data = conn.search(None, "SUBJECT", f'"{self.subject}"')
        if status != "OK" or not data or not data[0]:
            return []
        return data[0].split()

    def _fetch(self, conn: imaplib.IMAP4, uid: bytes) -> Optional[MailboxMessage]:
        status, data = conn.fetch(uid, "(INTERNALDATE RFC822)")
        if status != "OK":
            return None
        for item in data:
            if isinstance(item, tuple) and len(item) == 2:
                header, raw = item
                message = email.message_from_bytes(raw, policy=policy.default)
                return MailboxMessage(
                    uid=uid,
                    received_at=_internal_date(header),
                    subject=str(message.get("subject") or ""),
                    body=_message_text(message),
                )
        return None

    def _delete(self, conn: imaplib.IMAP4, uids: List[bytes]) -> None:
        if not uids:
            return
        conn.store(b",".join(uids).decode(), "+FLAGS", "\\Deleted")
        conn.expunge()

    def _purge_stale(self, conn: imaplib.IMAP4, cutoff: datetime) -> int:
        stale: List[bytes] = []
        for uid in self._search(conn):
            message = self._fetch(conn, uid)
            if message is not None and message.received_at < cutoff:
                stale.append(uid)
        self._delete(conn, stale)
        return len(stale)

    def _poll_once(self, conn: imaplib.IMAP4, cutoff: datetime) -> Optional[str]:
        conn.noop()
        uids = self._search(conn)
        if not uids:
            return None
        newest = self._fetch(conn, uids[-1])
        if newest is None or newest.received_at < cutoff:
            return None
        code = extract_code(newest.subject, newest.body)
        if code:
            self._delete(conn, uids)
        return code

    def _close(self, conn: imaplib.IMAP4) -> None:
        try:
            conn.close()
        finally:
            conn.logout()

    async def _call(self, started: float, timeout: float, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, imaplib.IMAP4.abort) as exc:
            elapsed = self._clock() - started
            log_event(
                logger=self.logger,
                phase="mailbox",
                status="error",
                message="IMAP server stopped answering",
                error=str(exc),
            )
            raise VerificationTimeout(timeout, elapsed, reason=f"IMAP {self.host}: {exc}") from exc

    async def fetch_code(
        self,
        *,
        sent_after: datetime,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> str:
        """Wait for a code e-mail received no earlier than ``sent_after`` minus 30 s."""

        cutoff = sent_after - CLOCK_SKEW_TOLERANCE
        async with self._lock():
            started = self._clock()
            conn = await self._call(started, timeout, self._open)
            try:
                purged = await self._call(started, timeout, self._purge_stale, conn, cutoff)
                if purged:
                    log_event(logger=self.logger, phase="mailbox", message="deleted stale code e-mails", deleted=purged)

                polls = 0
                while True:
                    polls += 1
                    code = await self._call(started, timeout, self._poll_once, conn, cutoff)
                    elapsed = self._clock() - started
                    if code:
                        log_event(
                            logger=self.logger,
                            phase="mailbox",
                            message="verification code received",
                            polls=polls,
                            elapsed_seconds=round(elapsed, 1),
                        )
                        return code
                    if elapsed >= timeout:
                        log_event(
                            logger=self.logger,
                            phase="mailbox",
                            status="error",
                            message="verification e-mail did not arrive",
                            polls=polls,
                            timeout_seconds=timeout,
                        )
                        raise VerificationTimeout(timeout, elapsed)
                    await self._sleep(min(poll_interval, max(timeout - elapsed, 0.0)))
            finally:
                try:
                    await asyncio.to_thread(self._close, conn)
                except (imaplib.IMAP4.error, OSError) as exc:
                    log_event(
                        logger=self.logger,
                        phase="mailbox",
                        status="warn",
                        message="IMAP logout failed",
                        error=str(exc),
                    )
