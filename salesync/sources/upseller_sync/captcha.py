from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from salesync.common.json_logger import JsonLogger, log_event
from salesync.exceptions import CaptchaError, CaptchaNoCapacity

ANTICAPTCHA_URL = "https://api.anti-captcha.com"
NO_CAPACITY_MARKER = "NO_SLOT"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 10.0
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_RESULT_TIMEOUT_SECONDS = 120.0
HTTP_TIMEOUT_SECONDS = 30.0

_DATA_URI_PREFIX = re.compile(r"^data:image/[a-z+.-]+;base64,", re.IGNORECASE)


def strip_data_uri(image_base64: str) -> str:
    return _DATA_URI_PREFIX.sub("", (image_base64 or "").strip())


class CaptchaSolver:
    """Image-to-text CAPTCHA solving through the anti-captcha HTTP API.

    Only the "no free worker" condition is retried (fixed back-off); every
    other failure surfaces immediately as ``CaptchaError``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        logger: JsonLogger,
        client: httpx.AsyncClient | None = None,
        base_url: str = ANTICAPTCHA_URL,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        result_timeout: float = DEFAULT_RESULT_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise CaptchaError("CAPTCHA service key is not configured")
        self._api_key = api_key
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._backoff_seconds = backoff_seconds
        self._poll_interval = poll_interval
        self._result_timeout = result_timeout
        self._sleep = sleep
        self.logger = logger.bind(component="captcha")

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
            yield client

    async def _call(self, client: httpx.AsyncClient, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await client.post(f"{self._base_url}/{method}", json={"clientKey": self._api_key, **payload})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise CaptchaError(f"CAPTCHA service request failed ({method}): {exc}") from exc
        except ValueError as exc:
            raise CaptchaError(f"CAPTCHA service returned invalid JSON ({method})") from exc

        if data.get("errorId"):
            code = str(data.get("errorCode") or "UNKNOWN")
            description = data.get("errorDescription") or ""
            message = f"CAPTCHA service error {code}: {description}".strip()
            if NO_CAPACITY_MARKER in code:
                raise CaptchaNoCapacity(message)
            raise CaptchaError(message)
        return data

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log_event(
            logger=self.logger,
            phase="captcha",
            status="warn",
            message="CAPTCHA service has no free slot; backing off",
            attempt=retry_state.attempt_number,
            backoff_seconds=self._backoff_seconds,
            error=str(exc) if exc else None,
        )

    async def _solve_once(self, body: str) -> str:
        async with self._http() as client:
            created = await self._call(
                client,
                "createTask",
                {"task": {"type": "ImageToTextTask", "body": body}},
            )
            task_id = created.get("taskId")
            if task_id is None:
                raise CaptchaError("CAPTCHA service did not return a task id")

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._result_timeout
            while True:
                await self._sleep(self._poll_interval)
                result = await self._call(client, "getTaskResult", {"taskId": task_id})
                if result.get("status") == "ready":
                    text = str((result.get("solution") or {}).get("text") or "").strip()
                    if not text:
                        raise CaptchaError("CAPTCHA service returned an empty solution")
                    return text
                if loop.time() >= deadline:
                    raise CaptchaError(f"CAPTCHA task {task_id} not solved within {int(self._result_timeout)}s")

    async def solve(self, image_base64: str, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> str:
        body = strip_data_uri(image_base64)
        if not body:
            raise CaptchaError("CAPTCHA image is empty")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_fixed(self._backoff_seconds),
            retry=retry_if_exception_type(CaptchaNoCapacity),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                text = await self._solve_once(body)
        log_event(logger=self.logger, phase="captcha", message="CAPTCHA solved", length=len(text))
        return text

    async def balance(self) -> float:
        async with self._http() as client:
            data = await self._call(client, "getBalance", {})
        return float(data.get("balance") or 0.0)
