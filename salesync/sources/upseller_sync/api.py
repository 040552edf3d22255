from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx

from salesync.common.json_logger import JsonLogger, log_event
from salesync.common.ledger.schemas import parse_date
from salesync.exceptions import UpstreamError

API_BASE_URL = "https://app.upseller.com/api"
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
HTTP_TIMEOUT_SECONDS = 30.0
PROBE_TIMEOUT_SECONDS = 10.0
PAGE_SIZE = 50
MAX_PAGES = 500
REPORT_PLATFORMS = ("mercado", "shopee", "shein")
NO_PLATFORM_DATA_CODE = 300003
ORDER_INDEX_SOURCE = "order/index"


@dataclass
class FetchResult:
    orders: List[Dict[str, Any]] = field(default_factory=list)
    failed_platforms: Dict[str, str] = field(default_factory=dict)
    skipped_platforms: List[str] = field(default_factory=list)
    pages: int = 0


def _order_day(order: Mapping[str, Any]) -> date | None:
    parsed = parse_date(order.get("orderPayTime") or order.get("orderCreateTime"))
    return parsed.date() if parsed else None


class UpsellerClient:
    """Thin client for the aggregator's internal JSON API, authenticated by session cookies."""

    def __init__(
        self,
        cookies: str,
        *,
        logger: JsonLogger,
        base_url: str = API_BASE_URL,
        client: httpx.AsyncClient | None = None,
        page_size: int = PAGE_SIZE,
        max_pages: int = MAX_PAGES,
    ) -> None:
        self._cookies = cookies
        self._base_url = base_url.rstrip("/")
        self._client = client
        self.page_size = page_size
        self.max_pages = max_pages
        self.logger = logger.bind(component="upseller_api")

    @property
    def headers(self) -> Dict[str, str]:
        return {"Cookie": self._cookies, "User-Agent": USER_AGENT, "Accept": "application/json"}

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
            yield client

    @staticmethod
    def _decode(response: httpx.Response, *, endpoint: str) -> Dict[str, Any]:
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"{endpoint} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"{endpoint} returned an unexpected payload")
        return payload

    async def is_logged_in(self) -> bool:
        """Liveness probe: affirmative only for ``code == 0`` and ``data is True``."""

        try:
            async with self._http() as client:
                response = await client.get(
                    f"{self._base_url}/is-login",
                    params={"reqTime": int(time.time() * 1000)},
                    headers=self.headers,
                    timeout=PROBE_TIMEOUT_SECONDS,
                )
                payload = self._decode(response, endpoint="is-login")
        except (httpx.HTTPError, UpstreamError) as exc:
            log_event(logger=self.logger, phase="session", status="warn", message="session probe failed", error=str(exc))
            return False
        return payload.get("code") == 0 and payload.get("data") is True

    async def fetch_profit_report(
        self,
        start: date,
        end: date,
        *,
        platforms: Sequence[str] = REPORT_PLATFORMS,
    ) -> FetchResult:
        """Report-pagination mode: one paginated listing per platform.

        A platform failing (business error or transport error) is recorded and
        abandoned; the remaining platforms are still fetched.
        """

        result = FetchResult()
        async with self._http() as client:
            for platform in platforms:
                try:
                    fetched = await self._fetch_report_platform(client, platform, start, end, result)
                except (httpx.HTTPError, UpstreamError) as exc:
                    result.failed_platforms[platform] = str(exc)
                    log_event(
                        logger=self.logger,
                        phase="fetch",
                        status="error",
                        message="profit report platform failed",
                        platform=platform,
                        error=str(exc),
                    )
                    continue
                if fetched is None:
                    result.skipped_platforms.append(platform)
        return result

    async def _fetch_report_platform(
        self,
        client: httpx.AsyncClient,
        platform: str,
        start: date,
        end: date,
        result: FetchResult,
    ) -> int | None:
        fetched = 0
        total = None
        page_num = 1
        while total is None or fetched < total:
            params = {
                "tabValue": 1,
                "platform": platform,
                "beginDate": start.isoformat(),
                "endDate": end.isoformat(),
                "searchDateType": 1,
                "pageSize": self.page_size,
                "pageNum": page_num,
                "sortName": 0,
                "sortValue": 0,
            }
            response = await client.get(f"{self._base_url}/profit-report/page", params=params, headers=self.headers)
            payload = self._decode(response, endpoint="profit-report/page")
            code = payload.get("code")
            if code == NO_PLATFORM_DATA_CODE:
                log_event(
                    logger=self.logger,
                    phase="fetch",
                    message="platform has no report data; skipping",
                    platform=platform,
                )
                return None
            if code != 0:
                raise UpstreamError(
                    f"profit-report/page error ({platform}): code={code} msg={payload.get('msg')}",
                    code=code,
                    platform=platform,
                )
            page_info = (payload.get("data") or {}).get("pageInfo") or {}
            total = int(page_info.get("total") or 0)
            orders = page_info.get("list") or []
            result.pages += 1
            if not orders:
                break
            for order in orders:
                result.orders.append({**order, "platform": order.get("platform") or platform})
            fetched += len(orders)
            page_num += 1
            if page_num > self.max_pages:
                break
        log_event(logger=self.logger, phase="fetch", message="profit report platform fetched", platform=platform, orders=fetched)
        return fetched

    async def fetch_orders(self, start: date, end: date) -> FetchResult:
        """Order-index mode: one paginated listing of all platforms, filtered by order date.

        A failing page ends the listing; the pages already read are kept and the
        failure is reported under ``ORDER_INDEX_SOURCE`` in ``failed_platforms``.
        """

        result = FetchResult()
        async with self._http() as client:
            for page_num in range(1, self.max_pages + 1):
                form = {
                    "pageNum": str(page_num),
                    "pageSize": str(self.page_size),
                    "timeType": "1",
                    "startTime": f"{start.isoformat()} 00:00:00",
                    "endTime": f"{end.isoformat()} 23:59:59",
                    "sortName": "1",
                    "sortValue": "1",
                }
                try:
                    orders = await self._fetch_order_page(client, form)
                except (httpx.HTTPError, UpstreamError) as exc:
                    result.failed_platforms[ORDER_INDEX_SOURCE] = f"página {page_num}: {exc}"
                    log_event(
                        logger=self.logger,
                        phase="fetch",
                        status="error",
                        message="order listing page failed; keeping earlier pages",
                        page=page_num,
                        orders_kept=len(result.orders),
                        error=str(exc),
                    )
                    break
                result.pages = page_num
                if not orders:
                    break
                result.orders.extend(orders)
                if len(orders) < self.page_size:
                    break
            else:
                log_event(
                    logger=self.logger,
                    phase="fetch",
                    status="warn",
                    message="order listing hit the page ceiling",
                    max_pages=self.max_pages,
                )

        in_window = []
        dropped = 0
        for order in result.orders:
            day = _order_day(order)
            if day is not None and not start <= day <= end:
                dropped += 1
                continue
            in_window.append(order)
        result.orders = in_window
        log_event(
            logger=self.logger,
            phase="fetch",
            message="order listing fetched",
            pages=result.pages,
            orders=len(in_window),
            dropped_outside_window=dropped,
        )
        return result

    async def _fetch_order_page(self, client: httpx.AsyncClient, form: Mapping[str, str]) -> List[Dict[str, Any]]:
        response = await client.post(f"{self._base_url}/order/index", data=dict(form), headers=self.headers)
        payload = self._decode(response, endpoint="order/index")
        if payload.get("code") != 0:
            raise UpstreamError(
                f"order/index error: code={payload.get('code')} msg={payload.get('msg')}",
                code=payload.get("code"),
            )
        return (payload.get("data") or {}).get("list") or []
