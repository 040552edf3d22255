from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from salesync.sources.upseller_sync.api import ORDER_INDEX_SOURCE, UpsellerClient


def _client(handler, logger, **kwargs) -> UpsellerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpsellerClient("JSESSIONID=abc", logger=logger, client=http, **kwargs)


def _report_page(orders: list[dict], total: int) -> dict:
    return {"code": 0, "data": {"pageInfo": {"total": total, "list": orders}}}


@pytest.mark.asyncio
async def test_report_mode_stops_at_server_total_and_skips_no_permission(logger) -> None:
    calls: list[tuple[str, int]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        platform = request.url.params["platform"]
        page = int(request.url.params["pageNum"])
        calls.append((platform, page))
        assert request.headers["Cookie"] == "JSESSIONID=abc"
        if platform == "mercado":
            return httpx.Response(200, json={"code": 300003, "msg": "no permission"})
        if platform == "shopee":
            orders = [{"orderNumber": f"S{page}-{n}", "orderAmount": 10} for n in range(2)]
            return httpx.Response(200, json=_report_page(orders, total=3))
        return httpx.Response(200, json=_report_page([{"orderNumber": "H1", "orderAmount": 5}], total=1))

    result = await _client(handler, logger, page_size=2).fetch_profit_report(date(2026, 1, 1), date(2026, 1, 31))

    assert calls == [("mercado", 1), ("shopee", 1), ("shopee", 2), ("shein", 1)]
    assert [o["orderNumber"] for o in result.orders] == ["S1-0", "S1-1", "S2-0", "S2-1", "H1"]
    assert {o["platform"] for o in result.orders} == {"shopee", "shein"}
    assert result.skipped_platforms == ["mercado"]
    assert result.failed_platforms == {}


@pytest.mark.asyncio
async def test_report_mode_isolates_failing_platform(logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        platform = request.url.params["platform"]
        if platform == "mercado":
            return httpx.Response(200, json={"code": 500, "msg": "internal"})
        if platform == "shopee":
            return httpx.Response(502)
        return httpx.Response(200, json=_report_page([{"orderNumber": "H1"}], total=1))

    result = await _client(handler, logger).fetch_profit_report(date(2026, 1, 1), date(2026, 1, 31))

    assert [o["orderNumber"] for o in result.orders] == ["H1"]
    assert set(result.failed_platforms) == {"mercado", "shopee"}
    assert "code=500" in result.failed_platforms["mercado"]


@pytest.mark.asyncio
async def test_order_index_stops_on_short_page_and_filters_window(logger) -> None:
    forms: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        forms.append(form)
        page = int(form["pageNum"])
        if page == 1:
            orders = [
                {"orderNumber": "A", "orderPayTime": "2025-12-01 08:00:00"},
                {"orderNumber": "B", "orderPayTime": "2025-11-30 23:00:00"},
            ]
        else:
            orders = [{"orderNumber": "C", "orderCreateTime": "2026-02-10 10:00:00"}]
        return httpx.Response(200, json={"code": 0, "data": {"list": orders}})

    result = await _client(handler, logger, page_size=2).fetch_orders(date(2025, 12, 1), date(2026, 3, 1))

    assert [o["orderNumber"] for o in result.orders] == ["A", "C"]
    assert result.pages == 2
    assert forms[0]["startTime"] == "2025-12-01 00:00:00"
    assert forms[0]["endTime"] == "2026-03-01 23:59:59"
    assert forms[0]["timeType"] == "1"


@pytest.mark.asyncio
async def test_order_index_respects_page_ceiling(logger) -> None:
    pages: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        pages.append(int(form["pageNum"][0]))
        orders = [{"orderNumber": f"{pages[-1]}-{n}", "orderPayTime": "2026-01-05 10:00:00"} for n in range(2)]
        return httpx.Response(200, json={"code": 0, "data": {"list": orders}})

    result = await _client(handler, logger, page_size=2, max_pages=3).fetch_orders(date(2026, 1, 1), date(2026, 1, 31))

    assert pages == [1, 2, 3]
    assert len(result.orders) == 6


@pytest.mark.asyncio
async def test_order_index_business_error_reported(logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": 401, "msg": "please login"})

    result = await _client(handler, logger).fetch_orders(date(2026, 1, 1), date(2026, 1, 31))

    assert result.orders == []
    assert "please login" in result.failed_platforms[ORDER_INDEX_SOURCE]


@pytest.mark.asyncio
async def test_order_index_failed_page_keeps_earlier_pages(logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(parse_qs(request.content.decode())["pageNum"][0])
        if page == 2:
            return httpx.Response(502, text="Bad Gateway")
        orders = [{"orderNumber": f"P1-{n}", "orderPayTime": "2026-01-05 10:00:00"} for n in range(2)]
        return httpx.Response(200, json={"code": 0, "data": {"list": orders}})

    result = await _client(handler, logger, page_size=2).fetch_orders(date(2026, 1, 1), date(2026, 1, 31))

    assert [o["orderNumber"] for o in result.orders] == ["P1-0", "P1-1"]
    assert result.pages == 1
    assert result.failed_platforms[ORDER_INDEX_SOURCE].startswith("página 2:")
    assert "502" in result.failed_platforms[ORDER_INDEX_SOURCE]


@pytest.mark.asyncio
async def test_order_index_drops_orders_after_window_end(logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        orders = [
            {"orderNumber": "IN", "orderPayTime": "2026-01-31 23:30:00"},
            {"orderNumber": "LATE", "orderPayTime": "2026-02-01 00:10:00"},
        ]
        return httpx.Response(200, json={"code": 0, "data": {"list": orders}})

    result = await _client(handler, logger, page_size=5).fetch_orders(date(2026, 1, 1), date(2026, 1, 31))

    assert [o["orderNumber"] for o in result.orders] == ["IN"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(200, json={"code": 0, "data": True}), True),
        (httpx.Response(200, json={"code": 0, "data": False}), False),
        (httpx.Response(200, json={"code": 1, "data": True}), False),
        (httpx.Response(500), False),
        (httpx.Response(200, text="<html>login</html>"), False),
    ],
)
async def test_is_logged_in_requires_affirmative_answer(logger, response, expected) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "reqTime" in request.url.params
        return response

    assert await _client(handler, logger).is_logged_in() is expected


@pytest.mark.asyncio
async def test_is_logged_in_network_error(logger) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    assert await _client(handler, logger).is_logged_in() is False
