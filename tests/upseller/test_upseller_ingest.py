from zoneinfo import ZoneInfo

from salesync.sources.upseller_sync.ingest import (
    classify_order_status,
    itemized_order_ids,
    map_order_index,
    map_platform,
    map_profit_report,
)

SP = ZoneInfo("America/Sao_Paulo")


def _order(**overrides) -> dict:
    order = {
        "orderNumber": "250101ABC",
        "orderPayTime": "2026-01-10 14:00:00",
        "shopName": "Loja Centro",
        "platform": "shopee",
        "orderAmount": 90,
        "orderStatePlatform": "COMPLETED",
        "buyerAccount": "maria",
        "orderItemList": [
            {"productName": "Camiseta", "productAttr": "Azul, M", "price": 40, "productCount": 1, "productSku": "CAM-AZ-M"},
            {"productName": "Bermuda", "productAttr": "Preta, G", "price": 20, "productCount": 3},
        ],
    }
    order.update(overrides)
    return order


def test_order_total_allocated_by_item_share() -> None:
    result = map_order_index([_order()], tz=SP)

    assert result.rejected == []
    by_product = {r.product: r for r in result.records}
    # items sum 100, order paid 90
    assert by_product["Camiseta"].total == 36.0
    assert by_product["Bermuda"].total == 54.0
    assert by_product["Bermuda"].quantity == 3
    assert by_product["Bermuda"].unit_price == 18.0
    assert by_product["Camiseta"].sku == "CAM-AZ-M"
    assert {r.platform for r in result.records} == {"Shopee"}
    assert all(r.store == "Loja Centro" and r.order_id == "250101ABC" for r in result.records)


def test_zero_item_sum_yields_single_placeholder_line() -> None:
    order = _order(orderItemList=[{"productName": "Brinde", "price": 0, "productCount": 1}])

    (record,) = map_order_index([order], tz=SP).records

    assert (record.product, record.variation, record.total) == ("Geral", "", 90.0)


def test_duplicate_items_merge_into_one_line() -> None:
    item = {"productName": "Meia", "productAttr": "Branca", "price": 10, "productCount": 1}
    order = _order(orderAmount=20, orderItemList=[item, dict(item)])

    (record,) = map_order_index([order], tz=SP).records

    assert record.quantity == 2
    assert record.total == 20.0


def test_refund_is_a_valid_sale_and_cancel_is_flagged() -> None:
    refunded = classify_order_status(_order(orderAmount=0, orderStatePlatform="CANCELLED"))
    canceled = classify_order_status(_order(orderStatePlatform="CANCELLED"))

    assert refunded.refunded and not refunded.canceled
    assert refunded.order_total == 100
    assert canceled.canceled and canceled.status == "Cancelado"

    records = map_order_index([_order(orderStatePlatform="Cancelled")], tz=SP).records
    assert {r.status for r in records} == {"Cancelado"}
    assert all(r.is_canceled for r in records)


def test_order_without_date_or_value_rejected() -> None:
    result = map_order_index(
        [
            _order(orderPayTime=None, orderNumber="NODATE", orderItemList=[]),
            _order(orderAmount=0, orderItemList=[], orderNumber="ZERO"),
            _order(orderNumber="OK"),
        ],
        tz=SP,
    )

    assert {r.order_id for r in result.records} == {"OK"}
    assert [row.index for row in result.rejected] == [1, 2]
    assert "NODATE" in result.rejected[0].reason


def test_profit_report_rows_are_order_level() -> None:
    result = map_profit_report(
        [
            {"orderNumber": "R1", "orderCreateTime": "2026-01-05 10:00:00", "orderAmount": "149,90", "platform": "mercado"},
            {"orderNumber": "R2", "orderCreateTime": "2026-01-06 10:00:00", "orderAmount": 50, "buyerRefundAmount": 50, "platform": "shein"},
        ],
        tz=SP,
    )

    first, second = result.records
    assert (first.product, first.variation, first.total) == ("Geral", "", 149.9)
    assert first.platform == "Mercado Livre"
    assert second.status == "Reembolsado"
    assert not second.is_canceled


def test_itemized_order_ids_skip_placeholders() -> None:
    records = map_order_index(
        [_order(orderNumber="A"), _order(orderNumber="B", orderItemList=[])], tz=SP
    ).records

    assert itemized_order_ids(records) == ["A"]


def test_map_platform_passthrough() -> None:
    assert map_platform("MERCADO") == "Mercado Livre"
    assert map_platform("Loja Própria") == "Loja Própria"
    assert map_platform(None) == ""
