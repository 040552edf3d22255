from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from salesync.common.ledger import (
    build_record,
    dedupe_by_ledger_key,
    is_canceled_status,
    normalize_rows,
    parse_date,
    parse_number,
    split_variation_and_size,
    variation_from_sku,
)
from salesync.common.ledger.schemas import resolve_header_map

SP = ZoneInfo("America/Sao_Paulo")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.234,56", 1234.56),
        ("1234.56", 1234.56),
        ("R$ 89,90", 89.9),
        ("12", 12.0),
        (7, 7.0),
        (19.5, 19.5),
        ("", None),
        ("abc", None),
        (None, None),
        (float("nan"), None),
    ],
)
def test_parse_number(raw, expected) -> None:
    assert parse_number(raw) == expected


def test_parse_date_accepts_supported_forms() -> None:
    assert parse_date(45672, SP).date() == date(2025, 1, 15)
    assert parse_date("05/03/2026 14:30", SP) == datetime(2026, 3, 5, 14, 30, tzinfo=SP)
    assert parse_date("2026-03-05", SP) == datetime(2026, 3, 5, tzinfo=SP)
    assert parse_date("2026-03-05T10:00:00", SP) == datetime(2026, 3, 5, 10, tzinfo=SP)
    assert parse_date("5 Mar 2026", SP).date() == date(2026, 3, 5)
    assert parse_date(date(2026, 3, 5), SP) == datetime(2026, 3, 5, tzinfo=SP)


def test_parse_date_rejects_garbage() -> None:
    assert parse_date("não é data", SP) is None
    assert parse_date("31/02/2026", SP) is None
    assert parse_date("", SP) is None
    assert parse_date(None, SP) is None


def test_aware_datetimes_keep_their_offset() -> None:
    utc_value = datetime(2026, 3, 5, 12, tzinfo=ZoneInfo("UTC"))
    assert parse_date(utc_value, SP) is utc_value


@pytest.mark.parametrize(
    ("variation", "sku", "ad_name", "expected"),
    [
        ("Azul, M", None, None, ("Azul", "M")),
        ("CAM-PRETA-GG", None, None, ("PRETA", "GG")),
        ("", "Camiseta Lisa-Branca-P", "Camiseta Lisa", ("Branca", "P")),
        ("", "XYZ-VERDE-G", "Outro", ("VERDE", "G")),
        ("Vermelho", "SEMTRACO", None, ("Vermelho", "Não informado")),
        ("", None, None, ("Não informado", "Não informado")),
    ],
)
def test_split_variation_layers(variation, sku, ad_name, expected) -> None:
    assert split_variation_and_size(variation, sku, ad_name) == expected


def test_comma_rule_wins_over_sku_rules() -> None:
    assert split_variation_and_size("Azul, P", "CAM-VERDE-GG", "CAM") == ("Azul", "P")


def test_variation_from_sku_joins_attribute_and_size() -> None:
    assert variation_from_sku("Camiseta Lisa-Branca-P", "Camiseta Lisa") == "Branca, P"
    assert variation_from_sku("Camiseta Lisa-Branca", "Camiseta Lisa") == "Branca"
    assert variation_from_sku("SEMTRACO") == ""
    assert variation_from_sku(None) == ""


def test_is_canceled_status_is_accent_and_case_insensitive() -> None:
    assert is_canceled_status("CANCELADO pelo comprador")
    assert is_canceled_status("Pedido cancelado")
    assert not is_canceled_status("Entregue")
    assert not is_canceled_status(None)


def test_record_defaults_and_derived_unit_price() -> None:
    record = build_record({"date": datetime(2026, 1, 2, 10, 0), "total": 100.0, "quantity": 3})

    assert record.store == "Todas"
    assert record.product == "Geral"
    assert record.state == "Não informado"
    assert record.unit_price == 33.33
    assert record.date.tzinfo is not None
    assert record.ledger_key == ("", "Geral", "")


def test_record_rejects_non_positive_quantity() -> None:
    with pytest.raises(ValueError, match="quantity"):
        build_record({"date": datetime(2026, 1, 2), "total": 10.0, "quantity": 0})


def test_header_aliases_resolve_accented_and_spaced_labels() -> None:
    header_map = resolve_header_map(["  Data  Venda", "VALOR TOTAL DE VENDAS", "Variação", "Nº de Pedido", None])

    assert header_map["date"] == "  Data  Venda"
    assert header_map["total"] == "VALOR TOTAL DE VENDAS"
    assert header_map["variation"] == "Variação"
    assert header_map["order_id"] == "Nº de Pedido"


def test_normalize_rows_rejects_individual_rows() -> None:
    rows = [
        {"Data": "01/02/2026", "Produto": "Camiseta", "Valor": "1.234,56", "Quantidade": "2", "Nº do pedido": "A1"},
        {"Data": "sem data", "Produto": "Camiseta", "Valor": "10", "Quantidade": "1", "Nº do pedido": "A2"},
        {"Data": "02/02/2026", "Produto": "Bermuda", "Valor": "x", "Quantidade": "1", "Nº do pedido": "A3"},
        {"Data": "02/02/2026", "Produto": "", "Valor": "50", "Quantidade": "", "Nº do pedido": "A4"},
    ]

    result = normalize_rows(rows, channel="manual", tz=SP)

    assert result.ok
    assert [r.order_id for r in result.records] == ["A1", "A4"]
    assert result.records[0].total == 1234.56
    assert result.records[0].unit_price == 617.28
    assert result.records[1].product == "Geral"
    assert result.records[1].quantity == 1.0
    assert all(r.sale_channel == "manual" for r in result.records)
    assert [(r.index, r.reason) for r in result.rejected] == [(3, "Data inválida"), (4, "Total inválido")]


def test_normalize_rows_reports_missing_required_columns() -> None:
    result = normalize_rows([{"Produto": "Camiseta", "Quantidade": 1}])

    assert not result.ok
    assert result.missing_columns == ["date", "total"]
    assert result.records == []


def test_dedupe_keeps_last_occurrence() -> None:
    first = build_record({"order_id": "1", "date": datetime(2026, 1, 1), "product": "A", "total": 10})
    other = build_record({"order_id": "2", "date": datetime(2026, 1, 1), "product": "A", "total": 5})
    second = build_record({"order_id": "1", "date": datetime(2026, 1, 1), "product": "A", "total": 20})

    deduped = dedupe_by_ledger_key([first, other, second])

    assert [(r.order_id, r.total) for r in deduped] == [("2", 5.0), ("1", 20.0)]


def test_normalize_rows_fills_blank_variation_from_sku() -> None:
    rows = [
        {"Data": "03/02/2026", "Nome do Anúncio": "Regata", "Variação": "", "SKU": "Regata-Preta-M", "Valor": "40", "Nº do pedido": "B1"},
        {"Data": "03/02/2026", "Nome do Anúncio": "Regata", "Variação": "Azul, G", "SKU": "Regata-Preta-M", "Valor": "40", "Nº do pedido": "B2"},
        {"Data": "03/02/2026", "Nome do Anúncio": "Regata", "Variação": "", "SKU": "", "Valor": "40", "Nº do pedido": "B3"},
    ]

    result = normalize_rows(rows, tz=SP)

    assert [r.variation for r in result.records] == ["Preta, M", "Azul, G", ""]
