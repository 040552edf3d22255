from datetime import datetime
from decimal import Decimal

import pytest

from salesync.sources.sisplan_sync import connector
from salesync.sources.sisplan_sync.connector import FirebirdOptions, preview_query, preview_sql
from salesync.sources.sisplan_sync.ingest import ColumnLookup, map_rows, synthetic_order_id

MAPPING = {
    "date": "dt_venda",
    "product": "descricao",
    "quantity": "qtde",
    "total": "vlr_total",
    "client_name": "razao",
    "codcli": "codcli",
    "bogus": "whatever",
}


def _row(**overrides):
    row = {
        "DT_VENDA": datetime(2026, 4, 2, 9, 30),
        "DESCRICAO": "Calça Jeans ",
        "QTDE": Decimal("2"),
        "VLR_TOTAL": Decimal("259.80"),
        "RAZAO": "Boutique Ana LTDA",
        "CODCLI": 1042,
    }
    row.update(overrides)
    return row


def test_column_lookup_ignores_case_and_unknown_fields() -> None:
    lookup = ColumnLookup(MAPPING, _row().keys())

    assert lookup.columns["date"] == "DT_VENDA"
    assert "bogus" not in lookup.columns
    assert lookup.get(_row(), "product") == "Calça Jeans"
    assert lookup.get(_row(RAZAO="   "), "client_name") is None


def test_rows_map_to_factory_wholesale_records() -> None:
    (record,) = map_rows([_row()], MAPPING).records

    assert record.store == "Fabrica"
    assert record.platform == "Sisplan"
    assert record.sale_channel == "atacado"
    assert record.product == "Calça Jeans"
    assert record.ad_name == "Calça Jeans"
    assert record.quantity == 2
    assert record.total == 259.8
    assert record.unit_price == 129.9
    assert record.codcli == "1042"
    assert record.order_id == "SP-20260402-FABRICA-1042-CALCAJEANS"


def test_mapped_order_id_wins_over_synthetic() -> None:
    mapping = {**MAPPING, "order_id": "pedido"}

    (record,) = map_rows([_row(PEDIDO=" 7781 ")], mapping).records

    assert record.order_id == "7781"


def test_invalid_rows_rejected_individually() -> None:
    result = map_rows(
        [_row(DT_VENDA=None), _row(VLR_TOTAL=0), _row(QTDE=None, DESCRICAO=None)],
        MAPPING,
    )

    assert [(r.index, r.reason) for r in result.rejected] == [(1, "Data inválida"), (2, "Total inválido")]
    (record,) = result.records
    assert record.quantity == 1
    assert record.product == "Geral"


def test_synthetic_order_id_separates_clients() -> None:
    first, second, anonymous = map_rows(
        [_row(CODCLI=1042), _row(CODCLI=None, RAZAO="Loja Bela"), _row(CODCLI=None, RAZAO=None)],
        MAPPING,
    ).records

    assert first.order_id == "SP-20260402-FABRICA-1042-CALCAJEANS"
    assert second.order_id == "SP-20260402-FABRICA-LOJABELA-CALCAJEANS"
    assert anonymous.order_id == "SP-20260402-FABRICA-CALCAJEANS"


def test_synthetic_order_id_truncates_parts() -> None:
    order_id = synthetic_order_id(datetime(2026, 1, 9), "Fábrica", "x" * 40)

    assert order_id == "SP-20260109-FABRICA-" + "X" * 24


def test_preview_sql_limits_leading_select() -> None:
    assert preview_sql("  select a, b from vendas", 5) == "SELECT FIRST 5 a, b from vendas"
    assert preview_sql("WITH x AS (SELECT 1 FROM RDB$DATABASE) SELECT * FROM x") == (
        "WITH x AS (SELECT 1 FROM RDB$DATABASE) SELECT * FROM x"
    )


def test_options_repr_hides_password() -> None:
    options = FirebirdOptions(host="erp", database="/data/SISPLAN.FDB", user="SYSDBA", password="masterkey")

    assert options.dsn == "erp/3050:/data/SISPLAN.FDB"
    assert "masterkey" not in repr(options)


@pytest.mark.asyncio
async def test_preview_query_reports_columns(monkeypatch: pytest.MonkeyPatch) -> None:
    executed = []

    def fake_run(options, sql):
        executed.append(sql)
        return [{"DT_VENDA": "2026-04-02", "VLR_TOTAL": 10}]

    monkeypatch.setattr(connector, "_run_query", fake_run)
    options = FirebirdOptions(host="erp", database="db", user="u", password="p")

    preview = await preview_query(options, "SELECT * FROM vendas", limit=3)

    assert executed == ["SELECT FIRST 3 * FROM vendas"]
    assert preview["columns"] == ["DT_VENDA", "VLR_TOTAL"]
    assert preview["total_preview"] == 1
