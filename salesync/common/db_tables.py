from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

metadata = sa.MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_BigId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_Json = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_Money = sa.Numeric(14, 2, asdecimal=False)

LEDGER_KEY_COLUMNS = ("order_id", "product", "variation")


sales = sa.Table(
    "sales",
    metadata,
    sa.Column("id", _BigId, primary_key=True, autoincrement=True),
    sa.Column("order_id", sa.Text(), nullable=False, server_default=""),
    sa.Column("date", sa.DateTime(timezone=True), nullable=False),
    sa.Column("store", sa.Text(), nullable=False, server_default="Todas"),
    sa.Column("product", sa.Text(), nullable=False, server_default="Geral"),
    sa.Column("ad_name", sa.Text()),
    sa.Column("variation", sa.Text(), nullable=False, server_default=""),
    sa.Column("sku", sa.Text()),
    sa.Column("quantity", sa.Numeric(12, 3, asdecimal=False), nullable=False, server_default=sa.text("1")),
    sa.Column("total", _Money, nullable=False),
    sa.Column("unit_price", _Money),
    sa.Column("state", sa.Text(), server_default="Não informado"),
    sa.Column("platform", sa.Text()),
    sa.Column("status", sa.Text()),
    sa.Column("cancel_by", sa.Text()),
    sa.Column("cancel_reason", sa.Text()),
    sa.Column("image", sa.Text()),
    sa.Column("client_name", sa.Text()),
    sa.Column("codcli", sa.Text()),
    sa.Column("nome_fantasia", sa.Text()),
    sa.Column("cnpj_cpf", sa.Text()),
    sa.Column("sale_channel", sa.String(length=16), nullable=False, server_default="online"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.UniqueConstraint(*LEDGER_KEY_COLUMNS, name="uq_sales_ledger_key"),
)
sa.Index("ix_sales_date", sales.c.date)
sa.Index("ix_sales_platform_date", sales.c.platform, sales.c.date)


def _sync_status_columns() -> list[sa.Column]:
    return [
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_sync_status", sa.String(length=16)),
        sa.Column("last_sync_message", sa.Text()),
        sa.Column("last_sync_rows", sa.Integer()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


upseller_settings = sa.Table(
    "upseller_settings",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("upseller_email", sa.Text()),
    sa.Column("upseller_password_encrypted", sa.Text()),
    sa.Column("upseller_url", sa.Text()),
    sa.Column("anticaptcha_key_encrypted", sa.Text()),
    sa.Column("imap_host", sa.Text()),
    sa.Column("imap_port", sa.Integer()),
    sa.Column("imap_user", sa.Text()),
    sa.Column("imap_pass_encrypted", sa.Text()),
    sa.Column("sync_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
    sa.Column("default_days", sa.Integer(), nullable=False, server_default=sa.text("90")),
    sa.Column("fetch_mode", sa.String(length=16), nullable=False, server_default="orders"),
    sa.Column("session_cookies_encrypted", sa.Text()),
    sa.Column("session_id_encrypted", sa.Text()),
    sa.Column("session_saved_at", sa.DateTime(timezone=True)),
    *_sync_status_columns(),
)


sisplan_settings = sa.Table(
    "sisplan_settings",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("host", sa.Text()),
    sa.Column("port", sa.Integer(), nullable=False, server_default=sa.text("3050")),
    sa.Column("database_path", sa.Text()),
    sa.Column("fb_user", sa.Text()),
    sa.Column("fb_password_encrypted", sa.Text()),
    sa.Column("sql_query", sa.Text()),
    sa.Column("column_mapping", _Json),
    sa.Column("sync_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")),
    *_sync_status_columns(),
)
