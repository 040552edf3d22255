"""Sales ledger and integration settings"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_BigId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_Json = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_Money = sa.Numeric(14, 2)


def _status_columns() -> list[sa.Column]:
    return [
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(length=16), nullable=True),
        sa.Column("last_sync_message", sa.Text(), nullable=True),
        sa.Column("last_sync_rows", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "sales",
        sa.Column("id", _BigId, autoincrement=True, nullable=False),
        sa.Column("order_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("store", sa.Text(), nullable=False, server_default="Todas"),
        sa.Column("product", sa.Text(), nullable=False, server_default="Geral"),
        sa.Column("ad_name", sa.Text(), nullable=True),
        sa.Column("variation", sa.Text(), nullable=False, server_default=""),
        sa.Column("sku", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default=sa.text("1")),
        sa.Column("total", _Money, nullable=False),
        sa.Column("unit_price", _Money, nullable=True),
        sa.Column("state", sa.Text(), nullable=True, server_default="Não informado"),
        sa.Column("platform", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=True),
        sa.Column("cancel_by", sa.Text(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("image", sa.Text(), nullable=True),
        sa.Column("client_name", sa.Text(), nullable=True),
        sa.Column("codcli", sa.Text(), nullable=True),
        sa.Column("nome_fantasia", sa.Text(), nullable=True),
        sa.Column("cnpj_cpf", sa.Text(), nullable=True),
        sa.Column("sale_channel", sa.String(length=16), nullable=False, server_default="online"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "product", "variation", name="uq_sales_ledger_key"),
    )
    op.create_index("ix_sales_date", "sales", ["date"])
    op.create_index("ix_sales_platform_date", "sales", ["platform", "date"])

    upseller = op.create_table(
        "upseller_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("upseller_email", sa.Text(), nullable=True),
        sa.Column("upseller_password_encrypted", sa.Text(), nullable=True),
        sa.Column("upseller_url", sa.Text(), nullable=True),
        sa.Column("anticaptcha_key_encrypted", sa.Text(), nullable=True),
        sa.Column("imap_host", sa.Text(), nullable=True),
        sa.Column("imap_port", sa.Integer(), nullable=True),
        sa.Column("imap_user", sa.Text(), nullable=True),
        sa.Column("imap_pass_encrypted", sa.Text(), nullable=True),
        sa.Column("sync_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("default_days", sa.Integer(), nullable=False, server_default=sa.text("90")),
        sa.Column("fetch_mode", sa.String(length=16), nullable=False, server_default="orders"),
        sa.Column("session_cookies_encrypted", sa.Text(), nullable=True),
        sa.Column("session_id_encrypted", sa.Text(), nullable=True),
        sa.Column("session_saved_at", sa.DateTime(timezone=True), nullable=True),
        *_status_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    sisplan = op.create_table(
        "sisplan_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("host", sa.Text(), nullable=True),
        sa.Column("port", sa.Integer(), nullable=False, server_default=sa.text("3050")),
        sa.Column("database_path", sa.Text(), nullable=True),
        sa.Column("fb_user", sa.Text(), nullable=True),
        sa.Column("fb_password_encrypted", sa.Text(), nullable=True),
        sa.Column("sql_query", sa.Text(), nullable=True),
        sa.Column("column_mapping", _Json, nullable=True),
        sa.Column("sync_interval_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")),
        *_status_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.bulk_insert(upseller, [{"id": 1, "active": False}])
    op.bulk_insert(sisplan, [{"id": 1, "active": False}])


def downgrade() -> None:
    op.drop_table("sisplan_settings")
    op.drop_table("upseller_settings")
    op.drop_index("ix_sales_platform_date", table_name="sales")
    op.drop_index("ix_sales_date", table_name="sales")
    op.drop_table("sales")
