"""create sales delivery note tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 15:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "202610180002"
down_revision: Union[str, None] = "202610180001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, *, server_default: str | None = "0") -> sa.Column:
    return sa.Column(name, sa.Numeric(18, 2), nullable=False, server_default=server_default)


def upgrade() -> None:
    op.create_table(
        "sales_delivery_note",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("invoice_id", sa.Uuid(), nullable=True),
        sa.Column("delivery_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("ship_date", sa.Date(), nullable=True),
        sa.Column("delivery_date", sa.Date(), nullable=True),
        sa.Column("shipping_address", sa.Text(), nullable=False, server_default=""),
        sa.Column("carrier", sa.String(length=128), nullable=True),
        sa.Column("tracking_number", sa.String(length=128), nullable=True),
        _money("subtotal"),
        _money("tax_total"),
        _money("total"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["sales_order.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["sales_invoice.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "delivery_number", name="uq_sales_delivery_note_number_tenant"),
        sa.CheckConstraint("order_id IS NOT NULL OR invoice_id IS NOT NULL", name="ck_sales_delivery_note_has_source"),
    )
    op.create_index(
        "ix_sales_delivery_note_tenant_status", "sales_delivery_note", ["tenant_id", "status"], unique=False
    )
    op.create_index("ix_sales_delivery_note_order_id", "sales_delivery_note", ["order_id"], unique=False)
    op.create_index("ix_sales_delivery_note_invoice_id", "sales_delivery_note", ["invoice_id"], unique=False)

    op.create_table(
        "sales_delivery_note_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("delivery_note_id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sku", sa.String(length=128), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=False, server_default="pcs"),
        _money("unit_price", server_default=None),
        sa.Column("discount", sa.Numeric(9, 4), nullable=False, server_default="0"),
        _money("line_total", server_default=None),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["delivery_note_id"], ["sales_delivery_note.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sales_delivery_note_line_note_id", "sales_delivery_note_line", ["delivery_note_id"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_sales_delivery_note_line_note_id", table_name="sales_delivery_note_line")
    op.drop_table("sales_delivery_note_line")
    op.drop_index("ix_sales_delivery_note_invoice_id", table_name="sales_delivery_note")
    op.drop_index("ix_sales_delivery_note_order_id", table_name="sales_delivery_note")
    op.drop_index("ix_sales_delivery_note_tenant_status", table_name="sales_delivery_note")
    op.drop_table("sales_delivery_note")
