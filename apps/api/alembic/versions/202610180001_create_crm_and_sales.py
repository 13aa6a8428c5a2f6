"""create crm and sales document tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "202610180001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, *, nullable: bool = False, server_default: str | None = "0") -> sa.Column:
    return sa.Column(name, sa.Numeric(18, 2), nullable=nullable, server_default=server_default)


def _rate(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(9, 4), nullable=False, server_default="0")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _line_columns() -> list[sa.Column]:
    return [
        sa.Column("product_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sku", sa.String(length=128), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
    ]


def _line_pricing_columns() -> list[sa.Column]:
    return [
        sa.Column("unit", sa.String(length=32), nullable=False, server_default="pcs"),
        _money("unit_price", server_default=None),
        _rate("discount"),
        _rate("tax_rate"),
        _money("tax_amount"),
        _money("line_total", server_default=None),
    ]


def upgrade() -> None:
    op.create_table(
        "crm_company",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("vat_number", sa.String(length=64), nullable=True),
        sa.Column("default_currency", sa.String(length=3), nullable=True),
        sa.Column("default_payment_terms", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_company_tenant_name", "crm_company", ["tenant_id", "name"], unique=False)

    op.create_table(
        "crm_contact",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_contact_tenant_company", "crm_contact", ["tenant_id", "company_id"], unique=False)

    op.create_table(
        "sales_quote",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("quote_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("valid_until", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _money("subtotal"),
        _money("tax_total"),
        _money("discount_total"),
        _money("total"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("converted_to_order_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_to_invoice_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("approved_by", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "quote_number", name="uq_sales_quote_number_tenant"),
    )
    op.create_index("ix_sales_quote_tenant_company", "sales_quote", ["tenant_id", "company_id"], unique=False)

    op.create_table(
        "sales_quote_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quote_id", sa.Uuid(), nullable=False),
        *_line_columns(),
        *_line_pricing_columns(),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["quote_id"], ["sales_quote.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_quote_line_quote_id", "sales_quote_line", ["quote_id"], unique=False)

    op.create_table(
        "sales_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("quote_id", sa.Uuid(), nullable=True),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _money("subtotal"),
        _money("tax_total"),
        _money("discount_total"),
        _money("total"),
        _money("invoiced_amount"),
        _money("remaining_amount"),
        sa.Column("purchase_order_number", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("confirmed_by", sa.String(length=255), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(length=255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"]),
        sa.ForeignKeyConstraint(["quote_id"], ["sales_quote.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "order_number", name="uq_sales_order_number_tenant"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_sales_order_idempotency_tenant"),
        sa.CheckConstraint("invoiced_amount <= total", name="ck_sales_order_invoiced_le_total"),
    )
    op.create_index("ix_sales_order_tenant_company", "sales_order", ["tenant_id", "company_id"], unique=False)
    op.create_index("ix_sales_order_quote_id", "sales_order", ["quote_id"], unique=False)

    op.create_table(
        "sales_order_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("quote_line_id", sa.Uuid(), nullable=True),
        *_line_columns(),
        sa.Column("fulfilled_quantity", sa.Numeric(18, 4), nullable=False, server_default="0"),
        sa.Column("invoiced_quantity", sa.Numeric(18, 4), nullable=False, server_default="0"),
        *_line_pricing_columns(),
        _money("invoiced_amount"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["order_id"], ["sales_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["quote_line_id"], ["sales_quote_line.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_order_line_order_id", "sales_order_line", ["order_id"], unique=False)

    op.create_table(
        "sales_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("quote_id", sa.Uuid(), nullable=True),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=True),
        sa.Column("payment_terms", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("currency", sa.String(length=3), nullable=False),
        _money("subtotal"),
        _money("tax_total"),
        _money("discount_total"),
        _money("total"),
        _money("paid_amount"),
        _money("remaining_amount"),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("cancelled_by", sa.String(length=255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["company_id"], ["crm_company.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contact.id"]),
        sa.ForeignKeyConstraint(["quote_id"], ["sales_quote.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "invoice_number", name="uq_sales_invoice_number_tenant"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_sales_invoice_idempotency_tenant"),
        sa.UniqueConstraint("token", name="uq_sales_invoice_token"),
    )
    op.create_index("ix_sales_invoice_tenant_company", "sales_invoice", ["tenant_id", "company_id"], unique=False)
    op.create_index("ix_sales_invoice_quote_id", "sales_invoice", ["quote_id"], unique=False)

    op.create_table(
        "sales_invoice_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("order_line_id", sa.Uuid(), nullable=True),
        sa.Column("quote_line_id", sa.Uuid(), nullable=True),
        *_line_columns(),
        *_line_pricing_columns(),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["invoice_id"], ["sales_invoice.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["order_line_id"], ["sales_order_line.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["quote_line_id"], ["sales_quote_line.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_invoice_line_invoice_id", "sales_invoice_line", ["invoice_id"], unique=False)

    op.create_table(
        "sales_invoice_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        _money("amount_allocated", server_default=None),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["invoice_id"], ["sales_invoice.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["sales_order.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_id", "order_id", name="uq_sales_invoice_order_pair"),
        sa.CheckConstraint("amount_allocated > 0", name="ck_sales_invoice_order_positive"),
    )
    op.create_index("ix_sales_invoice_order_order_id", "sales_invoice_order", ["order_id"], unique=False)
    op.create_index("ix_sales_invoice_order_tenant", "sales_invoice_order", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sales_invoice_order_tenant", table_name="sales_invoice_order")
    op.drop_index("ix_sales_invoice_order_order_id", table_name="sales_invoice_order")
    op.drop_table("sales_invoice_order")
    op.drop_index("ix_sales_invoice_line_invoice_id", table_name="sales_invoice_line")
    op.drop_table("sales_invoice_line")
    op.drop_index("ix_sales_invoice_quote_id", table_name="sales_invoice")
    op.drop_index("ix_sales_invoice_tenant_company", table_name="sales_invoice")
    op.drop_table("sales_invoice")
    op.drop_index("ix_sales_order_line_order_id", table_name="sales_order_line")
    op.drop_table("sales_order_line")
    op.drop_index("ix_sales_order_quote_id", table_name="sales_order")
    op.drop_index("ix_sales_order_tenant_company", table_name="sales_order")
    op.drop_table("sales_order")
    op.drop_index("ix_sales_quote_line_quote_id", table_name="sales_quote_line")
    op.drop_table("sales_quote_line")
    op.drop_index("ix_sales_quote_tenant_company", table_name="sales_quote")
    op.drop_table("sales_quote")
    op.drop_index("ix_crm_contact_tenant_company", table_name="crm_contact")
    op.drop_table("crm_contact")
    op.drop_index("ix_crm_company_tenant_name", table_name="crm_company")
    op.drop_table("crm_company")
