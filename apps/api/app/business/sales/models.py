from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money() -> Numeric:
    return Numeric(18, 2)


def _rate() -> Numeric:
    return Numeric(9, 4)


def _quantity() -> Numeric:
    return Numeric(18, 4)


class SalesQuote(Base):
    __tablename__ = "sales_quote"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_company.id"), nullable=False)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_contact.id"), nullable=True)
    quote_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    issue_date: Mapped[date] = mapped_column(Date(), nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date(), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    tax_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    discount_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    converted_to_order_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_to_invoice_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    lines: Mapped[list[SalesQuoteLine]] = relationship(
        "SalesQuoteLine",
        back_populates="quote",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SalesQuoteLine.sort_order",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "quote_number", name="uq_sales_quote_number_tenant"),
        Index("ix_sales_quote_tenant_company", "tenant_id", "company_id"),
    )


class SalesQuoteLine(Base):
    __tablename__ = "sales_quote_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_quote.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="pcs")
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    discount: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    quote: Mapped[SalesQuote] = relationship("SalesQuote", back_populates="lines")

    __table_args__ = (
        Index("ix_sales_quote_line_quote_id", "quote_id"),
    )


class SalesOrder(Base):
    __tablename__ = "sales_order"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_company.id"), nullable=False)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_contact.id"), nullable=True)
    quote_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_quote.id"), nullable=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    order_date: Mapped[date] = mapped_column(Date(), nullable=False)
    expected_delivery_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    tax_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    discount_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    invoiced_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    remaining_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    purchase_order_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    lines: Mapped[list[SalesOrderLine]] = relationship(
        "SalesOrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SalesOrderLine.sort_order",
    )
    allocations: Mapped[list[SalesInvoiceOrder]] = relationship("SalesInvoiceOrder", back_populates="order")

    __table_args__ = (
        UniqueConstraint("tenant_id", "order_number", name="uq_sales_order_number_tenant"),
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_sales_order_idempotency_tenant"),
        CheckConstraint("invoiced_amount <= total", name="ck_sales_order_invoiced_le_total"),
        Index("ix_sales_order_tenant_company", "tenant_id", "company_id"),
        Index("ix_sales_order_quote_id", "quote_id"),
    )


class SalesOrderLine(Base):
    __tablename__ = "sales_order_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_order.id", ondelete="CASCADE"),
        nullable=False,
    )
    quote_line_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_quote_line.id", ondelete="SET NULL"),
        nullable=True,
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False)
    fulfilled_quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False, default=Decimal("0"))
    invoiced_quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False, default=Decimal("0"))
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="pcs")
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    discount: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    invoiced_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    order: Mapped[SalesOrder] = relationship("SalesOrder", back_populates="lines")

    __table_args__ = (
        Index("ix_sales_order_line_order_id", "order_id"),
    )


class SalesInvoice(Base):
    __tablename__ = "sales_invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_company.id"), nullable=False)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_contact.id"), nullable=True)
    quote_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_quote.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    issue_date: Mapped[date] = mapped_column(Date(), nullable=False)
    due_date: Mapped[date] = mapped_column(Date(), nullable=False)
    payment_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    payment_terms: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    tax_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    discount_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    paid_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    remaining_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    token: Mapped[str] = mapped_column(String(128), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines: Mapped[list[SalesInvoiceLine]] = relationship(
        "SalesInvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SalesInvoiceLine.sort_order",
    )
    allocations: Mapped[list[SalesInvoiceOrder]] = relationship("SalesInvoiceOrder", back_populates="invoice")

    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_sales_invoice_number_tenant"),
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_sales_invoice_idempotency_tenant"),
        UniqueConstraint("token", name="uq_sales_invoice_token"),
        Index("ix_sales_invoice_tenant_company", "tenant_id", "company_id"),
        Index("ix_sales_invoice_quote_id", "quote_id"),
    )


class SalesInvoiceLine(Base):
    __tablename__ = "sales_invoice_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_line_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_order_line.id", ondelete="SET NULL"),
        nullable=True,
    )
    quote_line_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_quote_line.id", ondelete="SET NULL"),
        nullable=True,
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="pcs")
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    discount: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_rate: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped[SalesInvoice] = relationship("SalesInvoice", back_populates="lines")

    __table_args__ = (
        Index("ix_sales_invoice_line_invoice_id", "invoice_id"),
    )


class SalesInvoiceOrder(Base):
    """Allocation of part of an order's total to one invoice; insert-only."""

    __tablename__ = "sales_invoice_order"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_invoice.id"), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_order.id"), nullable=False)
    amount_allocated: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    invoice: Mapped[SalesInvoice] = relationship("SalesInvoice", back_populates="allocations")
    order: Mapped[SalesOrder] = relationship("SalesOrder", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("invoice_id", "order_id", name="uq_sales_invoice_order_pair"),
        CheckConstraint("amount_allocated > 0", name="ck_sales_invoice_order_positive"),
        Index("ix_sales_invoice_order_order_id", "order_id"),
        Index("ix_sales_invoice_order_tenant", "tenant_id"),
    )


class SalesDeliveryNote(Base):
    __tablename__ = "sales_delivery_note"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    company_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_company.id"), nullable=False)
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("crm_contact.id"), nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_order.id"), nullable=True)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("sales_invoice.id"), nullable=True)
    delivery_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    ship_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    delivery_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    shipping_address: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    carrier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    tax_total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    total: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"), server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    lines: Mapped[list[SalesDeliveryNoteLine]] = relationship(
        "SalesDeliveryNoteLine",
        back_populates="delivery_note",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SalesDeliveryNoteLine.sort_order",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "delivery_number", name="uq_sales_delivery_note_number_tenant"),
        CheckConstraint(
            "order_id IS NOT NULL OR invoice_id IS NOT NULL",
            name="ck_sales_delivery_note_has_source",
        ),
        Index("ix_sales_delivery_note_tenant_status", "tenant_id", "status"),
        Index("ix_sales_delivery_note_order_id", "order_id"),
        Index("ix_sales_delivery_note_invoice_id", "invoice_id"),
    )


class SalesDeliveryNoteLine(Base):
    __tablename__ = "sales_delivery_note_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    delivery_note_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_delivery_note.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(_quantity(), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="pcs")
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    discount: Mapped[Decimal] = mapped_column(_rate(), nullable=False, default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    delivery_note: Mapped[SalesDeliveryNote] = relationship("SalesDeliveryNote", back_populates="lines")

    __table_args__ = (
        Index("ix_sales_delivery_note_line_note_id", "delivery_note_id"),
    )
