from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.business.sales.states import DeliveryNoteStatus, InvoiceStatus, OrderStatus, QuoteStatus


class LineItemInput(BaseModel):
    product_id: UUID | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    sku: str | None = None
    quantity: Decimal = Field(gt=Decimal("0"))
    unit: str = "pcs"
    unit_price: Decimal = Field(ge=Decimal("0"))
    discount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    tax_rate: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    sort_order: int | None = None


class QuoteCreate(BaseModel):
    company_id: UUID
    contact_id: UUID | None = None
    issue_date: date | None = None
    valid_until: date | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    discount_total: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    notes: str | None = None
    terms: str | None = None
    lines: list[LineItemInput] = Field(min_length=1)


class QuoteUpdate(BaseModel):
    contact_id: UUID | None = None
    valid_until: date | None = None
    discount_total: Decimal | None = Field(default=None, ge=Decimal("0"))
    notes: str | None = None
    terms: str | None = None
    lines: list[LineItemInput] | None = Field(default=None, min_length=1)


class QuoteLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quote_id: UUID
    product_id: UUID | None
    name: str
    description: str | None
    sku: str | None
    quantity: Decimal
    unit: str
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal
    sort_order: int


class QuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    company_id: UUID
    contact_id: UUID | None
    quote_number: str
    status: QuoteStatus
    issue_date: date
    valid_until: date | None
    currency: str
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    total: Decimal
    notes: str | None
    terms: str | None
    converted_to_order_at: datetime | None
    converted_to_invoice_at: datetime | None
    viewed_at: datetime | None
    accepted_at: datetime | None
    rejected_at: datetime | None
    created_by: str
    updated_by: str | None
    approved_by: str | None
    created_at: datetime
    updated_at: datetime
    lines: list[QuoteLineRead] = Field(default_factory=list)


class OrderCreate(BaseModel):
    company_id: UUID
    contact_id: UUID | None = None
    order_date: date | None = None
    expected_delivery_date: date | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    purchase_order_number: str | None = None
    discount_total: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    notes: str | None = None
    terms: str | None = None
    lines: list[LineItemInput] = Field(min_length=1)


class OrderUpdate(BaseModel):
    contact_id: UUID | None = None
    expected_delivery_date: date | None = None
    purchase_order_number: str | None = None
    notes: str | None = None
    terms: str | None = None
    lines: list[LineItemInput] | None = Field(default=None, min_length=1)
    row_version: int | None = Field(default=None, ge=1)


class OrderTransition(BaseModel):
    status: OrderStatus


class FulfillmentLine(BaseModel):
    order_line_id: UUID
    fulfilled_quantity: Decimal = Field(ge=Decimal("0"))


class FulfillmentRequest(BaseModel):
    lines: list[FulfillmentLine] = Field(min_length=1)


class OrderLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    quote_line_id: UUID | None
    product_id: UUID | None
    name: str
    description: str | None
    sku: str | None
    quantity: Decimal
    fulfilled_quantity: Decimal
    invoiced_quantity: Decimal
    unit: str
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal
    invoiced_amount: Decimal
    sort_order: int


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    company_id: UUID
    contact_id: UUID | None
    quote_id: UUID | None
    order_number: str
    status: OrderStatus
    order_date: date
    expected_delivery_date: date | None
    currency: str
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    total: Decimal
    invoiced_amount: Decimal
    remaining_amount: Decimal
    purchase_order_number: str | None
    notes: str | None
    terms: str | None
    idempotency_key: str | None
    created_by: str
    updated_by: str | None
    confirmed_by: str | None
    confirmed_at: datetime | None
    cancelled_by: str | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    lines: list[OrderLineRead] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    due_date: date | None = None
    notes: str | None = None
    terms: str | None = None


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"))
    payment_date: date | None = None


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    order_line_id: UUID | None
    quote_line_id: UUID | None
    product_id: UUID | None
    name: str
    description: str | None
    sku: str | None
    quantity: Decimal
    unit: str
    unit_price: Decimal
    discount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal
    sort_order: int


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    company_id: UUID
    contact_id: UUID | None
    quote_id: UUID | None
    invoice_number: str
    status: InvoiceStatus
    issue_date: date
    due_date: date
    payment_date: date | None
    payment_terms: int
    currency: str
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    total: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    token: str
    notes: str | None
    terms: str | None
    idempotency_key: str | None
    sent_at: datetime | None
    viewed_at: datetime | None
    paid_at: datetime | None
    created_by: str
    updated_by: str | None
    cancelled_by: str | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    lines: list[InvoiceLineRead] = Field(default_factory=list)


class AllocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    order_id: UUID
    amount_allocated: Decimal
    notes: str | None
    created_by: str
    created_at: datetime


class PartialInvoice(BaseModel):
    """Bill part of an order's remaining amount, by percentage or exact amount."""

    percentage: Decimal | None = Field(default=None, gt=Decimal("0"), le=Decimal("100"))
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))

    @model_validator(mode="after")
    def _exactly_one(self) -> PartialInvoice:
        if (self.percentage is None) == (self.amount is None):
            raise ValueError("exactly one of percentage or amount is required")
        return self


class QuoteToOrderCustomizations(BaseModel):
    order_date: date | None = None
    expected_delivery_date: date | None = None
    purchase_order_number: str | None = None
    notes: str | None = None
    terms: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=128)
    lines: list[LineItemInput] | None = Field(default=None, min_length=1)


class InvoiceCustomizations(BaseModel):
    issue_date: date | None = None
    due_date: date | None = None
    payment_terms: int | None = Field(default=None, ge=0)
    notes: str | None = None
    terms: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=128)


class OrderToInvoiceCustomizations(InvoiceCustomizations):
    partial: PartialInvoice | None = None


class ConsolidatedOrderInput(BaseModel):
    order_id: UUID
    amount_allocated: Decimal | None = Field(default=None, gt=Decimal("0"))


class ConsolidatedInvoiceCreate(BaseModel):
    orders: list[ConsolidatedOrderInput] = Field(min_length=1)
    customizations: InvoiceCustomizations | None = None


class DeliveryNoteCustomizations(BaseModel):
    delivery_number: str | None = Field(default=None, min_length=1, max_length=64)
    ship_date: date | None = None
    delivery_date: date | None = None
    shipping_address: str = ""
    carrier: str | None = None
    tracking_number: str | None = None
    notes: str | None = None


class DeliveryNoteUpdate(BaseModel):
    ship_date: date | None = None
    delivery_date: date | None = None
    shipping_address: str | None = None
    carrier: str | None = None
    tracking_number: str | None = None
    notes: str | None = None


class DeliveryNoteTransition(BaseModel):
    status: DeliveryNoteStatus


class DeliveryNoteLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    delivery_note_id: UUID
    product_id: UUID | None
    name: str
    description: str | None
    sku: str | None
    quantity: Decimal
    unit: str
    unit_price: Decimal
    discount: Decimal
    line_total: Decimal
    sort_order: int


class DeliveryNoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    company_id: UUID
    contact_id: UUID | None
    order_id: UUID | None
    invoice_id: UUID | None
    delivery_number: str
    status: DeliveryNoteStatus
    ship_date: date | None
    delivery_date: date | None
    shipping_address: str
    carrier: str | None
    tracking_number: str | None
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    notes: str | None
    terms: str | None
    created_by: str
    updated_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    lines: list[DeliveryNoteLineRead] = Field(default_factory=list)


class DocumentChainRead(BaseModel):
    quote: QuoteRead
    orders: list[OrderRead] = Field(default_factory=list)
    invoices: list[InvoiceRead] = Field(default_factory=list)
    allocations: list[AllocationRead] = Field(default_factory=list)
    delivery_notes: list[DeliveryNoteRead] = Field(default_factory=list)
