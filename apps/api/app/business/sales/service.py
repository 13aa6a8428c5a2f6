from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.business.sales.errors import ConflictError, NotFoundError, ValidationError
from app.business.sales.models import (
    SalesDeliveryNote,
    SalesInvoice,
    SalesInvoiceOrder,
    SalesOrder,
    SalesOrderLine,
    SalesQuote,
    SalesQuoteLine,
    utcnow,
)
from app.business.sales.money import ZERO, to_money, to_quantity
from app.business.sales.numbering import ORDER_PREFIX, QUOTE_PREFIX, next_number
from app.business.sales.repository import (
    SalesAllocationRepository,
    SalesDeliveryNoteRepository,
    SalesInvoiceRepository,
    SalesOrderRepository,
    SalesQuoteRepository,
)
from app.business.sales.schemas import (
    DeliveryNoteRead,
    DeliveryNoteUpdate,
    FulfillmentRequest,
    InvoiceRead,
    InvoiceUpdate,
    OrderCreate,
    OrderRead,
    OrderUpdate,
    PaymentCreate,
    QuoteCreate,
    QuoteRead,
    QuoteUpdate,
)
from app.business.sales.states import (
    DERIVED_ORDER_STATUSES,
    LOCKED_INVOICE_STATUSES,
    LOCKED_ORDER_STATUSES,
    PAYABLE_INVOICE_STATUSES,
    UNDELETABLE_INVOICE_STATUSES,
    DeliveryNoteStatus,
    InvoiceStatus,
    OrderStatus,
    QuoteStatus,
    derive_payment_status,
    ensure_delivery_note_transition,
    ensure_invoice_transition,
    ensure_order_transition,
    ensure_quote_transition,
)
from app.business.sales.totals import document_totals, line_total
from app.business.sales.workflow import price_line_items
from app.core.config import get_settings
from app.crm.models import CRMCompany
from app.crm.service import CompanyDirectory
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.sales.documents")

_TERMINAL_QUOTE_STATUSES = frozenset({QuoteStatus.REJECTED, QuoteStatus.EXPIRED, QuoteStatus.CONVERTED})
_FULFILLABLE_ORDER_STATUSES = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.PARTIALLY_FULFILLED,
        OrderStatus.PARTIALLY_INVOICED,
        OrderStatus.INVOICED,
    }
)
_OVERDUE_CANDIDATES = (InvoiceStatus.SENT.value, InvoiceStatus.VIEWED.value, InvoiceStatus.PARTIALLY_PAID.value)
_CLOSED_DELIVERY_STATUSES = frozenset({DeliveryNoteStatus.DELIVERED, DeliveryNoteStatus.RETURNED})


@dataclass(slots=True)
class SalesDocumentService:
    """CRUD and user-driven status transitions for quotes, orders, invoices and delivery notes."""

    quote_repository: SalesQuoteRepository = SalesQuoteRepository()
    order_repository: SalesOrderRepository = SalesOrderRepository()
    invoice_repository: SalesInvoiceRepository = SalesInvoiceRepository()
    allocation_repository: SalesAllocationRepository = SalesAllocationRepository()
    delivery_note_repository: SalesDeliveryNoteRepository = SalesDeliveryNoteRepository()
    directory: CompanyDirectory = field(default_factory=CompanyDirectory)

    # Quotes

    def create_quote(self, session: Session, ctx: AuthContext, payload: QuoteCreate) -> QuoteRead:
        tenant_id = self.quote_repository.tenant_id(ctx)
        company = self._require_company(session, ctx, payload.company_id)
        self._require_contact(session, ctx, payload.contact_id, company.id)
        line_rows, totals = price_line_items(payload.lines, to_money(payload.discount_total))

        settings = get_settings()
        issue_date = payload.issue_date or date.today()
        valid_until = payload.valid_until or issue_date + timedelta(days=settings.sales_quote_validity_days)
        if valid_until < issue_date:
            raise ValidationError("valid_until must not be before the issue date")

        data = {
            "tenant_id": tenant_id,
            "company_id": company.id,
            "contact_id": payload.contact_id,
            "quote_number": next_number(session, SalesQuote, "quote_number", tenant_id, QUOTE_PREFIX),
            "status": QuoteStatus.DRAFT.value,
            "issue_date": issue_date,
            "valid_until": valid_until,
            "currency": self._currency(payload.currency, company),
            "subtotal": totals.subtotal,
            "tax_total": totals.tax_total,
            "discount_total": totals.discount_total,
            "total": totals.total,
            "notes": payload.notes,
            "terms": payload.terms,
            "created_by": ctx.user_id,
        }
        self.quote_repository.validate_write_security(data, ctx, action="create")

        quote = SalesQuote(**data)
        quote.lines = [SalesQuoteLine(**row) for row in line_rows]
        session.add(quote)
        session.commit()
        logger.info(
            "sales.quote.created",
            extra={"quote_id": str(quote.id), "document_number": quote.quote_number, "amount": str(quote.total)},
        )
        return QuoteRead.model_validate(self._get_quote(session, ctx, quote.id))

    def update_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID, payload: QuoteUpdate) -> QuoteRead:
        quote = self._get_quote(session, ctx, quote_id)
        self._ensure_quote_editable(quote)
        changes = payload.model_dump(exclude_unset=True, exclude={"lines"})
        if "contact_id" in changes:
            self._require_contact(session, ctx, changes["contact_id"], quote.company_id)
        if "valid_until" in changes and changes["valid_until"] is not None and changes["valid_until"] < quote.issue_date:
            raise ValidationError("valid_until must not be before the issue date")

        discount_total = to_money(payload.discount_total) if payload.discount_total is not None else to_money(quote.discount_total)
        if payload.lines is not None:
            line_rows, totals = price_line_items(payload.lines, discount_total)
            quote.lines = [SalesQuoteLine(**row) for row in line_rows]
        else:
            amounts = [line_total(line.quantity, line.unit_price, line.discount, line.tax_rate) for line in quote.lines]
            totals = document_totals(amounts, discount_total)
            if totals.total < 0:
                raise ValidationError("document discount exceeds the document total")

        before = {"total": str(quote.total)}
        for key, value in changes.items():
            if key != "discount_total":
                setattr(quote, key, value)
        self._apply_totals(quote, totals)
        quote.updated_by = ctx.user_id
        quote.row_version += 1
        session.commit()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="sales.quote",
            entity_id=str(quote.id),
            action="sales.quote.updated",
            before=before,
            after={"total": str(quote.total)},
            correlation_id=ctx.correlation_id,
            tenant_id=quote.tenant_id,
        )
        return QuoteRead.model_validate(self._get_quote(session, ctx, quote.id))

    def delete_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> None:
        quote = self._get_quote(session, ctx, quote_id)
        if QuoteStatus(quote.status) is QuoteStatus.CONVERTED:
            raise ConflictError("converted quotes cannot be deleted")
        if quote.converted_to_order_at is not None:
            raise ConflictError("quotes with orders cannot be deleted")
        quote_number = quote.quote_number
        session.delete(quote)
        session.commit()
        logger.info("sales.quote.deleted", extra={"quote_id": str(quote_id), "document_number": quote_number})

    def get_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return QuoteRead.model_validate(self._get_quote(session, ctx, quote_id))

    def list_quotes(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: QuoteStatus | None = None,
        company_id: uuid.UUID | None = None,
    ) -> list[QuoteRead]:
        stmt: Select[tuple[SalesQuote]] = select(SalesQuote).options(selectinload(SalesQuote.lines))
        if status is not None:
            stmt = stmt.where(SalesQuote.status == status.value)
        if company_id is not None:
            stmt = stmt.where(SalesQuote.company_id == company_id)
        stmt = self.quote_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(SalesQuote.created_at.desc())).all()
        return [QuoteRead.model_validate(row) for row in rows]

    def send_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self._transition_quote(session, ctx, quote_id, QuoteStatus.SENT)

    def mark_quote_viewed(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self._transition_quote(session, ctx, quote_id, QuoteStatus.VIEWED, stamp="viewed_at")

    def accept_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self._transition_quote(session, ctx, quote_id, QuoteStatus.ACCEPTED, stamp="accepted_at")

    def reject_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self._transition_quote(session, ctx, quote_id, QuoteStatus.REJECTED, stamp="rejected_at")

    def expire_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self._transition_quote(session, ctx, quote_id, QuoteStatus.EXPIRED)

    # Orders

    def create_order(self, session: Session, ctx: AuthContext, payload: OrderCreate) -> OrderRead:
        tenant_id = self.order_repository.tenant_id(ctx)
        company = self._require_company(session, ctx, payload.company_id)
        self._require_contact(session, ctx, payload.contact_id, company.id)
        line_rows, totals = price_line_items(payload.lines, to_money(payload.discount_total))

        data = {
            "tenant_id": tenant_id,
            "company_id": company.id,
            "contact_id": payload.contact_id,
            "quote_id": None,
            "order_number": next_number(session, SalesOrder, "order_number", tenant_id, ORDER_PREFIX),
            "status": OrderStatus.DRAFT.value,
            "order_date": payload.order_date or date.today(),
            "expected_delivery_date": payload.expected_delivery_date,
            "currency": self._currency(payload.currency, company),
            "subtotal": totals.subtotal,
            "tax_total": totals.tax_total,
            "discount_total": totals.discount_total,
            "total": totals.total,
            "invoiced_amount": ZERO,
            "remaining_amount": totals.total,
            "purchase_order_number": payload.purchase_order_number,
            "notes": payload.notes,
            "terms": payload.terms,
            "created_by": ctx.user_id,
        }
        self.order_repository.validate_write_security(data, ctx, action="create")

        order = SalesOrder(**data)
        order.lines = [SalesOrderLine(**row) for row in line_rows]
        session.add(order)
        session.commit()
        logger.info(
            "sales.order.created",
            extra={"order_id": str(order.id), "document_number": order.order_number, "amount": str(order.total)},
        )
        return OrderRead.model_validate(self._get_order(session, ctx, order.id))

    def update_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID, payload: OrderUpdate) -> OrderRead:
        """Edit an order under its ``row_version``.

        The row is locked and re-read first. The write is an
        ``UPDATE ... WHERE row_version = :seen``, so a ledger write that lands in
        between fails this update with ``ConflictError`` instead of repricing an
        invoiced order.
        """

        order = self._lock_order(session, ctx, order_id)
        seen_version = order.row_version
        if payload.row_version is not None and payload.row_version != seen_version:
            session.rollback()
            raise ConflictError("order was modified concurrently")
        if OrderStatus(order.status) in LOCKED_ORDER_STATUSES:
            raise ConflictError(f"order in status {order.status} cannot be updated")
        changes = payload.model_dump(exclude_unset=True, exclude={"lines", "row_version"})
        if "contact_id" in changes:
            self._require_contact(session, ctx, changes["contact_id"], order.company_id)

        line_rows: list[dict[str, Any]] = []
        if payload.lines is not None:
            if to_money(order.invoiced_amount) > 0:
                raise ConflictError("order lines cannot change once the order has been invoiced")
            line_rows, totals = price_line_items(payload.lines, to_money(order.discount_total))
            changes.update(
                {
                    "subtotal": totals.subtotal,
                    "tax_total": totals.tax_total,
                    "discount_total": totals.discount_total,
                    "total": totals.total,
                    "remaining_amount": totals.total - to_money(order.invoiced_amount),
                }
            )

        changes.update({"updated_by": ctx.user_id, "updated_at": utcnow(), "row_version": seen_version + 1})
        stmt = update(SalesOrder).where(
            SalesOrder.id == order.id,
            SalesOrder.tenant_id == order.tenant_id,
            SalesOrder.row_version == seen_version,
        )
        if payload.lines is not None:
            stmt = stmt.where(SalesOrder.invoiced_amount == 0)
        result = session.execute(stmt.values(**changes).execution_options(synchronize_session=False))
        if result.rowcount != 1:
            session.rollback()
            logger.warning(
                "sales.order.update_conflict",
                extra={"order_id": str(order.id), "document_number": order.order_number, "user_id": ctx.user_id},
            )
            raise ConflictError("order was modified concurrently")

        if payload.lines is not None:
            session.execute(delete(SalesOrderLine).where(SalesOrderLine.order_id == order.id))
            for row in line_rows:
                session.add(SalesOrderLine(order_id=order.id, **row))
        session.commit()
        return OrderRead.model_validate(self._get_order(session, ctx, order.id))

    def delete_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> None:
        order = self._lock_order(session, ctx, order_id)
        if OrderStatus(order.status) in LOCKED_ORDER_STATUSES:
            raise ConflictError(f"order in status {order.status} cannot be deleted")
        if self._allocation_count(session, ctx, SalesInvoiceOrder.order_id == order.id):
            raise ConflictError("orders with invoice allocations cannot be deleted")
        order_number = order.order_number
        session.delete(order)
        session.commit()
        logger.info("sales.order.deleted", extra={"order_id": str(order_id), "document_number": order_number})

    def get_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> OrderRead:
        return OrderRead.model_validate(self._get_order(session, ctx, order_id))

    def list_orders(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: OrderStatus | None = None,
        company_id: uuid.UUID | None = None,
        quote_id: uuid.UUID | None = None,
    ) -> list[OrderRead]:
        stmt: Select[tuple[SalesOrder]] = select(SalesOrder).options(selectinload(SalesOrder.lines))
        if status is not None:
            stmt = stmt.where(SalesOrder.status == status.value)
        if company_id is not None:
            stmt = stmt.where(SalesOrder.company_id == company_id)
        if quote_id is not None:
            stmt = stmt.where(SalesOrder.quote_id == quote_id)
        stmt = self.order_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(SalesOrder.created_at.desc())).all()
        return [OrderRead.model_validate(row) for row in rows]

    def transition_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID, target: OrderStatus) -> OrderRead:
        order = self._lock_order(session, ctx, order_id)
        if target in DERIVED_ORDER_STATUSES:
            raise ValidationError(f"status {target.value} is derived from invoicing and cannot be set directly")
        if target is OrderStatus.CANCELLED and to_money(order.invoiced_amount) > 0:
            raise ConflictError("orders with invoiced amounts cannot be cancelled")

        previous = order.status
        order.status = ensure_order_transition(order.status, target).value
        now = utcnow()
        if target is OrderStatus.CONFIRMED:
            order.confirmed_by = ctx.user_id
            order.confirmed_at = now
        elif target is OrderStatus.CANCELLED:
            order.cancelled_by = ctx.user_id
            order.cancelled_at = now
        order.updated_by = ctx.user_id
        order.row_version += 1
        session.commit()

        self._record_transition(ctx, "sales.order", order.id, order.tenant_id, previous, order.status)
        logger.info(
            "sales.order.transitioned",
            extra={"order_id": str(order.id), "document_number": order.order_number, "status": order.status},
        )
        return OrderRead.model_validate(self._get_order(session, ctx, order.id))

    def record_fulfillment(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        payload: FulfillmentRequest,
    ) -> OrderRead:
        order = self._lock_order(session, ctx, order_id)
        if OrderStatus(order.status) not in _FULFILLABLE_ORDER_STATUSES:
            raise ConflictError(f"order in status {order.status} cannot record fulfillment")

        lines_by_id = {line.id: line for line in order.lines}
        updates: list[tuple[SalesOrderLine, Decimal]] = []
        for entry in payload.lines:
            line = lines_by_id.get(entry.order_line_id)
            if line is None:
                raise ValidationError(f"line {entry.order_line_id} does not belong to order {order.order_number}")
            quantity = to_quantity(entry.fulfilled_quantity)
            if quantity > Decimal(line.quantity):
                raise ValidationError(f"fulfilled quantity for line {line.name} exceeds ordered quantity")
            updates.append((line, quantity))

        for line, quantity in updates:
            line.fulfilled_quantity = quantity

        previous = order.status
        if all(Decimal(line.fulfilled_quantity) >= Decimal(line.quantity) for line in order.lines):
            target = OrderStatus.FULFILLED
        elif any(Decimal(line.fulfilled_quantity) > 0 for line in order.lines):
            target = OrderStatus.PARTIALLY_FULFILLED
        else:
            target = OrderStatus(order.status)
        if target.value != order.status:
            order.status = ensure_order_transition(order.status, target).value
        order.updated_by = ctx.user_id
        order.row_version += 1
        session.commit()

        if previous != order.status:
            self._record_transition(ctx, "sales.order", order.id, order.tenant_id, previous, order.status)
        return OrderRead.model_validate(self._get_order(session, ctx, order.id))

    # Invoices

    def get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return InvoiceRead.model_validate(self._get_invoice(session, ctx, invoice_id))

    def get_invoice_by_token(self, session: Session, token: str, *, mark_viewed: bool = True) -> InvoiceRead:
        """Public, token-addressed read; the first view of a sent invoice marks it viewed."""

        invoice = session.scalar(
            select(SalesInvoice).where(SalesInvoice.token == token).options(selectinload(SalesInvoice.lines))
        )
        if invoice is None:
            raise NotFoundError("invoice not found")
        if mark_viewed and InvoiceStatus(invoice.status) is InvoiceStatus.SENT:
            invoice.status = InvoiceStatus.VIEWED.value
            invoice.viewed_at = utcnow()
            session.commit()
            session.refresh(invoice)
        return InvoiceRead.model_validate(invoice)

    def list_invoices(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: InvoiceStatus | None = None,
        company_id: uuid.UUID | None = None,
    ) -> list[InvoiceRead]:
        stmt: Select[tuple[SalesInvoice]] = select(SalesInvoice).options(selectinload(SalesInvoice.lines))
        if status is not None:
            stmt = stmt.where(SalesInvoice.status == status.value)
        if company_id is not None:
            stmt = stmt.where(SalesInvoice.company_id == company_id)
        stmt = self.invoice_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(SalesInvoice.created_at.desc())).all()
        return [InvoiceRead.model_validate(row) for row in rows]

    def update_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID, payload: InvoiceUpdate) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        if InvoiceStatus(invoice.status) in LOCKED_INVOICE_STATUSES:
            raise ConflictError(f"invoice in status {invoice.status} cannot be updated")
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("due_date") is not None and changes["due_date"] < invoice.issue_date:
            raise ValidationError("due date must not be before the issue date")
        for key, value in changes.items():
            if key == "due_date" and value is None:
                continue
            setattr(invoice, key, value)
        invoice.updated_by = ctx.user_id
        session.commit()
        return InvoiceRead.model_validate(self._get_invoice(session, ctx, invoice.id))

    def delete_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> None:
        invoice = self._get_invoice(session, ctx, invoice_id)
        if InvoiceStatus(invoice.status) in UNDELETABLE_INVOICE_STATUSES:
            raise ConflictError(f"invoice in status {invoice.status} cannot be deleted")
        if self._allocation_count(session, ctx, SalesInvoiceOrder.invoice_id == invoice.id):
            raise ConflictError("invoices carrying order allocations cannot be deleted")
        invoice_number = invoice.invoice_number
        session.delete(invoice)
        session.commit()
        logger.info("sales.invoice.deleted", extra={"invoice_id": str(invoice_id), "document_number": invoice_number})

    def send_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._transition_invoice(session, ctx, invoice_id, InvoiceStatus.SENT, stamp="sent_at")

    def mark_invoice_viewed(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._transition_invoice(session, ctx, invoice_id, InvoiceStatus.VIEWED, stamp="viewed_at")

    def cancel_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        if self._allocation_count(session, ctx, SalesInvoiceOrder.invoice_id == invoice.id):
            raise ConflictError("invoices carrying order allocations cannot be cancelled")
        ensure_invoice_transition(invoice.status, InvoiceStatus.CANCELLED)
        invoice.cancelled_by = ctx.user_id
        invoice.cancelled_at = utcnow()
        return self._transition_invoice(session, ctx, invoice_id, InvoiceStatus.CANCELLED)

    def refund_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return self._transition_invoice(session, ctx, invoice_id, InvoiceStatus.REFUNDED)

    def record_payment(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID, payload: PaymentCreate) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        if InvoiceStatus(invoice.status) not in PAYABLE_INVOICE_STATUSES:
            raise ConflictError(f"invoice in status {invoice.status} cannot accept payments")
        amount = to_money(payload.amount)
        remaining = to_money(invoice.remaining_amount)
        if amount > remaining:
            raise ValidationError(f"payment {amount} exceeds remaining amount {remaining}")

        previous = invoice.status
        paid = to_money(invoice.paid_amount) + amount
        target = derive_payment_status(invoice.status, to_money(invoice.total), paid)
        if target.value != invoice.status:
            invoice.status = ensure_invoice_transition(invoice.status, target).value
        invoice.paid_amount = paid
        invoice.remaining_amount = to_money(invoice.total) - paid
        invoice.payment_date = payload.payment_date or date.today()
        if target is InvoiceStatus.PAID:
            invoice.paid_at = utcnow()
        invoice.updated_by = ctx.user_id
        session.commit()

        self._record_transition(ctx, "sales.invoice", invoice.id, invoice.tenant_id, previous, invoice.status)
        logger.info(
            "sales.invoice.payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "document_number": invoice.invoice_number,
                "amount": str(amount),
                "remaining_amount": str(invoice.remaining_amount),
                "status": invoice.status,
            },
        )
        return InvoiceRead.model_validate(self._get_invoice(session, ctx, invoice.id))

    def refresh_overdue(self, session: Session, ctx: AuthContext, as_of: date | None = None) -> list[InvoiceRead]:
        """Move unpaid invoices past their due date to ``overdue``."""

        cutoff = as_of or date.today()
        stmt = select(SalesInvoice).where(
            SalesInvoice.status.in_(_OVERDUE_CANDIDATES),
            SalesInvoice.due_date < cutoff,
        )
        rows = session.scalars(self.invoice_repository.apply_scope_query(stmt, ctx)).all()
        for invoice in rows:
            invoice.status = ensure_invoice_transition(invoice.status, InvoiceStatus.OVERDUE).value
        session.commit()
        if rows:
            logger.info("sales.invoice.overdue", extra={"operation": "refresh_overdue", "status": InvoiceStatus.OVERDUE.value})
        return [InvoiceRead.model_validate(self._get_invoice(session, ctx, invoice.id)) for invoice in rows]

    # Delivery notes

    def get_delivery_note(self, session: Session, ctx: AuthContext, note_id: uuid.UUID) -> DeliveryNoteRead:
        return DeliveryNoteRead.model_validate(self._get_delivery_note(session, ctx, note_id))

    def list_delivery_notes(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: DeliveryNoteStatus | None = None,
        order_id: uuid.UUID | None = None,
        invoice_id: uuid.UUID | None = None,
    ) -> list[DeliveryNoteRead]:
        stmt: Select[tuple[SalesDeliveryNote]] = select(SalesDeliveryNote).options(selectinload(SalesDeliveryNote.lines))
        if status is not None:
            stmt = stmt.where(SalesDeliveryNote.status == status.value)
        if order_id is not None:
            stmt = stmt.where(SalesDeliveryNote.order_id == order_id)
        if invoice_id is not None:
            stmt = stmt.where(SalesDeliveryNote.invoice_id == invoice_id)
        stmt = self.delivery_note_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(SalesDeliveryNote.created_at.desc())).all()
        return [DeliveryNoteRead.model_validate(row) for row in rows]

    def update_delivery_note(
        self,
        session: Session,
        ctx: AuthContext,
        note_id: uuid.UUID,
        payload: DeliveryNoteUpdate,
    ) -> DeliveryNoteRead:
        note = self._get_delivery_note(session, ctx, note_id)
        if DeliveryNoteStatus(note.status) in _CLOSED_DELIVERY_STATUSES:
            raise ConflictError(f"delivery note in status {note.status} cannot be updated")
        changes = payload.model_dump(exclude_unset=True)
        ship_date = changes.get("ship_date", note.ship_date)
        delivery_date = changes.get("delivery_date", note.delivery_date)
        if ship_date is not None and delivery_date is not None and delivery_date < ship_date:
            raise ValidationError("delivery date must not be before the ship date")
        for key, value in changes.items():
            if key == "shipping_address" and value is None:
                continue
            setattr(note, key, value)
        note.updated_by = ctx.user_id
        note.row_version += 1
        session.commit()
        return DeliveryNoteRead.model_validate(self._get_delivery_note(session, ctx, note.id))

    def delete_delivery_note(self, session: Session, ctx: AuthContext, note_id: uuid.UUID) -> None:
        note = self._get_delivery_note(session, ctx, note_id)
        if DeliveryNoteStatus(note.status) is not DeliveryNoteStatus.PENDING:
            raise ConflictError(f"delivery note in status {note.status} cannot be deleted")
        delivery_number = note.delivery_number
        session.delete(note)
        session.commit()
        logger.info(
            "sales.delivery_note.deleted",
            extra={"delivery_note_id": str(note_id), "document_number": delivery_number},
        )

    def transition_delivery_note(
        self,
        session: Session,
        ctx: AuthContext,
        note_id: uuid.UUID,
        target: DeliveryNoteStatus,
    ) -> DeliveryNoteRead:
        """Move a shipment along; shipping and delivery dates are stamped when first reached."""

        note = self._get_delivery_note(session, ctx, note_id)
        previous = note.status
        status = ensure_delivery_note_transition(note.status, target)
        if status in (DeliveryNoteStatus.IN_TRANSIT, DeliveryNoteStatus.DELIVERED) and note.ship_date is None:
            note.ship_date = date.today()
        if status is DeliveryNoteStatus.DELIVERED and note.delivery_date is None:
            note.delivery_date = max(date.today(), note.ship_date)
        note.status = status.value
        note.updated_by = ctx.user_id
        note.row_version += 1
        session.commit()

        self._record_transition(ctx, "sales.delivery_note", note.id, note.tenant_id, previous, note.status)
        return DeliveryNoteRead.model_validate(self._get_delivery_note(session, ctx, note.id))

    # Helpers

    def _transition_quote(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        target: QuoteStatus,
        *,
        stamp: str | None = None,
    ) -> QuoteRead:
        quote = self._get_quote(session, ctx, quote_id)
        if quote.converted_to_order_at is not None:
            raise ConflictError("quote was already converted to an order")
        previous = quote.status
        quote.status = ensure_quote_transition(quote.status, target).value
        if stamp is not None:
            setattr(quote, stamp, utcnow())
        if target is QuoteStatus.ACCEPTED:
            quote.approved_by = ctx.user_id
        quote.updated_by = ctx.user_id
        quote.row_version += 1
        session.commit()

        self._record_transition(ctx, "sales.quote", quote.id, quote.tenant_id, previous, quote.status)
        return QuoteRead.model_validate(self._get_quote(session, ctx, quote.id))

    def _transition_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        invoice_id: uuid.UUID,
        target: InvoiceStatus,
        *,
        stamp: str | None = None,
    ) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        previous = invoice.status
        invoice.status = ensure_invoice_transition(invoice.status, target).value
        if stamp is not None:
            setattr(invoice, stamp, utcnow())
        invoice.updated_by = ctx.user_id
        session.commit()

        self._record_transition(ctx, "sales.invoice", invoice.id, invoice.tenant_id, previous, invoice.status)
        return InvoiceRead.model_validate(self._get_invoice(session, ctx, invoice.id))

    @staticmethod
    def _record_transition(
        ctx: AuthContext,
        entity_type: str,
        entity_id: uuid.UUID,
        tenant_id: str,
        previous: str,
        current: str,
    ) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=f"{entity_type}.status_changed",
            before={"status": previous},
            after={"status": current},
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )

    @staticmethod
    def _ensure_quote_editable(quote: SalesQuote) -> None:
        if QuoteStatus(quote.status) is QuoteStatus.CONVERTED:
            raise ConflictError("converted quotes cannot be updated")
        if quote.converted_to_order_at is not None:
            raise ConflictError("quotes with orders cannot be updated")
        if QuoteStatus(quote.status) in _TERMINAL_QUOTE_STATUSES:
            raise ConflictError(f"quote in status {quote.status} cannot be updated")

    @staticmethod
    def _apply_totals(document: Any, totals: Any) -> None:
        document.subtotal = totals.subtotal
        document.tax_total = totals.tax_total
        document.discount_total = totals.discount_total
        document.total = totals.total

    @staticmethod
    def _currency(requested: str | None, company: CRMCompany) -> str:
        return (requested or company.default_currency or get_settings().sales_default_currency).upper()

    def _require_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CRMCompany:
        company = self.directory.find_company(session, ctx, company_id)
        if company is None:
            raise NotFoundError("company not found")
        return company

    def _require_contact(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID | None,
        company_id: uuid.UUID,
    ) -> None:
        if contact_id is None:
            return
        if self.directory.find_contact(session, ctx, contact_id, company_id=company_id) is None:
            raise NotFoundError("contact not found")

    def _allocation_count(self, session: Session, ctx: AuthContext, condition: Any) -> int:
        stmt = select(func.count(SalesInvoiceOrder.id)).where(condition)
        return session.scalar(self.allocation_repository.apply_scope_query(stmt, ctx)) or 0

    def _get_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> SalesQuote:
        stmt = select(SalesQuote).where(SalesQuote.id == quote_id).options(selectinload(SalesQuote.lines))
        quote = session.scalar(self.quote_repository.apply_scope_query(stmt, ctx))
        if quote is None:
            raise NotFoundError("quote not found")
        return quote

    def _get_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> SalesOrder:
        stmt = select(SalesOrder).where(SalesOrder.id == order_id).options(selectinload(SalesOrder.lines))
        order = session.scalar(self.order_repository.apply_scope_query(stmt, ctx))
        if order is None:
            raise NotFoundError("order not found")
        return order

    def _lock_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> SalesOrder:
        stmt = (
            select(SalesOrder)
            .where(SalesOrder.id == order_id)
            .options(selectinload(SalesOrder.lines))
            .execution_options(populate_existing=True)
            .with_for_update()
        )
        order = session.scalar(self.order_repository.apply_scope_query(stmt, ctx))
        if order is None:
            raise NotFoundError("order not found")
        return order

    def _get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> SalesInvoice:
        stmt = select(SalesInvoice).where(SalesInvoice.id == invoice_id).options(selectinload(SalesInvoice.lines))
        invoice = session.scalar(self.invoice_repository.apply_scope_query(stmt, ctx))
        if invoice is None:
            raise NotFoundError("invoice not found")
        return invoice

    def _get_delivery_note(self, session: Session, ctx: AuthContext, note_id: uuid.UUID) -> SalesDeliveryNote:
        stmt = select(SalesDeliveryNote).where(SalesDeliveryNote.id == note_id).options(selectinload(SalesDeliveryNote.lines))
        note = session.scalar(self.delivery_note_repository.apply_scope_query(stmt, ctx))
        if note is None:
            raise NotFoundError("delivery note not found")
        return note


sales_document_service = SalesDocumentService()
