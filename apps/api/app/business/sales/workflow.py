from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from time import perf_counter
from typing import Any

from opentelemetry.trace import Span
from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.business.sales.allocation import AllocationLedger, prorate_amount
from app.business.sales.errors import ConflictError, NotFoundError, SalesError, ValidationError
from app.business.sales.models import (
    SalesDeliveryNote,
    SalesDeliveryNoteLine,
    SalesInvoice,
    SalesInvoiceLine,
    SalesInvoiceOrder,
    SalesOrder,
    SalesOrderLine,
    SalesQuote,
    utcnow,
)
from app.business.sales.money import ZERO, percentage_of, to_money, to_quantity, to_rate
from app.business.sales.numbering import (
    DELIVERY_PREFIX,
    INVOICE_PREFIX,
    ORDER_PREFIX,
    new_invoice_token,
    next_number,
)
from app.business.sales.repository import (
    SalesAllocationRepository,
    SalesDeliveryNoteRepository,
    SalesInvoiceRepository,
    SalesOrderRepository,
    SalesQuoteRepository,
)
from app.business.sales.schemas import (
    AllocationRead,
    ConsolidatedOrderInput,
    DeliveryNoteCustomizations,
    DeliveryNoteRead,
    DocumentChainRead,
    InvoiceCustomizations,
    InvoiceRead,
    LineItemInput,
    OrderRead,
    OrderToInvoiceCustomizations,
    PartialInvoice,
    QuoteRead,
    QuoteToOrderCustomizations,
)
from app.business.sales.states import (
    CONVERTIBLE_QUOTE_STATUSES,
    NON_INVOICEABLE_ORDER_STATUSES,
    DeliveryNoteStatus,
    InvoiceStatus,
    OrderStatus,
    QuoteStatus,
    ensure_quote_transition,
)
from app.business.sales.totals import DocumentTotals, document_totals, line_total
from app.context import get_tenant_id, reset_tenant_id, set_tenant_id
from app.core.config import get_settings
from app.crm.models import CRMCompany
from app.crm.service import CompanyDirectory
from app.metrics import observe_conversion, observe_invoiced_amount
from app.otel import traced
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.sales.workflow")

TRACER_NAME = "app.sales.workflow"

_LINE_COPY_FIELDS = ("product_id", "name", "description", "sku", "quantity", "unit", "unit_price", "discount", "tax_rate")


def price_line_items(
    items: Sequence[LineItemInput],
    discount_total: Decimal = ZERO,
) -> tuple[list[dict[str, Any]], DocumentTotals]:
    """Column values for each line plus the document totals they add up to."""

    rows: list[dict[str, Any]] = []
    amounts = []
    for index, item in enumerate(items):
        amount = line_total(item.quantity, item.unit_price, item.discount, item.tax_rate)
        amounts.append(amount)
        rows.append(
            {
                "product_id": item.product_id,
                "name": item.name,
                "description": item.description,
                "sku": item.sku,
                "quantity": to_quantity(item.quantity),
                "unit": item.unit,
                "unit_price": to_money(item.unit_price),
                "discount": to_rate(item.discount),
                "tax_rate": to_rate(item.tax_rate),
                "tax_amount": amount.tax_amount,
                "line_total": amount.total,
                "sort_order": item.sort_order if item.sort_order is not None else index,
            }
        )
    totals = document_totals(amounts, discount_total)
    if totals.total < 0:
        raise ValidationError("document discount exceeds the document total")
    return rows, totals


@dataclass(slots=True)
class DocumentWorkflowService:
    """Quote -> order -> invoice conversions over the allocation ledger.

    Orders and invoices can also be turned into delivery notes; those are
    snapshots and never touch the ledger.

    Every conversion validates first, writes second and commits once; any
    failure rolls the whole session back.
    """

    quote_repository: SalesQuoteRepository = SalesQuoteRepository()
    order_repository: SalesOrderRepository = SalesOrderRepository()
    invoice_repository: SalesInvoiceRepository = SalesInvoiceRepository()
    allocation_repository: SalesAllocationRepository = SalesAllocationRepository()
    delivery_note_repository: SalesDeliveryNoteRepository = SalesDeliveryNoteRepository()
    ledger: AllocationLedger = field(default_factory=AllocationLedger)
    directory: CompanyDirectory = field(default_factory=CompanyDirectory)

    def convert_quote_to_order(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        customizations: QuoteToOrderCustomizations | None = None,
    ) -> OrderRead:
        custom = customizations or QuoteToOrderCustomizations()
        with self._operation(session, ctx, "quote_to_order", quote_id=quote_id) as span:
            if custom.idempotency_key:
                existing = self._find_order_by_key(session, ctx, custom.idempotency_key)
                if existing is not None:
                    if existing.quote_id != quote_id:
                        raise ConflictError("idempotency key was already used for another document")
                    span.set_attribute("sales.idempotent_replay", True)
                    return OrderRead.model_validate(existing)

            quote = self._lock_quote(session, ctx, quote_id)
            self._ensure_quote_convertible(quote)
            self._require_company(session, ctx, quote.company_id)

            if custom.lines:
                line_rows, totals = price_line_items(custom.lines, to_money(quote.discount_total))
            else:
                line_rows = [self._copy_line(line, quote_line_id=line.id) for line in quote.lines]
                totals = DocumentTotals(
                    subtotal=to_money(quote.subtotal),
                    tax_total=to_money(quote.tax_total),
                    discount_total=to_money(quote.discount_total),
                    total=to_money(quote.total),
                )

            order_payload = {
                "tenant_id": quote.tenant_id,
                "company_id": quote.company_id,
                "contact_id": quote.contact_id,
                "quote_id": quote.id,
                "order_number": next_number(session, SalesOrder, "order_number", quote.tenant_id, ORDER_PREFIX),
                "status": OrderStatus.PENDING.value,
                "order_date": custom.order_date or date.today(),
                "expected_delivery_date": custom.expected_delivery_date,
                "currency": quote.currency,
                "subtotal": totals.subtotal,
                "tax_total": totals.tax_total,
                "discount_total": totals.discount_total,
                "total": totals.total,
                "invoiced_amount": ZERO,
                "remaining_amount": totals.total,
                "purchase_order_number": custom.purchase_order_number,
                "notes": custom.notes if custom.notes is not None else quote.notes,
                "terms": custom.terms if custom.terms is not None else quote.terms,
                "idempotency_key": custom.idempotency_key,
                "created_by": ctx.user_id,
            }
            self.order_repository.validate_write_security(order_payload, ctx, action="create")

            order = SalesOrder(**order_payload)
            session.add(order)
            session.flush()
            for row in line_rows:
                session.add(SalesOrderLine(order_id=order.id, **row))

            quote_status = quote.status
            quote.converted_to_order_at = utcnow()
            quote.updated_by = ctx.user_id
            quote.row_version += 1
            session.flush()
            session.commit()

            span.set_attribute("order_id", str(order.id))
            audit.record(
                actor_user_id=ctx.user_id,
                entity_type="sales.order",
                entity_id=str(order.id),
                action="sales.quote.converted_to_order",
                before={"quote_id": str(quote_id), "quote_status": quote_status},
                after={"order_number": order.order_number, "total": str(order.total)},
                correlation_id=ctx.correlation_id,
                tenant_id=order.tenant_id,
            )
            events.publish(
                {
                    "event_type": "sales.quote.converted_to_order",
                    "tenant_id": order.tenant_id,
                    "quote_id": str(quote_id),
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "total": str(order.total),
                    "correlation_id": ctx.correlation_id,
                }
            )
            logger.info(
                "sales.quote.converted_to_order",
                extra={
                    "operation": "quote_to_order",
                    "quote_id": str(quote_id),
                    "order_id": str(order.id),
                    "document_number": order.order_number,
                    "amount": str(order.total),
                    "user_id": ctx.user_id,
                },
            )
            return OrderRead.model_validate(self._get_order(session, ctx, order.id))

    def convert_quote_to_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        customizations: InvoiceCustomizations | None = None,
    ) -> uuid.UUID:
        custom = customizations or InvoiceCustomizations()
        with self._operation(session, ctx, "quote_to_invoice", quote_id=quote_id) as span:
            if custom.idempotency_key:
                existing = self._find_invoice_by_key(session, ctx, custom.idempotency_key)
                if existing is not None:
                    if existing.quote_id != quote_id:
                        raise ConflictError("idempotency key was already used for another document")
                    span.set_attribute("sales.idempotent_replay", True)
                    return existing.id

            quote = self._lock_quote(session, ctx, quote_id)
            self._ensure_quote_convertible(quote)
            company = self._require_company(session, ctx, quote.company_id)
            issue_date, due_date, payment_terms = self._invoice_dates(custom, company)

            invoice_payload = {
                "tenant_id": quote.tenant_id,
                "company_id": quote.company_id,
                "contact_id": quote.contact_id,
                "quote_id": quote.id,
                "invoice_number": next_number(session, SalesInvoice, "invoice_number", quote.tenant_id, INVOICE_PREFIX),
                "status": InvoiceStatus.DRAFT.value,
                "issue_date": issue_date,
                "due_date": due_date,
                "payment_terms": payment_terms,
                "currency": quote.currency,
                "subtotal": to_money(quote.subtotal),
                "tax_total": to_money(quote.tax_total),
                "discount_total": to_money(quote.discount_total),
                "total": to_money(quote.total),
                "paid_amount": ZERO,
                "remaining_amount": to_money(quote.total),
                "token": new_invoice_token(),
                "notes": custom.notes if custom.notes is not None else quote.notes,
                "terms": custom.terms if custom.terms is not None else quote.terms,
                "idempotency_key": custom.idempotency_key,
                "created_by": ctx.user_id,
            }
            self.invoice_repository.validate_write_security(invoice_payload, ctx, action="create")

            invoice = SalesInvoice(**invoice_payload)
            session.add(invoice)
            session.flush()
            for line in quote.lines:
                session.add(SalesInvoiceLine(invoice_id=invoice.id, **self._copy_line(line, quote_line_id=line.id)))

            quote_status = quote.status
            quote.status = ensure_quote_transition(quote.status, QuoteStatus.CONVERTED).value
            quote.converted_to_invoice_at = utcnow()
            quote.updated_by = ctx.user_id
            quote.row_version += 1
            session.flush()
            session.commit()

            span.set_attribute("invoice_id", str(invoice.id))
            observe_invoiced_amount("quote", to_money(invoice.total))
            audit.record(
                actor_user_id=ctx.user_id,
                entity_type="sales.invoice",
                entity_id=str(invoice.id),
                action="sales.quote.converted_to_invoice",
                before={"quote_id": str(quote_id), "quote_status": quote_status},
                after={"invoice_number": invoice.invoice_number, "total": str(invoice.total)},
                correlation_id=ctx.correlation_id,
                tenant_id=invoice.tenant_id,
            )
            events.publish(
                {
                    "event_type": "sales.quote.converted_to_invoice",
                    "tenant_id": invoice.tenant_id,
                    "quote_id": str(quote_id),
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "total": str(invoice.total),
                    "correlation_id": ctx.correlation_id,
                }
            )
            logger.info(
                "sales.quote.converted_to_invoice",
                extra={
                    "operation": "quote_to_invoice",
                    "quote_id": str(quote_id),
                    "invoice_id": str(invoice.id),
                    "document_number": invoice.invoice_number,
                    "amount": str(invoice.total),
                    "user_id": ctx.user_id,
                },
            )
            return invoice.id

    def convert_order_to_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        customizations: OrderToInvoiceCustomizations | None = None,
    ) -> uuid.UUID:
        custom = customizations or OrderToInvoiceCustomizations()
        with self._operation(session, ctx, "order_to_invoice", order_id=order_id) as span:
            if custom.idempotency_key:
                existing = self._find_invoice_by_key(session, ctx, custom.idempotency_key)
                if existing is not None:
                    if self._allocated_order_ids(session, ctx, existing.id) != {order_id}:
                        raise ConflictError("idempotency key was already used for another document")
                    span.set_attribute("sales.idempotent_replay", True)
                    return existing.id

            order = self._lock_orders(session, ctx, [order_id]).get(order_id)
            if order is None:
                raise NotFoundError("order not found")
            self._ensure_order_invoiceable(order)
            if custom.partial is None:
                self._ensure_order_open(order)
            remaining = to_money(order.remaining_amount)
            amount = self._requested_amount(remaining, custom.partial)
            company = self._require_company(session, ctx, order.company_id)

            invoice = self._create_order_invoice(
                session,
                ctx,
                [(order, amount)],
                custom,
                company=company,
                contact_id=order.contact_id,
            )
            self._settle_source_quotes(session, ctx, [order])
            session.commit()

            span.set_attribute("invoice_id", str(invoice.id))
            span.set_attribute("sales.amount", str(amount))
            observe_invoiced_amount("order", amount)
            audit.record(
                actor_user_id=ctx.user_id,
                entity_type="sales.invoice",
                entity_id=str(invoice.id),
                action="sales.order.invoiced",
                before={"order_id": str(order_id), "remaining_amount": str(remaining)},
                after={
                    "invoice_number": invoice.invoice_number,
                    "amount_allocated": str(amount),
                    "order_status": order.status,
                    "order_remaining_amount": str(order.remaining_amount),
                },
                correlation_id=ctx.correlation_id,
                tenant_id=invoice.tenant_id,
            )
            events.publish(
                {
                    "event_type": "sales.order.invoiced",
                    "tenant_id": invoice.tenant_id,
                    "order_id": str(order_id),
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "amount_allocated": str(amount),
                    "remaining_amount": str(order.remaining_amount),
                    "order_status": order.status,
                    "correlation_id": ctx.correlation_id,
                }
            )
            logger.info(
                "sales.order.invoiced",
                extra={
                    "operation": "order_to_invoice",
                    "order_id": str(order_id),
                    "invoice_id": str(invoice.id),
                    "document_number": invoice.invoice_number,
                    "amount": str(amount),
                    "remaining_amount": str(order.remaining_amount),
                    "status": order.status,
                    "user_id": ctx.user_id,
                },
            )
            return invoice.id

    def create_consolidated_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        orders: Sequence[ConsolidatedOrderInput],
        customizations: InvoiceCustomizations | None = None,
    ) -> uuid.UUID:
        custom = customizations or InvoiceCustomizations()
        order_ids = [entry.order_id for entry in orders]
        with self._operation(session, ctx, "consolidated_invoice", order_count=len(order_ids)) as span:
            if not order_ids:
                raise ValidationError("at least one order is required")
            if len(set(order_ids)) != len(order_ids):
                raise ValidationError("an order may appear only once in a consolidated invoice")

            if custom.idempotency_key:
                existing = self._find_invoice_by_key(session, ctx, custom.idempotency_key)
                if existing is not None:
                    if self._allocated_order_ids(session, ctx, existing.id) != set(order_ids):
                        raise ConflictError("idempotency key was already used for another document")
                    span.set_attribute("sales.idempotent_replay", True)
                    return existing.id

            locked = self._lock_orders(session, ctx, order_ids)
            missing = [str(order_id) for order_id in order_ids if order_id not in locked]
            if missing:
                raise ValidationError(f"orders not found in tenant: {', '.join(missing)}")
            sources_orders = [locked[order_id] for order_id in order_ids]

            if len({order.company_id for order in sources_orders}) > 1:
                raise ValidationError("orders belong to different companies")
            if len({order.currency for order in sources_orders}) > 1:
                raise ValidationError("orders use different currencies")

            sources: list[tuple[SalesOrder, Decimal]] = []
            for entry, order in zip(orders, sources_orders):
                self._ensure_order_invoiceable(order)
                remaining = to_money(order.remaining_amount)
                if entry.amount_allocated is None:
                    self._ensure_order_open(order)
                    amount = remaining
                else:
                    amount = to_money(entry.amount_allocated)
                    if amount <= 0:
                        raise ValidationError(f"allocation for order {order.order_number} rounds to zero")
                    if amount > remaining:
                        raise ValidationError(
                            f"allocation {amount} for order {order.order_number} exceeds remaining amount {remaining}"
                        )
                sources.append((order, amount))

            company = self._require_company(session, ctx, sources_orders[0].company_id)
            contacts = {order.contact_id for order in sources_orders}
            invoice = self._create_order_invoice(
                session,
                ctx,
                sources,
                custom,
                company=company,
                contact_id=contacts.pop() if len(contacts) == 1 else None,
            )
            self._settle_source_quotes(session, ctx, sources_orders)
            session.commit()

            total = to_money(invoice.total)
            span.set_attribute("invoice_id", str(invoice.id))
            span.set_attribute("sales.amount", str(total))
            observe_invoiced_amount("consolidated", total)
            audit.record(
                actor_user_id=ctx.user_id,
                entity_type="sales.invoice",
                entity_id=str(invoice.id),
                action="sales.invoice.consolidated",
                before=None,
                after={
                    "invoice_number": invoice.invoice_number,
                    "total": str(total),
                    "allocations": {str(order.id): str(amount) for order, amount in sources},
                },
                correlation_id=ctx.correlation_id,
                tenant_id=invoice.tenant_id,
            )
            events.publish(
                {
                    "event_type": "sales.invoice.consolidated",
                    "tenant_id": invoice.tenant_id,
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "order_ids": [str(order_id) for order_id in order_ids],
                    "total": str(total),
                    "correlation_id": ctx.correlation_id,
                }
            )
            logger.info(
                "sales.invoice.consolidated",
                extra={
                    "operation": "consolidated_invoice",
                    "invoice_id": str(invoice.id),
                    "order_ids": [str(order_id) for order_id in order_ids],
                    "document_number": invoice.invoice_number,
                    "amount": str(total),
                    "user_id": ctx.user_id,
                },
            )
            return invoice.id

    def convert_order_to_delivery_note(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        customizations: DeliveryNoteCustomizations | None = None,
    ) -> DeliveryNoteRead:
        custom = customizations or DeliveryNoteCustomizations()
        with self._operation(session, ctx, "order_to_delivery_note", order_id=order_id) as span:
            order = self._lock_orders(session, ctx, [order_id]).get(order_id)
            if order is None:
                raise NotFoundError("order not found")
            if order.status == OrderStatus.CANCELLED:
                raise ConflictError(f"order {order.order_number} is cancelled and cannot be delivered")
            note = self._create_delivery_note(session, ctx, order, custom, order_id=order.id, invoice_id=None)
            session.commit()

            span.set_attribute("delivery_note_id", str(note.id))
            self._record_delivery_note(ctx, note, "order_to_delivery_note", source=order.order_number)
            return DeliveryNoteRead.model_validate(self._get_delivery_note(session, ctx, note.id))

    def convert_invoice_to_delivery_note(
        self,
        session: Session,
        ctx: AuthContext,
        invoice_id: uuid.UUID,
        customizations: DeliveryNoteCustomizations | None = None,
    ) -> DeliveryNoteRead:
        custom = customizations or DeliveryNoteCustomizations()
        with self._operation(session, ctx, "invoice_to_delivery_note", invoice_id=invoice_id) as span:
            stmt = (
                select(SalesInvoice)
                .where(SalesInvoice.id == invoice_id)
                .options(selectinload(SalesInvoice.lines))
                .execution_options(populate_existing=True)
                .with_for_update()
            )
            invoice = session.scalar(self.invoice_repository.apply_scope_query(stmt, ctx))
            if invoice is None:
                raise NotFoundError("invoice not found")
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ConflictError(f"invoice {invoice.invoice_number} is cancelled and cannot be delivered")
            note = self._create_delivery_note(session, ctx, invoice, custom, order_id=None, invoice_id=invoice.id)
            session.commit()

            span.set_attribute("delivery_note_id", str(note.id))
            self._record_delivery_note(ctx, note, "invoice_to_delivery_note", source=invoice.invoice_number)
            return DeliveryNoteRead.model_validate(self._get_delivery_note(session, ctx, note.id))

    def get_document_chain(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> DocumentChainRead:
        tenant_id = self.quote_repository.tenant_id(ctx)
        with traced(TRACER_NAME, "sales.workflow.document_chain", tenant_id=tenant_id, quote_id=quote_id):
            quote = session.scalar(
                self.quote_repository.apply_scope_query(
                    select(SalesQuote).where(SalesQuote.id == quote_id).options(selectinload(SalesQuote.lines)),
                    ctx,
                )
            )
            if quote is None:
                raise NotFoundError("quote not found")

            orders = session.scalars(
                self.order_repository.apply_scope_query(
                    select(SalesOrder)
                    .where(SalesOrder.quote_id == quote.id)
                    .options(selectinload(SalesOrder.lines))
                    .order_by(SalesOrder.created_at, SalesOrder.order_number),
                    ctx,
                )
            ).all()

            allocations: Sequence[SalesInvoiceOrder] = []
            if orders:
                allocations = session.scalars(
                    self.allocation_repository.apply_scope_query(
                        select(SalesInvoiceOrder)
                        .where(SalesInvoiceOrder.order_id.in_([order.id for order in orders]))
                        .order_by(SalesInvoiceOrder.created_at),
                        ctx,
                    )
                ).all()

            direct_invoice_ids = session.scalars(
                self.invoice_repository.apply_scope_query(
                    select(SalesInvoice.id).where(SalesInvoice.quote_id == quote.id),
                    ctx,
                )
            ).all()
            invoice_ids = set(direct_invoice_ids) | {allocation.invoice_id for allocation in allocations}

            invoices: Sequence[SalesInvoice] = []
            if invoice_ids:
                invoices = session.scalars(
                    self.invoice_repository.apply_scope_query(
                        select(SalesInvoice)
                        .where(SalesInvoice.id.in_(list(invoice_ids)))
                        .options(selectinload(SalesInvoice.lines))
                        .order_by(SalesInvoice.created_at, SalesInvoice.invoice_number),
                        ctx,
                    )
                ).all()

            delivery_notes: Sequence[SalesDeliveryNote] = []
            order_ids = [order.id for order in orders]
            if order_ids or invoice_ids:
                delivery_notes = session.scalars(
                    self.delivery_note_repository.apply_scope_query(
                        select(SalesDeliveryNote)
                        .where(
                            or_(
                                SalesDeliveryNote.order_id.in_(order_ids),
                                SalesDeliveryNote.invoice_id.in_(list(invoice_ids)),
                            )
                        )
                        .options(selectinload(SalesDeliveryNote.lines))
                        .order_by(SalesDeliveryNote.created_at, SalesDeliveryNote.delivery_number),
                        ctx,
                    )
                ).all()

            return DocumentChainRead(
                quote=QuoteRead.model_validate(quote),
                orders=[OrderRead.model_validate(order) for order in orders],
                invoices=[InvoiceRead.model_validate(invoice) for invoice in invoices],
                allocations=[AllocationRead.model_validate(allocation) for allocation in allocations],
                delivery_notes=[DeliveryNoteRead.model_validate(note) for note in delivery_notes],
            )

    @contextmanager
    def _operation(self, session: Session, ctx: AuthContext, kind: str, **attributes: Any) -> Iterator[Span]:
        tenant_id = self.quote_repository.tenant_id(ctx)
        token = set_tenant_id(tenant_id) if get_tenant_id() is None else None
        started = perf_counter()
        try:
            with traced(
                TRACER_NAME,
                f"sales.workflow.{kind}",
                tenant_id=tenant_id,
                user_id=ctx.user_id,
                correlation_id=ctx.correlation_id,
                **attributes,
            ) as span:
                try:
                    yield span
                except SalesError as exc:
                    session.rollback()
                    span.set_attribute("sales.outcome", "rejected")
                    observe_conversion(kind, "rejected", perf_counter() - started)
                    logger.warning(
                        "sales.workflow.rejected",
                        extra={"operation": kind, "error": exc.message, "status_code": exc.status_code},
                    )
                    raise
                except Exception:
                    session.rollback()
                    span.set_attribute("sales.outcome", "error")
                    observe_conversion(kind, "error", perf_counter() - started)
                    logger.exception("sales.workflow.failed", extra={"operation": kind})
                    raise
                span.set_attribute("sales.outcome", "success")
                observe_conversion(kind, "success", perf_counter() - started)
        finally:
            if token is not None:
                reset_tenant_id(token)

    def _create_order_invoice(
        self,
        session: Session,
        ctx: AuthContext,
        sources: Sequence[tuple[SalesOrder, Decimal]],
        custom: InvoiceCustomizations,
        *,
        company: CRMCompany,
        contact_id: uuid.UUID | None,
    ) -> SalesInvoice:
        """Invoice the given slice of each order, allocate it and re-derive the orders."""

        first = sources[0][0]
        issue_date, due_date, payment_terms = self._invoice_dates(custom, company)
        invoice_payload = {
            "tenant_id": first.tenant_id,
            "company_id": first.company_id,
            "contact_id": contact_id,
            "quote_id": None,
            "invoice_number": next_number(session, SalesInvoice, "invoice_number", first.tenant_id, INVOICE_PREFIX),
            "status": InvoiceStatus.DRAFT.value,
            "issue_date": issue_date,
            "due_date": due_date,
            "payment_terms": payment_terms,
            "currency": first.currency,
            "token": new_invoice_token(),
            "notes": custom.notes,
            "terms": custom.terms,
            "idempotency_key": custom.idempotency_key,
            "created_by": ctx.user_id,
        }
        self.invoice_repository.validate_write_security(invoice_payload, ctx, action="create")

        invoice = SalesInvoice(**invoice_payload)
        session.add(invoice)
        session.flush()

        sort_order = 0
        total = ZERO
        tax_total = ZERO
        for order, amount in sources:
            full = amount == to_money(order.remaining_amount)
            lines = list(order.lines)
            for line, share in zip(lines, self._line_shares(order, lines, amount)):
                if share == 0:
                    continue
                quantity = self._quantity_slice(line, share, full)
                tax = self._tax_slice(line, share)
                values = self._copy_line(line, quote_line_id=line.quote_line_id)
                values.update(
                    {
                        "order_line_id": line.id,
                        "quantity": quantity,
                        "tax_amount": tax,
                        "line_total": share,
                        "sort_order": sort_order,
                    }
                )
                session.add(SalesInvoiceLine(invoice_id=invoice.id, **values))
                sort_order += 1

                line.invoiced_amount = to_money(Decimal(line.invoiced_amount) + share)
                line.invoiced_quantity = to_quantity(min(Decimal(line.quantity), Decimal(line.invoiced_quantity) + quantity))
                total += share
                tax_total += tax
            self.ledger.allocate(session, ctx, invoice=invoice, order=order, amount=amount)

        invoice.subtotal = total - tax_total
        invoice.tax_total = tax_total
        invoice.discount_total = ZERO
        invoice.total = total
        invoice.paid_amount = ZERO
        invoice.remaining_amount = total
        session.flush()

        for order, _ in sources:
            self.ledger.recompute_order(session, ctx, order)
        return invoice

    def _create_delivery_note(
        self,
        session: Session,
        ctx: AuthContext,
        source: SalesOrder | SalesInvoice,
        custom: DeliveryNoteCustomizations,
        *,
        order_id: uuid.UUID | None,
        invoice_id: uuid.UUID | None,
    ) -> SalesDeliveryNote:
        """Copy a shippable snapshot of an order or invoice; nothing on the source changes."""

        if not source.lines:
            raise ValidationError("source document has no line items")
        if custom.delivery_number:
            taken = session.scalar(
                self.delivery_note_repository.apply_scope_query(
                    select(SalesDeliveryNote.id).where(SalesDeliveryNote.delivery_number == custom.delivery_number),
                    ctx,
                )
            )
            if taken is not None:
                raise ConflictError(f"delivery number {custom.delivery_number} is already in use")
            delivery_number = custom.delivery_number
        else:
            delivery_number = next_number(
                session, SalesDeliveryNote, "delivery_number", source.tenant_id, DELIVERY_PREFIX
            )
        ship_date = custom.ship_date or date.today()
        if custom.delivery_date is not None and custom.delivery_date < ship_date:
            raise ValidationError("delivery date must not be before the ship date")

        payload = {
            "tenant_id": source.tenant_id,
            "company_id": source.company_id,
            "contact_id": source.contact_id,
            "order_id": order_id,
            "invoice_id": invoice_id,
            "delivery_number": delivery_number,
            "status": DeliveryNoteStatus.PENDING.value,
            "ship_date": ship_date,
            "delivery_date": custom.delivery_date,
            "shipping_address": custom.shipping_address,
            "carrier": custom.carrier,
            "tracking_number": custom.tracking_number,
            "subtotal": to_money(source.subtotal),
            "tax_total": to_money(source.tax_total),
            "total": to_money(source.total),
            "notes": custom.notes if custom.notes is not None else source.notes,
            "terms": source.terms,
            "created_by": ctx.user_id,
        }
        self.delivery_note_repository.validate_write_security(payload, ctx, action="create")

        note = SalesDeliveryNote(**payload)
        session.add(note)
        session.flush()
        for index, line in enumerate(source.lines):
            session.add(
                SalesDeliveryNoteLine(
                    delivery_note_id=note.id,
                    product_id=line.product_id,
                    name=line.name,
                    description=line.description,
                    sku=line.sku,
                    quantity=to_quantity(line.quantity),
                    unit=line.unit,
                    unit_price=to_money(line.unit_price),
                    discount=to_rate(line.discount),
                    line_total=to_money(line.line_total),
                    sort_order=index,
                )
            )
        session.flush()
        return note

    def _record_delivery_note(self, ctx: AuthContext, note: SalesDeliveryNote, kind: str, *, source: str) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="sales.delivery_note",
            entity_id=str(note.id),
            action=f"sales.{kind}",
            before={"source": source},
            after={"delivery_number": note.delivery_number, "total": str(note.total)},
            correlation_id=ctx.correlation_id,
            tenant_id=note.tenant_id,
        )
        events.publish(
            {
                "event_type": "sales.delivery_note.created",
                "tenant_id": note.tenant_id,
                "delivery_note_id": str(note.id),
                "delivery_number": note.delivery_number,
                "order_id": str(note.order_id) if note.order_id else None,
                "invoice_id": str(note.invoice_id) if note.invoice_id else None,
                "correlation_id": ctx.correlation_id,
            }
        )
        logger.info(
            "sales.delivery_note.created",
            extra={
                "operation": kind,
                "delivery_note_id": str(note.id),
                "document_number": note.delivery_number,
                "amount": str(note.total),
                "user_id": ctx.user_id,
            },
        )

    def _get_delivery_note(self, session: Session, ctx: AuthContext, note_id: uuid.UUID) -> SalesDeliveryNote:
        stmt = select(SalesDeliveryNote).where(SalesDeliveryNote.id == note_id).options(selectinload(SalesDeliveryNote.lines))
        note = session.scalar(self.delivery_note_repository.apply_scope_query(stmt, ctx))
        if note is None:
            raise NotFoundError("delivery note not found")
        return note

    def _settle_source_quotes(self, session: Session, ctx: AuthContext, orders: Sequence[SalesOrder]) -> None:
        """Mark a quote converted once every order created from it is fully invoiced."""

        quote_ids = {order.quote_id for order in orders if order.quote_id is not None}
        for quote_id in quote_ids:
            siblings = session.scalars(
                self.order_repository.apply_scope_query(select(SalesOrder).where(SalesOrder.quote_id == quote_id), ctx)
            ).all()
            if any(to_money(sibling.remaining_amount) > 0 for sibling in siblings):
                continue
            quote = session.scalar(
                self.quote_repository.apply_scope_query(select(SalesQuote).where(SalesQuote.id == quote_id), ctx)
            )
            if quote is None or QuoteStatus(quote.status) not in CONVERTIBLE_QUOTE_STATUSES:
                continue
            quote.status = QuoteStatus.CONVERTED.value
            quote.updated_by = ctx.user_id
            quote.row_version += 1
        session.flush()

    @staticmethod
    def _line_shares(order: SalesOrder, lines: Sequence[SalesOrderLine], amount: Decimal) -> list[Decimal]:
        if not lines:
            raise ValidationError(f"order {order.order_number} has no line items")
        weights = [max(to_money(line.line_total) - to_money(line.invoiced_amount), ZERO) for line in lines]
        if sum(weights, ZERO) <= 0:
            weights = [to_money(line.line_total) for line in lines]
        try:
            return prorate_amount(amount, weights)
        except ValueError as exc:
            raise ValidationError(f"order {order.order_number} cannot be prorated: {exc}") from exc

    @staticmethod
    def _quantity_slice(line: SalesOrderLine, share: Decimal, full: bool) -> Decimal:
        open_quantity = max(Decimal(line.quantity) - Decimal(line.invoiced_quantity), Decimal("0"))
        if full:
            return to_quantity(open_quantity)
        line_amount = Decimal(line.line_total)
        if line_amount <= 0:
            return to_quantity(0)
        return to_quantity(min(open_quantity, Decimal(line.quantity) * share / line_amount))

    @staticmethod
    def _tax_slice(line: SalesOrderLine, share: Decimal) -> Decimal:
        line_amount = Decimal(line.line_total)
        if line_amount <= 0:
            return ZERO
        return to_money(share * Decimal(line.tax_amount) / line_amount)

    @staticmethod
    def _requested_amount(remaining: Decimal, partial: PartialInvoice | None) -> Decimal:
        if partial is None:
            amount = remaining
        elif partial.percentage is not None:
            amount = percentage_of(remaining, partial.percentage)
        else:
            amount = to_money(partial.amount)
        if amount <= 0:
            raise ValidationError("invoice amount must be positive")
        if amount > remaining:
            raise ValidationError(f"requested amount {amount} exceeds remaining amount {remaining}")
        return amount

    @staticmethod
    def _copy_line(line: Any, *, quote_line_id: uuid.UUID | None) -> dict[str, Any]:
        values = {name: getattr(line, name) for name in _LINE_COPY_FIELDS}
        values.update(
            {
                "quote_line_id": quote_line_id,
                "tax_amount": to_money(line.tax_amount),
                "line_total": to_money(line.line_total),
                "sort_order": line.sort_order,
            }
        )
        return values

    @staticmethod
    def _ensure_quote_convertible(quote: SalesQuote) -> None:
        if quote.status == QuoteStatus.CONVERTED:
            raise ConflictError("quote is already converted")
        if QuoteStatus(quote.status) not in CONVERTIBLE_QUOTE_STATUSES:
            raise ConflictError(f"quote in status {quote.status} cannot be converted")
        if not quote.lines:
            raise ValidationError("quote has no line items")

    @staticmethod
    def _ensure_order_invoiceable(order: SalesOrder) -> None:
        if OrderStatus(order.status) in NON_INVOICEABLE_ORDER_STATUSES:
            raise ConflictError(f"order {order.order_number} in status {order.status} cannot be invoiced")

    @staticmethod
    def _ensure_order_open(order: SalesOrder) -> None:
        if to_money(order.remaining_amount) <= 0:
            raise ConflictError(f"order {order.order_number} is already fully invoiced")

    @staticmethod
    def _invoice_dates(custom: InvoiceCustomizations, company: CRMCompany) -> tuple[date, date, int]:
        settings = get_settings()
        issue_date = custom.issue_date or date.today()
        if custom.payment_terms is not None:
            payment_terms = custom.payment_terms
        elif company.default_payment_terms is not None:
            payment_terms = company.default_payment_terms
        else:
            payment_terms = settings.sales_default_payment_terms_days
        due_date = custom.due_date or issue_date + timedelta(days=payment_terms)
        if due_date < issue_date:
            raise ValidationError("due date must not be before the issue date")
        return issue_date, due_date, payment_terms

    def _require_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CRMCompany:
        company = self.directory.find_company(session, ctx, company_id)
        if company is None:
            raise NotFoundError("company not found")
        return company

    def _lock_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> SalesQuote:
        stmt = (
            select(SalesQuote)
            .where(SalesQuote.id == quote_id)
            .options(selectinload(SalesQuote.lines))
            .execution_options(populate_existing=True)
            .with_for_update()
        )
        quote = session.scalar(self.quote_repository.apply_scope_query(stmt, ctx))
        if quote is None:
            raise NotFoundError("quote not found")
        return quote

    def _lock_orders(self, session: Session, ctx: AuthContext, order_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, SalesOrder]:
        # Fixed lock order keeps concurrent consolidations from deadlocking.
        stmt = (
            select(SalesOrder)
            .where(SalesOrder.id.in_(list(order_ids)))
            .options(selectinload(SalesOrder.lines))
            .order_by(SalesOrder.id)
            .execution_options(populate_existing=True)
            .with_for_update()
        )
        rows = session.scalars(self.order_repository.apply_scope_query(stmt, ctx)).all()
        return {row.id: row for row in rows}

    def _get_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> SalesOrder:
        stmt = select(SalesOrder).where(SalesOrder.id == order_id).options(selectinload(SalesOrder.lines))
        order = session.scalar(self.order_repository.apply_scope_query(stmt, ctx))
        if order is None:
            raise NotFoundError("order not found")
        return order

    def _find_order_by_key(self, session: Session, ctx: AuthContext, key: str) -> SalesOrder | None:
        stmt = select(SalesOrder).where(SalesOrder.idempotency_key == key).options(selectinload(SalesOrder.lines))
        return session.scalar(self.order_repository.apply_scope_query(stmt, ctx))

    def _find_invoice_by_key(self, session: Session, ctx: AuthContext, key: str) -> SalesInvoice | None:
        stmt = select(SalesInvoice).where(SalesInvoice.idempotency_key == key)
        return session.scalar(self.invoice_repository.apply_scope_query(stmt, ctx))

    def _allocated_order_ids(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> set[uuid.UUID]:
        stmt = select(SalesInvoiceOrder.order_id).where(SalesInvoiceOrder.invoice_id == invoice_id)
        return set(session.scalars(self.allocation_repository.apply_scope_query(stmt, ctx)).all())


document_workflow_service = DocumentWorkflowService()
