from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.business.sales.allocation import allocation_ledger
from app.business.sales.errors import ConflictError, NotFoundError, ValidationError
from app.business.sales.models import SalesInvoice, SalesInvoiceOrder, SalesOrder
from app.business.sales.schemas import (
    ConsolidatedOrderInput,
    InvoiceCustomizations,
    LineItemInput,
    OrderCreate,
    OrderToInvoiceCustomizations,
    PartialInvoice,
    QuoteCreate,
    QuoteToOrderCustomizations,
    QuoteUpdate,
)
from app.business.sales.service import sales_document_service
from app.business.sales.states import OrderStatus, QuoteStatus
from app.business.sales.workflow import document_workflow_service
from app.core.config import get_settings
from app.core.database import Base
from app.crm.schemas import CompanyCreate, ContactCreate
from app.crm.service import company_directory
from app.logging import configure_logging
from app.platform.security.context import AuthContext


configure_logging()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def ctx() -> AuthContext:
    return AuthContext(user_id="user-1", tenant_id="tenant-a", correlation_id="corr-workflow-1")


@pytest.fixture()
def company_id(db_session: Session, ctx: AuthContext):
    company = company_directory.create_company(
        db_session,
        ctx,
        CompanyCreate(name="Acme Corp", default_currency="eur", default_payment_terms=14),
    )
    return company.id


def _line(quantity: str, unit_price: str, *, tax_rate: str = "0", name: str = "Consulting") -> LineItemInput:
    return LineItemInput(name=name, quantity=Decimal(quantity), unit_price=Decimal(unit_price), tax_rate=Decimal(tax_rate))


def _quote(db_session: Session, ctx: AuthContext, company_id, *lines: LineItemInput):
    return sales_document_service.create_quote(
        db_session,
        ctx,
        QuoteCreate(company_id=company_id, lines=list(lines) or [_line("10", "100")]),
    )


def _order(db_session: Session, ctx: AuthContext, company_id, total: str, *, currency: str | None = None):
    return sales_document_service.create_order(
        db_session,
        ctx,
        OrderCreate(company_id=company_id, currency=currency, lines=[_line("1", total)]),
    )


def _allocated(db_session: Session, order_id) -> Decimal:
    amounts = db_session.scalars(select(SalesInvoiceOrder.amount_allocated).where(SalesInvoiceOrder.order_id == order_id)).all()
    return sum((Decimal(amount) for amount in amounts), Decimal("0"))


def _assert_ledger_consistent(db_session: Session, ctx: AuthContext, order_id) -> None:
    order = sales_document_service.get_order(db_session, ctx, order_id)
    assert order.remaining_amount == order.total - order.invoiced_amount
    assert _allocated(db_session, order_id) == order.invoiced_amount
    assert Decimal("0") <= order.invoiced_amount <= order.total


def test_quote_to_order_copies_lines_and_totals(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    assert quote.subtotal == Decimal("1000.00")
    assert quote.tax_total == Decimal("0.00")
    assert quote.total == Decimal("1000.00")

    order = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)

    assert order.status is OrderStatus.PENDING
    assert order.total == Decimal("1000.00")
    assert order.invoiced_amount == Decimal("0.00")
    assert order.remaining_amount == Decimal("1000.00")
    assert order.quote_id == quote.id
    assert order.currency == "EUR"
    assert order.order_number == "ORD-00001"
    assert [line.quote_line_id for line in order.lines] == [line.id for line in quote.lines]
    assert [(line.quantity, line.unit_price, line.line_total) for line in order.lines] == [
        (line.quantity, line.unit_price, line.line_total) for line in quote.lines
    ]

    refreshed = sales_document_service.get_quote(db_session, ctx, quote.id)
    assert refreshed.status is QuoteStatus.DRAFT
    assert refreshed.converted_to_order_at is not None

    published = [item for item in events.published_events if item["event_type"] == "sales.quote.converted_to_order"]
    assert published and published[-1]["order_id"] == str(order.id)
    assert published[-1]["correlation_id"] == "corr-workflow-1"
    assert any(entry["action"] == "sales.quote.converted_to_order" for entry in audit.audit_entries)


def test_quote_to_order_with_custom_lines_recomputes_totals(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)

    order = document_workflow_service.convert_quote_to_order(
        db_session,
        ctx,
        quote.id,
        QuoteToOrderCustomizations(purchase_order_number="PO-7", lines=[_line("4", "100", tax_rate="25")]),
    )

    assert order.total == Decimal("500.00")
    assert order.tax_total == Decimal("100.00")
    assert order.purchase_order_number == "PO-7"
    assert order.lines[0].quote_line_id is None


def test_quote_can_feed_several_orders_until_fully_invoiced(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    first = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)
    second = document_workflow_service.convert_quote_to_order(
        db_session,
        ctx,
        quote.id,
        QuoteToOrderCustomizations(lines=[_line("2", "100")]),
    )

    assert first.id != second.id
    assert first.order_number != second.order_number
    assert db_session.scalar(select(func.count(SalesOrder.id))) == 2

    chain = document_workflow_service.get_document_chain(db_session, ctx, quote.id)
    assert {item.id for item in chain.orders} == {first.id, second.id}

    document_workflow_service.convert_order_to_invoice(db_session, ctx, first.id)
    assert sales_document_service.get_quote(db_session, ctx, quote.id).status is QuoteStatus.DRAFT

    document_workflow_service.convert_order_to_invoice(db_session, ctx, second.id)
    assert sales_document_service.get_quote(db_session, ctx, quote.id).status is QuoteStatus.CONVERTED

    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)
    assert db_session.scalar(select(func.count(SalesOrder.id))) == 2


def test_quote_with_order_can_still_be_invoiced_directly(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    order = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)

    invoice_id = document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)

    invoice = sales_document_service.get_invoice(db_session, ctx, invoice_id)
    assert invoice.quote_id == quote.id
    assert invoice.total == Decimal("1000.00")

    converted = sales_document_service.get_quote(db_session, ctx, quote.id)
    assert converted.status is QuoteStatus.CONVERTED
    assert converted.converted_to_order_at is not None
    assert converted.converted_to_invoice_at is not None

    untouched = sales_document_service.get_order(db_session, ctx, order.id)
    assert untouched.remaining_amount == Decimal("1000.00")

    chain = document_workflow_service.get_document_chain(db_session, ctx, quote.id)
    assert [item.id for item in chain.orders] == [order.id]
    assert [item.id for item in chain.invoices] == [invoice_id]

    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)


def test_rejected_quote_cannot_be_converted(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    sales_document_service.reject_quote(db_session, ctx, quote.id)

    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)
    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)


def test_quote_to_order_idempotency_key_replays_existing_order(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    custom = QuoteToOrderCustomizations(idempotency_key="retry-1")

    first = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id, custom)
    second = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id, custom)

    assert first.id == second.id
    assert db_session.scalar(select(func.count(SalesOrder.id))) == 1

    other = _quote(db_session, ctx, company_id)
    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_order(db_session, ctx, other.id, custom)


def test_quote_to_invoice_marks_quote_converted_and_blocks_updates(
    db_session: Session,
    ctx: AuthContext,
    company_id,
) -> None:
    quote = _quote(db_session, ctx, company_id, _line("2", "100", tax_rate="20"), _line("1", "60"))

    invoice_id = document_workflow_service.convert_quote_to_invoice(
        db_session,
        ctx,
        quote.id,
        InvoiceCustomizations(issue_date=date(2026, 1, 10)),
    )

    invoice = sales_document_service.get_invoice(db_session, ctx, invoice_id)
    assert invoice.quote_id == quote.id
    assert invoice.total == Decimal("300.00")
    assert invoice.tax_total == Decimal("40.00")
    assert invoice.remaining_amount == Decimal("300.00")
    assert invoice.due_date == date(2026, 1, 24)
    assert invoice.payment_terms == 14
    assert len(invoice.lines) == 2
    assert invoice.token

    converted = sales_document_service.get_quote(db_session, ctx, quote.id)
    assert converted.status is QuoteStatus.CONVERTED
    assert converted.converted_to_invoice_at is not None

    with pytest.raises(ConflictError):
        sales_document_service.update_quote(db_session, ctx, quote.id, QuoteUpdate(notes="too late"))
    with pytest.raises(ConflictError):
        document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)


def test_invoice_due_date_before_issue_date_is_rejected(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)

    with pytest.raises(ValidationError):
        document_workflow_service.convert_quote_to_invoice(
            db_session,
            ctx,
            quote.id,
            InvoiceCustomizations(issue_date=date(2026, 3, 1), due_date=date(2026, 2, 1)),
        )

    assert db_session.scalar(select(func.count(SalesInvoice.id))) == 0
    assert sales_document_service.get_quote(db_session, ctx, quote.id).status is QuoteStatus.DRAFT


def test_partial_invoicing_by_percentage_then_remaining(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    order = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)

    first_id = document_workflow_service.convert_order_to_invoice(
        db_session,
        ctx,
        order.id,
        OrderToInvoiceCustomizations(partial=PartialInvoice(percentage=Decimal("40"))),
    )
    first = sales_document_service.get_invoice(db_session, ctx, first_id)
    assert first.total == Decimal("400.00")
    assert first.quote_id is None
    assert first.lines[0].quantity == Decimal("4.0000")
    assert first.lines[0].order_line_id == order.lines[0].id

    partial = sales_document_service.get_order(db_session, ctx, order.id)
    assert partial.invoiced_amount == Decimal("400.00")
    assert partial.remaining_amount == Decimal("600.00")
    assert partial.status is OrderStatus.PARTIALLY_INVOICED
    assert partial.lines[0].invoiced_amount == Decimal("400.00")
    _assert_ledger_consistent(db_session, ctx, order.id)
    assert sales_document_service.get_quote(db_session, ctx, quote.id).status is QuoteStatus.DRAFT

    second_id = document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)
    second = sales_document_service.get_invoice(db_session, ctx, second_id)
    assert second.total == Decimal("600.00")
    assert second.lines[0].quantity == Decimal("6.0000")

    invoiced = sales_document_service.get_order(db_session, ctx, order.id)
    assert invoiced.invoiced_amount == Decimal("1000.00")
    assert invoiced.remaining_amount == Decimal("0.00")
    assert invoiced.status is OrderStatus.INVOICED
    assert invoiced.lines[0].invoiced_quantity == Decimal("10.0000")
    _assert_ledger_consistent(db_session, ctx, order.id)

    assert sales_document_service.get_quote(db_session, ctx, quote.id).status is QuoteStatus.CONVERTED

    with pytest.raises(ConflictError):
        document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)


def test_partial_invoice_prorates_across_lines(db_session: Session, ctx: AuthContext, company_id) -> None:
    order = sales_document_service.create_order(
        db_session,
        ctx,
        OrderCreate(
            company_id=company_id,
            lines=[_line("2", "100", tax_rate="20", name="Licence"), _line("1", "60", name="Setup")],
        ),
    )
    assert order.total == Decimal("300.00")

    invoice_id = document_workflow_service.convert_order_to_invoice(
        db_session,
        ctx,
        order.id,
        OrderToInvoiceCustomizations(partial=PartialInvoice(amount=Decimal("150"))),
    )

    invoice = sales_document_service.get_invoice(db_session, ctx, invoice_id)
    assert [line.line_total for line in invoice.lines] == [Decimal("120.00"), Decimal("30.00")]
    assert [line.quantity for line in invoice.lines] == [Decimal("1.0000"), Decimal("0.5000")]
    assert invoice.tax_total == Decimal("20.00")
    assert invoice.subtotal == Decimal("130.00")
    assert invoice.total == Decimal("150.00")
    assert sum(line.line_total for line in invoice.lines) == invoice.total
    _assert_ledger_consistent(db_session, ctx, order.id)


def test_partial_invoice_over_remaining_amount_changes_nothing(db_session: Session, ctx: AuthContext, company_id) -> None:
    order = _order(db_session, ctx, company_id, "1000")

    with pytest.raises(ValidationError):
        document_workflow_service.convert_order_to_invoice(
            db_session,
            ctx,
            order.id,
            OrderToInvoiceCustomizations(partial=PartialInvoice(amount=Decimal("1200"))),
        )

    unchanged = sales_document_service.get_order(db_session, ctx, order.id)
    assert unchanged.invoiced_amount == Decimal("0.00")
    assert unchanged.remaining_amount == Decimal("1000.00")
    assert unchanged.status is OrderStatus.DRAFT
    assert unchanged.row_version == order.row_version
    assert db_session.scalar(select(func.count(SalesInvoiceOrder.id))) == 0
    assert db_session.scalar(select(func.count(SalesInvoice.id))) == 0


def test_explicit_partial_on_fully_invoiced_order_is_a_validation_error(
    db_session: Session,
    ctx: AuthContext,
    company_id,
) -> None:
    order = _order(db_session, ctx, company_id, "500")
    document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)

    with pytest.raises(ValidationError):
        document_workflow_service.convert_order_to_invoice(
            db_session,
            ctx,
            order.id,
            OrderToInvoiceCustomizations(partial=PartialInvoice(amount=Decimal("10"))),
        )
    with pytest.raises(ConflictError):
        document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)

    assert db_session.scalar(select(func.count(SalesInvoice.id))) == 1
    _assert_ledger_consistent(db_session, ctx, order.id)


def test_order_on_hold_cannot_be_invoiced(db_session: Session, ctx: AuthContext, company_id) -> None:
    order = _order(db_session, ctx, company_id, "250")
    sales_document_service.transition_order(db_session, ctx, order.id, OrderStatus.ON_HOLD)

    with pytest.raises(ConflictError):
        document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)


def test_order_to_invoice_idempotency_key_replays_existing_invoice(
    db_session: Session,
    ctx: AuthContext,
    company_id,
) -> None:
    order = _order(db_session, ctx, company_id, "1000")
    custom = OrderToInvoiceCustomizations(idempotency_key="inv-1", partial=PartialInvoice(percentage=Decimal("40")))

    first = document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id, custom)
    second = document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id, custom)

    assert first == second
    assert sales_document_service.get_order(db_session, ctx, order.id).invoiced_amount == Decimal("400.00")
    assert db_session.scalar(select(func.count(SalesInvoiceOrder.id))) == 1

    other = _order(db_session, ctx, company_id, "500")
    with pytest.raises(ConflictError):
        document_workflow_service.convert_order_to_invoice(db_session, ctx, other.id, custom)


def test_consolidated_invoice_fully_bills_every_order(db_session: Session, ctx: AuthContext, company_id) -> None:
    orders = [_order(db_session, ctx, company_id, total) for total in ("1000", "2000", "1500")]

    invoice_id = document_workflow_service.create_consolidated_invoice(
        db_session,
        ctx,
        [ConsolidatedOrderInput(order_id=order.id) for order in orders],
    )

    invoice = sales_document_service.get_invoice(db_session, ctx, invoice_id)
    assert invoice.total == Decimal("4500.00")
    assert invoice.company_id == company_id
    assert len(invoice.lines) == 3

    allocations = db_session.scalars(select(SalesInvoiceOrder).where(SalesInvoiceOrder.invoice_id == invoice_id)).all()
    assert len(allocations) == 3
    assert sum(Decimal(row.amount_allocated) for row in allocations) == invoice.total

    for order in orders:
        billed = sales_document_service.get_order(db_session, ctx, order.id)
        assert billed.remaining_amount == Decimal("0.00")
        assert billed.status is OrderStatus.INVOICED
        _assert_ledger_consistent(db_session, ctx, order.id)

    published = [item for item in events.published_events if item["event_type"] == "sales.invoice.consolidated"]
    assert published[-1]["order_ids"] == [str(order.id) for order in orders]


def test_consolidated_invoice_with_explicit_allocations(db_session: Session, ctx: AuthContext, company_id) -> None:
    first = _order(db_session, ctx, company_id, "1000")
    second = _order(db_session, ctx, company_id, "2000")

    invoice_id = document_workflow_service.create_consolidated_invoice(
        db_session,
        ctx,
        [
            ConsolidatedOrderInput(order_id=first.id, amount_allocated=Decimal("500")),
            ConsolidatedOrderInput(order_id=second.id),
        ],
    )

    assert sales_document_service.get_invoice(db_session, ctx, invoice_id).total == Decimal("2500.00")
    assert sales_document_service.get_order(db_session, ctx, first.id).status is OrderStatus.PARTIALLY_INVOICED
    assert sales_document_service.get_order(db_session, ctx, second.id).status is OrderStatus.INVOICED
    _assert_ledger_consistent(db_session, ctx, first.id)
    _assert_ledger_consistent(db_session, ctx, second.id)


def test_consolidated_invoice_rejects_invalid_batches(db_session: Session, ctx: AuthContext, company_id) -> None:
    other_company = company_directory.create_company(db_session, ctx, CompanyCreate(name="Globex"))
    first = _order(db_session, ctx, company_id, "1000")
    second = _order(db_session, ctx, company_id, "800")
    foreign = _order(db_session, ctx, other_company.id, "300")
    dollars = _order(db_session, ctx, company_id, "300", currency="USD")

    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(db_session, ctx, [])
    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session, ctx, [ConsolidatedOrderInput(order_id=first.id), ConsolidatedOrderInput(order_id=first.id)]
        )
    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session, ctx, [ConsolidatedOrderInput(order_id=first.id), ConsolidatedOrderInput(order_id=foreign.id)]
        )
    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session, ctx, [ConsolidatedOrderInput(order_id=first.id), ConsolidatedOrderInput(order_id=dollars.id)]
        )
    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session,
            ctx,
            [
                ConsolidatedOrderInput(order_id=first.id),
                ConsolidatedOrderInput(order_id=second.id, amount_allocated=Decimal("900")),
            ],
        )

    assert db_session.scalar(select(func.count(SalesInvoice.id))) == 0
    assert db_session.scalar(select(func.count(SalesInvoiceOrder.id))) == 0
    for order in (first, second):
        assert sales_document_service.get_order(db_session, ctx, order.id).remaining_amount == order.total


def test_consolidated_allocation_rounding_to_zero_is_rejected(db_session: Session, ctx: AuthContext, company_id) -> None:
    first = _order(db_session, ctx, company_id, "1000")
    second = _order(db_session, ctx, company_id, "800")

    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session,
            ctx,
            [
                ConsolidatedOrderInput(order_id=first.id),
                ConsolidatedOrderInput(order_id=second.id, amount_allocated=Decimal("0.004")),
            ],
        )

    assert db_session.scalar(select(func.count(SalesInvoice.id))) == 0
    assert db_session.scalar(select(func.count(SalesInvoiceOrder.id))) == 0
    for order in (first, second):
        _assert_ledger_consistent(db_session, ctx, order.id)
        assert sales_document_service.get_order(db_session, ctx, order.id).remaining_amount == order.total


def test_consolidated_invoice_drops_contact_when_orders_disagree(db_session: Session, ctx: AuthContext, company_id) -> None:
    contact = company_directory.create_contact(
        db_session,
        ctx,
        company_id,
        ContactCreate(first_name="Ada"),
    )
    with_contact = sales_document_service.create_order(
        db_session,
        ctx,
        OrderCreate(company_id=company_id, contact_id=contact.id, lines=[_line("1", "100")]),
    )
    without_contact = _order(db_session, ctx, company_id, "100")

    invoice_id = document_workflow_service.create_consolidated_invoice(
        db_session,
        ctx,
        [ConsolidatedOrderInput(order_id=with_contact.id), ConsolidatedOrderInput(order_id=without_contact.id)],
    )

    assert sales_document_service.get_invoice(db_session, ctx, invoice_id).contact_id is None


def test_document_chain_follows_quote_orders_and_allocated_invoices(
    db_session: Session,
    ctx: AuthContext,
    company_id,
) -> None:
    quote = _quote(db_session, ctx, company_id)
    order = document_workflow_service.convert_quote_to_order(db_session, ctx, quote.id)
    first_id = document_workflow_service.convert_order_to_invoice(
        db_session,
        ctx,
        order.id,
        OrderToInvoiceCustomizations(partial=PartialInvoice(percentage=Decimal("25"))),
    )
    second_id = document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)
    unrelated = _order(db_session, ctx, company_id, "99")
    document_workflow_service.convert_order_to_invoice(db_session, ctx, unrelated.id)

    chain = document_workflow_service.get_document_chain(db_session, ctx, quote.id)

    assert chain.quote.id == quote.id
    assert [item.id for item in chain.orders] == [order.id]
    assert {item.id for item in chain.invoices} == {first_id, second_id}
    assert sorted(item.amount_allocated for item in chain.allocations) == [Decimal("250.00"), Decimal("750.00")]
    assert chain.orders[0].status is OrderStatus.INVOICED


def test_document_chain_includes_direct_quote_invoice(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    invoice_id = document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)

    chain = document_workflow_service.get_document_chain(db_session, ctx, quote.id)

    assert chain.orders == []
    assert chain.allocations == []
    assert [item.id for item in chain.invoices] == [invoice_id]


def test_other_tenant_cannot_reach_documents(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = _quote(db_session, ctx, company_id)
    order = _order(db_session, ctx, company_id, "400")
    intruder = AuthContext(user_id="user-2", tenant_id="tenant-b")

    with pytest.raises(NotFoundError):
        document_workflow_service.convert_quote_to_order(db_session, intruder, quote.id)
    with pytest.raises(NotFoundError):
        document_workflow_service.convert_order_to_invoice(db_session, intruder, order.id)
    with pytest.raises(NotFoundError):
        document_workflow_service.get_document_chain(db_session, intruder, quote.id)
    with pytest.raises(ValidationError):
        document_workflow_service.create_consolidated_invoice(
            db_session, intruder, [ConsolidatedOrderInput(order_id=order.id)]
        )

    assert sales_document_service.get_order(db_session, ctx, order.id).remaining_amount == Decimal("400.00")


def test_ledger_rejects_stale_order_version(db_session: Session, ctx: AuthContext, company_id) -> None:
    created = _order(db_session, ctx, company_id, "700")
    order = db_session.get(SalesOrder, created.id)
    assert order is not None

    db_session.execute(
        update(SalesOrder)
        .where(SalesOrder.id == order.id)
        .values(row_version=SalesOrder.row_version + 1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConflictError):
        allocation_ledger.recompute_order(db_session, ctx, order)
    db_session.rollback()


def test_ledger_recompute_bumps_row_version(db_session: Session, ctx: AuthContext, company_id) -> None:
    created = _order(db_session, ctx, company_id, "700")
    document_workflow_service.convert_order_to_invoice(
        db_session,
        ctx,
        created.id,
        OrderToInvoiceCustomizations(partial=PartialInvoice(amount=Decimal("200"))),
    )

    order = sales_document_service.get_order(db_session, ctx, created.id)
    assert order.row_version == created.row_version + 1
    assert allocation_ledger.allocated_total(db_session, ctx, created.id) == Decimal("200.00")


def test_workflow_binds_tenant_for_logs(
    db_session: Session,
    ctx: AuthContext,
    company_id,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level("INFO", logger="app.sales.workflow")
    order = _order(db_session, ctx, company_id, "120")

    document_workflow_service.convert_order_to_invoice(db_session, ctx, order.id)

    records = [record for record in caplog.records if record.getMessage() == "sales.order.invoiced"]
    assert records
    assert getattr(records[-1], "tenant_id", None) == "tenant-a"
    assert getattr(records[-1], "order_id", None) == str(order.id)
    assert getattr(records[-1], "amount", None) == "120.00"


def test_invoice_dates_fall_back_to_settings(db_session: Session, ctx: AuthContext) -> None:
    company = company_directory.create_company(db_session, ctx, CompanyCreate(name="Initech"))
    quote = _quote(db_session, ctx, company.id)

    invoice_id = document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)

    invoice = sales_document_service.get_invoice(db_session, ctx, invoice_id)
    assert invoice.currency == "EUR"
    assert invoice.payment_terms == get_settings().sales_default_payment_terms_days
    assert invoice.due_date == invoice.issue_date + timedelta(days=invoice.payment_terms)
