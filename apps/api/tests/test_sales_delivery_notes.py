from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.business.sales.errors import ConflictError, NotFoundError, ValidationError
from app.business.sales.models import SalesDeliveryNote
from app.business.sales.schemas import (
    DeliveryNoteCustomizations,
    DeliveryNoteUpdate,
    LineItemInput,
    OrderCreate,
    QuoteCreate,
)
from app.business.sales.service import sales_document_service
from app.business.sales.states import DeliveryNoteStatus, OrderStatus
from app.business.sales.workflow import document_workflow_service
from app.core.config import get_settings
from app.core.database import Base
from app.crm.schemas import CompanyCreate, ContactCreate
from app.crm.service import company_directory
from app.platform.security.context import AuthContext


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
    return AuthContext(user_id="user-1", tenant_id="tenant-a", correlation_id="corr-delivery-1")


@pytest.fixture()
def company_id(db_session: Session, ctx: AuthContext):
    return company_directory.create_company(db_session, ctx, CompanyCreate(name="Acme Corp")).id


def _order(db_session: Session, ctx: AuthContext, company_id, **overrides):
    return sales_document_service.create_order(
        db_session,
        ctx,
        OrderCreate(
            company_id=company_id,
            lines=[
                LineItemInput(name="Laptop", quantity=Decimal("2"), unit_price=Decimal("900"), tax_rate=Decimal("20")),
                LineItemInput(name="Dock", quantity=Decimal("1"), unit_price=Decimal("150"), unit="box"),
            ],
            **overrides,
        ),
    )


def test_order_to_delivery_note_copies_lines_and_totals(db_session: Session, ctx: AuthContext, company_id) -> None:
    contact = company_directory.create_contact(db_session, ctx, company_id, ContactCreate(first_name="Grace"))
    order = _order(db_session, ctx, company_id, contact_id=contact.id, notes="Handle with care", terms="EXW")

    note = document_workflow_service.convert_order_to_delivery_note(
        db_session,
        ctx,
        order.id,
        DeliveryNoteCustomizations(shipping_address="1 Dock Road", carrier="DHL", tracking_number="JD0001"),
    )

    assert note.delivery_number.startswith("DN-")
    assert note.status is DeliveryNoteStatus.PENDING
    assert note.order_id == order.id
    assert note.invoice_id is None
    assert note.contact_id == contact.id
    assert note.ship_date == date.today()
    assert note.delivery_date is None
    assert note.shipping_address == "1 Dock Road"
    assert note.carrier == "DHL"
    assert note.notes == "Handle with care"
    assert note.terms == "EXW"
    assert (note.subtotal, note.tax_total, note.total) == (order.subtotal, order.tax_total, order.total)
    assert [(line.name, line.quantity, line.unit) for line in note.lines] == [
        ("Laptop", Decimal("2.0000"), "pcs"),
        ("Dock", Decimal("1.0000"), "box"),
    ]
    assert [line.line_total for line in note.lines] == [line.line_total for line in order.lines]

    untouched = sales_document_service.get_order(db_session, ctx, order.id)
    assert untouched.status is OrderStatus.DRAFT
    assert untouched.remaining_amount == order.total
    assert untouched.row_version == order.row_version

    assert audit.audit_entries[-1]["action"] == "sales.order_to_delivery_note"
    assert events.published_events[-1]["event_type"] == "sales.delivery_note.created"


def test_invoice_to_delivery_note_links_the_invoice(db_session: Session, ctx: AuthContext, company_id) -> None:
    quote = sales_document_service.create_quote(
        db_session,
        ctx,
        QuoteCreate(company_id=company_id, lines=[LineItemInput(name="Desk", quantity=Decimal("3"), unit_price=Decimal("200"))]),
    )
    invoice_id = document_workflow_service.convert_quote_to_invoice(db_session, ctx, quote.id)

    note = document_workflow_service.convert_invoice_to_delivery_note(
        db_session,
        ctx,
        invoice_id,
        DeliveryNoteCustomizations(
            delivery_number="SHIP-7",
            ship_date=date(2026, 3, 1),
            delivery_date=date(2026, 3, 4),
            notes="Back entrance",
        ),
    )

    assert note.invoice_id == invoice_id
    assert note.order_id is None
    assert note.delivery_number == "SHIP-7"
    assert note.delivery_date == date(2026, 3, 4)
    assert note.notes == "Back entrance"
    assert note.total == Decimal("600.00")

    chain = document_workflow_service.get_document_chain(db_session, ctx, quote.id)
    assert [item.id for item in chain.delivery_notes] == [note.id]

    with pytest.raises(ConflictError):
        document_workflow_service.convert_invoice_to_delivery_note(
            db_session, ctx, invoice_id, DeliveryNoteCustomizations(delivery_number="SHIP-7")
        )
    assert db_session.scalar(select(func.count(SalesDeliveryNote.id))) == 1


def test_delivery_note_rejects_bad_sources(db_session: Session, ctx: AuthContext, company_id) -> None:
    order = _order(db_session, ctx, company_id)
    sales_document_service.transition_order(db_session, ctx, order.id, OrderStatus.CANCELLED)

    with pytest.raises(ConflictError):
        document_workflow_service.convert_order_to_delivery_note(db_session, ctx, order.id)
    with pytest.raises(ValidationError):
        document_workflow_service.convert_order_to_delivery_note(
            db_session,
            ctx,
            _order(db_session, ctx, company_id).id,
            DeliveryNoteCustomizations(ship_date=date(2026, 5, 2), delivery_date=date(2026, 5, 1)),
        )
    with pytest.raises(NotFoundError):
        document_workflow_service.convert_order_to_delivery_note(
            db_session, AuthContext(user_id="user-2", tenant_id="tenant-b"), order.id
        )

    assert db_session.scalar(select(func.count(SalesDeliveryNote.id))) == 0


def test_delivery_note_status_flow_stamps_dates(db_session: Session, ctx: AuthContext, company_id) -> None:
    order = _order(db_session, ctx, company_id)
    first = document_workflow_service.convert_order_to_delivery_note(db_session, ctx, order.id)
    second = document_workflow_service.convert_order_to_delivery_note(db_session, ctx, order.id)
    assert first.delivery_number != second.delivery_number

    updated = sales_document_service.update_delivery_note(
        db_session, ctx, first.id, DeliveryNoteUpdate(ship_date=None, carrier="UPS")
    )
    assert updated.ship_date is None
    assert updated.carrier == "UPS"

    in_transit = sales_document_service.transition_delivery_note(db_session, ctx, first.id, DeliveryNoteStatus.IN_TRANSIT)
    assert in_transit.ship_date == date.today()
    assert in_transit.delivery_date is None

    delivered = sales_document_service.transition_delivery_note(db_session, ctx, first.id, DeliveryNoteStatus.DELIVERED)
    assert delivered.status is DeliveryNoteStatus.DELIVERED
    assert delivered.delivery_date == date.today()
    assert delivered.updated_by == "user-1"

    with pytest.raises(ConflictError):
        sales_document_service.transition_delivery_note(db_session, ctx, first.id, DeliveryNoteStatus.PENDING)
    with pytest.raises(ConflictError):
        sales_document_service.update_delivery_note(db_session, ctx, first.id, DeliveryNoteUpdate(carrier="FedEx"))
    with pytest.raises(ConflictError):
        sales_document_service.delete_delivery_note(db_session, ctx, first.id)

    returned = sales_document_service.transition_delivery_note(db_session, ctx, first.id, DeliveryNoteStatus.RETURNED)
    assert returned.status is DeliveryNoteStatus.RETURNED

    pending = sales_document_service.list_delivery_notes(db_session, ctx, status=DeliveryNoteStatus.PENDING)
    assert [item.id for item in pending] == [second.id]
    assert len(sales_document_service.list_delivery_notes(db_session, ctx, order_id=order.id)) == 2

    sales_document_service.delete_delivery_note(db_session, ctx, second.id)
    with pytest.raises(NotFoundError):
        sales_document_service.get_delivery_note(db_session, ctx, second.id)
    assert sales_document_service.list_delivery_notes(db_session, AuthContext(user_id="u", tenant_id="tenant-b")) == []
