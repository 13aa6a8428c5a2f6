from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.business.sales.schemas import (
    ConsolidatedInvoiceCreate,
    DeliveryNoteCustomizations,
    DeliveryNoteRead,
    DeliveryNoteTransition,
    DeliveryNoteUpdate,
    DocumentChainRead,
    FulfillmentRequest,
    InvoiceCustomizations,
    InvoiceRead,
    InvoiceUpdate,
    OrderCreate,
    OrderRead,
    OrderToInvoiceCustomizations,
    OrderTransition,
    OrderUpdate,
    PaymentCreate,
    QuoteCreate,
    QuoteRead,
    QuoteToOrderCustomizations,
    QuoteUpdate,
)
from app.business.sales.service import sales_document_service
from app.business.sales.states import DeliveryNoteStatus, InvoiceStatus, OrderStatus, QuoteStatus
from app.business.sales.workflow import document_workflow_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/api/sales", tags=["sales"])


@router.post("/quotes", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    payload: QuoteCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.create_quote(db, ctx, payload)


@router.get("/quotes", response_model=list[QuoteRead])
def list_quotes(
    status_filter: QuoteStatus | None = Query(default=None, alias="status"),
    company_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[QuoteRead]:
    return sales_document_service.list_quotes(db, ctx, status=status_filter, company_id=company_id)


@router.get("/quotes/{quote_id}", response_model=QuoteRead)
def get_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.get_quote(db, ctx, quote_id)


@router.patch("/quotes/{quote_id}", response_model=QuoteRead)
def update_quote(
    quote_id: uuid.UUID,
    payload: QuoteUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.update_quote(db, ctx, quote_id, payload)


@router.delete("/quotes/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    sales_document_service.delete_quote(db, ctx, quote_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/quotes/{quote_id}/send", response_model=QuoteRead)
def send_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.send_quote(db, ctx, quote_id)


@router.post("/quotes/{quote_id}/view", response_model=QuoteRead)
def mark_quote_viewed(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.mark_quote_viewed(db, ctx, quote_id)


@router.post("/quotes/{quote_id}/accept", response_model=QuoteRead)
def accept_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.accept_quote(db, ctx, quote_id)


@router.post("/quotes/{quote_id}/reject", response_model=QuoteRead)
def reject_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.reject_quote(db, ctx, quote_id)


@router.post("/quotes/{quote_id}/expire", response_model=QuoteRead)
def expire_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> QuoteRead:
    return sales_document_service.expire_quote(db, ctx, quote_id)


@router.post("/quotes/{quote_id}/convert-to-order", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def convert_quote_to_order(
    quote_id: uuid.UUID,
    customizations: QuoteToOrderCustomizations | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return document_workflow_service.convert_quote_to_order(db, ctx, quote_id, customizations)


@router.post("/quotes/{quote_id}/convert-to-invoice", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def convert_quote_to_invoice(
    quote_id: uuid.UUID,
    customizations: InvoiceCustomizations | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    invoice_id = document_workflow_service.convert_quote_to_invoice(db, ctx, quote_id, customizations)
    return sales_document_service.get_invoice(db, ctx, invoice_id)


@router.get("/quotes/{quote_id}/chain", response_model=DocumentChainRead)
def get_document_chain(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DocumentChainRead:
    return document_workflow_service.get_document_chain(db, ctx, quote_id)


@router.post("/orders", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return sales_document_service.create_order(db, ctx, payload)


@router.get("/orders", response_model=list[OrderRead])
def list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    company_id: uuid.UUID | None = Query(default=None),
    quote_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[OrderRead]:
    return sales_document_service.list_orders(db, ctx, status=status_filter, company_id=company_id, quote_id=quote_id)


@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return sales_document_service.get_order(db, ctx, order_id)


@router.patch("/orders/{order_id}", response_model=OrderRead)
def update_order(
    order_id: uuid.UUID,
    payload: OrderUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return sales_document_service.update_order(db, ctx, order_id, payload)


@router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    sales_document_service.delete_order(db, ctx, order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/orders/{order_id}/status", response_model=OrderRead)
def transition_order(
    order_id: uuid.UUID,
    payload: OrderTransition,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return sales_document_service.transition_order(db, ctx, order_id, payload.status)


@router.post("/orders/{order_id}/fulfillment", response_model=OrderRead)
def record_fulfillment(
    order_id: uuid.UUID,
    payload: FulfillmentRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrderRead:
    return sales_document_service.record_fulfillment(db, ctx, order_id, payload)


@router.post("/orders/{order_id}/invoice", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def convert_order_to_invoice(
    order_id: uuid.UUID,
    customizations: OrderToInvoiceCustomizations | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    invoice_id = document_workflow_service.convert_order_to_invoice(db, ctx, order_id, customizations)
    return sales_document_service.get_invoice(db, ctx, invoice_id)


@router.post("/invoices/consolidated", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_consolidated_invoice(
    payload: ConsolidatedInvoiceCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    invoice_id = document_workflow_service.create_consolidated_invoice(db, ctx, payload.orders, payload.customizations)
    return sales_document_service.get_invoice(db, ctx, invoice_id)


@router.post("/invoices/refresh-overdue", response_model=list[InvoiceRead])
def refresh_overdue(
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvoiceRead]:
    return sales_document_service.refresh_overdue(db, ctx, as_of)


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    status_filter: InvoiceStatus | None = Query(default=None, alias="status"),
    company_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvoiceRead]:
    return sales_document_service.list_invoices(db, ctx, status=status_filter, company_id=company_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.get_invoice(db, ctx, invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.update_invoice(db, ctx, invoice_id, payload)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    sales_document_service.delete_invoice(db, ctx, invoice_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceRead)
def send_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.send_invoice(db, ctx, invoice_id)


@router.post("/invoices/{invoice_id}/view", response_model=InvoiceRead)
def mark_invoice_viewed(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.mark_invoice_viewed(db, ctx, invoice_id)


@router.post("/invoices/{invoice_id}/payments", response_model=InvoiceRead)
def record_payment(
    invoice_id: uuid.UUID,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.record_payment(db, ctx, invoice_id, payload)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.cancel_invoice(db, ctx, invoice_id)


@router.post("/invoices/{invoice_id}/refund", response_model=InvoiceRead)
def refund_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return sales_document_service.refund_invoice(db, ctx, invoice_id)


@router.post(
    "/orders/{order_id}/convert-to-delivery-note",
    response_model=DeliveryNoteRead,
    status_code=status.HTTP_201_CREATED,
)
def convert_order_to_delivery_note(
    order_id: uuid.UUID,
    customizations: DeliveryNoteCustomizations | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DeliveryNoteRead:
    return document_workflow_service.convert_order_to_delivery_note(db, ctx, order_id, customizations)


@router.post(
    "/invoices/{invoice_id}/convert-to-delivery-note",
    response_model=DeliveryNoteRead,
    status_code=status.HTTP_201_CREATED,
)
def convert_invoice_to_delivery_note(
    invoice_id: uuid.UUID,
    customizations: DeliveryNoteCustomizations | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DeliveryNoteRead:
    return document_workflow_service.convert_invoice_to_delivery_note(db, ctx, invoice_id, customizations)


@router.get("/delivery-notes", response_model=list[DeliveryNoteRead])
def list_delivery_notes(
    status_filter: DeliveryNoteStatus | None = Query(default=None, alias="status"),
    order_id: uuid.UUID | None = Query(default=None),
    invoice_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[DeliveryNoteRead]:
    return sales_document_service.list_delivery_notes(
        db, ctx, status=status_filter, order_id=order_id, invoice_id=invoice_id
    )


@router.get("/delivery-notes/{note_id}", response_model=DeliveryNoteRead)
def get_delivery_note(
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DeliveryNoteRead:
    return sales_document_service.get_delivery_note(db, ctx, note_id)


@router.patch("/delivery-notes/{note_id}", response_model=DeliveryNoteRead)
def update_delivery_note(
    note_id: uuid.UUID,
    payload: DeliveryNoteUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DeliveryNoteRead:
    return sales_document_service.update_delivery_note(db, ctx, note_id, payload)


@router.delete("/delivery-notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_delivery_note(
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    sales_document_service.delete_delivery_note(db, ctx, note_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/delivery-notes/{note_id}/status", response_model=DeliveryNoteRead)
def transition_delivery_note(
    note_id: uuid.UUID,
    payload: DeliveryNoteTransition,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> DeliveryNoteRead:
    return sales_document_service.transition_delivery_note(db, ctx, note_id, payload.status)


@router.get("/public/invoices/{token}", response_model=InvoiceRead)
def get_public_invoice(token: str, db: Session = Depends(get_db)) -> InvoiceRead:
    return sales_document_service.get_invoice_by_token(db, token)
