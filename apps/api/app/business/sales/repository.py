from __future__ import annotations

from app.platform.security.repository import BaseRepository


class SalesQuoteRepository(BaseRepository):
    resource = "sales.quote"


class SalesOrderRepository(BaseRepository):
    resource = "sales.order"


class SalesInvoiceRepository(BaseRepository):
    resource = "sales.invoice"


class SalesAllocationRepository(BaseRepository):
    resource = "sales.invoice_order"


class SalesDeliveryNoteRepository(BaseRepository):
    resource = "sales.delivery_note"
