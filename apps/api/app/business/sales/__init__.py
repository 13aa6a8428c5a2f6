from app.business.sales.errors import ConflictError, NotFoundError, SalesError, ValidationError
from app.business.sales.states import InvoiceStatus, OrderStatus, QuoteStatus

__all__ = [
    "SalesError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "QuoteStatus",
    "OrderStatus",
    "InvoiceStatus",
]
