from __future__ import annotations

from decimal import Decimal
from enum import StrEnum

from app.business.sales.errors import ConflictError


class QuoteStatus(StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"


class OrderStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    PARTIALLY_INVOICED = "partially_invoiced"
    INVOICED = "invoiced"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


class InvoiceStatus(StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    OVERDUE = "overdue"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DeliveryNoteStatus(StrEnum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    RETURNED = "returned"


VALID_QUOTE_TRANSITIONS: dict[QuoteStatus, set[QuoteStatus]] = {
    QuoteStatus.DRAFT: {
        QuoteStatus.SENT,
        QuoteStatus.ACCEPTED,
        QuoteStatus.REJECTED,
        QuoteStatus.EXPIRED,
        QuoteStatus.CONVERTED,
    },
    QuoteStatus.SENT: {
        QuoteStatus.VIEWED,
        QuoteStatus.ACCEPTED,
        QuoteStatus.REJECTED,
        QuoteStatus.EXPIRED,
        QuoteStatus.CONVERTED,
    },
    QuoteStatus.VIEWED: {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED, QuoteStatus.CONVERTED},
    QuoteStatus.ACCEPTED: {QuoteStatus.REJECTED, QuoteStatus.EXPIRED, QuoteStatus.CONVERTED},
    QuoteStatus.REJECTED: set(),
    QuoteStatus.EXPIRED: set(),
    QuoteStatus.CONVERTED: set(),
}

_ORDER_FLOW = {
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PARTIALLY_FULFILLED,
    OrderStatus.FULFILLED,
}

VALID_ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.DRAFT: {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED},
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.PARTIALLY_FULFILLED,
        OrderStatus.FULFILLED,
        OrderStatus.ON_HOLD,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.PARTIALLY_FULFILLED,
        OrderStatus.FULFILLED,
        OrderStatus.ON_HOLD,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PARTIALLY_FULFILLED: {OrderStatus.FULFILLED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED},
    OrderStatus.PARTIALLY_INVOICED: _ORDER_FLOW | {OrderStatus.ON_HOLD, OrderStatus.CANCELLED},
    OrderStatus.INVOICED: _ORDER_FLOW | {OrderStatus.ON_HOLD, OrderStatus.CANCELLED},
    OrderStatus.ON_HOLD: {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.FULFILLED: set(),
    OrderStatus.CANCELLED: set(),
}

VALID_INVOICE_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {
        InvoiceStatus.VIEWED,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.PARTIALLY_PAID,
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.VIEWED: {
        InvoiceStatus.OVERDUE,
        InvoiceStatus.PARTIALLY_PAID,
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.OVERDUE: {InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PARTIALLY_PAID: {
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.REFUNDED,
        InvoiceStatus.CANCELLED,
    },
    InvoiceStatus.PAID: {InvoiceStatus.REFUNDED},
    InvoiceStatus.CANCELLED: set(),
    InvoiceStatus.REFUNDED: set(),
}

VALID_DELIVERY_NOTE_TRANSITIONS: dict[DeliveryNoteStatus, set[DeliveryNoteStatus]] = {
    DeliveryNoteStatus.PENDING: {DeliveryNoteStatus.IN_TRANSIT, DeliveryNoteStatus.DELIVERED},
    DeliveryNoteStatus.IN_TRANSIT: {DeliveryNoteStatus.DELIVERED, DeliveryNoteStatus.RETURNED},
    DeliveryNoteStatus.DELIVERED: {DeliveryNoteStatus.RETURNED},
    DeliveryNoteStatus.RETURNED: set(),
}

# Quotes a conversion may start from.
CONVERTIBLE_QUOTE_STATUSES = frozenset(
    {QuoteStatus.DRAFT, QuoteStatus.SENT, QuoteStatus.VIEWED, QuoteStatus.ACCEPTED}
)
# Set by the allocation ledger only, never requested by a user.
DERIVED_ORDER_STATUSES = frozenset({OrderStatus.PARTIALLY_INVOICED, OrderStatus.INVOICED})
LOCKED_ORDER_STATUSES = frozenset({OrderStatus.FULFILLED, OrderStatus.CANCELLED})
NON_INVOICEABLE_ORDER_STATUSES = frozenset({OrderStatus.FULFILLED, OrderStatus.CANCELLED, OrderStatus.ON_HOLD})
LOCKED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})
UNDELETABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID})
PAYABLE_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.OVERDUE, InvoiceStatus.PARTIALLY_PAID}
)


def _check(kind: str, table: dict, current: str, target: str) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        raise ConflictError(f"invalid {kind} transition {current} -> {target}")


def ensure_quote_transition(current: str, target: str) -> QuoteStatus:
    _check("quote", VALID_QUOTE_TRANSITIONS, QuoteStatus(current), QuoteStatus(target))
    return QuoteStatus(target)


def ensure_order_transition(current: str, target: str) -> OrderStatus:
    _check("order", VALID_ORDER_TRANSITIONS, OrderStatus(current), OrderStatus(target))
    return OrderStatus(target)


def ensure_invoice_transition(current: str, target: str) -> InvoiceStatus:
    _check("invoice", VALID_INVOICE_TRANSITIONS, InvoiceStatus(current), InvoiceStatus(target))
    return InvoiceStatus(target)


def ensure_delivery_note_transition(current: str, target: str) -> DeliveryNoteStatus:
    _check("delivery note", VALID_DELIVERY_NOTE_TRANSITIONS, DeliveryNoteStatus(current), DeliveryNoteStatus(target))
    return DeliveryNoteStatus(target)


def derive_order_invoicing_status(current: str, total: Decimal, invoiced_amount: Decimal) -> OrderStatus:
    """Status an order takes once its invoiced amount is re-derived.

    Terminal and held orders keep their status; an order with nothing
    invoiced keeps its fulfillment status.
    """

    status = OrderStatus(current)
    if status in LOCKED_ORDER_STATUSES or status is OrderStatus.ON_HOLD:
        return status
    if invoiced_amount <= 0:
        return status
    if invoiced_amount >= total:
        return OrderStatus.INVOICED
    return OrderStatus.PARTIALLY_INVOICED


def derive_payment_status(current: str, total: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    status = InvoiceStatus(current)
    if paid_amount <= 0:
        return status
    if paid_amount >= total:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIALLY_PAID
