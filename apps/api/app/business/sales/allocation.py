from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.business.sales.errors import ConflictError, ValidationError
from app.business.sales.models import SalesInvoice, SalesInvoiceOrder, SalesOrder, utcnow
from app.business.sales.money import ZERO, to_money
from app.business.sales.repository import SalesAllocationRepository
from app.business.sales.states import derive_order_invoicing_status
from app.metrics import observe_allocation_conflict
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.sales.workflow")


def prorate_amount(amount: Decimal, weights: Sequence[Decimal]) -> list[Decimal]:
    """Split ``amount`` across ``weights`` in cents, summing exactly to ``amount``.

    Each share is rounded half up; the residual cent(s) go to the largest
    weight, the earliest one on ties.
    """

    if not weights:
        raise ValueError("at least one weight is required")
    if any(weight < 0 for weight in weights):
        raise ValueError("weights must not be negative")
    total_weight = sum(weights, Decimal("0"))
    if total_weight <= 0:
        raise ValueError("weights must sum to a positive value")

    target = to_money(amount)
    shares = [to_money(target * Decimal(weight) / total_weight) for weight in weights]
    residual = target - sum(shares, ZERO)
    if residual:
        largest = max(range(len(weights)), key=lambda index: weights[index])
        shares[largest] += residual
    return shares


@dataclass(slots=True)
class AllocationLedger:
    """Insert-only invoice/order allocations plus re-derivation of order totals."""

    allocation_repository: SalesAllocationRepository = SalesAllocationRepository()

    def allocate(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        invoice: SalesInvoice,
        order: SalesOrder,
        amount: Decimal,
        notes: str | None = None,
    ) -> SalesInvoiceOrder:
        payload = {
            "tenant_id": order.tenant_id,
            "invoice_id": invoice.id,
            "order_id": order.id,
            "amount_allocated": to_money(amount),
            "notes": notes,
            "created_by": ctx.user_id,
        }
        self.allocation_repository.validate_write_security(payload, ctx, action="create")
        allocation = SalesInvoiceOrder(**payload)
        session.add(allocation)
        session.flush()
        return allocation

    def allocated_total(self, session: Session, ctx: AuthContext, order_id) -> Decimal:
        # Summed in Python so the result stays a Decimal on every backend.
        stmt = select(SalesInvoiceOrder.amount_allocated).where(SalesInvoiceOrder.order_id == order_id)
        amounts = session.scalars(self.allocation_repository.apply_scope_query(stmt, ctx)).all()
        return to_money(sum((Decimal(amount) for amount in amounts), ZERO))

    def recompute_order(self, session: Session, ctx: AuthContext, order: SalesOrder) -> SalesOrder:
        """Re-derive ``invoiced_amount``, ``remaining_amount`` and status from allocations.

        The order row is written with a compare-and-swap on ``row_version``;
        a concurrent writer makes this raise ``ConflictError``.
        """

        session.flush()
        seen_version = order.row_version
        total = to_money(order.total)
        invoiced = self.allocated_total(session, ctx, order.id)
        if invoiced > total:
            raise ValidationError(f"allocations for order {order.order_number} exceed its total")

        remaining = total - invoiced
        status = derive_order_invoicing_status(order.status, total, invoiced)
        now = utcnow()
        result = session.execute(
            update(SalesOrder)
            .where(
                SalesOrder.id == order.id,
                SalesOrder.tenant_id == order.tenant_id,
                SalesOrder.row_version == seen_version,
            )
            .values(
                invoiced_amount=invoiced,
                remaining_amount=remaining,
                status=status.value,
                row_version=seen_version + 1,
                updated_by=ctx.user_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            observe_allocation_conflict()
            logger.warning(
                "sales.allocation.conflict",
                extra={"order_id": str(order.id), "document_number": order.order_number, "user_id": ctx.user_id},
            )
            raise ConflictError("order was modified concurrently")

        set_committed_value(order, "invoiced_amount", invoiced)
        set_committed_value(order, "remaining_amount", remaining)
        set_committed_value(order, "status", status.value)
        set_committed_value(order, "row_version", seen_version + 1)
        set_committed_value(order, "updated_by", ctx.user_id)
        set_committed_value(order, "updated_at", now)
        return order


allocation_ledger = AllocationLedger()
