from __future__ import annotations

import secrets
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import get_settings


QUOTE_PREFIX = "QUO"
ORDER_PREFIX = "ORD"
INVOICE_PREFIX = "INV"
DELIVERY_PREFIX = "DN"


def next_number(session: Session, model: Any, column: str, tenant_id: str, prefix: str) -> str:
    """Next free ``PREFIX-00001`` style number within a tenant.

    Starts after the tenant's row count and walks forward past numbers that
    are already taken, so deleted documents never cause a reuse collision.
    """

    padding = get_settings().sales_number_padding
    number_column = getattr(model, column)
    counter = session.scalar(select(func.count()).select_from(model).where(model.tenant_id == tenant_id)) or 0
    while True:
        counter += 1
        candidate = f"{prefix}-{counter:0{padding}d}"
        taken = session.scalar(
            select(func.count()).select_from(model).where(model.tenant_id == tenant_id, number_column == candidate)
        )
        if not taken:
            return candidate


def new_invoice_token() -> str:
    return secrets.token_urlsafe(get_settings().sales_invoice_token_bytes)
