from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from app.business.sales.money import HUNDRED, ZERO, to_money


@dataclass(frozen=True, slots=True)
class LineAmounts:
    base: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True, slots=True)
class DocumentTotals:
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    total: Decimal


def line_total(quantity: Decimal, unit_price: Decimal, discount_pct: Decimal, tax_pct: Decimal) -> LineAmounts:
    """Price one line item; every figure is rounded to cents on the line."""

    base = to_money(Decimal(quantity) * Decimal(unit_price))
    discount_amount = to_money(base * Decimal(discount_pct) / HUNDRED)
    taxable = base - discount_amount
    tax = to_money(taxable * Decimal(tax_pct) / HUNDRED)
    return LineAmounts(
        base=base,
        discount_amount=discount_amount,
        taxable_amount=taxable,
        tax_amount=tax,
        total=taxable + tax,
    )


def document_totals(lines: Iterable[LineAmounts], discount_total: Decimal = ZERO) -> DocumentTotals:
    """Sum already-rounded line figures into document totals.

    ``discount_total`` is a document-level discount applied after tax.
    """

    subtotal = ZERO
    tax_total = ZERO
    for line in lines:
        subtotal += line.taxable_amount
        tax_total += line.tax_amount
    discount = to_money(discount_total)
    return DocumentTotals(
        subtotal=subtotal,
        tax_total=tax_total,
        discount_total=discount,
        total=subtotal + tax_total - discount,
    )
