# billing.py
"""
GST totals for invoices.

Line items are anything exposing ``quantity``, ``rate`` and ``tax_percentage``
(ORM rows, pydantic models, simple namedtuples). Nothing here rounds; callers
format money to 2 places for display only.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

GST_RATES = (0, 5, 12, 18, 28)
DEFAULT_GST_RATE = 18

INVOICE_STATUSES = ("unpaid", "paid", "partial", "cancelled")
PAYMENT_METHODS = ("bank_transfer", "cash", "upi", "other")
PAYMENT_STATUSES = ("created", "authorized", "captured", "refunded", "failed")


class LineItemLike(Protocol):
    quantity: int
    rate: float
    tax_percentage: int


@dataclass(frozen=True)
class Totals:
    subtotal: float = 0.0
    tax_amount: float = 0.0
    total: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {"subtotal": self.subtotal, "taxAmount": self.tax_amount, "total": self.total}


def base_amount(quantity, rate) -> float:
    """Pre-tax value of a line: quantity x rate."""
    return float(quantity or 0) * float(rate or 0.0)


def line_tax(quantity, rate, tax_percentage) -> float:
    return base_amount(quantity, rate) * float(tax_percentage or 0) / 100.0


def line_amount(quantity, rate, tax_percentage) -> float:
    """Stored per-item amount, tax inclusive."""
    return base_amount(quantity, rate) + line_tax(quantity, rate, tax_percentage)


def compute_totals(items: Iterable[LineItemLike]) -> Totals:
    subtotal = 0.0
    tax_amount = 0.0
    for item in items:
        subtotal += base_amount(item.quantity, item.rate)
        tax_amount += line_tax(item.quantity, item.rate, item.tax_percentage)
    return Totals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)


def payment_id_for(invoice_number: str, epoch_ms: int) -> str:
    # PAY-<invoice number>-<last 6 digits of the millisecond clock>
    return f"PAY-{invoice_number}-{str(int(epoch_ms))[-6:]}"
