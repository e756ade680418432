# models.py
from __future__ import annotations

import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    create_engine,
    String,
    Integer,
    Float,
    Date,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)

from billing import DEFAULT_GST_RATE, compute_totals, line_amount, payment_id_for


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# -----------------------------
# SQLAlchemy base
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Tables
# -----------------------------
class InvoiceSequence(Base):
    """
    Stores the last used sequence number per invoice prefix.
    Used to generate invoice_number like: INV-0001.
    """
    __tablename__ = "invoice_sequences"
    __table_args__ = (UniqueConstraint("prefix", name="uq_invoice_sequences_prefix"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    gstin: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)     # tax ID

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    invoices: Mapped[list["Invoice"]] = relationship(back_populates="client", passive_deletes="all")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "gstin": self.gstin,
            "createdAt": _iso(self.created_at),
        }


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Human-friendly invoice number: INV-0001
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Stored totals, always derived from items by recalculate()
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid", index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    client: Mapped["Client"] = relationship(back_populates="invoices")
    items: Mapped[list["InvoiceItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.id",
    )
    payment: Mapped[Optional["PaymentRecord"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        uselist=False,
    )

    def recalculate(self) -> None:
        """Refresh per-item amounts and the stored subtotal/tax/total."""
        for item in self.items:
            item.amount = line_amount(item.quantity, item.rate, item.tax_percentage)
        totals = compute_totals(self.items)
        self.subtotal = totals.subtotal
        self.tax_amount = totals.tax_amount
        self.total = totals.total

    def mark_paid(
        self,
        method: str = "bank_transfer",
        currency: str = "INR",
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> Optional["PaymentRecord"]:
        """
        Move the invoice to "paid" and capture the payment for the current total.
        Returns the captured PaymentRecord, or None when the invoice was
        already paid (re-marking never touches the existing record).

        An invoice coming back to "paid" from another status reuses its
        single payment row, refreshed with the new capture.
        """
        if self.status == "paid" and self.payment is not None:
            return None
        self.status = "paid"

        fields = dict(
            payment_id=payment_id_for(self.invoice_number, int(time.time() * 1000)),
            order_id=order_id,
            transaction_id=transaction_id,
            method=method,
            amount=self.total,
            currency=currency,
            status="captured",
            paid_at=paid_at or utcnow(),
        )
        if self.payment is None:
            self.payment = PaymentRecord(**fields)
        else:
            for name, value in fields.items():
                setattr(self.payment, name, value)
        return self.payment

    def to_dict(self, include_client: bool = True) -> dict:
        data = {
            "id": self.id,
            "invoiceNumber": self.invoice_number,
            "clientId": self.client_id,
            "issueDate": _iso(self.issue_date),
            "dueDate": _iso(self.due_date),
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "taxAmount": self.tax_amount,
            "total": self.total,
            "status": self.status,
            "paymentDetails": self.payment.to_dict() if self.payment else None,
            "notes": self.notes,
            "termsAndConditions": self.terms_and_conditions,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_client and self.client is not None:
            data["client"] = self.client.to_dict()
        return data


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_GST_RATE)
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)     # qty x rate incl. GST

    invoice: Mapped["Invoice"] = relationship(back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": self.quantity,
            "rate": self.rate,
            "taxPercentage": self.tax_percentage,
            "amount": self.amount,
        }


class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (UniqueConstraint("invoice_id", name="uq_payment_records_invoice"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    payment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default="bank_transfer")
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="captured")
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    invoice: Mapped["Invoice"] = relationship(back_populates="payment")

    def to_dict(self) -> dict:
        return {
            "paymentId": self.payment_id,
            "orderId": self.order_id,
            "transactionId": self.transaction_id,
            "method": self.method,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "paidAt": _iso(self.paid_at),
        }


# -----------------------------
# Engine / Session factory
# -----------------------------
def make_engine(db_url: str, echo: bool = False):
    """
    Create SQLAlchemy engine.
    Note: SQLite path must exist (instance/ folder). create_app() makes it.
    """
    return create_engine(db_url, echo=echo, future=True)


def ensure_sqlite_dir(db_url: str) -> None:
    """Create the parent folder of a file-backed SQLite database (instance/ by default)."""
    url = make_url(db_url)
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


# -----------------------------
# Invoice number generator
# -----------------------------
def next_invoice_number(session, prefix: str = "INV-", seq_width: int = 4) -> str:
    """
    Returns next invoice number like INV-0001.
    Uses a per-prefix counter in invoice_sequences.

    In Postgres this is safe under concurrency when run inside a transaction.
    In SQLite, writes are serialized, so it's also effectively safe.
    """
    seq_row = session.execute(
        select(InvoiceSequence).where(InvoiceSequence.prefix == prefix)
    ).scalar_one_or_none()

    if seq_row is None:
        seq_row = InvoiceSequence(prefix=prefix, last_seq=0)
        session.add(seq_row)
        session.flush()  # ensure it has an id

    # Skip numbers already taken by explicitly numbered invoices
    while True:
        seq_row.last_seq += 1
        candidate = f"{prefix}{seq_row.last_seq:0{seq_width}d}"
        taken = session.execute(
            select(Invoice.id).where(Invoice.invoice_number == candidate)
        ).first()
        if taken is None:
            break
    session.flush()

    return candidate
