# schemas.py
"""Request payload validation for the JSON API."""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Annotated, Any, List, Literal, Optional

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from billing import DEFAULT_GST_RATE, GST_RATES

EMAIL_RE = re.compile(r"^[^<>()\[\]\\.,;:\s@\"]+(\.[^<>()\[\]\\.,;:\s@\"]+)*@([a-zA-Z0-9-]+\.)+[a-zA-Z]{2,}$")


def _date_part(value: Any) -> Any:
    # Browsers post Date objects as full ISO timestamps
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


def _not_null(value: Any) -> Any:
    if value is None:
        raise ValueError("Field cannot be null")
    return value


def _check_email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise ValueError("Please provide a valid email")
    return value


Email = Annotated[str, AfterValidator(_check_email)]
Name = Annotated[str, Field(min_length=1, max_length=100)]
Address = Annotated[str, Field(min_length=1)]
IsoDate = Annotated[date, BeforeValidator(_date_part)]
InvoiceStatus = Literal["unpaid", "paid", "partial", "cancelled"]
PaymentMethod = Literal["bank_transfer", "cash", "upi", "other"]


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


# -----------------------------
# Clients
# -----------------------------
class ClientIn(ApiModel):
    name: Name
    email: Email
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Address
    gstin: Optional[str] = Field(default=None, max_length=15)


class ClientUpdate(ApiModel):
    """Partial update; only keys present in the body are applied."""
    name: Annotated[Optional[Name], AfterValidator(_not_null)] = None
    email: Annotated[Optional[Email], AfterValidator(_not_null)] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Annotated[Optional[Address], AfterValidator(_not_null)] = None
    gstin: Optional[str] = Field(default=None, max_length=15)


# -----------------------------
# Invoices
# -----------------------------
class LineItemIn(ApiModel):
    description: str = Field(min_length=1, max_length=500)
    quantity: int = Field(ge=1)
    rate: float = Field(ge=0)
    tax_percentage: int = Field(
        default=DEFAULT_GST_RATE,
        validation_alias=AliasChoices("taxPercentage", "gstPercentage", "tax_percentage"),
    )

    @field_validator("tax_percentage")
    @classmethod
    def _known_slab(cls, value: int) -> int:
        if value not in GST_RATES:
            raise ValueError(f"GST percentage must be one of {', '.join(str(r) for r in GST_RATES)}")
        return value


class PaymentDetailsIn(ApiModel):
    method: PaymentMethod = "bank_transfer"
    currency: Optional[str] = Field(default=None, max_length=8)
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class InvoiceIn(ApiModel):
    invoice_number: Optional[str] = Field(default=None, min_length=1, max_length=32)
    client_id: int = Field(validation_alias=AliasChoices("clientId", "client", "client_id"))
    issue_date: IsoDate = Field(default_factory=date.today)
    due_date: IsoDate
    items: List[LineItemIn] = Field(default_factory=list)
    status: InvoiceStatus = "unpaid"
    payment_details: Optional[PaymentDetailsIn] = None
    notes: Optional[str] = None
    terms_and_conditions: Optional[str] = None


class InvoiceUpdate(ApiModel):
    """Partial update; only keys present in the body are applied."""
    client_id: Annotated[Optional[int], AfterValidator(_not_null)] = Field(
        default=None, validation_alias=AliasChoices("clientId", "client", "client_id")
    )
    issue_date: Annotated[Optional[IsoDate], AfterValidator(_not_null)] = None
    due_date: Annotated[Optional[IsoDate], AfterValidator(_not_null)] = None
    items: Annotated[Optional[List[LineItemIn]], AfterValidator(_not_null)] = None
    status: Annotated[Optional[InvoiceStatus], AfterValidator(_not_null)] = None
    payment_details: Optional[PaymentDetailsIn] = None
    notes: Optional[str] = None
    terms_and_conditions: Optional[str] = None


def error_list(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten pydantic errors into [{"field": "items.0.rate", "message": ...}]."""
    out = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()))
        out.append({"field": field, "message": err.get("msg", "Invalid value")})
    return out
