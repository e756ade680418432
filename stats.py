# stats.py
"""
Dashboard and report figures computed over a user's invoices.

All functions are pure: they take already-loaded Invoice rows (with client
and payment relationships available) and a reference ``today``.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from dateutil.relativedelta import relativedelta

from billing import INVOICE_STATUSES

REPORT_RANGES = ("last30days", "last3months", "last6months", "lastyear")
DEFAULT_REPORT_RANGE = "last6months"


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def _revenue_date(inv) -> Optional[date]:
    # Payment date when captured, otherwise the invoice date
    payment = getattr(inv, "payment", None)
    if payment is not None and payment.paid_at is not None:
        return _as_date(payment.paid_at)
    return _as_date(inv.issue_date)


def _sum_totals(invoices) -> float:
    return sum(float(inv.total or 0.0) for inv in invoices)


def _in_month(d: Optional[date], year: int, month: int) -> bool:
    return d is not None and d.year == year and d.month == month


def dashboard_stats(invoices: Iterable, total_clients: int, today: Optional[date] = None, recent: int = 5) -> dict:
    today = today or date.today()
    invoices = list(invoices)
    paid = [inv for inv in invoices if inv.status == "paid"]
    unpaid = [inv for inv in invoices if inv.status == "unpaid"]

    last_month = today.replace(day=1) - relativedelta(months=1)
    monthly_revenue = _sum_totals(
        inv for inv in paid if _in_month(_revenue_date(inv), today.year, today.month)
    )
    last_month_revenue = _sum_totals(
        inv for inv in paid if _in_month(_revenue_date(inv), last_month.year, last_month.month)
    )
    growth_rate = (
        (monthly_revenue - last_month_revenue) / last_month_revenue * 100
        if last_month_revenue > 0 else 0.0
    )

    newest = sorted(invoices, key=lambda inv: inv.created_at or datetime.min, reverse=True)[:recent]

    return {
        "totalRevenue": _sum_totals(paid),
        "pendingAmount": _sum_totals(unpaid),
        "totalInvoices": len(invoices),
        "paidInvoices": len(paid),
        "unpaidInvoices": len(unpaid),
        "totalClients": total_clients,
        "monthlyRevenue": monthly_revenue,
        "growthRate": growth_rate,
        "recentInvoices": [inv.to_dict() for inv in newest],
    }


def report_window(range_key: str, today: Optional[date] = None) -> tuple[date, date]:
    """Return (start, end) issue dates for a named report range."""
    today = today or date.today()
    if range_key == "last30days":
        return today - timedelta(days=30), today
    if range_key == "last3months":
        return today - relativedelta(months=3), today
    if range_key == "lastyear":
        return today - relativedelta(years=1), today
    return today - relativedelta(months=6), today


def monthly_revenue(invoices: Iterable, today: Optional[date] = None, months: int = 6) -> list[dict]:
    """Paid revenue per calendar month for the trailing ``months`` months, oldest first."""
    today = today or date.today()
    buckets: "OrderedDict[tuple[int, int], dict]" = OrderedDict()
    first = today.replace(day=1) - relativedelta(months=months - 1)
    for i in range(months):
        m = first + relativedelta(months=i)
        buckets[(m.year, m.month)] = {"month": m.strftime("%b"), "year": m.year, "revenue": 0.0, "invoices": 0}

    for inv in invoices:
        d = _as_date(inv.issue_date)
        if inv.status != "paid" or d is None:
            continue
        bucket = buckets.get((d.year, d.month))
        if bucket is not None:
            bucket["revenue"] += float(inv.total or 0.0)
            bucket["invoices"] += 1
    return list(buckets.values())


def status_breakdown(invoices: Iterable) -> list[dict]:
    invoices = list(invoices)
    return [
        {"status": status.title(), "count": sum(1 for inv in invoices if inv.status == status)}
        for status in INVOICE_STATUSES
    ]


def top_clients(invoices: Iterable, limit: int = 5) -> list[dict]:
    acc: dict[str, dict] = {}
    for inv in invoices:
        client = getattr(inv, "client", None)
        name = (client.name if client is not None else "") or "Unknown"
        row = acc.setdefault(name, {"client": name, "revenue": 0.0, "invoices": 0})
        if inv.status == "paid":
            row["revenue"] += float(inv.total or 0.0)
        row["invoices"] += 1
    return sorted(acc.values(), key=lambda r: r["revenue"], reverse=True)[:limit]


def yearly_revenue(invoices: Iterable, today: Optional[date] = None, years: int = 3) -> list[dict]:
    today = today or date.today()
    invoices = list(invoices)
    out = []
    for year in range(today.year - years + 1, today.year + 1):
        revenue = _sum_totals(
            inv for inv in invoices
            if inv.status == "paid" and _as_date(inv.issue_date) is not None and inv.issue_date.year == year
        )
        out.append({"year": str(year), "revenue": revenue})
    return out


def build_report(invoices: Iterable, today: Optional[date] = None) -> dict:
    invoices = list(invoices)
    return {
        "monthlyRevenue": monthly_revenue(invoices, today),
        "paymentStatus": status_breakdown(invoices),
        "topClients": top_clients(invoices),
        "yearlyGrowth": yearly_revenue(invoices, today),
    }
