from datetime import date, datetime

import pytest

from models import Client, Invoice, InvoiceItem
from stats import (
    build_report,
    dashboard_stats,
    monthly_revenue,
    report_window,
    status_breakdown,
    top_clients,
    yearly_revenue,
)


def _invoice(number, client, issued, rate, status="unpaid", paid_at=None, created_at=None):
    inv = Invoice(
        invoice_number=number,
        client=client,
        issue_date=issued,
        due_date=issued,
        status="unpaid",
        created_by="u1",
        created_at=created_at or datetime(issued.year, issued.month, issued.day),
        items=[InvoiceItem(description="Work", quantity=1, rate=rate, tax_percentage=0)],
    )
    inv.recalculate()
    if status == "paid":
        inv.mark_paid(paid_at=paid_at or datetime(issued.year, issued.month, issued.day))
    else:
        inv.status = status
    return inv


@pytest.fixture
def clients():
    return (
        Client(name="Globex", email="a@globex.in", address="Mumbai", created_by="u1"),
        Client(name="Initech", email="b@initech.in", address="Pune", created_by="u1"),
    )


@pytest.fixture
def invoices(clients):
    globex, initech = clients
    return [
        _invoice("INV-0001", globex, date(2023, 12, 10), 100.0, "paid"),
        _invoice("INV-0002", initech, date(2023, 12, 28), 300.0, "paid", paid_at=datetime(2024, 1, 3)),
        _invoice("INV-0003", globex, date(2024, 1, 8), 200.0, "paid"),
        _invoice("INV-0004", initech, date(2024, 1, 12), 50.0),
        _invoice("INV-0005", globex, date(2024, 1, 14), 75.0, "cancelled"),
    ]


def test_dashboard_totals(invoices):
    stats = dashboard_stats(invoices, total_clients=2, today=date(2024, 1, 20))

    assert stats["totalRevenue"] == pytest.approx(600.0)
    assert stats["pendingAmount"] == pytest.approx(50.0)
    assert stats["totalInvoices"] == 5
    assert stats["paidInvoices"] == 3
    assert stats["unpaidInvoices"] == 1
    assert stats["totalClients"] == 2


def test_dashboard_monthly_revenue_follows_payment_date(invoices):
    stats = dashboard_stats(invoices, total_clients=2, today=date(2024, 1, 20))

    # INV-0002 was issued in December but paid in January
    assert stats["monthlyRevenue"] == pytest.approx(500.0)


def test_growth_rate_compares_against_previous_december(invoices):
    stats = dashboard_stats(invoices, total_clients=2, today=date(2024, 1, 20))

    assert stats["growthRate"] == pytest.approx(400.0)


def test_growth_rate_zero_without_previous_month(invoices):
    stats = dashboard_stats(invoices[2:], total_clients=2, today=date(2024, 1, 20))
    assert stats["growthRate"] == 0.0


def test_recent_invoices_newest_first(invoices):
    stats = dashboard_stats(invoices, total_clients=2, today=date(2024, 1, 20), recent=2)

    assert [inv["invoiceNumber"] for inv in stats["recentInvoices"]] == ["INV-0005", "INV-0004"]


def test_dashboard_empty():
    stats = dashboard_stats([], total_clients=0, today=date(2024, 1, 20))
    assert stats["totalRevenue"] == 0
    assert stats["growthRate"] == 0.0
    assert stats["recentInvoices"] == []


@pytest.mark.parametrize("key, start", [
    ("last30days", date(2024, 2, 14)),
    ("last3months", date(2023, 12, 15)),
    ("last6months", date(2023, 9, 15)),
    ("lastyear", date(2023, 3, 15)),
])
def test_report_window(key, start):
    assert report_window(key, date(2024, 3, 15)) == (start, date(2024, 3, 15))


def test_monthly_revenue_buckets_trailing_months(invoices):
    rows = monthly_revenue(invoices, today=date(2024, 3, 10))

    assert [r["month"] for r in rows] == ["Oct", "Nov", "Dec", "Jan", "Feb", "Mar"]
    dec, jan = rows[2], rows[3]
    assert dec["revenue"] == pytest.approx(400.0)
    assert dec["invoices"] == 2
    assert jan["revenue"] == pytest.approx(200.0)


def test_status_breakdown_counts_every_status(invoices):
    assert status_breakdown(invoices) == [
        {"status": "Unpaid", "count": 1},
        {"status": "Paid", "count": 3},
        {"status": "Partial", "count": 0},
        {"status": "Cancelled", "count": 1},
    ]


def test_top_clients_ranked_by_paid_revenue(invoices, clients):
    invoices.append(_invoice("INV-0006", clients[1], date(2024, 1, 15), 25.0, "paid"))

    rows = top_clients(invoices)

    assert rows[0] == {"client": "Initech", "revenue": pytest.approx(325.0), "invoices": 3}
    assert rows[1] == {"client": "Globex", "revenue": pytest.approx(300.0), "invoices": 3}
    assert top_clients(invoices, limit=1) == rows[:1]


def test_yearly_revenue_three_years(invoices):
    rows = yearly_revenue(invoices, today=date(2024, 6, 1))

    assert [r["year"] for r in rows] == ["2022", "2023", "2024"]
    assert rows[1]["revenue"] == pytest.approx(400.0)
    assert rows[2]["revenue"] == pytest.approx(200.0)


def test_build_report_sections(invoices):
    report = build_report(invoices, today=date(2024, 1, 20))
    assert set(report) == {"monthlyRevenue", "paymentStatus", "topClients", "yearlyGrowth"}
