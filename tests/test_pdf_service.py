import io
import os

import pytest
from reportlab.lib.pagesizes import A4
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from app import create_app
from errors import NotFoundError
from models import InvoiceItem
from pdf_service import (
    CompanyProfile,
    HEADER_ROW_H,
    PAGE_TOP,
    ROW_H,
    TABLE_TOP,
    InvoiceLayout,
    _fmt_date,
    _money,
    _wrap_text,
    generate_invoice_pdf,
    invoice_filename,
    render_invoice_pdf,
    store_invoice_pdf,
)


def _layout(invoice, company):
    pdf = canvas.Canvas(io.BytesIO(), pagesize=A4)
    layout = InvoiceLayout(pdf, invoice, invoice.client, company)
    layout.render()
    return layout


def test_money_uses_indian_grouping():
    assert _money(1234567.891) == "Rs. 12,34,567.89"
    assert _money(500) == "Rs. 500.00"
    assert _money(100000) == "Rs. 1,00,000.00"
    assert _money(1234.5, "USD") == "USD 1,234.50"


def test_dates_print_day_first():
    assert _fmt_date("2024-01-05") == "05/01/2024"


def test_filename_strips_path_characters():
    assert invoice_filename("INV-0001") == "Invoice-INV-0001.pdf"
    assert invoice_filename("INV/2024:7") == "Invoice-INV20247.pdf"


def test_wrap_text_respects_width():
    text = "Annual maintenance contract for managed cloud servers and backups " * 3
    lines = _wrap_text(text, "Helvetica", 9, 120)

    assert len(lines) > 1
    assert all(stringWidth(ln, "Helvetica", 9) <= 120 for ln in lines)
    assert " ".join(lines) == text.strip()


def test_wrap_text_breaks_long_tokens():
    lines = _wrap_text("x" * 200, "Helvetica", 9, 50)
    assert len(lines) > 1
    assert "".join(lines) == "x" * 200


def test_render_returns_pdf_bytes(make_invoice, company):
    inv = make_invoice(n_items=2, notes="Thank you", terms_and_conditions="Payment due in 30 days")
    data = render_invoice_pdf(inv, inv.client, company)
    assert data.startswith(b"%PDF")


def test_small_invoice_fits_one_page(make_invoice, company):
    layout = _layout(make_invoice(n_items=2), company)

    assert layout.page == 1
    assert layout.row_positions == [
        (1, TABLE_TOP + HEADER_ROW_H),
        (1, TABLE_TOP + HEADER_ROW_H + ROW_H),
    ]


def test_rows_continue_on_next_page(make_invoice, company):
    layout = _layout(make_invoice(n_items=12), company)

    first_page = [pos for pos in layout.row_positions if pos[0] == 1]
    assert len(first_page) == 11
    assert layout.row_positions[11] == (2, PAGE_TOP + HEADER_ROW_H)
    assert layout.page == 2


def test_totals_move_to_next_page_when_table_fills_first(make_invoice, company):
    layout = _layout(make_invoice(n_items=11), company)

    assert {page for page, _ in layout.row_positions} == {1}
    assert layout.page == 2


def test_wrapped_description_grows_row(make_invoice, company):
    inv = make_invoice(n_items=1)
    inv.items.insert(0, InvoiceItem(
        description="Design, development and deployment of the customer onboarding portal "
                    "including three rounds of revisions",
        quantity=1, rate=25000.0, tax_percentage=18,
    ))
    inv.recalculate()

    layout = _layout(inv, company)

    (_, first_top), (_, second_top) = layout.row_positions
    assert second_top - first_top > ROW_H


def test_paid_banner_lists_payment(make_invoice, company):
    inv = make_invoice(n_items=1)
    payment = inv.mark_paid(method="bank_transfer")
    layout = InvoiceLayout(canvas.Canvas(io.BytesIO(), pagesize=A4), inv, inv.client, company)

    lines = layout._banner_lines()

    assert f"Payment ID: {payment.payment_id}" in lines
    assert "Method: Bank Transfer" in lines
    assert "Amount: Rs. 118.00" in lines


def test_unpaid_banner_asks_for_payment(make_invoice, company):
    inv = make_invoice(n_items=1)
    layout = InvoiceLayout(canvas.Canvas(io.BytesIO(), pagesize=A4), inv, inv.client, company)
    assert layout._banner_lines() == ["Please make payment as per terms"]


def _persist(session, inv):
    session.add(inv)
    session.commit()
    return inv


def test_generate_invoice_pdf_scopes_by_owner(session, make_invoice, company):
    inv = _persist(session, make_invoice(n_items=3))

    filename, data = generate_invoice_pdf(session, inv.id, owner_id="test-user", company=company)
    assert filename == "Invoice-INV-0001.pdf"
    assert data.startswith(b"%PDF")

    with pytest.raises(NotFoundError):
        generate_invoice_pdf(session, inv.id, owner_id="someone-else", company=company)


def test_store_invoice_pdf_writes_under_issue_year(session, make_invoice, company, tmp_path):
    inv = _persist(session, make_invoice(n_items=1))

    path = store_invoice_pdf(session, inv.id, exports_dir=str(tmp_path), company=company)

    assert path == os.path.abspath(os.path.join(tmp_path, "2024", "Invoice-INV-0001.pdf"))
    with open(path, "rb") as fh:
        assert fh.read(4) == b"%PDF"


def test_profile_reads_default_currency_from_app_config(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{(tmp_path / 'usd.db').as_posix()}",
        "DEFAULT_CURRENCY": "USD",
        "COMPANY_NAME": "Acme Inc",
    })

    profile = CompanyProfile.from_config(app.config)

    assert profile.currency == "USD"
    assert profile.name == "Acme Inc"


def test_unpaid_invoice_prints_in_issuer_currency(make_invoice):
    inv = make_invoice(n_items=1)
    company = CompanyProfile(name="Acme Inc", currency="USD")

    layout = InvoiceLayout(canvas.Canvas(io.BytesIO(), pagesize=A4), inv, inv.client, company)

    assert layout.currency == "USD"


def test_paid_invoice_prints_in_payment_currency(make_invoice):
    inv = make_invoice(n_items=1)
    inv.mark_paid(currency="INR")
    company = CompanyProfile(name="Acme Inc", currency="USD")

    layout = InvoiceLayout(canvas.Canvas(io.BytesIO(), pagesize=A4), inv, inv.client, company)

    assert layout.currency == "INR"
    assert "Amount: Rs. 118.00" in layout._banner_lines()
