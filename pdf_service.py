# pdf_service.py
import io
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.lib.utils import ImageReader
from sqlalchemy.orm import selectinload

from config import Config
from errors import NotFoundError
from models import Invoice

logger = logging.getLogger(__name__)

PAGE_W, PAGE_H = A4
PAGE_H_MM = PAGE_H / mm

# -----------------------------
# Page geometry (mm, measured down from the top edge)
# -----------------------------
LEFT = 20
RIGHT = 195
TABLE_W = RIGHT - LEFT

LOGO_TOP = 15
LOGO_SIZE = 30
BRAND_X = 58

TITLE_Y = 66
BILL_TO_Y = 88
DETAILS_X = 120
LINE_STEP = 5

TABLE_TOP = 130
HEADER_ROW_H = 10
ROW_H = 10
DESC_LINE_STEP = 4
# A row may start at or above this offset; anything lower goes to the next page
PAGE_BREAK_Y = 245
PAGE_TOP = 20
CAPTION_Y = 13

FOOTER_BOTTOM = 278
ATTRIBUTION_Y = PAGE_H_MM - 12

# (title, x, width, align)
COLUMNS = [
    ("Description", 20, 62, "left"),
    ("Qty", 82, 12, "right"),
    ("Rate (Rs.)", 94, 28, "right"),
    ("GST %", 122, 14, "right"),
    ("Amount (Rs.)", 136, 30, "right"),
    ("Total (Rs.)", 166, 29, "right"),
]

HEADER_FILL = colors.HexColor("#F0F0F0")
GRID = colors.HexColor("#C8C8C8")
ALT_ROW_FILL = colors.HexColor("#FAFAFA")
LOGO_BLUE = colors.HexColor("#1E3A8A")
LOGO_ORANGE = colors.HexColor("#F97316")
LOGO_CYAN = colors.HexColor("#22D3EE")

BANNERS = {
    "paid": {
        "title": "PAYMENT RECEIVED",
        "fill": colors.HexColor("#F0FDF4"),
        "border": colors.HexColor("#22C55E"),
        "text": colors.HexColor("#16A34A"),
    },
    "unpaid": {
        "title": "PAYMENT PENDING",
        "fill": colors.HexColor("#FEF2F2"),
        "border": colors.HexColor("#EF4444"),
        "text": colors.HexColor("#DC2626"),
    },
}


@dataclass(frozen=True)
class CompanyProfile:
    name: str
    subtitle: str = ""
    gstin: str = ""
    address: str = ""
    phone: str = ""
    email: str = ""
    logo_path: str = ""
    currency: str = "INR"

    @classmethod
    def from_config(cls, source=None) -> "CompanyProfile":
        """Build from a Flask config mapping or the Config class."""
        source = Config if source is None else source
        if isinstance(source, Mapping):
            get = source.get
        else:
            def get(key, default=None):
                return getattr(source, key, default)
        return cls(
            name=get("COMPANY_NAME") or "Invoice Manager",
            subtitle=get("COMPANY_SUBTITLE") or "",
            gstin=get("COMPANY_GSTIN") or "",
            address=get("COMPANY_ADDRESS") or "",
            phone=get("COMPANY_PHONE") or "",
            email=get("COMPANY_EMAIL") or "",
            logo_path=get("COMPANY_LOGO_PATH") or "",
            currency=get("DEFAULT_CURRENCY") or "INR",
        )


# -----------------------------
# Formatting helpers
# -----------------------------
def _group_indian(digits: str) -> str:
    # 1234567 -> 12,34,567
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def _amount(x, currency: str = "INR") -> str:
    """2-decimal figure without a currency mark; lakh/crore grouping for INR."""
    try:
        value = float(x)
    except (TypeError, ValueError):
        return str(x)
    sign = "-" if value < 0 else ""
    if (currency or "INR").upper() != "INR":
        return f"{sign}{abs(value):,.2f}"
    whole, frac = f"{abs(value):.2f}".split(".")
    return f"{sign}{_group_indian(whole)}.{frac}"


def _money(x, currency: str = "INR") -> str:
    # Helvetica has no rupee glyph
    symbol = "Rs." if (currency or "INR").upper() == "INR" else currency.upper()
    return f"{symbol} {_amount(x, currency)}"


def _fmt_date(value) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return f"{value.day:02d}/{value.month:02d}/{value.year}"
    return str(value)


def _fmt_method(method) -> str:
    return (method or "").replace("_", " ").title()


def _safe_filename(name: str) -> str:
    # strip characters not allowed on Windows/mac paths
    return re.sub(r'[\\/*?:"<>|]', "", (name or "")).strip() or "Invoice"


def invoice_filename(invoice_number: str) -> str:
    return f"Invoice-{_safe_filename(invoice_number)}.pdf"


def _wrap_text(text, font, size, max_width):
    words = str(text).split()
    lines = []
    current = ""

    def split_long_token(token: str):
        """Break a single long token (like an email) into width-safe chunks."""
        if stringWidth(token, font, size) <= max_width:
            return [token]
        chunks = []
        remaining = token
        while remaining:
            lo, hi = 1, len(remaining)
            fit = 1
            while lo <= hi:
                mid = (lo + hi) // 2
                if stringWidth(remaining[:mid], font, size) <= max_width:
                    fit = mid
                    lo = mid + 1
                else:
                    hi = mid - 1
            chunks.append(remaining[:fit])
            remaining = remaining[fit:]
        return chunks

    expanded_words = []
    for w in words:
        expanded_words.extend(split_long_token(w))

    for w in expanded_words:
        test = current + (" " if current else "") + w
        if stringWidth(test, font, size) <= max_width:
            current = test
        else:
            if current:
                lines.append(current)
            current = w
    if current:
        lines.append(current)
    return lines or [""]


def _wrap_paragraphs(text, font, size, max_width):
    """Wrap multi-line free text; blank source lines are dropped."""
    out = []
    for ln in (text or "").splitlines():
        if ln.strip():
            out.extend(_wrap_text(ln.strip(), font, size, max_width))
    return out


# -----------------------------
# Layout engine
# -----------------------------
class InvoiceLayout:
    """
    Draws one invoice onto a reportlab canvas, region by region:
    header, title, bill-to, items table, totals, payment banner, footer.

    ``cursor`` is the running offset (mm from the top) of the current page.
    ``row_positions`` records (page, top) for every item row drawn.
    """

    def __init__(self, pdf: canvas.Canvas, invoice: Invoice, client, company: CompanyProfile):
        self.pdf = pdf
        self.invoice = invoice
        self.client = client
        self.company = company
        # Captured payments print in their own currency, everything else in the issuer's default
        self.currency = (
            invoice.payment.currency if getattr(invoice, "payment", None) else company.currency
        )
        self.cursor = 0.0
        self.row_positions: list[tuple[int, float]] = []

    @property
    def page(self) -> int:
        return self.pdf.getPageNumber()

    # ---- primitives -------------------------------------------------
    @staticmethod
    def _y(top: float) -> float:
        return PAGE_H - top * mm

    def _text(self, x, top, text, font="Helvetica", size=10, color=colors.black, align="left"):
        self.pdf.setFont(font, size)
        self.pdf.setFillColor(color)
        text = str(text)
        if align == "right":
            self.pdf.drawRightString(x * mm, self._y(top), text)
        elif align == "center":
            self.pdf.drawCentredString(x * mm, self._y(top), text)
        else:
            self.pdf.drawString(x * mm, self._y(top), text)

    def _box(self, x, top, width, height, fill=None, stroke=None, line_width=0.5):
        if fill is not None:
            self.pdf.setFillColor(fill)
        if stroke is not None:
            self.pdf.setStrokeColor(stroke)
            self.pdf.setLineWidth(line_width)
        self.pdf.rect(
            x * mm, self._y(top + height), width * mm, height * mm,
            stroke=1 if stroke is not None else 0,
            fill=1 if fill is not None else 0,
        )

    def _rule(self, x1, x2, top, color=colors.black, line_width=0.5):
        self.pdf.setStrokeColor(color)
        self.pdf.setLineWidth(line_width)
        self.pdf.line(x1 * mm, self._y(top), x2 * mm, self._y(top))

    def _attribution(self):
        self._text(
            LEFT, ATTRIBUTION_Y,
            f"This is a computer-generated invoice by {self.company.name}.",
            "Helvetica-Oblique", 8, colors.grey,
        )
        self._text(RIGHT, ATTRIBUTION_Y, f"Page {self.page}", "Helvetica", 8, colors.grey, align="right")

    def new_page(self):
        """Close the current page and start a continuation page."""
        self._attribution()
        self.pdf.showPage()
        self._text(
            LEFT, CAPTION_Y,
            f"INVOICE {self.invoice.invoice_number} (cont.)",
            "Helvetica-Bold", 10, colors.grey,
        )
        self.cursor = PAGE_TOP

    # ---- regions ----------------------------------------------------
    def draw_header(self):
        self._draw_logo()
        c = self.company
        self._text(BRAND_X, 24, c.name, "Helvetica-Bold", 20)
        if c.subtitle:
            self._text(BRAND_X, 30, c.subtitle, "Helvetica", 10)

        contact = []
        if c.gstin:
            contact.append(f"GSTIN: {c.gstin}")
        if c.address:
            contact.extend(_wrap_text(c.address, "Helvetica", 9, (RIGHT - BRAND_X) * mm))
        if c.phone:
            contact.append(f"Phone: {c.phone}")
        if c.email:
            contact.append(f"Email: {c.email}")
        top = 37
        for ln in contact:
            self._text(BRAND_X, top, ln, "Helvetica", 9)
            top += 4.5
        self.cursor = max(LOGO_TOP + LOGO_SIZE, top)

    def _draw_logo(self):
        path = self.company.logo_path
        if path and os.path.exists(path):
            try:
                img = ImageReader(path)
                iw, ih = img.getSize()
                scale = min(LOGO_SIZE / float(iw), LOGO_SIZE / float(ih))
                w, h = iw * scale, ih * scale
                self.pdf.drawImage(
                    img, LEFT * mm, self._y(LOGO_TOP + h), width=w * mm, height=h * mm, mask="auto"
                )
                return
            except Exception:
                logger.warning("Could not load logo %s, drawing fallback", path, exc_info=True)

        # Fallback mark: framed square with the company initial
        self._box(LEFT, LOGO_TOP, LOGO_SIZE, LOGO_SIZE, fill=LOGO_BLUE, stroke=colors.white, line_width=2)
        self.pdf.setFillColor(LOGO_ORANGE)
        self.pdf.circle((LEFT + 11) * mm, self._y(LOGO_TOP + 11), 3.5 * mm, stroke=0, fill=1)
        self.pdf.setFillColor(LOGO_CYAN)
        self.pdf.circle((LEFT + 14) * mm, self._y(LOGO_TOP + 11), 2.5 * mm, stroke=0, fill=1)
        initial = (self.company.name or "?").strip()[:1].upper()
        self._text(LEFT + LOGO_SIZE / 2, LOGO_TOP + 25, initial, "Helvetica-Bold", 18, colors.white, align="center")

    def draw_title(self):
        self._text(LEFT, TITLE_Y, "INVOICE", "Helvetica-Bold", 20)
        self._text(LEFT, TITLE_Y + 8, f"Invoice #: {self.invoice.invoice_number}", "Helvetica", 12)

    def draw_bill_to(self):
        client = self.client
        self._text(LEFT, BILL_TO_Y, "Bill To:", "Helvetica-Bold", 12)

        top = BILL_TO_Y + 7
        lines = [client.name, client.email]
        lines.extend(_wrap_text(client.address or "", "Helvetica", 10, 80 * mm) if client.address else [])
        for ln in lines:
            self._text(LEFT, top, ln, "Helvetica", 10)
            top += LINE_STEP
        if client.gstin:
            top += 2
            self._text(LEFT, top, f"GSTIN: {client.gstin}", "Helvetica", 10)
            top += LINE_STEP

        inv = self.invoice
        self._text(DETAILS_X, BILL_TO_Y, "Invoice Details:", "Helvetica-Bold", 10)
        self._text(DETAILS_X, BILL_TO_Y + 7, f"Issue Date: {_fmt_date(inv.issue_date)}", "Helvetica", 10)
        self._text(DETAILS_X, BILL_TO_Y + 13, f"Due Date: {_fmt_date(inv.due_date)}", "Helvetica", 10)
        self._text(DETAILS_X, BILL_TO_Y + 19, f"Status: {(inv.status or 'unpaid').title()}", "Helvetica", 10)

        self.cursor = max(TABLE_TOP, top + 6)

    def _draw_table_header(self):
        top = self.cursor
        self._box(LEFT, top, TABLE_W, HEADER_ROW_H, fill=HEADER_FILL, stroke=GRID)
        for title, x, width, align in COLUMNS:
            if align == "right":
                self._text(x + width - 2, top + 6.5, title, "Helvetica-Bold", 9, align="right")
            else:
                self._text(x + 1, top + 6.5, title, "Helvetica-Bold", 9)
        self.cursor = top + HEADER_ROW_H

    def draw_items_table(self):
        self._draw_table_header()
        desc_w = (COLUMNS[0][2] - 5) * mm

        for index, item in enumerate(self.invoice.items):
            desc_lines = _wrap_text(item.description or "", "Helvetica", 9, desc_w)
            row_h = ROW_H + (len(desc_lines) - 1) * DESC_LINE_STEP
            if self.cursor + row_h > PAGE_BREAK_Y + ROW_H:
                self.new_page()
                self._draw_table_header()

            top = self.cursor
            self.row_positions.append((self.page, top))
            if index % 2 == 0:
                self._box(LEFT, top, TABLE_W, row_h, fill=ALT_ROW_FILL)
            self._box(LEFT, top, TABLE_W, row_h, stroke=GRID, line_width=0.3)

            base = float(item.quantity or 0) * float(item.rate or 0.0)
            amount = item.amount if item.amount is not None else base
            cells = [
                str(item.quantity),
                _amount(item.rate, self.currency),
                f"{item.tax_percentage}%",
                _amount(base, self.currency),
                _amount(amount, self.currency),
            ]
            line_top = top + 6.5
            for ln in desc_lines:
                self._text(LEFT + 1, line_top, ln, "Helvetica", 9)
                line_top += DESC_LINE_STEP
            for (title, x, width, align), cell in zip(COLUMNS[1:], cells):
                self._text(x + width - 2, top + 6.5, cell, "Helvetica", 9, align="right")

            self.cursor = top + row_h

    def _banner_lines(self) -> list[str]:
        if self.invoice.status != "paid":
            return ["Please make payment as per terms"]
        payment = getattr(self.invoice, "payment", None)
        if payment is None:
            return []
        lines = []
        if payment.payment_id:
            lines.append(f"Payment ID: {payment.payment_id}")
        if payment.method:
            lines.append(f"Method: {_fmt_method(payment.method)}")
        if payment.amount:
            lines.append(f"Amount: {_money(payment.amount, payment.currency)}")
        if payment.paid_at:
            lines.append(f"Paid On: {_fmt_date(payment.paid_at)}")
        return lines

    def _banner_height(self) -> float:
        return max(18.0, 12 + 4.5 * len(self._banner_lines()))

    def draw_totals(self):
        top = self.cursor
        inv = self.invoice
        left_x, right_x = 140, 190
        self._box(left_x - 5, top, right_x - left_x + 10, 30, stroke=colors.black)
        self._text(left_x, top + 7, "Subtotal:", "Helvetica", 10)
        self._text(right_x, top + 7, _money(inv.subtotal, self.currency), "Helvetica", 10, align="right")
        self._text(left_x, top + 14, "GST:", "Helvetica", 10)
        self._text(right_x, top + 14, _money(inv.tax_amount, self.currency), "Helvetica", 10, align="right")
        self._rule(left_x, right_x, top + 18)
        self._text(left_x, top + 25, "Total:", "Helvetica-Bold", 12)
        self._text(right_x, top + 25, _money(inv.total, self.currency), "Helvetica-Bold", 12, align="right")
        self.cursor = top + 30

    def draw_payment_banner(self):
        variant = BANNERS["paid" if self.invoice.status == "paid" else "unpaid"]
        top = self.cursor
        height = self._banner_height()
        self._box(LEFT, top, TABLE_W, height, fill=variant["fill"], stroke=variant["border"], line_width=1)
        self._text(LEFT + 5, top + 7, variant["title"], "Helvetica-Bold", 12, variant["text"])
        line_top = top + 13
        for ln in self._banner_lines():
            self._text(LEFT + 5, line_top, ln, "Helvetica", 9)
            line_top += 4.5
        self.cursor = top + height

    def _footer_blocks(self) -> list[tuple[str, list[str]]]:
        width = TABLE_W * mm
        blocks = []
        if self.invoice.notes:
            blocks.append(("Notes:", _wrap_paragraphs(self.invoice.notes, "Helvetica", 9, width)))
        if self.invoice.terms_and_conditions:
            blocks.append((
                "Terms & Conditions:",
                _wrap_paragraphs(self.invoice.terms_and_conditions, "Helvetica", 9, width),
            ))
        return blocks

    def draw_footer(self):
        blocks = self._footer_blocks()
        needed = sum(6 + 4.5 * len(lines) + 4 for _, lines in blocks)
        # Anchor to the page bottom when it fits, otherwise flow on
        top = max(self.cursor + 8, FOOTER_BOTTOM - needed)
        for title, lines in blocks:
            if top + 6 > FOOTER_BOTTOM:
                self.new_page()
                top = self.cursor
            self._text(LEFT, top, title, "Helvetica-Bold", 10)
            top += 6
            for ln in lines:
                if top > FOOTER_BOTTOM:
                    self.new_page()
                    top = self.cursor
                self._text(LEFT, top, ln, "Helvetica", 9)
                top += 4.5
            top += 4
        self.cursor = top
        self._attribution()

    def render(self):
        self.pdf.setTitle(f"Invoice - {self.invoice.invoice_number}")
        self.draw_header()
        self.draw_title()
        self.draw_bill_to()
        self.draw_items_table()

        self.cursor += 8
        tail_h = 30 + 6 + self._banner_height()
        if self.cursor + tail_h > FOOTER_BOTTOM:
            self.new_page()
        self.draw_totals()
        self.cursor += 6
        self.draw_payment_banner()
        self.draw_footer()


def render_invoice_pdf(invoice: Invoice, client, company: CompanyProfile | None = None) -> bytes:
    """Lay out an invoice and return the finished PDF document."""
    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=A4)
    layout = InvoiceLayout(pdf, invoice, client, company or CompanyProfile.from_config())
    layout.render()
    pdf.save()
    logger.debug("Rendered %s on %d page(s)", invoice.invoice_number, layout.page)
    return buf.getvalue()


def _load_invoice(session, invoice_id: int, owner_id: str | None = None) -> Invoice:
    q = (
        session.query(Invoice)
        .options(selectinload(Invoice.items), selectinload(Invoice.client), selectinload(Invoice.payment))
        .filter(Invoice.id == invoice_id)
    )
    if owner_id is not None:
        q = q.filter(Invoice.created_by == owner_id)
    inv = q.first()
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


def generate_invoice_pdf(session, invoice_id: int, owner_id: str | None = None, company: CompanyProfile | None = None):
    """
    Renders the PDF for the given invoice_id.

    Returns: (download filename, pdf bytes).
    """
    inv = _load_invoice(session, invoice_id, owner_id)
    return invoice_filename(inv.invoice_number), render_invoice_pdf(inv, inv.client, company)


def store_invoice_pdf(session, invoice_id: int, exports_dir: str | None = None, company: CompanyProfile | None = None) -> str:
    """
    Writes the PDF under EXPORTS_DIR/<issue year>/.

    Returns: absolute pdf path on disk.
    """
    inv = _load_invoice(session, invoice_id)
    year = str(inv.issue_date.year) if inv.issue_date else datetime.now().strftime("%Y")
    year_dir = os.path.join(exports_dir or Config.EXPORTS_DIR, year)
    os.makedirs(year_dir, exist_ok=True)

    pdf_path = os.path.abspath(os.path.join(year_dir, invoice_filename(inv.invoice_number)))
    with open(pdf_path, "wb") as fh:
        fh.write(render_invoice_pdf(inv, inv.client, company))
    return pdf_path
