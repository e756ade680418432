"""Shared pytest fixtures for the invoice manager tests."""

from datetime import date

import pytest

from app import create_app
from models import Base, Client, Invoice, InvoiceItem, make_engine, make_session_factory
from pdf_service import CompanyProfile


@pytest.fixture
def app(tmp_path):
    """Create an app bound to a temporary SQLite database."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{(tmp_path / 'invoices.db').as_posix()}",
        "SQLALCHEMY_ECHO": False,
        "DEFAULT_USER_ID": "test-user",
        "DEFAULT_CURRENCY": "INR",
        "INVOICE_PREFIX": "INV-",
        "INVOICE_SEQ_WIDTH": 4,
        "COMPANY_NAME": "Acme Traders",
        "COMPANY_LOGO_PATH": "",
        "EXPORTS_DIR": str(tmp_path / "exports"),
    })
    yield app


@pytest.fixture
def api(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def session():
    """In-memory database session for model-level tests."""
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)
    with SessionLocal() as s:
        yield s
    engine.dispose()


@pytest.fixture
def sample_client(api):
    """Create a client through the API and return its JSON."""
    resp = api.post("/api/clients", json={
        "name": "Globex Retail",
        "email": "accounts@globex.in",
        "phone": "+91 9000000000",
        "address": "12 MG Road, Bengaluru 560001",
        "gstin": "29AAACG1234A1Z5",
    })
    assert resp.status_code == 201
    return resp.get_json()["data"]


@pytest.fixture
def invoice_payload(sample_client):
    """Build a valid invoice body for the sample client."""
    def _payload(**overrides):
        body = {
            "clientId": sample_client["id"],
            "issueDate": "2024-01-15",
            "dueDate": "2024-02-14",
            "items": [
                {"description": "Consulting", "quantity": 2, "rate": 100, "taxPercentage": 18},
                {"description": "Hosting", "quantity": 1, "rate": 500, "taxPercentage": 5},
            ],
            "notes": "Thanks for your business",
        }
        body.update(overrides)
        return body
    return _payload


@pytest.fixture
def company():
    return CompanyProfile(
        name="Acme Traders",
        subtitle="INFOTECH",
        gstin="29ABCDE1234F1Z5",
        address="123 Tech Park, Bangalore, Karnataka 560001",
        phone="+91 9876543210",
        email="info@acme.example",
    )


@pytest.fixture
def make_invoice():
    """Build a transient Invoice with n simple items and computed totals."""
    def _make(n_items=2, status="unpaid", description="Service", **fields):
        client = Client(
            name="Globex Retail",
            email="accounts@globex.in",
            address="12 MG Road, Bengaluru",
            created_by="test-user",
        )
        inv = Invoice(
            invoice_number=fields.pop("invoice_number", "INV-0001"),
            client=client,
            issue_date=date(2024, 1, 15),
            due_date=date(2024, 2, 14),
            status=status,
            created_by="test-user",
            items=[
                InvoiceItem(description=f"{description} {i + 1}", quantity=1, rate=100.0, tax_percentage=18)
                for i in range(n_items)
            ],
            **fields,
        )
        inv.recalculate()
        return inv
    return _make
