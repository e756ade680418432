# app.py
import io
import logging
from datetime import date
from functools import wraps

from flask import Flask, current_app, jsonify, request, send_file
from flask_login import LoginManager, UserMixin, current_user, login_required
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from werkzeug.exceptions import HTTPException

from billing import INVOICE_STATUSES
from config import Config
from errors import BadRequestError, ConflictError, InvoiceAppError, NotFoundError
from models import (
    Base, ensure_sqlite_dir, make_engine, make_session_factory,
    Client, Invoice, InvoiceItem, next_invoice_number
)
from pdf_service import CompanyProfile, generate_invoice_pdf
from schemas import ClientIn, ClientUpdate, InvoiceIn, InvoiceUpdate, error_list
from stats import DEFAULT_REPORT_RANGE, REPORT_RANGES, build_report, dashboard_stats, report_window

login_manager = LoginManager()


# -----------------------------
# Flask-Login user wrapper
# -----------------------------
class AppUser(UserMixin):
    def __init__(self, user_id: str, email: str = "", role: str = "user"):
        self.id = str(user_id)
        self.email = email
        self.role = role


@login_manager.request_loader
def load_user_from_request(req):
    # Identity is passed through by the fronting auth layer as X-User-* headers.
    user_id = (req.headers.get("X-User-Id") or "").strip()
    if user_id:
        return AppUser(
            user_id,
            (req.headers.get("X-User-Email") or "").strip(),
            (req.headers.get("X-User-Role") or "user").strip(),
        )
    default_id = current_app.config.get("DEFAULT_USER_ID")
    return AppUser(default_id) if default_id else None


@login_manager.unauthorized_handler
def unauthorized():
    return _fail("Authentication required", 401)


# -----------------------------
# Helpers
# -----------------------------
def _ok(data=None, status=200, **extra):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status


def _fail(message, status, **extra):
    body = {"success": False, "message": message}
    body.update(extra)
    return jsonify(body), status


def _current_user_id() -> str:
    return str(current_user.get_id())


def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


def _date_arg(name: str):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.split("T", 1)[0])
    except ValueError:
        raise BadRequestError(f"{name} must be an ISO date (YYYY-MM-DD)")


def _int_arg(name: str):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    if not raw.isdigit():
        raise BadRequestError(f"{name} must be an integer id")
    return int(raw)


def api_action(doing: str):
    """
    Turns failures into the JSON error envelope:
    known errors keep their status, anything else is logged and becomes
    500 "Error <doing>".
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                return view(*args, **kwargs)
            except HTTPException:
                raise
            except ValidationError as exc:
                return _fail("Invalid request data", 400, errors=error_list(exc))
            except InvoiceAppError as exc:
                if exc.status_code >= 500:
                    current_app.logger.exception("Error %s", doing)
                return _fail(exc.message, exc.status_code)
            except Exception:
                current_app.logger.exception("Error %s", doing)
                return _fail(f"Error {doing}", 500)
        return wrapper
    return decorator


def _client_owned_or_404(session, client_id: int) -> Client:
    client = (
        session.query(Client)
        .filter(Client.id == client_id, Client.created_by == _current_user_id())
        .first()
    )
    if not client:
        raise NotFoundError("Client not found")
    return client


def _invoice_query(session):
    return (
        session.query(Invoice)
        .options(
            selectinload(Invoice.items),
            selectinload(Invoice.client),
            selectinload(Invoice.payment),
        )
        .filter(Invoice.created_by == _current_user_id())
    )


def _invoice_owned_or_404(session, invoice_id: int) -> Invoice:
    inv = _invoice_query(session).filter(Invoice.id == invoice_id).first()
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


def _build_items(items):
    return [
        InvoiceItem(
            description=it.description,
            quantity=it.quantity,
            rate=it.rate,
            tax_percentage=it.tax_percentage,
        )
        for it in items
    ]


def _payment_kwargs(details, default_currency: str) -> dict:
    details = details or {}
    return {
        "method": details.get("method") or "bank_transfer",
        "currency": details.get("currency") or default_currency,
        "transaction_id": details.get("transaction_id"),
        "order_id": details.get("order_id"),
        "paid_at": details.get("paid_at"),
    }


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(level)


# -----------------------------
# App factory
# -----------------------------
def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)
    ensure_sqlite_dir(app.config["SQLALCHEMY_DATABASE_URI"])

    login_manager.init_app(app)

    engine = make_engine(app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config["SQLALCHEMY_ECHO"])
    Base.metadata.create_all(engine)

    SessionLocal = make_session_factory(engine)

    def db_session():
        return SessionLocal()

    def company_profile() -> CompanyProfile:
        return CompanyProfile.from_config(app.config)

    @app.errorhandler(HTTPException)
    def http_error(exc):
        return _fail(exc.description or exc.name, exc.code or 500)

    # -----------------------------
    # Clients
    # -----------------------------
    @app.route("/api/clients", methods=["GET"])
    @login_required
    @api_action("fetching clients")
    def clients_list():
        with db_session() as s:
            rows = (
                s.query(Client)
                .filter(Client.created_by == _current_user_id())
                .order_by(Client.name.asc())
                .all()
            )
            data = [c.to_dict() for c in rows]
        return _ok(data, count=len(data))

    @app.route("/api/clients", methods=["POST"])
    @login_required
    @api_action("creating client")
    def client_create():
        payload = ClientIn.model_validate(_body())
        with db_session() as s:
            client = Client(created_by=_current_user_id(), **payload.model_dump())
            s.add(client)
            s.commit()
            app.logger.info("Client %s created", client.id)
            return _ok(client.to_dict(), 201)

    @app.route("/api/clients/<int:client_id>", methods=["GET"])
    @login_required
    @api_action("fetching client")
    def client_get(client_id: int):
        with db_session() as s:
            return _ok(_client_owned_or_404(s, client_id).to_dict())

    @app.route("/api/clients/<int:client_id>", methods=["PATCH", "PUT"])
    @login_required
    @api_action("updating client")
    def client_update(client_id: int):
        updates = ClientUpdate.model_validate(_body()).model_dump(exclude_unset=True)
        with db_session() as s:
            client = _client_owned_or_404(s, client_id)
            for field, value in updates.items():
                setattr(client, field, value)
            s.commit()
            return _ok(client.to_dict())

    @app.route("/api/clients/<int:client_id>", methods=["DELETE"])
    @login_required
    @api_action("deleting client")
    def client_delete(client_id: int):
        with db_session() as s:
            client = _client_owned_or_404(s, client_id)
            invoice_count = (
                s.query(func.count(Invoice.id)).filter(Invoice.client_id == client.id).scalar()
            )
            if invoice_count:
                raise ConflictError(
                    f"Client has {invoice_count} invoice{'s' if invoice_count != 1 else ''}; "
                    "delete them first"
                )
            s.delete(client)
            s.commit()
        app.logger.info("Client %s deleted", client_id)
        return _ok(message="Client deleted successfully")

    # -----------------------------
    # Invoices
    # -----------------------------
    @app.route("/api/invoices", methods=["GET"])
    @login_required
    @api_action("fetching invoices")
    def invoices_list():
        status = (request.args.get("status") or "").strip()
        client_id = _int_arg("clientId")
        start_date = _date_arg("startDate")
        end_date = _date_arg("endDate")
        if status and status not in INVOICE_STATUSES:
            raise BadRequestError(f"status must be one of {', '.join(INVOICE_STATUSES)}")

        with db_session() as s:
            q = _invoice_query(s)
            if status:
                q = q.filter(Invoice.status == status)
            if client_id is not None:
                q = q.filter(Invoice.client_id == client_id)
            if start_date and end_date:
                q = q.filter(Invoice.issue_date >= start_date, Invoice.issue_date <= end_date)
            rows = q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
            data = [inv.to_dict() for inv in rows]
        return _ok(data, count=len(data))

    @app.route("/api/invoices", methods=["POST"])
    @login_required
    @api_action("creating invoice")
    def invoice_create():
        payload = InvoiceIn.model_validate(_body())
        with db_session() as s:
            client = _client_owned_or_404(s, payload.client_id)

            if payload.invoice_number:
                # Numbers are unique across all users
                taken = s.query(Invoice.id).filter(Invoice.invoice_number == payload.invoice_number).first()
                if taken:
                    raise ConflictError("Invoice number already exists")
                inv_no = payload.invoice_number
            else:
                inv_no = next_invoice_number(
                    s, app.config["INVOICE_PREFIX"], app.config["INVOICE_SEQ_WIDTH"]
                )

            inv = Invoice(
                created_by=_current_user_id(),
                invoice_number=inv_no,
                client=client,
                issue_date=payload.issue_date,
                due_date=payload.due_date,
                status="unpaid",
                notes=payload.notes,
                terms_and_conditions=payload.terms_and_conditions,
                items=_build_items(payload.items),
            )
            inv.recalculate()
            if payload.status == "paid":
                details = payload.payment_details.model_dump() if payload.payment_details else None
                inv.mark_paid(**_payment_kwargs(details, app.config["DEFAULT_CURRENCY"]))
            else:
                inv.status = payload.status

            s.add(inv)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise ConflictError("Invoice number already exists")

            app.logger.info("Invoice %s created (total %.2f)", inv.invoice_number, inv.total)
            return _ok(inv.to_dict(), 201)

    @app.route("/api/invoices/<int:invoice_id>", methods=["GET"])
    @login_required
    @api_action("fetching invoice")
    def invoice_get(invoice_id: int):
        with db_session() as s:
            return _ok(_invoice_owned_or_404(s, invoice_id).to_dict())

    @app.route("/api/invoices/<int:invoice_id>", methods=["PATCH", "PUT"])
    @login_required
    @api_action("updating invoice")
    def invoice_update(invoice_id: int):
        payload = InvoiceUpdate.model_validate(_body())
        updates = payload.model_dump(exclude_unset=True)

        with db_session() as s:
            inv = _invoice_owned_or_404(s, invoice_id)

            if "client_id" in updates:
                inv.client = _client_owned_or_404(s, updates.pop("client_id"))
            if "items" in updates:
                updates.pop("items")
                inv.items.clear()
                inv.items.extend(_build_items(payload.items))
            status = updates.pop("status", None)
            details = updates.pop("payment_details", None)
            for field, value in updates.items():
                setattr(inv, field, value)

            inv.recalculate()

            if status == "paid":
                payment = inv.mark_paid(**_payment_kwargs(details, app.config["DEFAULT_CURRENCY"]))
                if payment is not None:
                    app.logger.info("Invoice %s marked paid (%s)", inv.invoice_number, payment.payment_id)
            elif status:
                inv.status = status

            s.commit()
            return _ok(inv.to_dict())

    @app.route("/api/invoices/<int:invoice_id>", methods=["DELETE"])
    @login_required
    @api_action("deleting invoice")
    def invoice_delete(invoice_id: int):
        with db_session() as s:
            inv = _invoice_owned_or_404(s, invoice_id)
            s.delete(inv)
            s.commit()
        app.logger.info("Invoice %s deleted", invoice_id)
        return _ok(message="Invoice deleted successfully")

    @app.route("/api/invoices/<int:invoice_id>/pdf", methods=["GET"])
    @login_required
    @api_action("generating PDF")
    def invoice_pdf_download(invoice_id: int):
        with db_session() as s:
            filename, pdf_bytes = generate_invoice_pdf(
                s, invoice_id, owner_id=_current_user_id(), company=company_profile()
            )
        return send_file(
            io.BytesIO(pdf_bytes),
            as_attachment=True,
            download_name=filename,
            mimetype="application/pdf"
        )

    # -----------------------------
    # Dashboard / reports
    # -----------------------------
    @app.route("/api/dashboard", methods=["GET"])
    @login_required
    @api_action("fetching dashboard data")
    def dashboard():
        with db_session() as s:
            invoices = _invoice_query(s).all()
            client_count = (
                s.query(func.count(Client.id))
                .filter(Client.created_by == _current_user_id())
                .scalar()
            )
            data = dashboard_stats(invoices, client_count, today=date.today())
        return _ok(data)

    @app.route("/api/reports", methods=["GET"])
    @login_required
    @api_action("fetching report data")
    def reports():
        range_key = (request.args.get("range") or DEFAULT_REPORT_RANGE).strip()
        if range_key not in REPORT_RANGES:
            raise BadRequestError(f"range must be one of {', '.join(REPORT_RANGES)}")
        today = date.today()
        start, end = report_window(range_key, today)

        with db_session() as s:
            invoices = (
                _invoice_query(s)
                .filter(Invoice.issue_date >= start, Invoice.issue_date <= end)
                .all()
            )
            data = build_report(invoices, today)
        return _ok(data, range=range_key, startDate=start.isoformat(), endDate=end.isoformat())

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
