# bulk_generate_pdfs.py
import argparse
from pathlib import Path

from billing import INVOICE_STATUSES
from config import Config
from models import Base, make_engine, make_session_factory, Invoice
from pdf_service import store_invoice_pdf


def main(argv=None):
    parser = argparse.ArgumentParser(description="Bulk export invoice PDFs.")
    parser.add_argument("--status", type=str, default="", choices=("",) + INVOICE_STATUSES,
                        help="Only export invoices with this status.")
    parser.add_argument("--owner", type=str, default="", help="Only export invoices created by this user id.")
    parser.add_argument("--out", type=str, default=Config.EXPORTS_DIR, help="Target directory.")
    args = parser.parse_args(argv)

    Path(args.out).mkdir(parents=True, exist_ok=True)

    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    with SessionLocal() as s:
        q = s.query(Invoice).order_by(Invoice.created_at.asc())
        if args.status:
            q = q.filter(Invoice.status == args.status)
        if args.owner:
            q = q.filter(Invoice.created_by == args.owner)

        invoices = q.all()

        if not invoices:
            print("No invoices found for the given filter.")
            return 0

        total = len(invoices)
        generated = 0
        failed = 0

        for i, inv in enumerate(invoices, start=1):
            try:
                path = store_invoice_pdf(s, inv.id, exports_dir=args.out)
                generated += 1
                print(f"[{i}/{total}] DONE  {inv.invoice_number} -> {path}")

            except Exception as e:
                failed += 1
                print(f"[{i}/{total}] FAIL  {inv.invoice_number}  ({e})")

        print("\n✅ Bulk PDF export complete.")
        print(f"Generated: {generated}")
        print(f"Failed:    {failed}")
        print(f"Exports:   {args.out}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
