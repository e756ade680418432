# db_init.py
import argparse
from pathlib import Path

from sqlalchemy import inspect

from config import Config
from models import Base, ensure_sqlite_dir, make_engine


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create the invoice database tables.")
    parser.add_argument("--database-url", default=Config.SQLALCHEMY_DATABASE_URI,
                        help="Override DATABASE_URL for this run.")
    parser.add_argument("--reset", action="store_true",
                        help="Drop every table first. All clients, invoices and payments are lost.")
    args = parser.parse_args(argv)

    ensure_sqlite_dir(args.database_url)
    Path(Config.EXPORTS_DIR).mkdir(parents=True, exist_ok=True)

    engine = make_engine(args.database_url, echo=Config.SQLALCHEMY_ECHO)
    if args.reset:
        Base.metadata.drop_all(engine)
        print("Dropped existing tables.")
    Base.metadata.create_all(engine)

    tables = sorted(inspect(engine).get_table_names())
    engine.dispose()

    print("✅ Database initialized.")
    print(f"DB: {args.database_url}")
    print(f"Tables: {', '.join(tables)}")
    print(f"Exports dir: {Config.EXPORTS_DIR}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
