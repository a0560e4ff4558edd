"""Create the PostgreSQL database and the engine tables.

    python utils/init_db.py                 # create database (if missing) and tables
    python utils/init_db.py --skip-create-db
    python utils/init_db.py --seed-citizens data/citizens.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from generational import db_manager  # noqa: E402


def init_schema() -> None:
    """Create the target database from the maintenance database if it does not exist."""
    url = make_url(db_manager.database_url())
    if url.get_backend_name() != "postgresql" or not url.database:
        return

    engine = create_engine(url.set(database="postgres"))
    with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
        exists = conn.execute(
            text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": url.database}
        ).scalar()
        if not exists:
            conn.execute(text(f'CREATE DATABASE "{url.database}"'))
            print(f"Created database {url.database}")
    engine.dispose()


def init_tables() -> list[str]:
    return db_manager.create_tables()


def seed_citizens(path: Path) -> int:
    records = json.loads(path.read_text(encoding="utf-8"))
    return db_manager.insert_citizens(records)


def main() -> int:
    parser = argparse.ArgumentParser(description="Initialise the generational events database.")
    parser.add_argument("--skip-create-db", action="store_true", help="Only create tables.")
    parser.add_argument("--seed-citizens", type=Path, default=None, help="citizens.json to load.")
    args = parser.parse_args()

    try:
        if not args.skip_create_db:
            init_schema()
        tables = init_tables()
        print(f"Tables ready: {', '.join(tables)}")
        if args.seed_citizens:
            print(f"Seeded {seed_citizens(args.seed_citizens)} citizens")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
