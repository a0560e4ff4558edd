"""Database connection and operations for the SQL backends.

This module provides centralized database management for the generational
events engine: connection handling, the citizens table used by
``SqlCitizenRegistry``, the life-history ledger table used by
``SqlLedgerStore`` and the cycle state used by ``simulate --resume``.

Key Functions:
    - get_engine(): Create/return cached SQLAlchemy engine
    - get_session(): Context manager for database sessions
    - get_table_columns(): Reflect a table's column names in schema order
    - append_rows(): All-or-nothing batch insert into an existing table
    - load_citizen_rows() / update_citizen_statuses(): citizens table access
    - save_cycle_state() / load_cycle_state(): last completed cycle

Usage:
    from generational.db_manager import get_session, get_table_columns

    columns = get_table_columns("life_history_log")

    with get_session() as session:
        result = session.execute(text("SELECT COUNT(*) FROM life_history_log"))

Note:
    Requires DATABASE_URL or DB_* credentials in the environment or a .env
    file. See .env.example for template. Every function also accepts an
    explicit ``engine`` so tests can run against SQLite.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Mapping

from dotenv import load_dotenv
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from generational.errors import SchemaMismatchError


CITIZENS_TABLE = "citizens"
LIFE_HISTORY_TABLE = "life_history_log"
CYCLE_STATE_TABLE = "cycle_state"

# Module-level engine cache for connection reuse
_engine: Engine | None = None

# Logger for database operations
_logger = logging.getLogger("generational.db")


def database_url() -> str:
    """Build the database URL from DATABASE_URL or the DB_* variables.

    Raises:
        ValueError: If required environment variables are missing.
    """
    load_dotenv()

    url = os.getenv("DATABASE_URL")
    if url:
        return url

    required_vars = ["DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"]
    missing = [var for var in required_vars if not os.getenv(var)]
    if missing:
        raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")
    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    sslmode = os.getenv("DB_SSLMODE", "require")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def get_engine() -> Engine:
    """Create or return cached SQLAlchemy engine from .env credentials.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If required environment variables are missing.
    """
    global _engine
    if _engine is not None:
        return _engine

    url = database_url()
    if url.startswith("postgresql"):
        _engine = create_engine(
            url,
            pool_pre_ping=True,  # Verify connections before use
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    else:
        _engine = create_engine(url, pool_pre_ping=True)
    return _engine


def reset_engine() -> None:
    """Reset the cached engine (useful for testing or reconnection)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


@contextmanager
def get_session(engine: Engine | None = None) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Yields:
        SQLAlchemy Session instance.

    Example:
        with get_session() as session:
            session.execute(text("SELECT 1"))
    """
    SessionLocal = sessionmaker(bind=engine or get_engine())
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def test_connection(engine: Engine | None = None) -> bool:
    """Test database connectivity.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        with get_session(engine) as session:
            session.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ValueError) as e:
        _logger.warning(f"Database connection test failed: {e}")
        return False


# Ledger column types; the order here is the on-disk column order
LIFE_HISTORY_COLUMN_TYPES: list[tuple[str, Any]] = [
    ("Timestamp", String(32)),
    ("POPID", String(32)),
    ("Name", String(255)),
    ("EventTag", String(50)),
    ("EventText", Text),
    ("Neighborhood", String(100)),
    ("Cycle", Integer),
    ("Holiday", String(50)),
    ("Season", String(20)),
    ("Month", Integer),
    ("Category", String(50)),
    ("Cause", Text),
    ("Outcome", String(50)),
    ("PreviousStatus", String(20)),
    ("NewStatus", String(20)),
    ("CascadeDepth", Integer),
]


def build_metadata() -> MetaData:
    """Table definitions for citizens, life_history_log and cycle_state."""
    metadata = MetaData()

    Table(
        CITIZENS_TABLE,
        metadata,
        Column("citizen_id", String(32), primary_key=True),
        Column("first_name", String(100), nullable=False),
        Column("last_name", String(100), nullable=False),
        Column("age", Integer, nullable=False),
        Column("tier", Integer, nullable=False, default=4),
        Column("role", String(100)),
        Column("neighborhood", String(100)),
        Column("partner_id", String(32)),
        Column("mode", String(20), nullable=False, default="ENGINE"),
        Column("health_status", String(20), nullable=False, default="active"),
        Column("status_start_cycle", Integer),
        Column("status_duration", Integer, nullable=False, default=0),
        Column("health_cause", Text),
        Column("life_history", Text),
        Column("last_updated", DateTime(timezone=True)),
    )

    Table(
        LIFE_HISTORY_TABLE,
        metadata,
        Column("entry_id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
        *[Column(name, col_type) for name, col_type in LIFE_HISTORY_COLUMN_TYPES],
    )

    Table(
        CYCLE_STATE_TABLE,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("last_cycle", Integer, nullable=False),
        Column("status", String(20), nullable=False),
        Column("last_updated", DateTime(timezone=True)),
    )
    return metadata


def create_tables(engine: Engine | None = None) -> list[str]:
    """Create any missing tables. Existing tables are left untouched.

    Returns:
        Names of the tables defined by ``build_metadata``.
    """
    metadata = build_metadata()
    metadata.create_all(engine or get_engine())
    return list(metadata.tables)


def reflect_table(table: str, engine: Engine | None = None) -> Table:
    """Reflect an existing table.

    Raises:
        SchemaMismatchError: If the table does not exist.
    """
    try:
        return Table(table, MetaData(), autoload_with=engine or get_engine())
    except NoSuchTableError as e:
        raise SchemaMismatchError(f"Table '{table}' does not exist (run 'python main.py init-db')") from e


def get_table_columns(table: str, engine: Engine | None = None) -> list[str]:
    """Return writable column names in schema order.

    Auto-increment integer primary keys are left out since the database
    fills them.
    """
    tbl = reflect_table(table, engine)
    return [
        column.name
        for column in tbl.columns
        if not (column.primary_key and isinstance(column.type, Integer) and column.autoincrement is not False)
    ]


def append_rows(table: str, rows: list[dict[str, Any]], engine: Engine | None = None) -> int:
    """Insert rows in a single transaction.

    Args:
        table: Name of an existing table.
        rows: Dictionaries keyed by column name.

    Returns:
        Number of inserted rows.

    Raises:
        SQLAlchemyError: On any database failure; the batch is rolled back.

    Note:
        This is an all-or-nothing operation. If any row fails, the entire
        batch is rolled back and the error is re-raised so the caller can
        stop the cycle before citizen state is persisted.
    """
    if not rows:
        return 0

    tbl = reflect_table(table, engine)
    try:
        with (engine or get_engine()).begin() as conn:
            conn.execute(tbl.insert(), rows)
        return len(rows)
    except OperationalError as e:
        _logger.error(f"Database connection error in batch insert ({len(rows)} rows into {table}): {e}")
        raise
    except SQLAlchemyError as e:
        _logger.error(f"Failed to batch insert {len(rows)} rows into {table}: {e}")
        raise


def load_citizen_rows(table: str = CITIZENS_TABLE, engine: Engine | None = None) -> list[dict[str, Any]]:
    """Load every citizen row ordered by citizen_id."""
    tbl = reflect_table(table, engine)
    with get_session(engine) as session:
        result = session.execute(select(tbl).order_by(tbl.c.citizen_id))
        return [dict(row._mapping) for row in result]


def update_citizen_statuses(
    records: list[Mapping[str, Any]],
    table: str = CITIZENS_TABLE,
    engine: Engine | None = None,
) -> int:
    """Write status fields and life history for each record in one transaction.

    Returns:
        Number of rows updated.
    """
    if not records:
        return 0

    tbl = reflect_table(table, engine)
    now = datetime.now(timezone.utc)
    try:
        with get_session(engine) as session:
            for record in records:
                values = {
                    "health_status": record["health_status"],
                    "status_start_cycle": record["status_start_cycle"],
                    "status_duration": record["status_duration"],
                    "health_cause": record.get("health_cause"),
                    "life_history": json.dumps(record.get("life_history") or []),
                }
                if "last_updated" in tbl.c:
                    values["last_updated"] = now
                session.execute(
                    tbl.update().where(tbl.c.citizen_id == record["citizen_id"]).values(**values)
                )
        return len(records)
    except KeyError as e:
        _logger.error(f"Missing required key in citizen record: {e}")
        raise
    except SQLAlchemyError as e:
        _logger.error(f"Failed to update {len(records)} citizens: {e}")
        raise


def insert_citizens(
    records: list[Mapping[str, Any]],
    table: str = CITIZENS_TABLE,
    engine: Engine | None = None,
) -> int:
    """Seed the citizens table from generated records (existing IDs are skipped)."""
    if not records:
        return 0

    tbl = reflect_table(table, engine)
    existing = {row["citizen_id"] for row in load_citizen_rows(table, engine)}
    rows = []
    for record in records:
        if record["citizen_id"] in existing:
            continue
        row = {key: value for key, value in record.items() if key in tbl.c}
        row["life_history"] = json.dumps(record.get("life_history") or [])
        rows.append(row)
    return append_rows(table, rows, engine)


def save_cycle_state(cycle: int, status: str = "running", engine: Engine | None = None) -> bool:
    """Persist the last completed cycle for resume capability.

    Uses upsert pattern to maintain a single row in cycle_state table.

    Returns:
        True if save successful, False otherwise.
    """
    try:
        with get_session(engine) as session:
            session.execute(
                text(f"""
                    INSERT INTO {CYCLE_STATE_TABLE} (id, last_cycle, status, last_updated)
                    VALUES (1, :cycle, :status, :now)
                    ON CONFLICT (id) DO UPDATE SET
                        last_cycle = :cycle,
                        status = :status,
                        last_updated = :now
                """),
                {"cycle": cycle, "status": status, "now": datetime.now(timezone.utc)},
            )
            return True
    except OperationalError as e:
        _logger.error(f"Database connection error saving cycle state: {e}")
        return False
    except SQLAlchemyError as e:
        _logger.warning(f"Failed to save cycle state (cycle {cycle}): {e}")
        return False


def load_cycle_state(engine: Engine | None = None) -> dict[str, Any] | None:
    """Load the last completed cycle.

    Returns:
        Dictionary with keys last_cycle, status, last_updated, or None if no
        state exists or on database error.
    """
    try:
        with get_session(engine) as session:
            result = session.execute(
                text(f"SELECT last_cycle, status, last_updated FROM {CYCLE_STATE_TABLE} WHERE id = 1")
            )
            row = result.fetchone()
            if row:
                _logger.info(f"Loaded cycle state: cycle {row[0]}, status '{row[1]}'")
                return {"last_cycle": row[0], "status": row[1], "last_updated": row[2]}
            _logger.info("No existing cycle state found in database")
            return None
    except OperationalError as e:
        _logger.error(f"Database connection error loading cycle state: {e}")
        return None
    except SQLAlchemyError as e:
        _logger.warning(f"Failed to load cycle state: {e}")
        return None
