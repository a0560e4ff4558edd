"""Life-history ledger writer.

Every milestone event becomes one row in an append-only ledger. The ledger's
columns belong to the store: the writer looks each event field up by column
*name* once, when the schema is resolved, and never assumes positions. A
store only has to expose its columns and an all-or-nothing ``append_rows``.

Stores:
    InMemoryLedgerStore: list of rows (tests, embedding)
    CsvLedgerStore: data/life_history_log.csv, header row is the schema
    SqlLedgerStore: life_history_log table via generational.db_manager

Field mapping:
    Required-when-carried fields must have a column whenever the event holds a
    value for them, otherwise the batch fails with SchemaMismatchError before
    anything is written. Extension fields (month, category, outcome, statuses,
    cascade depth) are written when the ledger has the column and skipped
    when an older ledger does not.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence

from sqlalchemy.engine import Engine

from generational import db_manager
from generational.errors import SchemaMismatchError
from generational.milestones import MilestoneEvent


_logger = logging.getLogger("generational.ledger")


@dataclass(frozen=True)
class LedgerField:
    name: str
    column: str
    required: bool = True


LEDGER_FIELDS = (
    LedgerField("timestamp", "Timestamp"),
    LedgerField("citizen_id", "POPID"),
    LedgerField("name", "Name"),
    LedgerField("tag", "EventTag"),
    LedgerField("description", "EventText"),
    LedgerField("neighborhood", "Neighborhood"),
    LedgerField("cycle", "Cycle"),
    LedgerField("holiday", "Holiday"),
    LedgerField("season", "Season"),
    LedgerField("cause", "Cause"),
    LedgerField("month", "Month", required=False),
    LedgerField("category", "Category", required=False),
    LedgerField("outcome", "Outcome", required=False),
    LedgerField("previous_status", "PreviousStatus", required=False),
    LedgerField("new_status", "NewStatus", required=False),
    LedgerField("depth", "CascadeDepth", required=False),
)

# Column order of a freshly created ledger (CSV header, init-db table)
LIFE_HISTORY_COLUMNS = [
    "Timestamp",
    "POPID",
    "Name",
    "EventTag",
    "EventText",
    "Neighborhood",
    "Cycle",
    "Holiday",
    "Season",
    "Month",
    "Category",
    "Cause",
    "Outcome",
    "PreviousStatus",
    "NewStatus",
    "CascadeDepth",
]


def iso_utc(dt: datetime) -> str:
    """Convert datetime to ISO 8601 UTC string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_carried(value: Any) -> bool:
    return value is not None and value != ""


class LedgerStore(Protocol):
    def columns(self) -> list[str]:
        ...

    def append_rows(self, rows: Sequence[dict[str, Any]]) -> int:
        ...


class InMemoryLedgerStore:
    def __init__(self, columns: Iterable[str] | None = None) -> None:
        self._columns = list(columns) if columns is not None else list(LIFE_HISTORY_COLUMNS)
        self.rows: list[dict[str, Any]] = []

    def columns(self) -> list[str]:
        return list(self._columns)

    def append_rows(self, rows: Sequence[dict[str, Any]]) -> int:
        staged = []
        for row in rows:
            unknown = set(row) - set(self._columns)
            if unknown:
                raise SchemaMismatchError(f"Row has columns not in ledger: {sorted(unknown)}")
            staged.append({column: row.get(column) for column in self._columns})
        self.rows.extend(staged)
        return len(staged)


class CsvLedgerStore:
    """CSV ledger; created with the canonical header if the file is missing."""

    def __init__(self, path: Path, default_columns: Iterable[str] | None = None) -> None:
        self.path = Path(path)
        self.default_columns = list(default_columns or LIFE_HISTORY_COLUMNS)

    def columns(self) -> list[str]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8", newline="") as f:
                csv.writer(f).writerow(self.default_columns)
        with self.path.open("r", encoding="utf-8", newline="") as f:
            header = next(csv.reader(f), None)
        if not header:
            raise SchemaMismatchError(f"Ledger {self.path} has no header row")
        return header

    def append_rows(self, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        header = self.columns()
        # Render the whole batch first so a bad row never leaves a partial append
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=header, extrasaction="raise", lineterminator="\n")
        try:
            for row in rows:
                writer.writerow({k: ("" if v is None else v) for k, v in row.items()})
        except ValueError as e:
            raise SchemaMismatchError(f"Row does not fit ledger {self.path}: {e}") from e
        with self.path.open("a", encoding="utf-8", newline="") as f:
            f.write(buffer.getvalue())
            f.flush()
        return len(rows)

    def read_rows(self) -> list[dict[str, str]]:
        with self.path.open("r", encoding="utf-8", newline="") as f:
            return list(csv.DictReader(f))


class SqlLedgerStore:
    def __init__(self, engine: Engine | None = None, table: str = db_manager.LIFE_HISTORY_TABLE) -> None:
        self.engine = engine
        self.table = table

    def columns(self) -> list[str]:
        return db_manager.get_table_columns(self.table, engine=self.engine)

    def append_rows(self, rows: Sequence[dict[str, Any]]) -> int:
        columns = self.columns()
        unknown = {key for row in rows for key in row} - set(columns)
        if unknown:
            raise SchemaMismatchError(f"Rows have columns not in {self.table}: {sorted(unknown)}")
        # executemany needs the same keys in every parameter set
        full_rows = [{column: row.get(column) for column in columns} for row in rows]
        return db_manager.append_rows(self.table, full_rows, engine=self.engine)


class LifeHistoryLedgerWriter:
    """Maps milestone events onto ledger rows by column name."""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self.clock = clock or _utc_now
        self._columns: list[str] | None = None
        self._field_columns: dict[str, str] = {}

    def resolve_schema(self) -> dict[str, str]:
        """Read the store's columns and build the field -> column map."""
        columns = self.store.columns()
        available = set(columns)
        self._columns = list(columns)
        self._field_columns = {f.name: f.column for f in LEDGER_FIELDS if f.column in available}
        missing = [f.column for f in LEDGER_FIELDS if f.column not in available]
        if missing:
            _logger.info(f"Ledger has no column for: {', '.join(missing)}")
        return dict(self._field_columns)

    @property
    def schema(self) -> list[str]:
        if self._columns is None:
            self.resolve_schema()
        return list(self._columns or [])

    def build_rows(self, events: Sequence[MilestoneEvent]) -> list[dict[str, Any]]:
        """Build one row per event.

        Raises:
            SchemaMismatchError: If a carried required field has no column.
        """
        if self._columns is None:
            self.resolve_schema()
        timestamp = iso_utc(self.clock())
        rows = []
        for event in events:
            values = event.to_dict()
            values["timestamp"] = timestamp
            row: dict[str, Any] = {}
            for ledger_field in LEDGER_FIELDS:
                value = values.get(ledger_field.name)
                if not _is_carried(value):
                    continue
                column = self._field_columns.get(ledger_field.name)
                if column is None:
                    if ledger_field.required:
                        raise SchemaMismatchError(
                            f"Ledger has no '{ledger_field.column}' column for field "
                            f"'{ledger_field.name}' carried by {event.category.value} "
                            f"event for {event.citizen_id}"
                        )
                    continue
                row[column] = value
            rows.append(row)
        return rows

    def write(self, events: Sequence[MilestoneEvent]) -> int:
        """Append the batch as a single all-or-nothing operation.

        Returns:
            Number of rows appended.

        Raises:
            SchemaMismatchError: If the batch does not fit the ledger schema or
                the schema changed since it was resolved.
        """
        if not events:
            return 0
        rows = self.build_rows(events)

        current = self.store.columns()
        if current != self._columns:
            raise SchemaMismatchError(
                f"Ledger schema changed since startup: expected {self._columns}, found {current}"
            )

        appended = self.store.append_rows(rows)
        _logger.info(f"Appended {appended} life-history rows")
        return appended
