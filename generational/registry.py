"""Citizen registry: the engine's only way to read and persist citizens.

Registries stage status updates in memory. Nothing reaches the backing store
until ``commit()``, which the engine calls only after the cycle's ledger
append has succeeded; ``discard()`` drops staged updates when it has not.

Implementations:
    InMemoryCitizenRegistry: citizens held in a dict (tests, embedding)
    JsonCitizenRegistry: data/citizens.json, rewritten atomically on commit
    SqlCitizenRegistry: citizens table via generational.db_manager
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from sqlalchemy.engine import Engine

from generational import db_manager
from generational.errors import DataLoadError, UnknownStatusError
from generational.health import HealthStatus


_logger = logging.getLogger("generational.registry")

ENGINE_MODE = "ENGINE"


@dataclass
class Citizen:
    citizen_id: str
    first_name: str = ""
    last_name: str = ""
    age: int = 0
    tier: int = 4
    role: str = ""
    neighborhood: str = ""
    partner_id: str | None = None
    mode: str = ENGINE_MODE
    health_status: HealthStatus = HealthStatus.ACTIVE
    status_start_cycle: int | None = None
    status_duration: int = 0
    health_cause: str | None = None
    life_history: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.citizen_id

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Citizen:
        """Build a citizen from a stored record.

        Raises:
            DataLoadError: If the record has no citizen_id.
            UnknownStatusError: If the health status is not a known status.
        """
        citizen_id = record.get("citizen_id")
        if not citizen_id:
            raise DataLoadError(f"Citizen record without citizen_id: {dict(record)!r}")

        history = record.get("life_history") or []
        if isinstance(history, str):
            history = json.loads(history) if history.startswith("[") else [h for h in history.split(",") if h]

        return cls(
            citizen_id=str(citizen_id),
            first_name=record.get("first_name") or "",
            last_name=record.get("last_name") or "",
            age=record.get("age") or 0,
            tier=record.get("tier") if record.get("tier") is not None else 4,
            role=record.get("role") or "",
            neighborhood=record.get("neighborhood") or "",
            partner_id=record.get("partner_id") or None,
            mode=record.get("mode") or ENGINE_MODE,
            # Blank status means the citizen was never touched by the lifecycle
            health_status=HealthStatus.parse(record.get("health_status") or "active"),
            status_start_cycle=record.get("status_start_cycle"),
            status_duration=record.get("status_duration", 0),
            health_cause=record.get("health_cause") or None,
            life_history=list(history),
        )

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["health_status"] = self.health_status.value
        return record


class CitizenRegistry(Protocol):
    def load_active_citizens(self) -> list[Citizen]:
        ...

    def save_citizen_status(
        self,
        citizen_id: str,
        health_status: HealthStatus,
        status_start_cycle: int | None,
        status_duration: int,
        health_cause: str | None = None,
    ) -> None:
        ...

    def record_life_events(self, citizen_id: str, categories: Iterable[str]) -> None:
        ...

    def commit(self) -> int:
        ...

    def discard(self) -> None:
        ...


class StagedCitizenRegistry:
    """Shared staging logic; subclasses supply ``_read_records`` and ``_write``."""

    def __init__(self) -> None:
        self._loaded: dict[str, Citizen] = {}
        self._pending_status: dict[str, dict[str, Any]] = {}
        self._pending_history: dict[str, list[str]] = {}
        self.rejected: list[tuple[str, str]] = []

    def _read_records(self) -> list[Mapping[str, Any]]:
        raise NotImplementedError

    def _write(self, citizens: list[Citizen]) -> None:
        raise NotImplementedError

    def load_active_citizens(self) -> list[Citizen]:
        """Load every engine-driven citizen (deceased included), sorted by ID.

        Records with an unknown health status are skipped and listed in
        ``self.rejected``.
        """
        self.rejected = []
        citizens: list[Citizen] = []
        for record in self._read_records():
            if (record.get("mode") or ENGINE_MODE) != ENGINE_MODE:
                continue
            try:
                citizens.append(Citizen.from_record(record))
            except UnknownStatusError as e:
                citizen_id = str(record.get("citizen_id", "?"))
                _logger.warning(f"Skipping citizen {citizen_id}: {e}")
                self.rejected.append((citizen_id, str(e)))

        citizens.sort(key=lambda c: c.citizen_id)
        self._loaded = {c.citizen_id: c for c in citizens}
        return [copy.deepcopy(c) for c in citizens]

    def save_citizen_status(
        self,
        citizen_id: str,
        health_status: HealthStatus,
        status_start_cycle: int | None,
        status_duration: int,
        health_cause: str | None = None,
    ) -> None:
        self._pending_status[citizen_id] = {
            "health_status": HealthStatus.parse(health_status),
            "status_start_cycle": status_start_cycle,
            "status_duration": status_duration,
            "health_cause": health_cause,
        }

    def record_life_events(self, citizen_id: str, categories: Iterable[str]) -> None:
        self._pending_history.setdefault(citizen_id, []).extend(categories)

    def commit(self) -> int:
        """Persist staged updates. Returns the number of citizens written."""
        ids = sorted(set(self._pending_status) | set(self._pending_history))
        if not ids:
            return 0

        updated: list[Citizen] = []
        for citizen_id in ids:
            base = self._loaded.get(citizen_id)
            if base is None:
                raise KeyError(f"Citizen {citizen_id} was not loaded by this registry")
            citizen = copy.deepcopy(base)
            for key, value in self._pending_status.get(citizen_id, {}).items():
                setattr(citizen, key, value)
            citizen.life_history.extend(self._pending_history.get(citizen_id, []))
            updated.append(citizen)

        self._write(updated)
        for citizen in updated:
            self._loaded[citizen.citizen_id] = citizen
        self.discard()
        _logger.debug(f"Committed {len(updated)} citizen updates")
        return len(updated)

    def discard(self) -> None:
        self._pending_status.clear()
        self._pending_history.clear()

    def get(self, citizen_id: str) -> Citizen | None:
        citizen = self._loaded.get(citizen_id)
        return copy.deepcopy(citizen) if citizen else None


class InMemoryCitizenRegistry(StagedCitizenRegistry):
    def __init__(self, citizens: Iterable[Citizen | Mapping[str, Any]] = ()) -> None:
        super().__init__()
        self.records: dict[str, dict[str, Any]] = {}
        for citizen in citizens:
            record = citizen.to_record() if isinstance(citizen, Citizen) else dict(citizen)
            self.records[str(record["citizen_id"])] = record

    def _read_records(self) -> list[Mapping[str, Any]]:
        return [dict(r) for r in self.records.values()]

    def _write(self, citizens: list[Citizen]) -> None:
        for citizen in citizens:
            self.records[citizen.citizen_id] = citizen.to_record()


def load_json(path: Path) -> Any:
    """Load JSON file with error handling."""
    if not path.exists():
        raise DataLoadError(f"Required data file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise DataLoadError(f"Invalid JSON in {path}: {e}") from e


class JsonCitizenRegistry(StagedCitizenRegistry):
    """Citizens stored as a JSON list (see generational.generate_citizens)."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _read_records(self) -> list[Mapping[str, Any]]:
        data = load_json(self.path)
        if not isinstance(data, list):
            raise DataLoadError(f"Expected a list of citizens in {self.path}")
        return [r for r in data if isinstance(r, dict)]

    def _write(self, citizens: list[Citizen]) -> None:
        records = [dict(r) for r in self._read_records()]
        by_id = {c.citizen_id: c for c in citizens}
        for i, record in enumerate(records):
            citizen = by_id.get(str(record.get("citizen_id")))
            if citizen is not None:
                # Keep fields the engine does not own
                records[i] = {**record, **citizen.to_record()}

        # Write to a sibling file first so a crash never leaves half a registry
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(records, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)


class SqlCitizenRegistry(StagedCitizenRegistry):
    def __init__(self, engine: Engine | None = None, table: str = db_manager.CITIZENS_TABLE) -> None:
        super().__init__()
        self.engine = engine
        self.table = table

    def _read_records(self) -> list[Mapping[str, Any]]:
        return db_manager.load_citizen_rows(table=self.table, engine=self.engine)

    def _write(self, citizens: list[Citizen]) -> None:
        db_manager.update_citizen_statuses(
            [c.to_record() for c in citizens], table=self.table, engine=self.engine
        )
