# tests/conftest.py
from __future__ import annotations

import random
from typing import Any, Callable, Iterable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from generational import db_manager
from generational.calendar import CalendarContext
from generational.health import HealthStatus
from generational.ledger import InMemoryLedgerStore
from generational.milestones import DEFAULT_BASE_PROBABILITIES
from generational.registry import Citizen, InMemoryCitizenRegistry


class ScriptedRandom(random.Random):
    """Returns the scripted draws in order, then ``fallback`` forever."""

    def __init__(self, values: Iterable[float] = (), fallback: float = 0.999) -> None:
        super().__init__(0)
        self.values = list(values)
        self.fallback = fallback
        self.draws = 0

    def random(self) -> float:
        self.draws += 1
        if self.values:
            return self.values.pop(0)
        return self.fallback


@pytest.fixture
def scripted_rng() -> Callable[..., ScriptedRandom]:
    return ScriptedRandom


@pytest.fixture
def make_citizen() -> Callable[..., Citizen]:
    def _make(citizen_id: str = "POP-00001", **overrides: Any) -> Citizen:
        fields: dict[str, Any] = {
            "first_name": "Test",
            "last_name": citizen_id.replace("POP-", "Citizen"),
            "age": 40,
            "tier": 3,
            "role": "Teacher",
            "neighborhood": "Temescal",
        }
        fields.update(overrides)
        if isinstance(fields.get("health_status"), str):
            fields["health_status"] = HealthStatus.parse(fields["health_status"])
        return Citizen(citizen_id=citizen_id, **fields)

    return _make


@pytest.fixture
def calendar_ctx() -> Callable[..., CalendarContext]:
    def _make(cycle: int = 10, month: int = 3, season: str | None = "spring", holiday: str = "none") -> CalendarContext:
        return CalendarContext(cycle_number=cycle, month=month, season=season, holiday=holiday)

    return _make


@pytest.fixture
def quiet_config() -> dict[str, Any]:
    """Engine config where no milestone fires unless a test turns it on."""
    return {
        "milestone_base_probabilities": {name: 0.0 for name in DEFAULT_BASE_PROBABILITIES},
        "seasonality_enabled": False,
    }


@pytest.fixture
def memory_registry(make_citizen) -> InMemoryCitizenRegistry:
    return InMemoryCitizenRegistry([
        make_citizen("POP-00001", age=34),
        make_citizen("POP-00002", age=52, health_status="hospitalized", status_start_cycle=8),
        make_citizen("POP-00003", age=71, health_status="recovering", status_start_cycle=9),
        make_citizen("POP-00004", age=88, health_status="deceased", status_start_cycle=2),
    ])


@pytest.fixture
def memory_ledger() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db_manager.create_tables(engine)
    yield engine
    engine.dispose()
