import json

import pytest

from generational import db_manager
from generational.errors import DataLoadError
from generational.health import HealthStatus
from generational.generate_citizens import generate_citizens
from generational.registry import (
    Citizen,
    InMemoryCitizenRegistry,
    JsonCitizenRegistry,
    SqlCitizenRegistry,
)


def test_from_record_normalizes_fields():
    citizen = Citizen.from_record({
        "citizen_id": "POP-00001",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "health_status": "Serious Condition",
        "life_history": "graduation,wedding",
    })
    assert citizen.health_status is HealthStatus.CRITICAL
    assert citizen.life_history == ["graduation", "wedding"]
    assert citizen.name == "Ada Lovelace"


def test_blank_status_means_active():
    assert Citizen.from_record({"citizen_id": "POP-00001", "health_status": ""}).health_status is HealthStatus.ACTIVE


def test_record_without_id_is_rejected():
    with pytest.raises(DataLoadError):
        Citizen.from_record({"first_name": "Nobody"})


def test_load_is_sorted_and_skips_other_modes(make_citizen):
    registry = InMemoryCitizenRegistry([
        make_citizen("POP-00003"),
        make_citizen("POP-00001"),
        make_citizen("POP-00002", mode="MANUAL"),
        make_citizen("POP-00004", health_status="deceased", status_start_cycle=1),
    ])
    assert [c.citizen_id for c in registry.load_active_citizens()] == ["POP-00001", "POP-00003", "POP-00004"]


def test_nothing_is_written_before_commit(memory_registry):
    memory_registry.load_active_citizens()
    memory_registry.save_citizen_status("POP-00001", HealthStatus.HOSPITALIZED, 10, 0, "fall")
    memory_registry.record_life_events("POP-00001", ["health_event", "hospitalization"])

    assert memory_registry.records["POP-00001"]["health_status"] == "active"

    assert memory_registry.commit() == 1
    record = memory_registry.records["POP-00001"]
    assert record["health_status"] == "hospitalized"
    assert record["health_cause"] == "fall"
    assert record["life_history"] == ["health_event", "hospitalization"]


def test_discard_drops_staged_updates(memory_registry):
    memory_registry.load_active_citizens()
    memory_registry.save_citizen_status("POP-00001", HealthStatus.HOSPITALIZED, 10, 0)
    memory_registry.discard()

    assert memory_registry.commit() == 0
    assert memory_registry.records["POP-00001"]["health_status"] == "active"


def test_loaded_citizens_are_copies(memory_registry):
    citizen = memory_registry.load_active_citizens()[0]
    citizen.life_history.append("wedding")
    assert memory_registry.get(citizen.citizen_id).life_history == []


def test_json_registry_keeps_unowned_fields(tmp_path, make_citizen):
    path = tmp_path / "citizens.json"
    record = {**make_citizen("POP-00001").to_record(), "notes": "keep me"}
    path.write_text(json.dumps([record]), encoding="utf-8")

    registry = JsonCitizenRegistry(path)
    registry.load_active_citizens()
    registry.save_citizen_status("POP-00001", HealthStatus.HOSPITALIZED, 3, 0)
    registry.commit()

    stored = json.loads(path.read_text(encoding="utf-8"))[0]
    assert stored["health_status"] == "hospitalized"
    assert stored["notes"] == "keep me"
    assert not (tmp_path / "citizens.json.tmp").exists()


def test_json_registry_missing_file(tmp_path):
    with pytest.raises(DataLoadError, match="not found"):
        JsonCitizenRegistry(tmp_path / "missing.json").load_active_citizens()


def test_sql_registry_round_trip(sqlite_engine):
    db_manager.insert_citizens(generate_citizens(count=5, seed=1), engine=sqlite_engine)
    registry = SqlCitizenRegistry(engine=sqlite_engine)

    citizens = registry.load_active_citizens()
    target = citizens[0].citizen_id
    registry.save_citizen_status(target, HealthStatus.HOSPITALIZED, 4, 0, "fracture")
    registry.record_life_events(target, ["hospitalization"])
    registry.commit()

    reloaded = {c.citizen_id: c for c in SqlCitizenRegistry(engine=sqlite_engine).load_active_citizens()}
    assert reloaded[target].health_status is HealthStatus.HOSPITALIZED
    assert reloaded[target].health_cause == "fracture"
    assert reloaded[target].life_history[-1] == "hospitalization"


def test_cycle_state_round_trip(sqlite_engine):
    assert db_manager.load_cycle_state(sqlite_engine) is None
    assert db_manager.save_cycle_state(12, "running", sqlite_engine)
    assert db_manager.save_cycle_state(13, "stopped", sqlite_engine)

    state = db_manager.load_cycle_state(sqlite_engine)
    assert state["last_cycle"] == 13
    assert state["status"] == "stopped"


def test_generated_population_is_reproducible():
    first = generate_citizens(count=20, seed=5)
    assert first == generate_citizens(count=20, seed=5)
    partners = {c["citizen_id"]: c["partner_id"] for c in first if c["partner_id"]}
    for citizen_id, partner_id in partners.items():
        assert partners[partner_id] == citizen_id
