import json

import pytest

from generational.cycle_engine import GenerationalEngine
from generational.errors import ConfigValidationError, SchemaMismatchError
from generational.health import HealthStatus
from generational.ledger import LIFE_HISTORY_COLUMNS, CsvLedgerStore, InMemoryLedgerStore, SqlLedgerStore
from generational.generate_citizens import generate_citizens
from generational.registry import InMemoryCitizenRegistry, JsonCitizenRegistry, SqlCitizenRegistry
from generational import db_manager
from generational.validation import CrisisWindow


class FixedCalendar:
    def __init__(self, season):
        self.season = season

    def get_calendar_context(self, cycle):
        return {"cycle_number": cycle, "month": 3, "season": self.season}


def _population(count=60, seed=7):
    return generate_citizens(count=count, seed=seed)


def _busy_config(**overrides):
    config = {
        "milestone_base_probabilities": {
            "graduation": 0.3,
            "wedding": 0.2,
            "birth": 0.2,
            "promotion": 0.2,
            "retirement": 0.2,
            "death": 0.05,
            "health_event": 0.1,
        },
    }
    config.update(overrides)
    return config


def test_same_snapshot_cycle_and_seed_give_identical_results():
    population = _population()

    def run():
        engine = GenerationalEngine(
            registry=InMemoryCitizenRegistry(population),
            ledger=InMemoryLedgerStore(),
            seed=42,
            config=_busy_config(),
        )
        return json.dumps(engine.run_cycle(10).to_dict(), sort_keys=True)

    first, second = run(), run()
    assert first == second
    assert json.loads(first)["events"]


def test_different_seeds_diverge():
    population = _population()
    results = []
    for seed in (1, 2):
        engine = GenerationalEngine(
            registry=InMemoryCitizenRegistry(population),
            ledger=InMemoryLedgerStore(),
            seed=seed,
            config=_busy_config(),
        )
        results.append([e.to_dict() for e in engine.run_cycle(10).events])
    assert results[0] != results[1]


def test_transitions_are_committed_after_ledger_write(make_citizen, quiet_config):
    registry = InMemoryCitizenRegistry([
        make_citizen("POP-00001", health_status="hospitalized", status_start_cycle=5),
    ])
    ledger = InMemoryLedgerStore()
    engine = GenerationalEngine(
        registry=registry,
        ledger=ledger,
        seed=42,
        config={**quiet_config, "max_hospitalized_cycles": 8},
    )

    result = engine.run_cycle(14)

    assert [t.new for t in result.transitions] == [HealthStatus.RECOVERING]
    assert ledger.rows[0]["EventTag"] == "Recovering"
    record = registry.records["POP-00001"]
    assert record["health_status"] == "recovering"
    assert record["status_start_cycle"] == 14
    assert record["status_duration"] == 0
    assert record["life_history"] == ["recovering"]
    assert result.citizens_updated == 1


def test_stay_updates_duration(make_citizen, quiet_config):
    registry = InMemoryCitizenRegistry([
        make_citizen("POP-00001", health_status="hospitalized", status_start_cycle=10),
    ])
    engine = GenerationalEngine(
        registry=registry,
        ledger=InMemoryLedgerStore(),
        seed=42,
        config={
            **quiet_config,
            "health_transition_weights": {"hospitalized": {"short": {"stay": 1.0}}},
        },
    )

    engine.run_cycle(11)

    assert registry.records["POP-00001"]["status_duration"] == 1
    assert registry.records["POP-00001"]["health_status"] == "hospitalized"


def test_schema_mismatch_leaves_registry_untouched(make_citizen, quiet_config):
    registry = InMemoryCitizenRegistry([
        make_citizen("POP-00001", health_status="critical", status_start_cycle=1, health_cause="sepsis"),
    ])
    before = json.dumps(registry.records, sort_keys=True)
    ledger = InMemoryLedgerStore([c for c in LIFE_HISTORY_COLUMNS if c != "Cause"])
    engine = GenerationalEngine(registry=registry, ledger=ledger, seed=42, config=quiet_config)

    with pytest.raises(SchemaMismatchError):
        engine.run_cycle(10)

    assert ledger.rows == []
    assert json.dumps(registry.records, sort_keys=True) == before
    assert engine.last_result is None


def test_invalid_season_becomes_a_finding(make_citizen, quiet_config, caplog):
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen()]),
        ledger=InMemoryLedgerStore(),
        calendar=FixedCalendar("Monsoon"),
        config=quiet_config,
    )

    with caplog.at_level("WARNING", logger="generational.engine"):
        result = engine.run_cycle(5)

    assert result.calendar.season is None
    findings = result.report.by_validator("calendar")
    assert [f.issue for f in findings] == ["invalid_season"]
    assert "Monsoon" in caplog.text


def test_capitalised_season_is_accepted(make_citizen, quiet_config):
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen()]),
        ledger=InMemoryLedgerStore(),
        calendar=FixedCalendar("Winter"),
        config=quiet_config,
    )
    result = engine.run_cycle(5)
    assert result.calendar.season == "winter"
    assert result.report.by_validator("calendar") == []


def test_unknown_status_is_reported_and_skipped(make_citizen, quiet_config):
    registry = InMemoryCitizenRegistry([make_citizen("POP-00001")])
    registry.records["POP-00002"] = {"citizen_id": "POP-00002", "health_status": "zombie"}
    engine = GenerationalEngine(registry=registry, ledger=InMemoryLedgerStore(), config=quiet_config)

    result = engine.run_cycle(3)

    findings = result.report.by_validator("registry")
    assert [f.data["citizen_id"] for f in findings] == ["POP-00002"]


def test_high_findings_hold_events_from_handoff(make_citizen, quiet_config):
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen()]),
        ledger=InMemoryLedgerStore(),
        config=quiet_config,
    )
    result = engine.run_cycle(3)
    assert result.held_events() == []
    assert result.to_dict()["report"]["overall_status"] == "PASS"


def test_handoff_file_is_written(tmp_path, make_citizen, quiet_config):
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen(health_status="recovering", status_start_cycle=1)]),
        ledger=InMemoryLedgerStore(),
        config={**quiet_config, "handoff_dir": str(tmp_path / "handoff")},
    )

    engine.run_cycle(7)

    payload = json.loads((tmp_path / "handoff" / "cycle-0007.json").read_text(encoding="utf-8"))
    assert payload["cycle"] == 7
    assert payload["exported_at"].endswith("Z")
    assert payload["events"][0]["category"] == "recovery"


def test_partial_weight_override_keeps_critical_transitions(make_citizen, quiet_config, scripted_rng):
    registry = InMemoryCitizenRegistry([
        make_citizen("POP-00001", health_status="critical", status_start_cycle=9),
    ])
    config = {
        **quiet_config,
        "health_transition_weights": {"hospitalized": {"short": {"recovering": 0.2, "critical": 0.2, "stay": 0.6}}},
    }
    engine = GenerationalEngine(registry=registry, ledger=InMemoryLedgerStore(), config=config)

    result = engine.run_cycle(10, rng=scripted_rng([0.01]))

    assert [(t.previous, t.new) for t in result.transitions] == [(HealthStatus.CRITICAL, HealthStatus.RECOVERING)]
    assert registry.records["POP-00001"]["health_status"] == "recovering"


def test_export_handoff_without_directory_is_a_config_error(make_citizen, quiet_config):
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen()]),
        ledger=InMemoryLedgerStore(),
        config=quiet_config,
    )
    result = engine.run_cycle(3)

    with pytest.raises(ConfigValidationError, match="handoff_dir"):
        engine.export_handoff(result)


def test_crisis_window(make_citizen, quiet_config):
    crisis = CrisisWindow(name="Heat wave", start_cycle=5, duration_cycles=2)
    engine = GenerationalEngine(
        registry=InMemoryCitizenRegistry([make_citizen()]),
        ledger=InMemoryLedgerStore(),
        crisis=crisis,
        config=quiet_config,
    )
    engine.run_cycle(5)
    assert engine.is_crisis_active()
    engine.run_cycle(7)
    assert not engine.is_crisis_active()
    assert engine.summary()["current_cycle"] == 7


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"severe_incident_share": 1.5}, "severe_incident_share"),
        ({"max_critical_cycles": 0}, "max_critical_cycles"),
        ({"cascade_depth_limit": 0}, "cascade_depth_limit"),
        ({"milestone_base_probabilities": {"wedding": 2}}, "milestone_base_probabilities.wedding"),
        ({"seasonality_strength": "strong"}, "seasonality_strength"),
        ({"distribution_window": "3"}, "distribution_window"),
        ({"continuity_max_events_per_citizen": "2"}, "continuity_max_events_per_citizen"),
        (
            {"health_transition_weights": {"hospitalized": {"short": {"deceased": 1.0}}}},
            "hospitalized -> deceased is not allowed",
        ),
        (
            {"health_transition_weights": {"critical": {"short": {"deceased": "often"}}}},
            "health_transition_weights.critical.short.deceased",
        ),
    ],
)
def test_invalid_config_is_rejected(overrides, message):
    with pytest.raises(ConfigValidationError, match=message):
        GenerationalEngine(
            registry=InMemoryCitizenRegistry(),
            ledger=InMemoryLedgerStore(),
            config=overrides,
        )


def test_json_and_csv_backends_round_trip(tmp_path):
    citizens_path = tmp_path / "citizens.json"
    citizens_path.write_text(json.dumps(_population(40)), encoding="utf-8")
    ledger_path = tmp_path / "life_history_log.csv"

    engine = GenerationalEngine(
        registry=JsonCitizenRegistry(citizens_path),
        ledger=CsvLedgerStore(ledger_path),
        seed=42,
        config=_busy_config(),
    )
    results = engine.run_cycles(1, 3)

    rows = CsvLedgerStore(ledger_path).read_rows()
    assert len(rows) == sum(len(r.events) for r in results)

    reloaded = {c.citizen_id: c for c in JsonCitizenRegistry(citizens_path).load_active_citizens()}
    assert len(reloaded) == 40
    for event in results[-1].events:
        assert event.category.value in reloaded[event.citizen_id].life_history


def test_sql_backend(sqlite_engine):
    db_manager.insert_citizens(_population(30), engine=sqlite_engine)
    engine = GenerationalEngine(
        registry=SqlCitizenRegistry(engine=sqlite_engine),
        ledger=SqlLedgerStore(engine=sqlite_engine),
        seed=42,
        config=_busy_config(),
    )

    result = engine.run_cycle(20)

    rows = db_manager.load_citizen_rows(engine=sqlite_engine)
    assert len(rows) == 30
    columns = db_manager.get_table_columns("life_history_log", sqlite_engine)
    assert "POPID" in columns
    assert result.rows_written == len(result.events)
