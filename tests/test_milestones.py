import pytest

from generational.health import HealthLifecycle, HealthStatus
from generational.milestones import (
    MC,
    CascadeRule,
    MilestoneGenerator,
    cycle_limits,
)
from generational.report import Severity
from generational.rng import rng_for


def _generator(quiet_config, **overrides):
    probabilities = dict(quiet_config["milestone_base_probabilities"])
    probabilities.update(overrides.pop("probabilities", {}))
    return MilestoneGenerator({**quiet_config, "milestone_base_probabilities": probabilities, **overrides})


@pytest.fixture
def lifecycle():
    return HealthLifecycle()


def test_health_incident_hospitalizes_active_citizen(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(
        quiet_config,
        probabilities={"health_event": 1.0},
        severe_incident_share=1.0,
        moderate_incident_share=0.0,
    )
    citizen = make_citizen("POP-00001", age=45)

    result = generator.generate([citizen], calendar_ctx(cycle=10), scripted_rng([0.0]), lifecycle)

    assert [e.category for e in result.events] == [MC.HEALTH_EVENT, MC.HOSPITALIZATION]
    assert [e.depth for e in result.events] == [1, 2]
    assert result.events[0].outcome == "severe"
    assert citizen.health_status is HealthStatus.HOSPITALIZED
    assert citizen.status_start_cycle == 10
    assert citizen.status_duration == 0
    assert result.transitions[0].new is HealthStatus.HOSPITALIZED
    assert "POP-00001" in result.changed


def test_minor_incident_does_not_hospitalize(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config, probabilities={"health_event": 1.0})
    citizen = make_citizen(age=45)

    # fire, severity roll lands in "minor", description pick
    result = generator.generate([citizen], calendar_ctx(), scripted_rng([0.0, 0.9, 0.0]), lifecycle)

    assert [e.category for e in result.events] == [MC.HEALTH_EVENT]
    assert result.events[0].outcome == "minor"
    assert citizen.health_status is HealthStatus.ACTIVE


def test_partner_death_cascade_is_capped_at_depth_limit(quiet_config, make_citizen, calendar_ctx, lifecycle):
    generator = _generator(
        quiet_config,
        probabilities={"death": 1.0},
        grief_health_probability=1.0,
        severe_incident_share=1.0,
        moderate_incident_share=0.0,
        cascade_depth_limit=3,
    )
    a = make_citizen("POP-00001", age=90, partner_id="POP-00002")
    b = make_citizen("POP-00002", age=30, partner_id="POP-00001")

    result = generator.generate([b, a], calendar_ctx(cycle=20), rng_for(20, 42), lifecycle)

    assert [(e.citizen_id, e.category, e.depth) for e in result.events] == [
        ("POP-00001", MC.DEATH, 1),
        ("POP-00002", MC.BEREAVEMENT, 2),
        ("POP-00002", MC.HEALTH_EVENT, 3),
    ]
    assert len(result.findings) == 1
    finding = result.findings[0]
    assert finding.issue == "cascade_depth_exceeded"
    assert finding.severity is Severity.MEDIUM
    assert finding.event_ref.index == 2
    assert finding.data["depth"] == 4
    assert a.health_status is HealthStatus.DECEASED
    # the dropped hospitalization never touched the partner
    assert b.health_status is HealthStatus.ACTIVE


def test_raising_depth_limit_lets_the_cascade_finish(quiet_config, make_citizen, calendar_ctx, lifecycle):
    generator = _generator(
        quiet_config,
        probabilities={"death": 1.0},
        grief_health_probability=1.0,
        severe_incident_share=1.0,
        moderate_incident_share=0.0,
        cascade_depth_limit=4,
    )
    a = make_citizen("POP-00001", age=90, partner_id="POP-00002")
    b = make_citizen("POP-00002", age=30, partner_id="POP-00001")

    result = generator.generate([a, b], calendar_ctx(cycle=20), rng_for(20, 42), lifecycle)

    assert result.events[-1].category is MC.HOSPITALIZATION
    assert result.findings == []
    assert b.health_status is HealthStatus.HOSPITALIZED


def test_grief_health_event_respects_history_cap(quiet_config, make_citizen, calendar_ctx, lifecycle):
    generator = _generator(
        quiet_config,
        probabilities={"death": 1.0},
        grief_health_probability=1.0,
        severe_incident_share=1.0,
        moderate_incident_share=0.0,
        cascade_depth_limit=4,
        max_health_events=3,
    )
    a = make_citizen("POP-00001", age=90, partner_id="POP-00002")
    b = make_citizen("POP-00002", age=30, partner_id="POP-00001", life_history=["health_event"] * 3)

    result = generator.generate([a, b], calendar_ctx(cycle=20), rng_for(20, 42), lifecycle)

    assert [(e.citizen_id, e.category) for e in result.events] == [
        ("POP-00001", MC.DEATH),
        ("POP-00002", MC.BEREAVEMENT),
    ]
    assert b.health_status is HealthStatus.ACTIVE
    assert b.life_history.count("health_event") == 3


def test_checks_follow_fixed_order(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config, probabilities={"wedding": 1.0, "promotion": 1.0})
    citizen = make_citizen(age=30, tier=4)

    result = generator.generate([citizen], calendar_ctx(month=10, season="fall"), scripted_rng([0.0] * 4), lifecycle)

    assert [e.category for e in result.events] == [MC.WEDDING, MC.PROMOTION]
    assert citizen.life_history == ["wedding", "promotion"]


def test_deceased_citizen_stops_further_checks(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config, probabilities={"death": 1.0, "health_event": 1.0})
    citizen = make_citizen(age=95)

    result = generator.generate([citizen], calendar_ctx(), scripted_rng([0.0] * 3), lifecycle)

    assert [e.category for e in result.events] == [MC.DEATH]
    assert result.events[0].new_status == "deceased"


def test_deceased_citizens_are_skipped(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config, probabilities={"graduation": 1.0})
    rng = scripted_rng()
    citizen = make_citizen(age=24, health_status="deceased", status_start_cycle=3)

    result = generator.generate([citizen], calendar_ctx(), rng, lifecycle)

    assert result.events == []
    assert rng.draws == 0


def test_caps_limit_events_per_cycle(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config, probabilities={"wedding": 1.0})
    citizens = [make_citizen(f"POP-0000{i}", age=30) for i in range(1, 5)]

    result = generator.generate(citizens, calendar_ctx(month=10, season="fall"), scripted_rng([0.0] * 8), lifecycle)

    assert [e.citizen_id for e in result.events] == ["POP-00001"]


def test_cycle_limits_seasonal_bumps(calendar_ctx):
    spring = cycle_limits(calendar_ctx(month=4, season="spring"))
    assert spring["graduation"] == 4
    assert spring["wedding"] == 2
    september = cycle_limits(calendar_ctx(month=9, season="fall"))
    assert september["birth"] == 2
    assert september["wedding"] == 1


@pytest.mark.parametrize(
    "category, overrides, expected",
    [
        (MC.GRADUATION, {"age": 40}, 0.0),
        (MC.GRADUATION, {"age": 24, "life_history": ["graduation"]}, 0.0),
        (MC.BIRTH, {"age": 30, "life_history": []}, 0.0),
        (MC.BIRTH, {"age": 30, "life_history": ["wedding", "birth", "birth", "birth"]}, 0.0),
        (MC.DEATH, {"age": 50}, 0.0),
        (MC.RETIREMENT, {"age": 45}, 0.0),
    ],
)
def test_ineligible_citizens_have_zero_chance(make_citizen, calendar_ctx, category, overrides, expected):
    generator = MilestoneGenerator({"seasonality_enabled": False})
    citizen = make_citizen(**overrides)
    assert generator.chance(category, citizen, calendar_ctx()) == expected


def test_chance_is_clamped_to_one(make_citizen, calendar_ctx):
    generator = MilestoneGenerator({"milestone_base_probabilities": {"death": 0.5}})
    assert generator.chance(MC.DEATH, make_citizen(age=92), calendar_ctx(month=12, season="winter")) == 1.0


def test_transient_citizens_are_advanced(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    generator = _generator(quiet_config)
    citizen = make_citizen(health_status="recovering", status_start_cycle=2)

    result = generator.generate([citizen], calendar_ctx(cycle=10), scripted_rng([0.5]), lifecycle)

    assert [e.category for e in result.events] == [MC.RECOVERY]
    event = result.events[0]
    assert (event.previous_status, event.new_status, event.outcome) == ("recovering", "active", "forced")
    assert event.month == 3 and event.season == "spring"


def test_custom_cascade_rules_replace_defaults(quiet_config, make_citizen, calendar_ctx, scripted_rng, lifecycle):
    rules = [CascadeRule(MC.WEDDING, MC.WEDDING, target="partner")]
    probabilities = {**quiet_config["milestone_base_probabilities"], "wedding": 1.0}
    generator = MilestoneGenerator(
        {**quiet_config, "milestone_base_probabilities": probabilities},
        cascade_rules=rules,
    )
    a = make_citizen("POP-00001", age=30, partner_id="POP-00002")
    b = make_citizen("POP-00002", age=31, partner_id="POP-00001")

    result = generator.generate([a, b], calendar_ctx(month=10, season="fall"), scripted_rng([0.0] * 6), lifecycle)

    assert [(e.citizen_id, e.depth) for e in result.events[:2]] == [("POP-00001", 1), ("POP-00002", 2)]


def test_same_seed_same_batch(make_citizen, calendar_ctx, lifecycle):
    generator = MilestoneGenerator({"milestone_base_probabilities": {"graduation": 0.5, "wedding": 0.5}})

    def run():
        citizens = [make_citizen(f"POP-{i:05d}", age=22 + i % 20) for i in range(1, 30)]
        result = generator.generate(citizens, calendar_ctx(), rng_for(10, 42), HealthLifecycle())
        return [e.to_dict() for e in result.events]

    assert run() == run()
