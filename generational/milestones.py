"""Milestone generator.

Walks the cycle's working set of citizens in ascending ID order and produces
the cycle's ``MilestoneEvent`` batch:

- transient citizens (hospitalized, recovering, critical) are advanced by the
  health lifecycle and their transition becomes an event;
- active citizens are checked for life milestones (graduation, wedding,
  birth, promotion, retirement, natural death, health incidents);
- every event can trigger follow-on events (cascades) which are resolved in
  the same cycle, right after the event that caused them.

Cascade depth is capped. A follow-on that would exceed the cap is dropped and
reported as a finding; the cycle carries on.

All randomness comes from the RNG handed to ``generate``, consumed in a fixed
order, so the same snapshot, cycle and seed always give the same batch.
"""

from __future__ import annotations

import logging
import random
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from generational.calendar import CalendarContext, normalize_season
from generational.errors import InvalidSeasonError
from generational.health import HealthLifecycle, HealthStatus, HealthTransition
from generational.registry import Citizen
from generational.report import EventRef, Finding, Severity


_logger = logging.getLogger("generational.milestones")


class MilestoneCategory(str, Enum):
    GRADUATION = "graduation"
    WEDDING = "wedding"
    BIRTH = "birth"
    PROMOTION = "promotion"
    RETIREMENT = "retirement"
    DEATH = "death"
    HEALTH_EVENT = "health_event"
    HOSPITALIZATION = "hospitalization"
    DETERIORATION = "deterioration"
    RECOVERING = "recovering"
    RECOVERY = "recovery"
    SETBACK = "setback"
    BEREAVEMENT = "bereavement"


MC = MilestoneCategory

CELEBRATORY_CATEGORIES = frozenset({
    MC.GRADUATION,
    MC.WEDDING,
    MC.BIRTH,
    MC.PROMOTION,
    MC.RETIREMENT,
})

HEALTH_CATEGORIES = frozenset({
    MC.HEALTH_EVENT,
    MC.HOSPITALIZATION,
    MC.DETERIORATION,
    MC.RECOVERING,
    MC.RECOVERY,
    MC.SETBACK,
})

LEDGER_TAGS = {
    MC.GRADUATION: "Graduation",
    MC.WEDDING: "Wedding",
    MC.BIRTH: "Birth",
    MC.PROMOTION: "Promotion",
    MC.RETIREMENT: "Retirement",
    MC.DEATH: "Death",
    MC.HEALTH_EVENT: "Health",
    MC.HOSPITALIZATION: "Hospitalized",
    MC.DETERIORATION: "Critical",
    MC.RECOVERING: "Recovering",
    MC.RECOVERY: "Recovery",
    MC.SETBACK: "Setback",
    MC.BEREAVEMENT: "Grief",
}

# Order in which an active citizen is checked each cycle
MILESTONE_CHECK_ORDER = (
    MC.GRADUATION,
    MC.WEDDING,
    MC.BIRTH,
    MC.PROMOTION,
    MC.RETIREMENT,
    MC.DEATH,
    MC.HEALTH_EVENT,
)

AGE_RANGES = {
    MC.GRADUATION: (22, 28),
    MC.WEDDING: (24, 50),
    MC.BIRTH: (26, 42),
    MC.PROMOTION: (28, 58),
    MC.RETIREMENT: (58, 120),
    MC.DEATH: (65, 120),
}

DEFAULT_BASE_PROBABILITIES = {
    "graduation": 0.005,
    "wedding": 0.002,
    "birth": 0.003,
    "promotion": 0.002,
    "retirement": 0.001,
    "death": 0.001,
    "health_event": 0.0005,
}

# Per-cycle caps before calendar bumps (see cycle_limits)
DEFAULT_MILESTONE_LIMITS = {
    "graduation": 2,
    "wedding": 1,
    "birth": 1,
    "promotion": 2,
    "retirement": 1,
    "death": 1,
}

# Season multipliers (1.0 = no effect), keyed by normalized season
SEASONAL_MODIFIERS: dict[str, dict[str, float]] = {
    "winter": {"death": 1.3, "health_event": 1.5},
    "spring": {"graduation": 3.0, "wedding": 2.0},
    "summer": {"wedding": 2.0},
    "fall": {},
}

MONTH_MODIFIERS: dict[int, dict[str, float]] = {
    1: {"promotion": 1.5, "retirement": 1.5, "health_event": 1.3},
    5: {"graduation": 2.0},
    6: {"graduation": 2.0, "wedding": 1.5},  # June weddings
    7: {"birth": 1.3},
    8: {"birth": 1.3},
    9: {"birth": 2.6},
    10: {"birth": 1.3},
    12: {"promotion": 1.5, "retirement": 2.0},
}

HOLIDAY_MODIFIERS: dict[str, dict[str, float]] = {
    "Valentine": {"wedding": 2.5},
    "NewYearsEve": {"wedding": 1.5, "health_event": 1.4},
    "Thanksgiving": {"health_event": 1.4},
    "Holiday": {"health_event": 1.4},
}

WEDDING_HOLIDAYS = frozenset({"Valentine", "NewYearsEve"})

DESCRIPTIONS: dict[str, list[str]] = {
    "graduation_spring": [
        "walked across the stage at their commencement ceremony",
        "graduated with their class in a joyful spring celebration",
        "received their diploma at the outdoor commencement",
    ],
    "graduation": [
        "completed their university studies",
        "graduated with honors from their program",
        "earned their advanced degree",
    ],
    "wedding_june": [
        "celebrated a beautiful June wedding",
        "tied the knot in a classic June ceremony",
    ],
    "wedding": [
        "celebrated their wedding with close friends and family",
        "entered into a committed partnership",
        "tied the knot in an intimate ceremony",
    ],
    "birth": [
        "welcomed a new child into their family",
        "celebrated the birth of their child",
    ],
    "promotion": [
        "received a significant promotion",
        "advanced to a senior position",
        "was recognized with increased responsibilities",
    ],
    "retirement": [
        "announced their retirement after a long career",
        "stepped back from professional life",
    ],
    "death_elderly": [
        "passed away peacefully",
        "died surrounded by family",
    ],
    "death": [
        "passed away unexpectedly",
        "was lost to the community",
    ],
    "health_severe": [
        "was hospitalized for a serious medical condition",
        "required emergency medical care",
    ],
    "health_winter": [
        "recovered from a winter illness",
        "took time to recover from the flu",
    ],
    "health": [
        "dealt with a minor health concern",
        "took time to address a medical issue",
    ],
}

TRANSITION_CATEGORIES = {
    (HealthStatus.ACTIVE, HealthStatus.HOSPITALIZED): MC.HOSPITALIZATION,
    (HealthStatus.HOSPITALIZED, HealthStatus.CRITICAL): MC.DETERIORATION,
    (HealthStatus.HOSPITALIZED, HealthStatus.RECOVERING): MC.RECOVERING,
    (HealthStatus.CRITICAL, HealthStatus.RECOVERING): MC.RECOVERING,
    (HealthStatus.RECOVERING, HealthStatus.ACTIVE): MC.RECOVERY,
    (HealthStatus.RECOVERING, HealthStatus.HOSPITALIZED): MC.SETBACK,
}

TRANSITION_TEXT = {
    MC.HOSPITALIZATION: "{name} was admitted to the hospital",
    MC.DETERIORATION: "{name}'s condition has worsened to critical",
    MC.RECOVERING: "{name} is now recovering and expected to be released soon",
    MC.RECOVERY: "{name} has made a full recovery and returned to their duties",
    MC.SETBACK: "{name} has suffered a setback and been readmitted",
    MC.DEATH: "{name} has passed away",
}


@dataclass(frozen=True)
class MilestoneEvent:
    citizen_id: str
    name: str
    category: MilestoneCategory
    tag: str
    description: str
    cycle: int
    month: int
    season: str | None
    holiday: str
    neighborhood: str = ""
    cause: str | None = None
    outcome: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    depth: int = 1

    @property
    def is_celebratory(self) -> bool:
        return self.category in CELEBRATORY_CATEGORIES

    def to_dict(self) -> dict[str, Any]:
        return {
            "citizen_id": self.citizen_id,
            "name": self.name,
            "category": self.category.value,
            "tag": self.tag,
            "description": self.description,
            "cycle": self.cycle,
            "month": self.month,
            "season": self.season,
            "holiday": self.holiday,
            "neighborhood": self.neighborhood,
            "cause": self.cause,
            "outcome": self.outcome,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "depth": self.depth,
        }


@dataclass(frozen=True)
class CascadeRule:
    """When ``trigger`` fires, evaluate ``follow_on`` for ``target``.

    ``target`` is ``"self"`` (the triggering citizen) or ``"partner"``.
    """
    trigger: MilestoneCategory
    follow_on: MilestoneCategory
    target: str = "self"
    probability: float = 1.0
    when_outcome: str | None = None


def default_cascade_rules(config: Mapping[str, Any] | None = None) -> list[CascadeRule]:
    cfg = config or {}
    return [
        CascadeRule(MC.HEALTH_EVENT, MC.HOSPITALIZATION, "self", 1.0, when_outcome="severe"),
        CascadeRule(MC.DEATH, MC.BEREAVEMENT, "partner", 1.0),
        CascadeRule(
            MC.BEREAVEMENT,
            MC.HEALTH_EVENT,
            "self",
            float(cfg.get("grief_health_probability", 0.1)),
        ),
    ]


def seasonal_modifier(category: str, season: Any, strength: float = 1.0) -> float:
    """Season multiplier for a category; unknown seasons are neutral (1.0)."""
    try:
        key = normalize_season(season)
    except InvalidSeasonError:
        return 1.0
    base = SEASONAL_MODIFIERS.get(key, {}).get(str(category), 1.0)
    # Apply strength (1.0 = full effect, 0 = no effect)
    return 1.0 + (base - 1.0) * strength


def calendar_modifier(category: str, calendar: CalendarContext, strength: float = 1.0) -> float:
    """Combined season, month and holiday multiplier."""
    month_base = MONTH_MODIFIERS.get(calendar.month, {}).get(category, 1.0)
    holiday_base = HOLIDAY_MODIFIERS.get(calendar.holiday, {}).get(category, 1.0)
    return (
        seasonal_modifier(category, calendar.season, strength)
        * (1.0 + (month_base - 1.0) * strength)
        * (1.0 + (holiday_base - 1.0) * strength)
    )


def cycle_limits(calendar: CalendarContext, base: Mapping[str, int] | None = None) -> dict[str, int]:
    """Per-cycle milestone caps with the seasonal bumps applied."""
    limits = dict(base or DEFAULT_MILESTONE_LIMITS)
    if calendar.season == "spring" or calendar.month in (5, 6):
        limits["graduation"] = limits.get("graduation", 0) * 2
    if (
        calendar.month == 6
        or calendar.season in ("spring", "summer")
        or calendar.holiday in WEDDING_HOLIDAYS
    ):
        limits["wedding"] = limits.get("wedding", 0) * 2
    if calendar.month == 9:
        limits["birth"] = limits.get("birth", 0) * 2
    if calendar.month in (12, 1):
        limits["retirement"] = limits.get("retirement", 0) * 2
    return limits


def _pick(options: Sequence[str], rng: random.Random) -> str:
    if len(options) == 1:
        return options[0]
    return options[min(int(rng.random() * len(options)), len(options) - 1)]


def _in_age_range(category: MilestoneCategory, age: int) -> bool:
    low, high = AGE_RANGES.get(category, (0, 200))
    return low <= age <= high


@dataclass
class GenerationResult:
    events: list[MilestoneEvent] = field(default_factory=list)
    transitions: list[HealthTransition] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    changed: set[str] = field(default_factory=set)

    def category_counts(self) -> Counter:
        return Counter(e.category.value for e in self.events)


@dataclass
class _CycleState:
    calendar: CalendarContext
    rng: random.Random
    by_id: dict[str, Citizen]
    limits: dict[str, int]
    result: GenerationResult
    counts: Counter = field(default_factory=Counter)


class MilestoneGenerator:
    """Produces one cycle's milestone events for a working set of citizens."""

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        cascade_rules: Iterable[CascadeRule] | None = None,
    ) -> None:
        cfg = dict(config or {})
        self.base_probabilities = {
            **DEFAULT_BASE_PROBABILITIES,
            **(cfg.get("milestone_base_probabilities") or {}),
        }
        self.limits = {**DEFAULT_MILESTONE_LIMITS, **(cfg.get("milestone_limits") or {})}
        self.seasonality_enabled = bool(cfg.get("seasonality_enabled", True))
        self.seasonality_strength = float(cfg.get("seasonality_strength", 1.0))
        self.severe_share = float(cfg.get("severe_incident_share", 0.05))
        self.moderate_share = float(cfg.get("moderate_incident_share", 0.15))
        self.depth_limit = int(cfg.get("cascade_depth_limit", 3))
        self.max_health_events = int(cfg.get("max_health_events", 3))
        self.cascade_rules = list(
            cascade_rules if cascade_rules is not None else default_cascade_rules(cfg)
        )

    def generate(
        self,
        citizens: Iterable[Citizen],
        calendar: CalendarContext,
        rng: random.Random,
        lifecycle: HealthLifecycle,
    ) -> GenerationResult:
        """Mutates the given citizens in place; pass working copies."""
        ordered = sorted(citizens, key=lambda c: c.citizen_id)
        state = _CycleState(
            calendar=calendar,
            rng=rng,
            by_id={c.citizen_id: c for c in ordered},
            limits=cycle_limits(calendar, self.limits),
            result=GenerationResult(),
        )

        for citizen in ordered:
            # A cascade earlier in the cycle already moved this citizen
            if citizen.citizen_id in state.result.changed:
                continue
            status = citizen.health_status
            if status is HealthStatus.DECEASED:
                continue
            if status.is_transient:
                transition = lifecycle.evaluate(citizen, calendar, rng)
                if transition is not None:
                    self._emit(self._transition_event(citizen, transition, 1, state), state, lifecycle)
                continue

            for category in MILESTONE_CHECK_ORDER:
                if citizen.health_status is not HealthStatus.ACTIVE:
                    break
                event = self._check(category, citizen, state, lifecycle)
                if event is not None:
                    self._emit(event, state, lifecycle)

        return state.result

    # Chance calculation

    def chance(self, category: MilestoneCategory, citizen: Citizen, calendar: CalendarContext) -> float:
        """Probability that ``category`` fires for an active citizen this cycle."""
        base = float(self.base_probabilities.get(category.value, 0.0))
        if base <= 0:
            return 0.0

        age = citizen.age if isinstance(citizen.age, int) else 0
        tier = citizen.tier if isinstance(citizen.tier, int) else 4
        history = citizen.life_history
        chance = base

        if category is MC.GRADUATION:
            if MC.GRADUATION.value in history or not _in_age_range(category, age):
                return 0.0
            if tier >= 3:
                chance *= 2.0
            if 24 <= age <= 26:
                chance *= 1.5
        elif category is MC.WEDDING:
            if MC.WEDDING.value in history or not _in_age_range(category, age):
                return 0.0
            if 28 <= age <= 35:
                chance *= 2.0
            elif age > 40:
                chance *= 0.5
            if citizen.partner_id:
                chance *= 3.0
        elif category is MC.BIRTH:
            births = history.count(MC.BIRTH.value)
            if MC.WEDDING.value not in history or births >= 3 or not _in_age_range(category, age):
                return 0.0
            chance *= 1.0 - births / 3.0
            if 28 <= age <= 35:
                chance *= 1.6
            elif age > 38:
                chance *= 0.7
            chance = max(chance, base / 6.0)
        elif category is MC.PROMOTION:
            if not _in_age_range(category, age) or MC.PROMOTION.value in history[-2:]:
                return 0.0
            if tier <= 2:
                chance *= 0.5
            elif tier == 3:
                chance *= 1.5
            elif tier >= 4:
                chance *= 2.0
        elif category is MC.RETIREMENT:
            if MC.RETIREMENT.value in history or not _in_age_range(category, age):
                return 0.0
            for threshold, factor in ((70, 50.0), (68, 20.0), (65, 10.0), (62, 5.0)):
                if age >= threshold:
                    chance *= factor
                    break
            if tier >= 4:
                chance *= 0.5
        elif category is MC.DEATH:
            if not _in_age_range(category, age):
                return 0.0
            for threshold, factor in ((90, 50.0), (85, 20.0), (80, 10.0), (75, 5.0)):
                if age >= threshold:
                    chance *= factor
                    break
            if MC.HEALTH_EVENT.value in history:
                chance *= 1.5
            if calendar.is_stress_holiday and age >= 70:
                chance *= 1.2
        elif category is MC.HEALTH_EVENT:
            if history.count(MC.HEALTH_EVENT.value) >= self.max_health_events:
                return 0.0
            for threshold, factor in ((70, 6.0), (60, 4.0), (50, 2.0)):
                if age >= threshold:
                    chance *= factor
                    break

        if self.seasonality_enabled:
            chance *= calendar_modifier(category.value, calendar, self.seasonality_strength)
        return min(max(chance, 0.0), 1.0)

    # Root events

    def _check(
        self,
        category: MilestoneCategory,
        citizen: Citizen,
        state: _CycleState,
        lifecycle: HealthLifecycle,
    ) -> MilestoneEvent | None:
        limit = state.limits.get(category.value)
        if limit is not None and state.counts[category.value] >= limit:
            return None
        chance = self.chance(category, citizen, state.calendar)
        if chance <= 0 or state.rng.random() >= chance:
            return None

        state.counts[category.value] += 1
        if category is MC.DEATH:
            transition = lifecycle.record_death(citizen, state.calendar.cycle_number)
            return self._transition_event(citizen, transition, 1, state, natural=True)
        if category is MC.HEALTH_EVENT:
            return self._health_incident(citizen, state, 1)
        return self._milestone_event(category, citizen, state, 1)

    def _milestone_event(
        self,
        category: MilestoneCategory,
        citizen: Citizen,
        state: _CycleState,
        depth: int,
        outcome: str | None = None,
        text: str | None = None,
    ) -> MilestoneEvent:
        calendar = state.calendar
        if text is None:
            key = category.value
            if category is MC.GRADUATION and calendar.season == "spring":
                key = "graduation_spring"
            elif category is MC.WEDDING and calendar.month == 6:
                key = "wedding_june"
            text = _pick(DESCRIPTIONS[key], state.rng)
        citizen.life_history.append(category.value)
        return MilestoneEvent(
            citizen_id=citizen.citizen_id,
            name=citizen.name,
            category=category,
            tag=LEDGER_TAGS[category],
            description=f"{citizen.name} {text}",
            cycle=calendar.cycle_number,
            month=calendar.month,
            season=calendar.season,
            holiday=calendar.holiday,
            neighborhood=citizen.neighborhood,
            outcome=outcome,
            depth=depth,
        )

    def _health_incident(self, citizen: Citizen, state: _CycleState, depth: int) -> MilestoneEvent:
        roll = state.rng.random()
        if roll < self.severe_share:
            severity, key = "severe", "health_severe"
        elif roll < self.severe_share + self.moderate_share:
            severity, key = "moderate", "health"
        else:
            severity, key = "minor", "health"
        if severity != "severe" and state.calendar.season == "winter":
            key = "health_winter"
        text = _pick(DESCRIPTIONS[key], state.rng)
        return self._milestone_event(MC.HEALTH_EVENT, citizen, state, depth, outcome=severity, text=text)

    def _transition_event(
        self,
        citizen: Citizen,
        transition: HealthTransition,
        depth: int,
        state: _CycleState,
        natural: bool = False,
    ) -> MilestoneEvent:
        state.result.transitions.append(transition)
        if transition.new is HealthStatus.DECEASED:
            category = MC.DEATH
        else:
            category = TRANSITION_CATEGORIES[(transition.previous, transition.new)]

        if natural:
            key = "death_elderly" if citizen.age >= 75 else "death"
            description = f"{citizen.name} {_pick(DESCRIPTIONS[key], state.rng)}"
        else:
            description = TRANSITION_TEXT[category].format(name=citizen.name)
            if category is MC.DEATH and transition.cause:
                description += f" due to complications from {transition.cause}"
            if transition.forced:
                description += f" after {transition.duration} cycles"

        calendar = state.calendar
        citizen.life_history.append(category.value)
        return MilestoneEvent(
            citizen_id=citizen.citizen_id,
            name=citizen.name,
            category=category,
            tag=LEDGER_TAGS[category],
            description=description,
            cycle=calendar.cycle_number,
            month=calendar.month,
            season=calendar.season,
            holiday=calendar.holiday,
            neighborhood=citizen.neighborhood,
            cause=transition.cause,
            outcome="forced" if transition.forced else transition.new.value,
            previous_status=transition.previous.value,
            new_status=transition.new.value,
            depth=depth,
        )

    # Cascades

    def _emit(self, root: MilestoneEvent, state: _CycleState, lifecycle: HealthLifecycle) -> None:
        """Append ``root`` and resolve its cascades breadth-first."""
        queue = deque([root])
        while queue:
            event = queue.popleft()
            state.result.events.append(event)
            index = len(state.result.events) - 1
            if event.new_status is not None:
                state.result.changed.add(event.citizen_id)

            for rule in self.cascade_rules:
                if rule.trigger is not event.category:
                    continue
                if rule.when_outcome is not None and event.outcome != rule.when_outcome:
                    continue
                target = self._cascade_target(rule, event, state)
                if target is None:
                    continue
                if rule.probability < 1.0 and state.rng.random() >= rule.probability:
                    continue

                depth = event.depth + 1
                if depth > self.depth_limit:
                    _logger.warning(
                        f"Dropped {rule.follow_on.value} cascade for {target.citizen_id}: "
                        f"depth {depth} exceeds limit {self.depth_limit}"
                    )
                    state.result.findings.append(Finding(
                        validator="generator",
                        severity=Severity.MEDIUM,
                        issue="cascade_depth_exceeded",
                        message=(
                            f"{event.category.value} for {event.citizen_id} would trigger "
                            f"{rule.follow_on.value} for {target.citizen_id} at depth {depth} "
                            f"(limit {self.depth_limit}); follow-on dropped"
                        ),
                        event_ref=EventRef(index, event.citizen_id, event.category.value, event.cycle),
                        data={"follow_on": rule.follow_on.value, "target": target.citizen_id, "depth": depth},
                    ))
                    continue

                follow = self._follow_on(rule, target, event, depth, state, lifecycle)
                if follow is not None:
                    queue.append(follow)

    def _cascade_target(
        self,
        rule: CascadeRule,
        event: MilestoneEvent,
        state: _CycleState,
    ) -> Citizen | None:
        if rule.target == "partner":
            source = state.by_id.get(event.citizen_id)
            target = state.by_id.get(source.partner_id) if source and source.partner_id else None
        else:
            target = state.by_id.get(event.citizen_id)
        if target is None or target.health_status is HealthStatus.DECEASED:
            return None
        if rule.follow_on in (MC.HOSPITALIZATION, MC.HEALTH_EVENT, MC.DEATH):
            if target.health_status is not HealthStatus.ACTIVE:
                return None
        if rule.follow_on is MC.HEALTH_EVENT:
            if target.life_history.count(MC.HEALTH_EVENT.value) >= self.max_health_events:
                return None
        return target

    def _follow_on(
        self,
        rule: CascadeRule,
        target: Citizen,
        trigger: MilestoneEvent,
        depth: int,
        state: _CycleState,
        lifecycle: HealthLifecycle,
    ) -> MilestoneEvent | None:
        cycle = state.calendar.cycle_number
        if rule.follow_on is MC.HOSPITALIZATION:
            return self._transition_event(target, lifecycle.admit(target, cycle), depth, state)
        if rule.follow_on is MC.DEATH:
            return self._transition_event(target, lifecycle.record_death(target, cycle), depth, state)
        if rule.follow_on is MC.HEALTH_EVENT:
            return self._health_incident(target, state, depth)
        if rule.follow_on is MC.BEREAVEMENT:
            text = f"is mourning the loss of {trigger.name}"
            return self._milestone_event(MC.BEREAVEMENT, target, state, depth, outcome="grieving", text=text)
        return self._milestone_event(rule.follow_on, target, state, depth)

