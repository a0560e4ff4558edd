"""Health lifecycle state machine.

Citizens move through a closed set of statuses::

    active -> hospitalized -> recovering -> active
                   |              |
                   v              v
               critical      hospitalized (setback)
                   |
                   v
               deceased (terminal)

Transient citizens (hospitalized, recovering, critical) are evaluated once
per cycle. Each evaluation takes exactly one draw from the cycle RNG and then
applies forced resolution, so a citizen who has overstayed a transient status
is moved on regardless of the roll while the draw sequence stays the same.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from generational.calendar import CalendarContext
from generational.errors import InvalidTransitionError, UnknownStatusError

if TYPE_CHECKING:
    from generational.registry import Citizen


_logger = logging.getLogger("generational.health")


class HealthStatus(str, Enum):
    ACTIVE = "active"
    HOSPITALIZED = "hospitalized"
    RECOVERING = "recovering"
    CRITICAL = "critical"
    DECEASED = "deceased"

    @classmethod
    def parse(cls, value: Any) -> HealthStatus:
        """Parse a status string case-insensitively; unknown values are rejected."""
        if isinstance(value, HealthStatus):
            return value
        if not isinstance(value, str):
            raise UnknownStatusError(f"Health status must be a string, got {value!r}")
        cleaned = value.strip().lower()
        cleaned = STATUS_ALIASES.get(cleaned, cleaned)
        try:
            return cls(cleaned)
        except ValueError as e:
            raise UnknownStatusError(f"Unknown health status '{value}'") from e

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_STATUSES


STATUS_ALIASES = {
    "serious condition": "critical",
    "serious-condition": "critical",
    "injured": "hospitalized",
}

TRANSIENT_STATUSES = frozenset({
    HealthStatus.HOSPITALIZED,
    HealthStatus.RECOVERING,
    HealthStatus.CRITICAL,
})

ALLOWED_TRANSITIONS: dict[HealthStatus, frozenset[HealthStatus]] = {
    HealthStatus.ACTIVE: frozenset({HealthStatus.HOSPITALIZED, HealthStatus.DECEASED}),
    HealthStatus.HOSPITALIZED: frozenset({HealthStatus.RECOVERING, HealthStatus.CRITICAL}),
    HealthStatus.RECOVERING: frozenset({HealthStatus.ACTIVE, HealthStatus.HOSPITALIZED}),
    HealthStatus.CRITICAL: frozenset({HealthStatus.DECEASED, HealthStatus.RECOVERING}),
    HealthStatus.DECEASED: frozenset(),
}

# Outcome weights per status and duration bracket ("stay" keeps the status).
# Brackets: short <= 2 cycles, medium <= 4 cycles, long beyond that.
HEALTH_TRANSITION_WEIGHTS: dict[str, dict[str, dict[str, float]]] = {
    "hospitalized": {
        "short": {"recovering": 0.40, "critical": 0.10, "stay": 0.50},
        "medium": {"recovering": 0.50, "critical": 0.15, "stay": 0.35},
        "long": {"recovering": 0.60, "critical": 0.20, "stay": 0.20},
    },
    "critical": {
        "short": {"recovering": 0.10, "deceased": 0.40, "stay": 0.50},
        "long": {"recovering": 0.10, "deceased": 0.60, "stay": 0.30},
    },
    "recovering": {
        "short": {"active": 0.70, "hospitalized": 0.10, "stay": 0.20},
        "long": {"active": 0.90, "hospitalized": 0.05, "stay": 0.05},
    },
}

ADVERSE_OUTCOMES = frozenset({"critical", "deceased", "hospitalized"})
FAVOURABLE_OUTCOMES = frozenset({"recovering", "active"})
STAY = "stay"
DURATION_BRACKETS = ("short", "medium", "long")


def merge_transition_weights(
    overrides: Mapping[str, Mapping[str, Mapping[str, float]]] | None,
) -> dict[str, dict[str, dict[str, float]]]:
    """Layer overrides onto HEALTH_TRANSITION_WEIGHTS per status, bracket and outcome."""
    merged = {
        status: {bracket: dict(weights) for bracket, weights in brackets.items()}
        for status, brackets in HEALTH_TRANSITION_WEIGHTS.items()
    }
    for status, brackets in (overrides or {}).items():
        table = merged.setdefault(HealthStatus.parse(status).value, {})
        for bracket, weights in brackets.items():
            outcomes = table.setdefault(bracket, {})
            for outcome, weight in weights.items():
                name = STAY if outcome == STAY else HealthStatus.parse(outcome).value
                outcomes[name] = weight
    return merged


def transition_weight_errors(weights: Any) -> list[str]:
    """Problems with a ``health_transition_weights`` override, one message each."""
    if not isinstance(weights, Mapping):
        return ["health_transition_weights must be a mapping"]
    errors = []
    for status_name, brackets in weights.items():
        prefix = f"health_transition_weights.{status_name}"
        try:
            status = HealthStatus.parse(status_name)
        except UnknownStatusError:
            errors.append(f"{prefix} is not a health status")
            continue
        if not status.is_transient:
            errors.append(f"{prefix} is not a transient status")
            continue
        if not isinstance(brackets, Mapping):
            errors.append(f"{prefix} must map duration brackets to weights")
            continue
        for bracket, outcomes in brackets.items():
            if bracket not in DURATION_BRACKETS:
                errors.append(f"{prefix}.{bracket} is not one of {', '.join(DURATION_BRACKETS)}")
                continue
            if not isinstance(outcomes, Mapping):
                errors.append(f"{prefix}.{bracket} must map outcomes to weights")
                continue
            for outcome, weight in outcomes.items():
                key = f"{prefix}.{bracket}.{outcome}"
                if outcome != STAY:
                    try:
                        target = HealthStatus.parse(outcome)
                    except UnknownStatusError:
                        errors.append(f"{key} is not a health status")
                        continue
                    if target not in ALLOWED_TRANSITIONS[status]:
                        errors.append(f"{key}: {status.value} -> {target.value} is not allowed")
                        continue
                if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
                    errors.append(f"{key} must be a non-negative number")
    return errors


def validate_transition(previous: HealthStatus, new: HealthStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[previous]:
        raise InvalidTransitionError(
            f"Transition {previous.value} -> {new.value} is not allowed"
        )


def duration_bracket(duration: int) -> str:
    if duration <= 2:
        return "short"
    if duration <= 4:
        return "medium"
    return "long"


def _is_valid_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass(frozen=True)
class HealthTransition:
    """A status change applied to one citizen in one cycle."""
    citizen_id: str
    previous: HealthStatus
    new: HealthStatus
    cycle: int
    duration: int  # cycles spent in ``previous`` when the change happened
    forced: bool = False
    cause: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "citizen_id": self.citizen_id,
            "previous": self.previous.value,
            "new": self.new.value,
            "cycle": self.cycle,
            "duration": self.duration,
            "forced": self.forced,
            "cause": self.cause,
        }


class HealthLifecycle:
    """Evaluates and applies health transitions on working copies of citizens."""

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        cfg = dict(config or {})
        self.weights = merge_transition_weights(cfg.get("health_transition_weights"))
        self.max_hospitalized_cycles = int(cfg.get("max_hospitalized_cycles", 6))
        self.max_critical_cycles = int(cfg.get("max_critical_cycles", 4))
        self.recovery_cooldown_cycles = int(cfg.get("recovery_cooldown_cycles", 3))
        self.critical_stabilization_enabled = bool(cfg.get("critical_stabilization_enabled", True))

    def current_duration(self, citizen: Citizen, cycle: int) -> int:
        """Cycles the citizen has spent in its current status as of ``cycle``.

        A missing or corrupt start/duration is treated as having just entered
        the status: the start is reset to ``cycle`` and the duration to 0.
        """
        start = citizen.status_start_cycle
        if not _is_valid_count(start) or start > cycle or not _is_valid_count(citizen.status_duration):
            _logger.warning(
                f"Citizen {citizen.citizen_id}: corrupt status timing "
                f"(start={start!r}, duration={citizen.status_duration!r}); treating as new"
            )
            citizen.status_start_cycle = cycle
            citizen.status_duration = 0
            return 0
        return cycle - start

    def forced_target(self, status: HealthStatus, duration: int) -> HealthStatus | None:
        if status is HealthStatus.HOSPITALIZED and duration > self.max_hospitalized_cycles:
            return HealthStatus.RECOVERING
        if status is HealthStatus.CRITICAL and duration > self.max_critical_cycles:
            return HealthStatus.DECEASED
        if status is HealthStatus.RECOVERING and duration >= self.recovery_cooldown_cycles:
            return HealthStatus.ACTIVE
        return None

    def risk_factors(self, citizen: Citizen, calendar: CalendarContext) -> tuple[float, float]:
        """Return ``(risk, care)`` multipliers for adverse and favourable outcomes."""
        age = citizen.age if isinstance(citizen.age, int) else 0
        age_mod = 1.0
        if age >= 80:
            age_mod = 1.5
        elif age >= 70:
            age_mod = 1.3

        # Top tiers get better care
        tier_mod = 0.8 if isinstance(citizen.tier, int) and citizen.tier <= 2 else 1.0

        env_mod = 1.0
        if calendar.season == "winter":
            env_mod *= 1.1
        if calendar.is_stress_holiday:
            env_mod *= 1.1

        return age_mod * tier_mod * env_mod, age_mod * tier_mod

    def outcome_weights(
        self,
        citizen: Citizen,
        duration: int,
        calendar: CalendarContext,
    ) -> list[tuple[str, float]]:
        """Normalized outcome weights for a transient citizen (sums to 1)."""
        table = self.weights.get(citizen.health_status.value, {})
        bracket = table.get(duration_bracket(duration)) or table.get("long") or table.get("short") or {}
        risk, care = self.risk_factors(citizen, calendar)

        adjusted: list[tuple[str, float]] = []
        for outcome, weight in bracket.items():
            weight = max(float(weight), 0.0)
            if (
                citizen.health_status is HealthStatus.CRITICAL
                and outcome == HealthStatus.RECOVERING.value
                and not self.critical_stabilization_enabled
            ):
                weight = 0.0
            if outcome in ADVERSE_OUTCOMES:
                weight *= risk
            elif outcome in FAVOURABLE_OUTCOMES and care > 0:
                weight /= care
            adjusted.append((outcome, weight))

        total = sum(weight for _, weight in adjusted)
        if total <= 0:
            return [(STAY, 1.0)]
        return [(outcome, weight / total) for outcome, weight in adjusted]

    def evaluate(
        self,
        citizen: Citizen,
        calendar: CalendarContext,
        rng: random.Random,
    ) -> HealthTransition | None:
        """Advance one transient citizen by one cycle.

        Returns the applied transition, or ``None`` when the citizen stays
        (its ``status_duration`` is then refreshed for the cycle).
        """
        status = citizen.health_status
        if not status.is_transient:
            return None

        cycle = calendar.cycle_number
        duration = self.current_duration(citizen, cycle)
        roll = rng.random()

        target = self.forced_target(status, duration)
        forced = target is not None
        if target is None:
            outcome = STAY
            cumulative = 0.0
            for name, weight in self.outcome_weights(citizen, duration, calendar):
                cumulative += weight
                if roll < cumulative:
                    outcome = name
                    break
            if outcome != STAY:
                target = HealthStatus.parse(outcome)

        if target is None or target is status:
            citizen.status_duration = duration
            return None

        if forced:
            _logger.info(
                f"Citizen {citizen.citizen_id}: forced {status.value} -> {target.value} "
                f"after {duration} cycles"
            )
        return self._apply(citizen, target, cycle, duration, forced)

    def admit(self, citizen: Citizen, cycle: int) -> HealthTransition:
        """Hospitalize an active citizen after a health incident."""
        return self._apply(citizen, HealthStatus.HOSPITALIZED, cycle, citizen.status_duration or 0, False)

    def record_death(self, citizen: Citizen, cycle: int) -> HealthTransition:
        """Mark an active citizen deceased (natural death)."""
        return self._apply(citizen, HealthStatus.DECEASED, cycle, citizen.status_duration or 0, False)

    def _apply(
        self,
        citizen: Citizen,
        target: HealthStatus,
        cycle: int,
        duration: int,
        forced: bool,
    ) -> HealthTransition:
        previous = citizen.health_status
        validate_transition(previous, target)
        transition = HealthTransition(
            citizen_id=citizen.citizen_id,
            previous=previous,
            new=target,
            cycle=cycle,
            duration=duration if _is_valid_count(duration) else 0,
            forced=forced,
            cause=citizen.health_cause,
        )
        citizen.health_status = target
        citizen.status_start_cycle = cycle
        citizen.status_duration = 0
        if target is HealthStatus.ACTIVE:
            citizen.health_cause = None
        return transition
