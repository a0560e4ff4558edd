"""Generational Engine - runs one simulation cycle at a time.

This module ties the calendar, the citizen registry, the health lifecycle,
the milestone generator, the life-history ledger and the pre-publication
validator into a single ``run_cycle`` call.

Key Classes:
    GenerationalEngine: Orchestrates one cycle end to end
    CycleResult: Events, transitions and validation report for a cycle

Cycle sequence:
    1. Resolve the calendar context (season normalized; bad seasons become
       a finding and neutral modifiers)
    2. Load citizens from the registry into working copies
    3. Seed the cycle RNG from (base seed, cycle)
    4. Advance health statuses and generate milestones with cascades
    5. Append the whole batch to the ledger (all-or-nothing)
    6. Only then stage and commit citizen status updates
    7. Validate the batch and hand the result off as JSON

A ledger failure is raised to the caller before any citizen update is
committed, so a failed cycle can be rerun from the same snapshot.

Usage:
    from generational.cycle_engine import GenerationalEngine
    from generational.ledger import CsvLedgerStore
    from generational.registry import JsonCitizenRegistry

    engine = GenerationalEngine(
        registry=JsonCitizenRegistry(DATA_DIR / "citizens.json"),
        ledger=CsvLedgerStore(DATA_DIR / "life_history_log.csv"),
        seed=42,
    )
    result = engine.run_cycle(10)
    print(result.report.overall_status)

Configuration:
    See DEFAULT_CONFIG dict for all configurable parameters.
    Override via the config parameter in __init__.
"""

from __future__ import annotations

import copy
import json
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from generational.calendar import CalendarContext, CalendarProvider, CycleCalendar, resolve_calendar
from generational.errors import ConfigValidationError
from generational.health import (
    HEALTH_TRANSITION_WEIGHTS,
    HealthLifecycle,
    HealthTransition,
    transition_weight_errors,
)
from generational.ledger import LedgerStore, LifeHistoryLedgerWriter, iso_utc
from generational.milestones import (
    DEFAULT_BASE_PROBABILITIES,
    DEFAULT_MILESTONE_LIMITS,
    CascadeRule,
    MilestoneEvent,
    MilestoneGenerator,
)
from generational.registry import Citizen, CitizenRegistry
from generational.report import Finding, Severity, ValidationReport
from generational.rng import rng_for
from generational.validation import (
    DEFAULT_VALIDATION_CONFIG,
    CrisisWindow,
    PrePublicationValidator,
    WorldSnapshot,
)


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"

_logger = logging.getLogger("generational.engine")

# Default simulation parameters (can be overridden via config)
DEFAULT_CONFIG: dict[str, Any] = {
    "base_seed": 42,
    # Health lifecycle
    "health_transition_weights": HEALTH_TRANSITION_WEIGHTS,
    "max_hospitalized_cycles": 6,
    "max_critical_cycles": 4,
    "recovery_cooldown_cycles": 3,
    "critical_stabilization_enabled": True,
    # Milestones
    "milestone_base_probabilities": DEFAULT_BASE_PROBABILITIES,
    "milestone_limits": DEFAULT_MILESTONE_LIMITS,
    "seasonality_enabled": True,
    "seasonality_strength": 1.0,
    "severe_incident_share": 0.05,
    "moderate_incident_share": 0.15,
    "max_health_events": 3,
    # Cascades
    "cascade_depth_limit": 3,
    "grief_health_probability": 0.1,
    # Validation
    **DEFAULT_VALIDATION_CONFIG,
    # Output (None disables the JSON handoff file)
    "handoff_dir": None,
}


def _status_key(citizen: Citizen) -> tuple[Any, ...]:
    return (
        citizen.health_status,
        citizen.status_start_cycle,
        citizen.status_duration,
        citizen.health_cause,
    )


@dataclass
class CycleResult:
    """Everything one cycle produced, in batch order."""
    cycle: int
    calendar: CalendarContext
    events: list[MilestoneEvent]
    transitions: list[HealthTransition]
    report: ValidationReport
    rows_written: int = 0
    citizens_updated: int = 0

    def accepted_events(self) -> list[MilestoneEvent]:
        """Events not referenced by any HIGH finding."""
        held = self.report.flagged_indexes(Severity.HIGH)
        return [e for i, e in enumerate(self.events) if i not in held]

    def held_events(self) -> list[MilestoneEvent]:
        held = self.report.flagged_indexes(Severity.HIGH)
        return [e for i, e in enumerate(self.events) if i in held]

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "calendar": self.calendar.to_dict(),
            "events": [e.to_dict() for e in self.accepted_events()],
            "held_events": [e.to_dict() for e in self.held_events()],
            "transitions": [t.to_dict() for t in self.transitions],
            "report": self.report.to_dict(),
            "rows_written": self.rows_written,
            "citizens_updated": self.citizens_updated,
        }


class GenerationalEngine:
    """
    Cycle engine for generational events.

    Advances citizens through health statuses and life milestones, records
    every event in the life-history ledger and validates the batch.
    """

    def __init__(
        self,
        *,
        registry: CitizenRegistry,
        ledger: LedgerStore | LifeHistoryLedgerWriter,
        calendar: CalendarProvider | None = None,
        crisis: CrisisWindow | None = None,
        seed: int | None = None,
        config: dict[str, Any] | None = None,
        cascade_rules: Iterable[CascadeRule] | None = None,
    ) -> None:
        # Merge provided config with defaults
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self._validate_config()

        self.base_seed = seed if seed is not None else int(self.config["base_seed"])
        self.registry = registry
        self.calendar = calendar or CycleCalendar()
        self.crisis = crisis

        if isinstance(ledger, LifeHistoryLedgerWriter):
            self.ledger = ledger
        else:
            self.ledger = LifeHistoryLedgerWriter(ledger)
        # Column lookup is resolved once, at startup
        self.ledger.resolve_schema()

        self.lifecycle = HealthLifecycle(self.config)
        self.generator = MilestoneGenerator(self.config, cascade_rules=cascade_rules)
        self.validator = PrePublicationValidator(self.config)

        handoff_raw = self.config.get("handoff_dir")
        if handoff_raw:
            handoff = Path(handoff_raw)
            self.handoff_dir: Path | None = handoff if handoff.is_absolute() else BASE_DIR / handoff
        else:
            self.handoff_dir = None

        window = int(self.config["distribution_window"])
        self._category_history: deque[dict[str, int]] = deque(maxlen=max(window, 1))
        self.last_result: CycleResult | None = None
        self.current_cycle: int | None = None

    def _validate_config(self) -> None:
        """Validate configuration values."""
        cfg = self.config
        errors = []

        for key in (
            "severe_incident_share",
            "moderate_incident_share",
            "grief_health_probability",
            "distribution_tolerance",
        ):
            value = cfg[key]
            if not isinstance(value, (int, float)) or value < 0 or value > 1:
                errors.append(f"{key} must be between 0 and 1")
        shares = (cfg["severe_incident_share"], cfg["moderate_incident_share"])
        if all(isinstance(s, (int, float)) for s in shares) and sum(shares) > 1:
            errors.append("severe_incident_share + moderate_incident_share must be <= 1")
        for key in ("max_hospitalized_cycles", "max_critical_cycles", "recovery_cooldown_cycles"):
            if not isinstance(cfg[key], int) or cfg[key] < 1:
                errors.append(f"{key} must be a positive integer")
        if not isinstance(cfg["cascade_depth_limit"], int) or cfg["cascade_depth_limit"] < 1:
            errors.append("cascade_depth_limit must be a positive integer")
        strength = cfg["seasonality_strength"]
        if not isinstance(strength, (int, float)) or strength < 0:
            errors.append("seasonality_strength must be >= 0")
        if not isinstance(cfg["distribution_window"], int) or cfg["distribution_window"] < 0:
            errors.append("distribution_window must be a non-negative integer")
        limit = cfg["continuity_max_events_per_citizen"]
        if not isinstance(limit, int) or limit < 1:
            errors.append("continuity_max_events_per_citizen must be a positive integer")

        for name, probability in (cfg.get("milestone_base_probabilities") or {}).items():
            if not isinstance(probability, (int, float)) or probability < 0 or probability > 1:
                errors.append(f"milestone_base_probabilities.{name} must be between 0 and 1")
        for name, limit in (cfg.get("milestone_limits") or {}).items():
            if not isinstance(limit, int) or limit < 0:
                errors.append(f"milestone_limits.{name} must be a non-negative integer")

        errors.extend(transition_weight_errors(cfg.get("health_transition_weights") or {}))

        if errors:
            raise ConfigValidationError("Invalid configuration: " + "; ".join(errors))

    def is_crisis_active(self) -> bool:
        return (
            self.crisis is not None
            and self.current_cycle is not None
            and self.crisis.is_active(self.current_cycle)
        )

    def run_cycle(self, cycle: int, rng: random.Random | None = None) -> CycleResult:
        """Run a single cycle.

        Args:
            cycle: Absolute cycle number.
            rng: Optional RNG override; defaults to ``rng_for(cycle, base_seed)``.

        Returns:
            The cycle's CycleResult.

        Raises:
            SchemaMismatchError: If the batch does not fit the ledger. Nothing
                is appended and no citizen update is committed.
        """
        self.current_cycle = cycle
        findings: list[Finding] = []

        raw_calendar = self.calendar.get_calendar_context(cycle)
        calendar, season_error = resolve_calendar(raw_calendar, cycle)
        if season_error is not None:
            _logger.warning(f"Cycle {cycle}: {season_error}; using neutral seasonal modifiers")
            findings.append(Finding(
                validator="calendar",
                severity=Severity.LOW,
                issue="invalid_season",
                message=str(season_error),
                data={"season": raw_calendar.get("season")},
            ))

        citizens = self.registry.load_active_citizens()
        for citizen_id, reason in getattr(self.registry, "rejected", []):
            findings.append(Finding(
                validator="registry",
                severity=Severity.MEDIUM,
                issue="unknown_status",
                message=f"Citizen {citizen_id} skipped: {reason}",
                data={"citizen_id": citizen_id},
            ))

        originals = {c.citizen_id: _status_key(c) for c in citizens}
        working = [copy.deepcopy(c) for c in citizens]

        generation = self.generator.generate(
            working,
            calendar,
            rng or rng_for(cycle, self.base_seed),
            self.lifecycle,
        )
        findings.extend(generation.findings)

        try:
            rows_written = self.ledger.write(generation.events)
        except Exception:
            self.registry.discard()
            _logger.error(f"Cycle {cycle}: ledger append failed; citizen updates not committed")
            raise

        citizens_updated = self._persist(working, originals, generation.events)

        snapshot = WorldSnapshot.from_citizens(
            cycle,
            working,
            crisis=self.crisis,
            prior_category_counts=tuple(self._category_history),
        )
        report = self.validator.validate(generation.events, snapshot, findings)
        self._category_history.append(dict(generation.category_counts()))

        result = CycleResult(
            cycle=cycle,
            calendar=calendar,
            events=generation.events,
            transitions=generation.transitions,
            report=report,
            rows_written=rows_written,
            citizens_updated=citizens_updated,
        )
        self.last_result = result

        if self.handoff_dir is not None:
            self.export_handoff(result)

        _logger.info(
            f"Cycle {cycle} ({calendar.season or 'unknown season'}, month {calendar.month}): "
            f"{len(result.events)} events, {len(result.transitions)} transitions, "
            f"{citizens_updated} citizens updated, report {report.overall_status}"
        )
        return result

    def run_cycles(self, start_cycle: int, count: int) -> list[CycleResult]:
        return [self.run_cycle(start_cycle + i) for i in range(count)]

    def _persist(
        self,
        working: list[Citizen],
        originals: dict[str, tuple[Any, ...]],
        events: list[MilestoneEvent],
    ) -> int:
        """Stage status changes and life-history tags, then commit."""
        for citizen in working:
            if _status_key(citizen) != originals.get(citizen.citizen_id):
                self.registry.save_citizen_status(
                    citizen.citizen_id,
                    citizen.health_status,
                    citizen.status_start_cycle,
                    citizen.status_duration,
                    citizen.health_cause,
                )

        tags: dict[str, list[str]] = {}
        for event in events:
            tags.setdefault(event.citizen_id, []).append(event.category.value)
        for citizen_id, categories in tags.items():
            self.registry.record_life_events(citizen_id, categories)

        return self.registry.commit()

    def export_handoff(self, result: CycleResult) -> Path:
        """Write the cycle result to ``<handoff_dir>/cycle-NNNN.json``."""
        if self.handoff_dir is None:
            raise ConfigValidationError("handoff_dir is not configured; cannot export handoff")
        self.handoff_dir.mkdir(parents=True, exist_ok=True)
        path = self.handoff_dir / f"cycle-{result.cycle:04d}.json"
        payload = {"exported_at": iso_utc(datetime.now(timezone.utc)), **result.to_dict()}
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        return path

    def summary(self) -> dict[str, Any]:
        result = self.last_result
        return {
            "current_cycle": self.current_cycle,
            "base_seed": self.base_seed,
            "crisis_active": self.is_crisis_active(),
            "crisis": self.crisis.to_dict() if self.crisis else None,
            "last_event_count": len(result.events) if result else 0,
            "last_report_status": result.report.overall_status if result else None,
        }
