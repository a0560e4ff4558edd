"""Pre-publication validation of a cycle's milestone batch.

Runs after the ledger write and before the batch is handed to narrative
consumers. Four independent checks read the batch and a snapshot of the
world; none of them modifies either:

    tone          celebratory events for citizens who are critical, deceased
                  or hospitalized
    continuity    events for citizens who were already dead, who died earlier
                  in the batch, who are unknown, or who appear too often
    distribution  one category crowding out the rest over a rolling window
    sensitivity   lighthearted events while a crisis window is open, and a
                  crisis the batch never mentions

Findings are grouped into a ``ValidationReport``; any HIGH finding makes the
report REVIEW_REQUIRED.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from generational.health import HealthStatus
from generational.milestones import CELEBRATORY_CATEGORIES, HEALTH_CATEGORIES, MilestoneEvent
from generational.registry import Citizen
from generational.report import EventRef, Finding, Severity, ValidationReport


_logger = logging.getLogger("generational.validation")

DEFAULT_VALIDATION_CONFIG = {
    "continuity_max_events_per_citizen": 3,
    "distribution_window": 3,
    "distribution_min_events": 10,
    "distribution_min_categories": 3,
    "distribution_tolerance": 0.35,
    "sensitivity_ignoring_threshold": 2,
}

# Coverage that acknowledges a non-health crisis: description pattern, and the
# batch size that must be exceeded before missing coverage is flagged
CRISIS_COVERAGE = {
    "civic": (re.compile(r"civic|council|city hall|election|vote|protest|strike|public service", re.I), 0),
    "economic": (re.compile(r"job|employment|economy|layoff|unemployment|poverty|struggle", re.I), 5),
}


@dataclass(frozen=True)
class CrisisWindow:
    """A declared emergency spanning a range of cycles.

    Supplied by an external collaborator; the engine only reads it.
    """
    name: str
    start_cycle: int
    duration_cycles: int
    kind: str = "health"
    severity: str = "HIGH"
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def end_cycle(self) -> int:
        return self.start_cycle + self.duration_cycles

    def is_active(self, cycle: int) -> bool:
        return self.start_cycle <= cycle < self.end_cycle

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "start_cycle": self.start_cycle,
            "duration_cycles": self.duration_cycles,
            "kind": self.kind,
            "severity": self.severity,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class WorldSnapshot:
    """World state the batch is checked against (end-of-cycle statuses)."""
    cycle: int
    statuses: Mapping[str, HealthStatus]
    death_cycles: Mapping[str, int | None] = field(default_factory=dict)
    crisis: CrisisWindow | None = None
    prior_category_counts: tuple[Mapping[str, int], ...] = ()

    def is_crisis_active(self) -> bool:
        return self.crisis is not None and self.crisis.is_active(self.cycle)

    @classmethod
    def from_citizens(
        cls,
        cycle: int,
        citizens: Iterable[Citizen],
        crisis: CrisisWindow | None = None,
        prior_category_counts: Iterable[Mapping[str, int]] = (),
    ) -> WorldSnapshot:
        statuses: dict[str, HealthStatus] = {}
        death_cycles: dict[str, int | None] = {}
        for citizen in citizens:
            statuses[citizen.citizen_id] = citizen.health_status
            if citizen.health_status is HealthStatus.DECEASED:
                start = citizen.status_start_cycle
                death_cycles[citizen.citizen_id] = start if isinstance(start, int) else None
        return cls(
            cycle=cycle,
            statuses=statuses,
            death_cycles=death_cycles,
            crisis=crisis,
            prior_category_counts=tuple(prior_category_counts),
        )


def _ref(index: int, event: MilestoneEvent) -> EventRef:
    return EventRef(index, event.citizen_id, event.category.value, event.cycle)


def check_tone(events: Sequence[MilestoneEvent], snapshot: WorldSnapshot) -> list[Finding]:
    findings = []
    for i, event in enumerate(events):
        if event.category not in CELEBRATORY_CATEGORIES:
            continue
        status = snapshot.statuses.get(event.citizen_id)
        if status in (HealthStatus.CRITICAL, HealthStatus.DECEASED):
            severity = Severity.HIGH
        elif status is HealthStatus.HOSPITALIZED:
            severity = Severity.MEDIUM
        else:
            continue
        findings.append(Finding(
            validator="tone",
            severity=severity,
            issue="celebration_during_health_crisis",
            message=f"{event.category.value} for {event.citizen_id} while citizen is {status.value}",
            event_ref=_ref(i, event),
            recommendation="Hold the celebration or reframe it around the citizen's condition",
        ))
    return findings


def check_continuity(
    events: Sequence[MilestoneEvent],
    snapshot: WorldSnapshot,
    max_events_per_citizen: int = 3,
) -> list[Finding]:
    findings = []
    death_index: dict[str, int] = {}
    first_index: dict[str, int] = {}
    counts: Counter = Counter()

    for i, event in enumerate(events):
        cid = event.citizen_id
        counts[cid] += 1
        first_index.setdefault(cid, i)

        if cid not in snapshot.statuses:
            findings.append(Finding(
                validator="continuity",
                severity=Severity.MEDIUM,
                issue="unknown_citizen",
                message=f"{event.category.value} references unknown citizen {cid}",
                event_ref=_ref(i, event),
                recommendation="Check the citizen registry for this ID",
            ))
            continue

        if snapshot.statuses[cid] is HealthStatus.DECEASED:
            died = snapshot.death_cycles.get(cid)
            if died is None or died < event.cycle:
                findings.append(Finding(
                    validator="continuity",
                    severity=Severity.HIGH,
                    issue="deceased_citizen_event",
                    message=(
                        f"{event.category.value} for {cid}, who died in cycle "
                        f"{died if died is not None else 'unknown'}"
                    ),
                    event_ref=_ref(i, event),
                    recommendation="Remove the event; deceased citizens cannot appear in new events",
                ))
                continue
            if cid in death_index:
                findings.append(Finding(
                    validator="continuity",
                    severity=Severity.HIGH,
                    issue="event_after_death",
                    message=f"{event.category.value} for {cid} after their death earlier in the cycle",
                    event_ref=_ref(i, event),
                    recommendation="Remove the event or move it before the death",
                ))
            if event.new_status == HealthStatus.DECEASED.value:
                death_index.setdefault(cid, i)

    for cid, count in counts.items():
        if count > max_events_per_citizen:
            i = first_index[cid]
            findings.append(Finding(
                validator="continuity",
                severity=Severity.LOW,
                issue="citizen_overexposure",
                message=f"{cid} appears in {count} events this cycle",
                event_ref=_ref(i, events[i]),
                recommendation="Spread coverage across more citizens",
                data={"count": count},
            ))
    return findings


def check_distribution(
    events: Sequence[MilestoneEvent],
    snapshot: WorldSnapshot,
    tolerance: float = 0.35,
    min_events: int = 10,
    min_categories: int = 3,
    window: int = 3,
) -> list[Finding]:
    counts: Counter = Counter(e.category.value for e in events)
    batch_categories = set(counts)
    prior = snapshot.prior_category_counts[-window:] if window > 0 else ()
    for past in prior:
        counts.update(past)

    total = sum(counts.values())
    if total < min_events or not counts:
        return []

    expected = 1.0 / max(len(counts), min_categories)
    findings = []
    for category in sorted(batch_categories):
        share = counts[category] / total
        if share - expected <= tolerance:
            continue
        i = next(idx for idx, e in enumerate(events) if e.category.value == category)
        findings.append(Finding(
            validator="distribution",
            severity=Severity.MEDIUM,
            issue="category_monopoly",
            message=(
                f"{category} is {share:.0%} of the last {len(prior) + 1} cycles' events "
                f"(expected about {expected:.0%})"
            ),
            event_ref=_ref(i, events[i]),
            recommendation="Balance coverage across milestone categories",
            data={"share": round(share, 4), "expected": round(expected, 4), "count": counts[category], "total": total},
        ))
    return findings


def check_sensitivity(
    events: Sequence[MilestoneEvent],
    snapshot: WorldSnapshot,
    ignoring_threshold: int = 2,
) -> list[Finding]:
    if not snapshot.is_crisis_active():
        return []
    crisis = snapshot.crisis
    findings = []
    lighthearted = 0
    crisis_aware = 0
    for i, event in enumerate(events):
        if event.category in CELEBRATORY_CATEGORIES:
            lighthearted += 1
            findings.append(Finding(
                validator="sensitivity",
                severity=Severity.MEDIUM,
                issue="lighthearted_during_crisis",
                message=f"{event.category.value} for {event.citizen_id} during '{crisis.name}'",
                event_ref=_ref(i, event),
                recommendation="Acknowledge the crisis or defer the story",
            ))
        elif event.category in HEALTH_CATEGORIES:
            crisis_aware += 1

    if crisis.kind == "health" and lighthearted > ignoring_threshold and crisis_aware == 0:
        findings.append(Finding(
            validator="sensitivity",
            severity=Severity.HIGH,
            issue="ignoring_crisis",
            message=f"{lighthearted} lighthearted events and no health coverage during '{crisis.name}'",
            recommendation="Include crisis-aware coverage before publishing",
            data={"lighthearted": lighthearted},
        ))
    elif crisis.kind in CRISIS_COVERAGE:
        pattern, min_events = CRISIS_COVERAGE[crisis.kind]
        covered = any(pattern.search(event.description or "") for event in events)
        if not covered and len(events) > min_events:
            findings.append(Finding(
                validator="sensitivity",
                severity=Severity.MEDIUM,
                issue=f"ignoring_{crisis.kind}_crisis",
                message=f"No {crisis.kind} coverage in {len(events)} events during '{crisis.name}'",
                recommendation=f"Add stories on the {crisis.kind} impact of the crisis",
                data={"events": len(events)},
            ))
    return findings


class PrePublicationValidator:
    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.config = {**DEFAULT_VALIDATION_CONFIG, **{
            k: v for k, v in (config or {}).items() if k in DEFAULT_VALIDATION_CONFIG
        }}

    def validate(
        self,
        events: Sequence[MilestoneEvent],
        snapshot: WorldSnapshot,
        extra_findings: Iterable[Finding] = (),
    ) -> ValidationReport:
        """Run all four checks; ``extra_findings`` are non-fatal generation findings."""
        cfg = self.config
        events = tuple(events)
        report = ValidationReport(cycle=snapshot.cycle, findings=list(extra_findings))
        report.findings.extend(check_tone(events, snapshot))
        report.findings.extend(check_continuity(
            events, snapshot, cfg["continuity_max_events_per_citizen"]
        ))
        report.findings.extend(check_distribution(
            events,
            snapshot,
            tolerance=cfg["distribution_tolerance"],
            min_events=cfg["distribution_min_events"],
            min_categories=cfg["distribution_min_categories"],
            window=cfg["distribution_window"],
        ))
        report.findings.extend(check_sensitivity(
            events, snapshot, cfg["sensitivity_ignoring_threshold"]
        ))
        _logger.info(
            f"Cycle {snapshot.cycle} validation: {report.overall_status} "
            f"({len(report.findings)} findings)"
        )
        return report
