"""Findings and the per-cycle validation report."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


PASS = "PASS"
CAUTION = "CAUTION"
REVIEW_REQUIRED = "REVIEW_REQUIRED"


@dataclass(frozen=True)
class EventRef:
    """Points at one event in the cycle batch by position."""
    index: int
    citizen_id: str
    category: str
    cycle: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "citizen_id": self.citizen_id,
            "category": self.category,
            "cycle": self.cycle,
        }


@dataclass(frozen=True)
class Finding:
    validator: str
    severity: Severity
    issue: str
    message: str
    event_ref: EventRef | None = None
    recommendation: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "validator": self.validator,
            "severity": self.severity.value,
            "issue": self.issue,
            "message": self.message,
            "event_ref": self.event_ref.to_dict() if self.event_ref else None,
            "recommendation": self.recommendation,
            "data": dict(self.data),
        }


@dataclass
class ValidationReport:
    cycle: int
    findings: list[Finding] = field(default_factory=list)

    @property
    def overall_status(self) -> str:
        if any(f.severity is Severity.HIGH for f in self.findings):
            return REVIEW_REQUIRED
        if self.findings:
            return CAUTION
        return PASS

    def by_validator(self, validator: str) -> list[Finding]:
        return [f for f in self.findings if f.validator == validator]

    def flagged_indexes(self, severity: Severity = Severity.HIGH) -> set[int]:
        """Batch positions referenced by findings of the given severity."""
        return {
            f.event_ref.index
            for f in self.findings
            if f.severity is severity and f.event_ref is not None
        }

    def to_dict(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in Severity}
        for f in self.findings:
            counts[f.severity.value] += 1
        return {
            "cycle": self.cycle,
            "overall_status": self.overall_status,
            "counts": counts,
            "findings": [f.to_dict() for f in self.findings],
        }
