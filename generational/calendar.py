"""Calendar context and season normalization.

One cycle is one simulated week and a year has 52 cycles. The default
``CycleCalendar`` derives month, season and holiday from the cycle number.
Any other provider only has to expose ``get_calendar_context(cycle)`` and
return a mapping with ``month``, ``season`` and ``cycle_number`` (``holiday``
is optional). Seasons may arrive in any casing; they are normalized here
before any modifier lookup.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Protocol

from generational.errors import InvalidSeasonError


CYCLES_PER_YEAR = 52

SEASONS = ("winter", "spring", "summer", "fall")

SEASON_ALIASES = {
    "autumn": "fall",
}

# Last cycle-of-year for each month
MONTH_END_CYCLES = (
    (1, 5),
    (2, 9),
    (3, 13),
    (4, 17),
    (5, 22),
    (6, 26),
    (7, 30),
    (8, 35),
    (9, 39),
    (10, 44),
    (11, 48),
    (12, 52),
)

MONTH_SEASONS = {
    12: "winter", 1: "winter", 2: "winter",
    3: "spring", 4: "spring", 5: "spring",
    6: "summer", 7: "summer", 8: "summer",
    9: "fall", 10: "fall", 11: "fall",
}

# Holidays keyed by cycle-of-year
HOLIDAYS = {
    1: "NewYear",
    3: "MLKDay",
    7: "Valentine",
    8: "PresidentsDay",
    11: "StPatricksDay",
    15: "Easter",
    18: "CincoDeMayo",
    19: "MothersDay",
    21: "MemorialDay",
    24: "Juneteenth",
    25: "FathersDay",
    27: "Independence",
    33: "BackToSchool",
    36: "LaborDay",
    44: "Halloween",
    45: "DiaDeMuertos",
    46: "VeteransDay",
    47: "Thanksgiving",
    48: "CreationDay",
    50: "Hanukkah",
    51: "Holiday",
    52: "NewYearsEve",
}

# Holidays that raise health risk and shape grief/care outcomes
STRESS_HOLIDAYS = frozenset({"Thanksgiving", "Holiday", "NewYearsEve"})

NO_HOLIDAY = "none"


def normalize_season(value: Any) -> str:
    """Return the canonical lowercase season for ``value``.

    Idempotent: ``normalize_season(normalize_season(x)) == normalize_season(x)``.

    Raises:
        InvalidSeasonError: If the value is not a recognised season or alias.
    """
    if not isinstance(value, str):
        raise InvalidSeasonError(f"Season must be a string, got {type(value).__name__}")
    cleaned = value.strip().lower()
    cleaned = SEASON_ALIASES.get(cleaned, cleaned)
    if cleaned not in SEASONS:
        raise InvalidSeasonError(f"Unknown season '{value}'")
    return cleaned


def cycle_of_year(cycle: int) -> int:
    """Position of an absolute cycle inside its 52-cycle year (1-based)."""
    return ((max(cycle, 1) - 1) % CYCLES_PER_YEAR) + 1


def month_for_cycle(cycle: int) -> int:
    position = cycle_of_year(cycle)
    for month, last_cycle in MONTH_END_CYCLES:
        if position <= last_cycle:
            return month
    return 12


def season_for_month(month: int) -> str:
    return MONTH_SEASONS.get(month, "fall")


def holiday_for_cycle(cycle: int) -> str:
    return HOLIDAYS.get(cycle_of_year(cycle), NO_HOLIDAY)


@dataclass(frozen=True)
class CalendarContext:
    """Calendar facts for one cycle, with the season already normalized.

    ``season`` is ``None`` when the provider handed over a label that could
    not be normalized; lookups then fall back to neutral modifiers.
    """
    cycle_number: int
    month: int
    season: str | None
    holiday: str = NO_HOLIDAY

    @property
    def is_stress_holiday(self) -> bool:
        return self.holiday in STRESS_HOLIDAYS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CalendarProvider(Protocol):
    def get_calendar_context(self, cycle: int) -> Mapping[str, Any]:
        ...


class CycleCalendar:
    """Default provider: the 52-cycle year with fixed holiday cycles."""

    def get_calendar_context(self, cycle: int) -> dict[str, Any]:
        month = month_for_cycle(cycle)
        return {
            "cycle_number": cycle,
            "month": month,
            "season": season_for_month(month),
            "holiday": holiday_for_cycle(cycle),
        }


def resolve_calendar(
    raw: Mapping[str, Any], cycle: int
) -> tuple[CalendarContext, InvalidSeasonError | None]:
    """Build a ``CalendarContext`` from a provider mapping.

    Returns the context and, when the season label was unusable, the error
    that was swallowed so the caller can record it as a finding.
    """
    error: InvalidSeasonError | None = None
    try:
        season: str | None = normalize_season(raw.get("season"))
    except InvalidSeasonError as e:
        season = None
        error = e

    cycle_number = raw.get("cycle_number", cycle)
    month = raw.get("month")
    if not isinstance(month, int) or not 1 <= month <= 12:
        month = month_for_cycle(cycle_number)

    holiday = raw.get("holiday") or NO_HOLIDAY
    return CalendarContext(
        cycle_number=cycle_number,
        month=month,
        season=season,
        holiday=str(holiday),
    ), error
