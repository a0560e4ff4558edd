from __future__ import annotations

import argparse
import json
import random
from pathlib import Path

from faker import Faker

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"

NEIGHBORHOODS = [
    "Temescal",
    "Downtown",
    "Fruitvale",
    "Lake Merritt",
    "West Oakland",
    "Laurel",
    "Rockridge",
    "Jack London",
]

# Tier 1 = most prominent citizens; most of the population is tier 3-4
TIER_WEIGHTS: list[tuple[int, float]] = [
    (1, 0.05),
    (2, 0.15),
    (3, 0.35),
    (4, 0.45),
]

# (label, min_age, max_age, weight)
AGE_BANDS: list[tuple[str, int, int, float]] = [
    ("young_adult", 20, 29, 0.22),
    ("adult", 30, 44, 0.28),
    ("midlife", 45, 59, 0.24),
    ("senior", 60, 74, 0.18),
    ("elder", 75, 95, 0.08),
]

ROLES_BY_TIER: dict[int, list[str]] = {
    1: ["City Council Member", "Hospital Director", "Union Leader", "Team Owner"],
    2: ["School Principal", "Business Owner", "Pastor", "Police Captain"],
    3: ["Nurse", "Teacher", "Engineer", "Chef", "Journalist"],
    4: ["Barista", "Student", "Dock Worker", "Bus Driver", "Retail Clerk"],
}

PARTNER_SHARE = 0.35


def weighted_choice(rng: random.Random, items_with_weights: list[tuple]) -> object:
    items = [i for i, _w in items_with_weights]
    weights = [w for _i, w in items_with_weights]
    return rng.choices(items, weights=weights, k=1)[0]


def random_age(rng: random.Random) -> int:
    band = rng.choices(AGE_BANDS, weights=[b[3] for b in AGE_BANDS], k=1)[0]
    return rng.randint(band[1], band[2])


def initial_history(age: int, rng: random.Random) -> list[str]:
    """Milestones a citizen of this age plausibly already has behind them."""
    history: list[str] = []
    if age >= 23 and rng.random() < 0.55:
        history.append("graduation")
    if age >= 27 and rng.random() < 0.5:
        history.append("wedding")
        if age >= 30 and rng.random() < 0.6:
            history.append("birth")
    if age >= 66 and rng.random() < 0.6:
        history.append("retirement")
    return history


def pair_partners(citizens: list[dict], rng: random.Random) -> None:
    """Link a share of adult citizens into partner pairs (both directions)."""
    adults = [c for c in citizens if c["age"] >= 24]
    rng.shuffle(adults)
    pair_count = int(len(adults) * PARTNER_SHARE) // 2
    for i in range(pair_count):
        a, b = adults[2 * i], adults[2 * i + 1]
        a["partner_id"] = b["citizen_id"]
        b["partner_id"] = a["citizen_id"]
        b["last_name"] = a["last_name"] if rng.random() < 0.5 else b["last_name"]


def generate_citizens(count: int = 200, seed: int | None = 42) -> list[dict]:
    rng = random.Random(seed)
    fake = Faker("en_US")
    if seed is not None:
        fake.seed_instance(seed)

    citizens: list[dict] = []
    for i in range(count):
        tier = weighted_choice(rng, TIER_WEIGHTS)
        age = random_age(rng)
        citizens.append({
            "citizen_id": f"POP-{i + 1:05d}",
            "first_name": fake.first_name(),
            "last_name": fake.last_name(),
            "age": age,
            "tier": tier,
            "role": "Retired" if age >= 70 else rng.choice(ROLES_BY_TIER[tier]),
            "neighborhood": rng.choice(NEIGHBORHOODS),
            "partner_id": None,
            "mode": "ENGINE",
            "health_status": "active",
            "status_start_cycle": None,
            "status_duration": 0,
            "health_cause": None,
            "life_history": initial_history(age, rng),
        })

    pair_partners(citizens, rng)
    return citizens


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate citizens.json (seed population).")
    parser.add_argument("--count", type=int, default=200, help="Number of citizens to generate (default: 200).")
    parser.add_argument(
        "--out",
        type=Path,
        default=DATA_DIR / "citizens.json",
        help="Output JSON path (default: data/citizens.json).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Optional RNG seed for reproducible output (default: 42).",
    )
    args = parser.parse_args()

    citizens = generate_citizens(count=args.count, seed=args.seed)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(json.dumps(citizens, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {len(citizens)} citizens to {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
