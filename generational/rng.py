"""Deterministic random source.

Every cycle gets its own ``random.Random`` seeded from the base seed and the
cycle number, so rerunning a cycle against the same snapshot replays the
exact same draws. The handle is passed explicitly to every component that
needs randomness; nothing reads a global generator.
"""

from __future__ import annotations

import random


def cycle_seed(cycle: int, base_seed: int) -> int:
    return base_seed ^ cycle


def rng_for(cycle: int, base_seed: int) -> random.Random:
    """Return a generator whose sequence depends only on ``(cycle, base_seed)``."""
    return random.Random(cycle_seed(cycle, base_seed))
