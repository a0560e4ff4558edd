"""Exception hierarchy for the generational events engine.

Everything the engine raises on purpose derives from ``SimulationError`` so
callers (the CLI, the live API) can catch one type. Failures coming from
collaborators the engine does not own, such as a registry backend or an ID
allocator, are left to propagate unchanged.
"""

from __future__ import annotations


class SimulationError(Exception):
    """Raised when simulation encounters an unrecoverable error."""
    pass


class DataLoadError(SimulationError):
    """Raised when required data files cannot be loaded."""
    pass


class ConfigValidationError(SimulationError):
    """Raised when configuration values are invalid."""
    pass


class SchemaMismatchError(SimulationError):
    """Raised when an event field has no column in the ledger schema.

    The whole batch is rejected; nothing is appended.
    """
    pass


class InvalidSeasonError(SimulationError, ValueError):
    """Raised when a season label cannot be normalized."""
    pass


class UnknownStatusError(SimulationError, ValueError):
    """Raised when a health status string is not part of the closed set."""
    pass


class InvalidTransitionError(SimulationError):
    """Raised when a health transition is not allowed by the transition table."""
    pass
