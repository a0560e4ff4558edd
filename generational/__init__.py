"""Generational events engine: health lifecycle, life milestones and the life-history ledger."""

__version__ = "0.1.0"
