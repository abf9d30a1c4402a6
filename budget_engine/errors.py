"""Exception types raised by the budget engine.

Every storage failure surfaces as :class:`StorageError`; lookups that miss,
or that hit a row owned by another user, surface as :class:`NotFoundError`
with the same message either way.
"""

from __future__ import annotations


class BudgetEngineError(Exception):
    """Base class for all budget engine errors."""


class ValidationError(BudgetEngineError, ValueError):
    """Input rejected at the boundary (bad operator, frequency, empty field)."""


class NotFoundError(BudgetEngineError, LookupError):
    """Referenced record does not exist or is not owned by the caller."""


class StorageError(BudgetEngineError, RuntimeError):
    """The underlying SQLite store failed."""
