"""Top-level package for the budget engine.

The primary modules are:

* ``category_rules`` - learned reference rules that categorize transactions
* ``recurring`` - cadence inference for recurring income and expenses
* ``scheduler`` - next payday / due date prediction on tag and untag
* ``progress`` - spend-versus-allocation progress and allocation suggestions
* ``budgets`` - budget line items and period rollover
* ``db`` - the SQLite store everything above reads and writes

Call :func:`budget_engine.db.init_db` once before using the store.
"""

from .errors import BudgetEngineError, NotFoundError, StorageError, ValidationError  # noqa: F401

__all__ = [
    'BudgetEngineError',
    'NotFoundError',
    'StorageError',
    'ValidationError',
]
