#!/usr/bin/env python3
"""Print spend-versus-allocation progress for a budget."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from budget_engine import db
from budget_engine.config import configure_logging
from budget_engine.errors import NotFoundError
from budget_engine.progress import budget_progress


def _dollars(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def main(user_id: str, budget_id: str) -> int:
    db.init_db()
    try:
        progress = budget_progress(user_id, budget_id)
    except NotFoundError as exc:
        print(exc, file=sys.stderr)
        return 1

    budget = progress.budget
    period = progress.period
    print(f"{budget.name} ({budget.period}, {budget.status})")
    print(
        f"{period.start.date()} → {period.end.date()}: "
        f"day {period.days_elapsed} of {period.total_days} ({period.percent_complete}%)"
    )

    categories = {c.id: c.name for c in db.list_categories(user_id)}
    table = progress.categories.copy()
    if table.empty:
        print("\nNo category allocations.")
    else:
        table['category'] = table['category_id'].map(lambda cid: categories.get(cid, cid))
        for column in ('allocated', 'spent', 'remaining'):
            table[column] = table[column].apply(_dollars)
        print()
        print(table[['category', 'allocated', 'spent', 'remaining', 'percent_used', 'status']]
              .to_string(index=False))

    summary = progress.summary
    print(f"\nIncome:         {_dollars(summary['total_income'])}")
    print(f"Fixed expenses: {_dollars(summary['total_fixed_expenses'])}")
    print(f"Allocated:      {_dollars(summary['total_allocated'])}")
    print(f"Spent:          {_dollars(summary['total_spent'])} ({summary['overall_percent_used']}%)")
    print(f"Surplus:        {_dollars(summary['surplus'])}")
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Show budget progress.')
    parser.add_argument('--user', required=True, help='Owner of the budget')
    parser.add_argument('budget_id', help='Budget id')
    args = parser.parse_args()
    configure_logging()
    sys.exit(main(args.user, args.budget_id))
