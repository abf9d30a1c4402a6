"""Spend-versus-allocation progress for a budget period.

All monetary outputs are integer cents. Transaction dollars are summed per
category first and converted once, so rounding happens after summation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from . import db
from .config import SUGGESTION_LOOKBACK_MONTHS
from .errors import ValidationError
from .models import (
    BUDGET_PERIODS,
    EXPENSE,
    INCOME,
    MONTHLY,
    QUARTERLY,
    YEARLY,
    Budget,
    BudgetIncome,
    CategoryAllocation,
    FixedExpense,
    round_half_up,
)

ON_TRACK = 'ON_TRACK'
WARNING = 'WARNING'
OVER_BUDGET = 'OVER_BUDGET'

WARNING_PERCENT = 80
OVER_BUDGET_PERCENT = 100

PERIOD_MONTH_MULTIPLIERS = {
    MONTHLY: 1,
    QUARTERLY: 3,
    YEARLY: 12,
}

PROGRESS_COLUMNS = [
    'category_id', 'allocated', 'spent', 'remaining',
    'percent_used', 'transaction_count', 'status',
]
SUGGESTION_COLUMNS = [
    'category_id', 'transaction_count', 'total_spending_cents',
    'monthly_average_cents', 'suggested_amount',
]

DAY_SECONDS = 86400


@dataclass
class PeriodDays:
    start: datetime
    end: datetime
    total_days: int
    days_elapsed: int
    days_remaining: int
    percent_complete: int


@dataclass
class BudgetProgress:
    budget: Budget
    summary: Dict[str, int]
    period: PeriodDays
    categories: pd.DataFrame
    income: List[BudgetIncome] = field(default_factory=list)
    fixed_expenses: List[FixedExpense] = field(default_factory=list)


def is_debit(amount: float, txn_type: Optional[str]) -> bool:
    """Money out: a negative amount or an aggregator ``DEBIT`` type."""
    return amount < 0 or txn_type == 'DEBIT'


def to_cents(dollars: float) -> int:
    return round_half_up(dollars * 100)


def percent_of(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(part / whole * 100)


def status_for(percent_used: int) -> str:
    if percent_used >= OVER_BUDGET_PERCENT:
        return OVER_BUDGET
    if percent_used >= WARNING_PERCENT:
        return WARNING
    return ON_TRACK


def _in_window(transactions: pd.DataFrame, start: Any, end: Any) -> pd.DataFrame:
    """Rows dated within ``[start, end]`` inclusive."""
    if transactions is None or transactions.empty:
        return pd.DataFrame(columns=['Transaction Date', 'Amount', 'Type', 'Category ID'])
    working = transactions.copy()
    working['Transaction Date'] = pd.to_datetime(working['Transaction Date'], format='ISO8601')
    if 'Type' not in working.columns:
        working['Type'] = None
    mask = (
        (working['Transaction Date'] >= pd.Timestamp(start))
        & (working['Transaction Date'] <= pd.Timestamp(end))
    )
    return working[mask]


def _debit_totals(window: pd.DataFrame) -> pd.DataFrame:
    """Per-category transaction count and summed absolute debit dollars."""
    if window.empty:
        return pd.DataFrame(columns=['count', 'debit_dollars'])
    debit_mask = [
        is_debit(amount, txn_type)
        for amount, txn_type in zip(window['Amount'], window['Type'])
    ]
    working = window.assign(
        debit_dollars=window['Amount'].abs().where(debit_mask, 0.0),
    )
    grouped = working.groupby('Category ID')
    return pd.DataFrame({
        'count': grouped.size(),
        'debit_dollars': grouped['debit_dollars'].sum(),
    })


def category_progress(
    allocations: Sequence[CategoryAllocation],
    transactions: pd.DataFrame,
    period_start: Any,
    period_end: Any,
) -> pd.DataFrame:
    """One row per allocation with spent/remaining cents and status.

    ``transactions`` uses the store's column names (``Transaction Date``,
    ``Amount``, ``Type``, ``Category ID``). Credits never count as spend,
    even when categorized.
    """
    totals = _debit_totals(_in_window(transactions, period_start, period_end))

    rows = []
    for allocation in allocations:
        if allocation.category_id in totals.index:
            count = int(totals.at[allocation.category_id, 'count'])
            spent = to_cents(float(totals.at[allocation.category_id, 'debit_dollars']))
        else:
            count, spent = 0, 0
        allocated = int(allocation.allocated_amount)
        percent_used = percent_of(spent, allocated)
        rows.append({
            'category_id': allocation.category_id,
            'allocated': allocated,
            'spent': spent,
            'remaining': allocated - spent,
            'percent_used': percent_used,
            'transaction_count': count,
            'status': status_for(percent_used),
        })
    return pd.DataFrame(rows, columns=PROGRESS_COLUMNS)


def period_days(period_start: datetime, period_end: datetime, now: Optional[datetime] = None) -> PeriodDays:
    now = now or db.utcnow()
    total_days = math.ceil((period_end - period_start).total_seconds() / DAY_SECONDS)
    elapsed = math.ceil((min(now, period_end) - period_start).total_seconds() / DAY_SECONDS)
    elapsed = min(max(0, elapsed), max(0, total_days))
    return PeriodDays(
        start=period_start,
        end=period_end,
        total_days=total_days,
        days_elapsed=elapsed,
        days_remaining=max(0, total_days - elapsed),
        percent_complete=percent_of(elapsed, total_days),
    )


def summarize(
    income: Sequence[BudgetIncome],
    expenses: Sequence[FixedExpense],
    progress: pd.DataFrame,
) -> Dict[str, int]:
    total_income = sum(item.amount for item in income)
    total_fixed = sum(item.amount for item in expenses)
    total_allocated = int(progress['allocated'].sum()) if not progress.empty else 0
    total_spent = int(progress['spent'].sum()) if not progress.empty else 0
    return {
        'total_income': total_income,
        'total_fixed_expenses': total_fixed,
        'total_allocated': total_allocated,
        'total_spent': total_spent,
        'total_remaining': total_allocated - total_spent,
        'surplus': total_income - total_fixed - total_allocated,
        'overall_percent_used': percent_of(total_spent, total_allocated),
    }


def budget_progress(user_id: str, budget_id: str, now: Optional[datetime] = None) -> BudgetProgress:
    with db.connect() as conn:
        budget = db.get_budget(user_id, budget_id, conn=conn)
        allocations = db.list_allocations(budget_id, conn=conn)
        income = db.list_items(INCOME, budget_id, conn=conn)
        expenses = db.list_items(EXPENSE, budget_id, conn=conn)
        transactions = db.fetch_transactions(
            user_id,
            budget.period_start,
            budget.period_end,
            [a.category_id for a in allocations],
            conn=conn,
        )

    progress = category_progress(allocations, transactions, budget.period_start, budget.period_end)
    return BudgetProgress(
        budget=budget,
        summary=summarize(income, expenses, progress),
        period=period_days(budget.period_start, budget.period_end, now),
        categories=progress,
        income=income,
        fixed_expenses=expenses,
    )


def lookback_window(lookback_end: Any) -> tuple:
    end = pd.Timestamp(lookback_end)
    start = end - pd.DateOffset(months=SUGGESTION_LOOKBACK_MONTHS)
    return start.to_pydatetime(), end.to_pydatetime()


def category_average_suggestions(
    transactions: pd.DataFrame,
    lookback_end: Any,
    period: str,
    *,
    drop_zero: bool = True,
) -> pd.DataFrame:
    """Suggested allocations from the last three months of debit spend.

    The three-month total is averaged per month and scaled to ``period``.
    Rows are sorted by ``suggested_amount`` descending.
    """
    if period not in BUDGET_PERIODS:
        raise ValidationError(f"period must be one of {', '.join(BUDGET_PERIODS)}")

    start, end = lookback_window(lookback_end)
    window = _in_window(transactions, start, end)
    window = window[window['Category ID'].notna()]
    totals = _debit_totals(window)

    multiplier = PERIOD_MONTH_MULTIPLIERS[period]
    rows = []
    for category_id, row in totals.iterrows():
        total = float(row['debit_dollars'])
        monthly = total / SUGGESTION_LOOKBACK_MONTHS
        rows.append({
            'category_id': category_id,
            'transaction_count': int(row['count']),
            'total_spending_cents': to_cents(total),
            'monthly_average_cents': to_cents(monthly),
            'suggested_amount': to_cents(monthly * multiplier),
        })

    suggestions = pd.DataFrame(rows, columns=SUGGESTION_COLUMNS)
    if drop_zero:
        suggestions = suggestions[suggestions['suggested_amount'] > 0]
    return suggestions.sort_values(
        'suggested_amount', ascending=False, kind='mergesort'
    ).reset_index(drop=True)


def allocation_suggestions(user_id: str, budget_id: str) -> pd.DataFrame:
    """Suggestions for every category of the user, flagged with existing allocations.

    Categories without spend history are kept (suggested amount 0) so the
    caller can still show them.
    """
    with db.connect() as conn:
        budget = db.get_budget(user_id, budget_id, conn=conn)
        categories = db.list_categories(user_id, conn=conn)
        existing = {a.category_id: a for a in db.list_allocations(budget_id, conn=conn)}
        start, end = lookback_window(budget.period_start)
        transactions = db.fetch_transactions(user_id, start, end, conn=conn)

    computed = category_average_suggestions(
        transactions, budget.period_start, budget.period, drop_zero=False
    ).set_index('category_id')

    rows = []
    for category in categories:
        if category.id in computed.index:
            values = computed.loc[category.id].to_dict()
        else:
            values = {column: 0 for column in SUGGESTION_COLUMNS[1:]}
        allocation = existing.get(category.id)
        rows.append({
            'category_id': category.id,
            'category_name': category.name,
            'transaction_count': int(values['transaction_count']),
            'total_spending_cents': int(values['total_spending_cents']),
            'monthly_average_cents': int(values['monthly_average_cents']),
            'suggested_amount': int(values['suggested_amount']),
            'has_existing_allocation': allocation is not None,
            'existing_allocation': allocation.allocated_amount if allocation else None,
        })

    result = pd.DataFrame(rows)
    if result.empty:
        return result
    return result.sort_values('suggested_amount', ascending=False, kind='mergesort').reset_index(drop=True)
