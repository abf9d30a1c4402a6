"""Budget creation, line items and period rollover."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import pandas as pd

from . import db
from .errors import ValidationError
from .models import (
    BUDGET_PERIODS,
    BUDGET_STATUSES,
    EXPENSE,
    INCOME,
    MONTHLY,
    QUARTERLY,
    YEARLY,
    Budget,
    BudgetIncome,
    CategoryAllocation,
    FixedExpense,
    new_id,
)
from .scheduler import compute_next_occurrence, validate_frequency

logger = logging.getLogger(__name__)

PERIOD_OFFSETS = {
    MONTHLY: pd.DateOffset(months=1),
    QUARTERLY: pd.DateOffset(months=3),
    YEARLY: pd.DateOffset(years=1),
}


def _validate_period(period: str) -> None:
    if period not in BUDGET_PERIODS:
        raise ValidationError(f"period must be {', '.join(BUDGET_PERIODS)}")


def _cents(value: Any, *, allow_zero: bool) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Amount must be an integer number of cents, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValidationError(f"Amount must be {qualifier}, got {value}")
    return value


def period_end_for(period: str, period_start: datetime) -> datetime:
    """End of a period beginning at ``period_start``: one unit on, less a day."""
    _validate_period(period)
    end = pd.Timestamp(period_start) + PERIOD_OFFSETS[period] - pd.Timedelta(days=1)
    return end.to_pydatetime()


def next_period(period: str, period_end: datetime) -> Tuple[datetime, datetime]:
    start = period_end + timedelta(days=1)
    return start, period_end_for(period, start)


def create_budget(
    user_id: str,
    name: str,
    period: str,
    period_start: Any,
    period_end: Any = None,
    status: str = 'ACTIVE',
) -> Budget:
    _validate_period(period)
    if status not in BUDGET_STATUSES:
        raise ValidationError(f"status must be {', '.join(BUDGET_STATUSES)}")
    name = (name or '').strip()
    if not name:
        raise ValidationError("Budget name is required")

    start = db.from_iso(db.to_iso(period_start))
    end = db.from_iso(db.to_iso(period_end)) if period_end is not None else period_end_for(period, start)
    if end < start:
        raise ValidationError("period_end must not be before period_start")

    budget = Budget(
        id=new_id(),
        user_id=user_id,
        name=name,
        period=period,
        period_start=start,
        period_end=end,
        status=status,
    )
    db.insert_budget(budget)
    logger.info("Created budget %s (%s %s - %s)", budget.id, period, start.date(), end.date())
    return budget


def add_income(
    user_id: str,
    budget_id: str,
    name: str,
    amount: int,
    frequency: str,
    *,
    notes: Optional[str] = None,
    reference_date: Any = None,
    adjust_for_weekends: bool = True,
    expected_from_account: Optional[str] = None,
    auto_tag_enabled: bool = True,
) -> BudgetIncome:
    validate_frequency(INCOME, frequency)
    db.get_budget(user_id, budget_id)
    income = BudgetIncome(
        id=new_id(),
        budget_id=budget_id,
        user_id=user_id,
        name=name,
        amount=_cents(amount, allow_zero=True),
        frequency=frequency,
        notes=notes,
        reference_date=db.from_iso(db.to_iso(reference_date)),
        adjust_for_weekends=adjust_for_weekends,
        expected_from_account=expected_from_account or None,
        auto_tag_enabled=auto_tag_enabled,
    )
    income.next_occurrence = compute_next_occurrence(income, [])
    return db.insert_income(income)


def add_fixed_expense(
    user_id: str,
    budget_id: str,
    name: str,
    amount: int,
    frequency: str,
    *,
    description: Optional[str] = None,
    category_id: Optional[str] = None,
    match_pattern: Optional[Dict[str, str]] = None,
    next_occurrence: Any = None,
    adjust_for_weekends: bool = False,
) -> FixedExpense:
    validate_frequency(EXPENSE, frequency)
    db.get_budget(user_id, budget_id)
    if category_id is not None:
        db.get_category(user_id, category_id)
    expense = FixedExpense(
        id=new_id(),
        budget_id=budget_id,
        user_id=user_id,
        name=name,
        amount=_cents(amount, allow_zero=False),
        frequency=frequency,
        description=description,
        category_id=category_id,
        match_pattern=match_pattern,
        next_occurrence=db.from_iso(db.to_iso(next_occurrence)),
        adjust_for_weekends=adjust_for_weekends,
    )
    return db.insert_fixed_expense(expense)


def set_allocation(
    user_id: str,
    budget_id: str,
    category_id: str,
    allocated_amount: int,
    notes: Optional[str] = None,
) -> CategoryAllocation:
    """Create or replace the allocation of a category within a budget."""
    amount = _cents(allocated_amount, allow_zero=True)
    db.get_budget(user_id, budget_id)
    db.get_category(user_id, category_id)
    return db.upsert_allocation(budget_id, category_id, amount, notes)


def rollover_budget(
    user_id: str,
    budget_id: str,
    new_name: Optional[str] = None,
) -> Tuple[Budget, Dict[str, int]]:
    """Copy a budget's structure forward into the following period.

    The new budget starts as a draft. Income items keep their configuration
    but not their tagged history; fixed expenses keep their match pattern
    and next due date.
    """
    with db.transaction() as conn:
        source = db.get_budget(user_id, budget_id, conn=conn)
        start, end = next_period(source.period, source.period_end)
        name = (new_name or '').strip() or f"{source.name} - {start.strftime('%b %Y')}"

        budget = db.insert_budget(
            Budget(
                id=new_id(),
                user_id=user_id,
                name=name,
                period=source.period,
                period_start=start,
                period_end=end,
                status='DRAFT',
            ),
            conn=conn,
        )

        counts = {'income': 0, 'expenses': 0, 'allocations': 0}
        for income in db.list_items(INCOME, source.id, conn=conn):
            db.insert_income(
                BudgetIncome(
                    id=new_id(),
                    budget_id=budget.id,
                    user_id=user_id,
                    name=income.name,
                    amount=income.amount,
                    frequency=income.frequency,
                    notes=income.notes,
                    adjust_for_weekends=income.adjust_for_weekends,
                    expected_from_account=income.expected_from_account,
                    auto_tag_enabled=income.auto_tag_enabled,
                ),
                conn=conn,
            )
            counts['income'] += 1

        for expense in db.list_items(EXPENSE, source.id, conn=conn):
            db.insert_fixed_expense(
                FixedExpense(
                    id=new_id(),
                    budget_id=budget.id,
                    user_id=user_id,
                    name=expense.name,
                    amount=expense.amount,
                    frequency=expense.frequency,
                    description=expense.description,
                    category_id=expense.category_id,
                    match_pattern=expense.match_pattern,
                    next_occurrence=expense.next_occurrence,
                    adjust_for_weekends=expense.adjust_for_weekends,
                ),
                conn=conn,
            )
            counts['expenses'] += 1

        for allocation in db.list_allocations(source.id, conn=conn):
            db.upsert_allocation(
                budget.id,
                allocation.category_id,
                allocation.allocated_amount,
                allocation.notes,
                conn=conn,
            )
            counts['allocations'] += 1

    logger.info("Rolled budget %s over to %s: %s", budget_id, budget.id, counts)
    return budget, counts
