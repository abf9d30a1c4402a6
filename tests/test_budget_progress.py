from datetime import datetime

import pandas as pd
import pytest

from budget_engine import budgets, db
from budget_engine.errors import NotFoundError, ValidationError
from budget_engine.models import MONTHLY, QUARTERLY, YEARLY, BudgetIncome, CategoryAllocation, FixedExpense
from budget_engine.progress import (
    OVER_BUDGET,
    ON_TRACK,
    WARNING,
    allocation_suggestions,
    budget_progress,
    category_average_suggestions,
    category_progress,
    is_debit,
    period_days,
    status_for,
    summarize,
    to_cents,
)

USER = 'user-1'
JAN_START = datetime(2024, 1, 1)
JAN_END = datetime(2024, 1, 31)


def _build_df(rows):
    df = pd.DataFrame(rows, columns=['Transaction Date', 'Amount', 'Type', 'Category ID'])
    df['Transaction Date'] = pd.to_datetime(df['Transaction Date'], format='ISO8601')
    return df


def _allocation(category_id, cents):
    return CategoryAllocation(id=f'a-{category_id}', budget_id='b', category_id=category_id, allocated_amount=cents)


def test_rounding_happens_after_summation():
    df = _build_df([
        ('2024-01-10', -20.003, None, 'food'),
        ('2024-01-11', -25.003, None, 'food'),
    ])

    row = category_progress([_allocation('food', 10000)], df, JAN_START, JAN_END).iloc[0]

    assert row['spent'] == 4501
    assert row['percent_used'] == 45
    assert row['status'] == ON_TRACK


def test_three_debits_reach_warning():
    df = _build_df([
        ('2024-01-05', -100.0, 'DEBIT', 'c'),
        ('2024-01-15', -150.0, 'DEBIT', 'c'),
        ('2024-01-25', -200.0, 'DEBIT', 'c'),
    ])

    row = category_progress([_allocation('c', 50000)], df, JAN_START, JAN_END).iloc[0]

    assert row['spent'] == 45000
    assert row['remaining'] == 5000
    assert row['percent_used'] == 90
    assert row['status'] == WARNING
    assert row['transaction_count'] == 3


def test_debit_type_counts_and_credits_do_not():
    df = _build_df([
        ('2024-01-05', 40.0, 'DEBIT', 'c'),
        ('2024-01-06', 500.0, 'CREDIT', 'c'),
        ('2024-01-07', -10.0, None, 'c'),
        ('2024-01-07', -99.0, None, 'other'),
    ])

    row = category_progress([_allocation('c', 10000)], df, JAN_START, JAN_END).iloc[0]

    assert row['spent'] == 5000
    assert row['transaction_count'] == 3


def test_period_bounds_are_inclusive_instants():
    df = _build_df([
        ('2023-12-31 23:59:59', -1.0, None, 'c'),
        ('2024-01-01 00:00:00', -2.0, None, 'c'),
        ('2024-01-31 00:00:00', -4.0, None, 'c'),
        ('2024-01-31 00:00:01', -8.0, None, 'c'),
    ])

    row = category_progress([_allocation('c', 1000)], df, JAN_START, JAN_END).iloc[0]

    assert row['spent'] == 600


def test_zero_allocation_and_empty_transactions():
    progress = category_progress([_allocation('c', 0)], _build_df([]), JAN_START, JAN_END)

    row = progress.iloc[0]
    assert row['spent'] == 0
    assert row['percent_used'] == 0
    assert row['status'] == ON_TRACK


@pytest.mark.parametrize(
    'percent, expected',
    [(0, ON_TRACK), (79, ON_TRACK), (80, WARNING), (99, WARNING), (100, OVER_BUDGET), (250, OVER_BUDGET)],
)
def test_status_thresholds(percent, expected):
    assert status_for(percent) == expected


def test_is_debit_and_to_cents():
    assert is_debit(-1.0, None)
    assert is_debit(1.0, 'DEBIT')
    assert not is_debit(1.0, 'CREDIT')
    assert to_cents(0.125) == 13
    assert to_cents(45.006) == 4501


def test_period_days():
    mid = period_days(JAN_START, JAN_END, now=datetime(2024, 1, 11))
    assert (mid.total_days, mid.days_elapsed, mid.days_remaining, mid.percent_complete) == (30, 10, 20, 33)

    before = period_days(JAN_START, JAN_END, now=datetime(2023, 12, 1))
    assert before.days_elapsed == 0 and before.days_remaining == 30

    after = period_days(JAN_START, JAN_END, now=datetime(2024, 3, 1))
    assert after.days_elapsed == 30 and after.days_remaining == 0
    assert after.percent_complete == 100


def test_summarize():
    income = [BudgetIncome(id='i', budget_id='b', user_id=USER, name='Salary', amount=600000, frequency=MONTHLY)]
    expenses = [FixedExpense(id='e', budget_id='b', user_id=USER, name='Rent', amount=250000, frequency=MONTHLY)]
    progress = pd.DataFrame([
        {'allocated': 50000, 'spent': 45000},
        {'allocated': 30000, 'spent': 35000},
    ])

    summary = summarize(income, expenses, progress)

    assert summary == {
        'total_income': 600000,
        'total_fixed_expenses': 250000,
        'total_allocated': 80000,
        'total_spent': 80000,
        'total_remaining': 0,
        'surplus': 270000,
        'overall_percent_used': 100,
    }


def test_category_average_suggestions_scale_by_period():
    df = _build_df([
        ('2023-12-31 23:00:00', -900.0, None, 'food'),  # before the lookback window
        ('2024-01-01', -100.0, None, 'food'),
        ('2024-02-10', -100.0, None, 'food'),
        ('2024-03-31', -100.0, None, 'food'),
        ('2024-02-01', -30.0, None, 'fun'),
        ('2024-02-02', 80.0, 'CREDIT', 'refunds'),
        ('2024-02-03', -50.0, None, None),
    ])
    lookback_end = datetime(2024, 4, 1)

    monthly = category_average_suggestions(df, lookback_end, MONTHLY)
    quarterly = category_average_suggestions(df, lookback_end, QUARTERLY)
    yearly = category_average_suggestions(df, lookback_end, YEARLY)

    assert monthly['category_id'].tolist() == ['food', 'fun']
    assert monthly['suggested_amount'].tolist() == [10000, 1000]
    assert quarterly['suggested_amount'].tolist() == [30000, 3000]
    assert yearly['suggested_amount'].tolist() == [120000, 12000]
    assert monthly.iloc[0]['total_spending_cents'] == 30000


def test_category_average_suggestions_reject_unknown_period():
    with pytest.raises(ValidationError):
        category_average_suggestions(_build_df([]), datetime(2024, 4, 1), 'WEEKLY')


def test_budget_progress_from_store(add_txn):
    groceries = db.create_category(USER, 'Groceries')
    dining = db.create_category(USER, 'Dining')
    budget = budgets.create_budget(USER, 'January', MONTHLY, JAN_START, JAN_END)
    budgets.set_allocation(USER, budget.id, groceries.id, 50000)
    budgets.set_allocation(USER, budget.id, dining.id, 10000)
    budgets.add_income(USER, budget.id, 'Salary', 600000, MONTHLY)
    budgets.add_fixed_expense(USER, budget.id, 'Rent', 250000, MONTHLY)
    for date, amount in (('2024-01-05', -100.0), ('2024-01-15', -150.0), ('2024-01-25', -200.0)):
        add_txn(date, amount, 'COUNTDOWN', category_id=groceries.id)
    add_txn('2024-02-02', -75.0, 'COUNTDOWN', category_id=groceries.id)
    add_txn('2024-01-20', -120.0, 'RESTAURANT', category_id=dining.id)

    progress = budget_progress(USER, budget.id, now=datetime(2024, 1, 16))

    rows = progress.categories.set_index('category_id')
    assert rows.loc[groceries.id, 'spent'] == 45000
    assert rows.loc[groceries.id, 'status'] == WARNING
    assert rows.loc[dining.id, 'status'] == OVER_BUDGET
    assert progress.summary['total_spent'] == 57000
    assert progress.summary['surplus'] == 600000 - 250000 - 60000
    assert progress.period.days_elapsed == 15

    with pytest.raises(NotFoundError):
        budget_progress('someone-else', budget.id)


def test_allocation_suggestions_flag_existing_allocations(add_txn):
    groceries = db.create_category(USER, 'Groceries')
    travel = db.create_category(USER, 'Travel')
    budget = budgets.create_budget(USER, 'April', QUARTERLY, datetime(2024, 4, 1))
    budgets.set_allocation(USER, budget.id, groceries.id, 20000)
    for date in ('2024-01-15', '2024-02-15', '2024-03-15'):
        add_txn(date, -200.0, 'COUNTDOWN', category_id=groceries.id)

    suggestions = allocation_suggestions(USER, budget.id).set_index('category_id')

    assert suggestions.loc[groceries.id, 'suggested_amount'] == 60000
    assert suggestions.loc[groceries.id, 'monthly_average_cents'] == 20000
    assert suggestions.loc[groceries.id, 'has_existing_allocation']
    assert suggestions.loc[groceries.id, 'existing_allocation'] == 20000
    assert suggestions.loc[travel.id, 'suggested_amount'] == 0
    assert not suggestions.loc[travel.id, 'has_existing_allocation']
