from datetime import datetime, timedelta

import pytest

from budget_engine import budgets
from budget_engine.errors import NotFoundError, ValidationError
from budget_engine.models import FORTNIGHTLY, MONTHLY, QUARTERLY, WEEKLY, YEARLY
from budget_engine.recurring import (
    EXPENSE_FREQUENCY_RULES,
    INCOME_FREQUENCY_RULES,
    infer_frequency,
    infer_from_history,
    infer_item_frequency,
    interval_days,
)
from budget_engine.scheduler import tag_transaction

USER = 'user-1'


def _dates(start, gaps):
    current = datetime.fromisoformat(start)
    dates = [current]
    for gap in gaps:
        current = current + timedelta(days=gap)
        dates.append(current)
    return dates


def test_constant_weekly_gaps_are_high_confidence():
    result = infer_frequency(_dates('2024-01-01', [7, 7, 7]))

    assert result.suggested == WEEKLY
    assert result.confidence == 'high'
    assert result.average_interval_days == 7
    assert result.sample_size == 4
    assert result.intervals == [7, 7, 7]


@pytest.mark.parametrize('dates', [[], [datetime(2024, 1, 1)]])
def test_too_few_dates_is_a_result_not_an_error(dates):
    result = infer_frequency(dates)
    assert result.suggested is None
    assert result.confidence == 'low'
    assert result.sample_size == len(dates)


def test_order_does_not_matter():
    dates = _dates('2024-01-15', [31, 29, 31])
    forward = infer_frequency(dates)
    backward = infer_frequency(list(reversed(dates)))

    assert forward == backward
    assert forward.suggested == MONTHLY
    assert forward.confidence == 'high'


def test_gaps_are_rounded_to_whole_days():
    dates = [datetime(2024, 1, 1, 9), datetime(2024, 1, 8, 21), datetime(2024, 1, 15, 20)]
    assert interval_days(dates) == [8, 7]


def test_mixed_date_string_formats_are_all_parsed():
    dates = ['2024-01-01 12:00:00', '2024-01-08', '2024-01-15T00:00:00']

    assert interval_days(dates) == [7, 7]
    assert infer_frequency(dates).sample_size == 3


def test_dispersed_gaps_are_boosted_from_low_with_three_samples():
    # avg 9.33, population std 3.3 (> 25% of the mean)
    result = infer_frequency(_dates('2024-01-01', [7, 14, 7]))
    assert result.suggested == WEEKLY
    assert result.confidence == 'medium'


def test_medium_confidence_needs_five_samples_for_high():
    four = infer_frequency(_dates('2024-01-01', [14, 12, 16]))
    five = infer_frequency(_dates('2024-01-01', [14, 12, 16, 14]))

    assert four.suggested == FORTNIGHTLY and four.confidence == 'medium'
    assert five.suggested == FORTNIGHTLY and five.confidence == 'high'


def test_first_matching_window_wins_where_bands_overlap():
    assert infer_frequency(_dates('2024-01-01', [10, 10])).suggested == WEEKLY
    assert infer_frequency(_dates('2024-01-01', [11, 11])).suggested == FORTNIGHTLY


def test_gap_outside_every_window():
    dates = _dates('2024-01-01', [60, 60])

    income = infer_frequency(dates, INCOME_FREQUENCY_RULES)
    fallback = infer_frequency(dates, EXPENSE_FREQUENCY_RULES, default=MONTHLY)

    assert income.suggested is None
    assert income.confidence == 'low'
    assert income.average_interval_days == 60
    assert fallback.suggested == MONTHLY
    assert fallback.confidence == 'low'


def test_expense_rules_add_quarterly_and_yearly():
    quarterly = _dates('2024-01-01', [91, 91])
    yearly = _dates('2023-03-01', [366])

    assert infer_frequency(quarterly, INCOME_FREQUENCY_RULES).suggested is None
    assert infer_frequency(quarterly, EXPENSE_FREQUENCY_RULES).suggested == QUARTERLY
    assert infer_frequency(yearly, EXPENSE_FREQUENCY_RULES).suggested == YEARLY


def test_history_inference_requires_a_selector(temp_db):
    with pytest.raises(ValidationError):
        infer_from_history(USER)


def test_history_inference_unknown_reference(temp_db):
    with pytest.raises(NotFoundError):
        infer_from_history(USER, transaction_id='missing')


def test_history_inference_from_reference_transaction(add_txn):
    for date in ('2024-01-03', '2024-02-03', '2024-03-03'):
        add_txn(date, -15.99, 'SPOTIFY P1A2B3', merchant='Spotify')
    newest = add_txn('2024-04-03', -15.99, 'SPOTIFY P9Z8Y7', merchant='Spotify')
    add_txn('2024-03-20', -40.0, 'COUNTDOWN', merchant='Countdown')

    result = infer_from_history(USER, transaction_id=newest.id)

    assert result.frequency == MONTHLY
    assert result.match_count == 4
    assert result.average_amount_cents == 1599
    assert result.next_due_date == datetime(2024, 5, 3)
    assert result.match_pattern == {'merchant': 'Spotify', 'description': 'SPOTIFY P9Z8Y7'}


def test_history_inference_by_description(add_txn):
    for date in ('2023-01-10', '2023-04-10', '2023-07-10', '2023-10-10'):
        add_txn(date, -120.0, 'AA INSURANCE QTR')

    result = infer_from_history(USER, description='INSURANCE')

    assert result.frequency == QUARTERLY
    assert result.next_due_date == datetime(2024, 1, 10)
    assert result.average_interval_days == 91


def test_history_inference_defaults_to_monthly(add_txn):
    add_txn('2024-01-01', -10.0, 'PARKING')
    add_txn('2024-03-01', -10.0, 'PARKING')

    result = infer_from_history(USER, description='PARKING')

    assert result.frequency == MONTHLY
    assert result.confidence == 'low'


def test_history_inference_with_single_match(add_txn):
    add_txn('2024-01-01', -10.0, 'ONE OFF')
    result = infer_from_history(USER, description='ONE OFF')
    assert result.frequency is None
    assert result.match_count == 1


def test_item_frequency_from_tagged_links(add_txn):
    budget = budgets.create_budget(USER, 'Household', MONTHLY, datetime(2024, 1, 1))
    income = budgets.add_income(USER, budget.id, 'Salary', 350000, MONTHLY)
    for date in ('2024-01-04', '2024-01-18', '2024-02-01'):
        txn = add_txn(date, 1750.0, 'SALARY')
        tag_transaction(USER, 'income', income.id, txn.id)

    result = infer_item_frequency(USER, 'income', income.id)

    assert result.suggested == FORTNIGHTLY
    assert result.sample_size == 3

    with pytest.raises(NotFoundError):
        infer_item_frequency('someone-else', 'income', income.id)
