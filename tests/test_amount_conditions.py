import pytest

from budget_engine.amount_conditions import describe, matches, validate_condition
from budget_engine.errors import ValidationError
from budget_engine.models import AmountCondition


@pytest.mark.parametrize(
    'operator, value, amount, expected',
    [
        ('gte', 100, 100, True),
        ('gte', 100, 99.99, False),
        ('lte', 100, 100, True),
        ('lte', 100, 100.01, False),
        ('gt', 100, 100, False),
        ('gt', 100, 100.01, True),
        ('lt', 100, 99.99, True),
        ('lt', 100, 100, False),
        ('eq', 42.5, 42.5, True),
        ('eq', 42.5, 42.51, False),
    ],
)
def test_operators_compare_magnitude(operator, value, amount, expected):
    condition = AmountCondition(operator, value)
    assert matches(condition, amount) is expected
    assert matches(condition, -amount) is expected


def test_missing_condition_always_matches():
    assert matches(None, -12.0)
    assert matches(None, 0)


def test_unknown_operator_fails_closed():
    assert not matches(AmountCondition('between', 10), 10)


def test_validate_condition_accepts_mapping():
    condition = validate_condition({'operator': 'gte', 'value': 100})
    assert condition == AmountCondition('gte', 100.0)
    assert validate_condition(None) is None


@pytest.mark.parametrize(
    'raw',
    [
        {'operator': 'ge', 'value': 10},
        {'operator': 'gte', 'value': -1},
        {'operator': 'gte', 'value': '10'},
        {'operator': 'gte', 'value': True},
        {'operator': 'gte', 'value': float('nan')},
        {'value': 10},
        'gte 10',
    ],
)
def test_validate_condition_rejects_malformed_input(raw):
    with pytest.raises(ValidationError):
        validate_condition(raw)


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError, match='Invalid amount condition'):
        validate_condition({'operator': 'approx', 'value': 1})


def test_describe():
    assert describe(None) == 'any amount'
    assert describe(AmountCondition('gte', 1250)) == '>= $1,250.00'
    assert describe(AmountCondition('lt', 9.5)) == '< $9.50'
