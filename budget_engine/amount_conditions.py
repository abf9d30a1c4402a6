"""Amount conditions narrow when a reference rule applies.

A condition compares the *magnitude* of a transaction amount against a
threshold; the sign only says whether money went in or out.
"""

from __future__ import annotations

import numbers
from typing import Any, Mapping, Optional, Union

from .errors import ValidationError
from .models import AMOUNT_OPERATORS, AmountCondition

OPERATOR_SYMBOLS = {
    'gte': '>=',
    'lte': '<=',
    'gt': '>',
    'lt': '<',
    'eq': '=',
}


def matches(condition: Optional[AmountCondition], amount: float) -> bool:
    """Return True when ``abs(amount)`` satisfies ``condition``.

    No condition always matches. An operator outside the known set fails
    closed.
    """
    if condition is None:
        return True
    absolute = abs(amount)
    operator = condition.operator
    if operator == 'gte':
        return absolute >= condition.value
    if operator == 'lte':
        return absolute <= condition.value
    if operator == 'gt':
        return absolute > condition.value
    if operator == 'lt':
        return absolute < condition.value
    if operator == 'eq':
        return absolute == condition.value
    return False


def validate_condition(
    raw: Union[None, AmountCondition, Mapping[str, Any]],
) -> Optional[AmountCondition]:
    """Turn user input into an :class:`AmountCondition`.

    ``None`` clears the condition. Anything else must carry one of the known
    operators and a non-negative number.
    """
    if raw is None:
        return None
    if isinstance(raw, AmountCondition):
        operator, value = raw.operator, raw.value
    elif isinstance(raw, Mapping):
        operator, value = raw.get('operator'), raw.get('value')
    else:
        raise ValidationError(f"Invalid amount condition: {raw!r}")

    if operator not in AMOUNT_OPERATORS:
        raise ValidationError(
            "Invalid amount condition. Requires operator "
            f"({', '.join(AMOUNT_OPERATORS)}) and a non-negative numeric value."
        )
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or value != value:
        raise ValidationError(f"Amount condition value must be numeric, got {value!r}")
    if value < 0:
        raise ValidationError(f"Amount condition value must be non-negative, got {value!r}")
    return AmountCondition(operator=operator, value=float(value))


def describe(condition: Optional[AmountCondition]) -> str:
    if condition is None:
        return 'any amount'
    symbol = OPERATOR_SYMBOLS.get(condition.operator, condition.operator)
    return f"{symbol} ${condition.value:,.2f}"
