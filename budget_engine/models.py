"""Record types shared by the rule store, scheduler and progress code.

Budget-side amounts (income, fixed expense and allocation amounts) are
integer cents. Transaction amounts stay in dollars inside :class:`Money`
and are converted with :func:`round_half_up` at the point of summation.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import ValidationError

WEEKLY = 'WEEKLY'
FORTNIGHTLY = 'FORTNIGHTLY'
MONTHLY = 'MONTHLY'
QUARTERLY = 'QUARTERLY'
YEARLY = 'YEARLY'

INCOME_FREQUENCIES = (WEEKLY, FORTNIGHTLY, MONTHLY)
EXPENSE_FREQUENCIES = (WEEKLY, FORTNIGHTLY, MONTHLY, QUARTERLY, YEARLY)
BUDGET_PERIODS = (MONTHLY, QUARTERLY, YEARLY)
BUDGET_STATUSES = ('DRAFT', 'ACTIVE', 'ARCHIVED')
AMOUNT_OPERATORS = ('gte', 'lte', 'eq', 'gt', 'lt')

INCOME = 'income'
EXPENSE = 'expense'
ITEM_KINDS = (INCOME, EXPENSE)


def new_id() -> str:
    return uuid.uuid4().hex


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards positive infinity."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Money:
    value: float
    currency: str = 'NZD'

    @classmethod
    def from_raw(cls, raw: Any, currency: Optional[str] = None) -> 'Money':
        """Validate an aggregator amount payload once, at ingestion.

        Accepts a bare number, a ``{'value': ..., 'currency': ...}`` mapping
        or an existing :class:`Money`.
        """
        if isinstance(raw, Money):
            return raw
        if isinstance(raw, dict):
            currency = raw.get('currency') or currency
            raw = raw.get('value')
        if isinstance(raw, bool) or raw is None:
            raise ValidationError(f"Invalid transaction amount: {raw!r}")
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid transaction amount: {raw!r}") from exc
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(f"Invalid transaction amount: {raw!r}")
        return cls(value=value, currency=currency or 'NZD')

    def to_cents(self) -> int:
        return round_half_up(self.value * 100)


@dataclass(frozen=True)
class TransactionMeta:
    other_account: Optional[str] = None
    particulars: Optional[str] = None
    code: Optional[str] = None
    reference: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TransactionMeta':
        data = data or {}
        return cls(
            other_account=data.get('other_account') or None,
            particulars=data.get('particulars') or None,
            code=data.get('code') or None,
            reference=data.get('reference') or None,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            key: value
            for key, value in (
                ('other_account', self.other_account),
                ('particulars', self.particulars),
                ('code', self.code),
                ('reference', self.reference),
            )
            if value
        }


@dataclass
class Transaction:
    id: str
    user_id: str
    account_id: str
    date: datetime
    description: str
    amount: Money
    external_id: Optional[str] = None
    type: Optional[str] = None
    raw_category: Optional[str] = None
    merchant: Optional[str] = None
    meta: TransactionMeta = field(default_factory=TransactionMeta)
    category_id: Optional[str] = None

    @property
    def from_account(self) -> Optional[str]:
        return self.meta.other_account


@dataclass
class Category:
    id: str
    user_id: str
    name: str
    color: str = '#64748b'
    description: Optional[str] = None


@dataclass(frozen=True)
class AmountCondition:
    operator: str
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {'operator': self.operator, 'value': self.value}


@dataclass
class ReferenceRule:
    id: str
    user_id: str
    merchant: str
    description: str
    from_account: str
    category_id: str
    amount_condition: Optional[AmountCondition] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Budget:
    id: str
    user_id: str
    name: str
    period: str
    period_start: datetime
    period_end: datetime
    status: str = 'ACTIVE'


@dataclass
class BudgetIncome:
    id: str
    budget_id: str
    user_id: str
    name: str
    amount: int
    frequency: str
    notes: Optional[str] = None
    reference_date: Optional[datetime] = None
    adjust_for_weekends: bool = True
    next_occurrence: Optional[datetime] = None
    expected_from_account: Optional[str] = None
    auto_tag_enabled: bool = True


@dataclass
class FixedExpense:
    id: str
    budget_id: str
    user_id: str
    name: str
    amount: int
    frequency: str
    description: Optional[str] = None
    category_id: Optional[str] = None
    match_pattern: Optional[Dict[str, str]] = None
    next_occurrence: Optional[datetime] = None
    adjust_for_weekends: bool = False

    @property
    def reference_date(self) -> Optional[datetime]:
        # Fixed expenses have no seed date; an empty link set clears the due date.
        return None


@dataclass
class TransactionLink:
    id: str
    item_id: str
    transaction_id: str
    transaction_date: datetime
    linked_at: datetime
    auto_tagged: bool = False
    from_account: Optional[str] = None


@dataclass
class CategoryAllocation:
    id: str
    budget_id: str
    category_id: str
    allocated_amount: int
    notes: Optional[str] = None
