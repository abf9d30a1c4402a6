"""Helpers for inferring the cadence of recurring income and expenses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from . import db
from .errors import ValidationError
from .models import (
    FORTNIGHTLY,
    INCOME,
    MONTHLY,
    QUARTERLY,
    WEEKLY,
    YEARLY,
    round_half_up,
)
from .scheduler import advance

HIGH_CONFIDENCE_RATIO = 0.10
MEDIUM_CONFIDENCE_RATIO = 0.25
HISTORY_LIMIT = 20

CONFIDENCE_LEVELS = ('low', 'medium', 'high')


@dataclass(frozen=True)
class FrequencyWindow:
    label: str
    min_days: float
    max_days: float

    def contains(self, days: float) -> bool:
        return self.min_days <= days <= self.max_days


# Windows overlap on purpose; the first match in table order wins.
INCOME_FREQUENCY_RULES = (
    FrequencyWindow(WEEKLY, 4, 10),
    FrequencyWindow(FORTNIGHTLY, 9, 19),
    FrequencyWindow(MONTHLY, 22, 38),
)
EXPENSE_FREQUENCY_RULES = INCOME_FREQUENCY_RULES + (
    FrequencyWindow(QUARTERLY, 80, 100),
    FrequencyWindow(YEARLY, 350, 380),
)


@dataclass
class FrequencyInference:
    suggested: Optional[str]
    confidence: str
    average_interval_days: Optional[float]
    sample_size: int
    intervals: List[int] = field(default_factory=list)


@dataclass
class HistoryInference:
    frequency: Optional[str]
    confidence: str
    match_count: int
    average_interval_days: Optional[int] = None
    average_amount_cents: Optional[int] = None
    next_due_date: Optional[datetime] = None
    match_pattern: Optional[Dict[str, Optional[str]]] = None


def interval_days(dates: Iterable) -> List[int]:
    """Whole-day gaps between consecutive dates, after sorting ascending."""
    ordered = pd.Series(pd.to_datetime(list(dates), errors='coerce', format='ISO8601')).dropna().sort_values()
    seconds = ordered.diff().dropna().dt.total_seconds()
    return [round_half_up(value / 86400) for value in seconds]


def _classify(average: float, rules: Sequence[FrequencyWindow]) -> Optional[str]:
    for window in rules:
        if window.contains(average):
            return window.label
    return None


def _dispersion_confidence(intervals: List[int], average: float) -> str:
    std = float(np.std(intervals))
    if std < average * HIGH_CONFIDENCE_RATIO:
        return 'high'
    if std < average * MEDIUM_CONFIDENCE_RATIO:
        return 'medium'
    return 'low'


def _boost(confidence: str, sample_size: int) -> str:
    if sample_size >= 5 and confidence == 'medium':
        return 'high'
    if sample_size >= 3 and confidence == 'low':
        return 'medium'
    return confidence


def infer_frequency(
    dates: Iterable,
    rules: Sequence[FrequencyWindow] = INCOME_FREQUENCY_RULES,
    *,
    default: Optional[str] = None,
) -> FrequencyInference:
    """Classify the cadence of a series of occurrence dates.

    ``dates`` may arrive in either order. Fewer than two usable dates is a
    valid, low-confidence result. When the average gap falls outside every
    window, ``default`` (if given) is suggested with low confidence.
    """
    dates = [d for d in pd.to_datetime(list(dates), errors='coerce', format='ISO8601') if not pd.isna(d)]
    sample_size = len(dates)
    if sample_size < 2:
        return FrequencyInference(None, 'low', None, sample_size)

    intervals = interval_days(dates)
    average = float(np.mean(intervals))
    suggested = _classify(average, rules)

    if suggested is None:
        return FrequencyInference(default, 'low', average, sample_size, intervals)

    confidence = _boost(_dispersion_confidence(intervals, average), sample_size)
    return FrequencyInference(suggested, confidence, average, sample_size, intervals)


def infer_from_history(
    user_id: str,
    transaction_id: Optional[str] = None,
    merchant: Optional[str] = None,
    description: Optional[str] = None,
    limit: int = HISTORY_LIMIT,
) -> HistoryInference:
    """Infer a fixed-expense cadence from similar past transactions.

    With ``transaction_id`` the history is every transaction sharing its
    merchant or the first 20 characters of its description; otherwise the
    merchant/description substrings filter the history. At most ``limit``
    of the newest matches are used.
    """
    if not transaction_id and not merchant and not description:
        raise ValidationError(
            "Provide either transaction_id, merchant, or description to match against"
        )

    if transaction_id:
        reference = db.get_transaction(user_id, transaction_id)
        history = db.find_similar_transactions(user_id, reference, limit=limit)
    else:
        history = db.find_by_filters(user_id, merchant, description, limit=limit)

    if len(history) < 2:
        return HistoryInference(frequency=None, confidence='low', match_count=len(history))

    inference = infer_frequency(
        [txn.date for txn in history], EXPENSE_FREQUENCY_RULES, default=MONTHLY
    )
    newest = history[0]
    amounts = np.abs([txn.amount.value for txn in history])

    return HistoryInference(
        frequency=inference.suggested,
        confidence=inference.confidence,
        match_count=len(history),
        average_interval_days=round_half_up(inference.average_interval_days),
        average_amount_cents=round_half_up(float(np.mean(amounts)) * 100),
        next_due_date=advance(newest.date, inference.suggested),
        match_pattern={'merchant': newest.merchant, 'description': newest.description},
    )


def infer_item_frequency(user_id: str, kind: str, item_id: str) -> FrequencyInference:
    """Infer the cadence of an income or fixed-expense item from its tagged links."""
    db.get_item(user_id, kind, item_id)
    links = db.list_links(kind, item_id)
    rules = INCOME_FREQUENCY_RULES if kind == INCOME else EXPENSE_FREQUENCY_RULES
    return infer_frequency([link.transaction_date for link in links], rules)
