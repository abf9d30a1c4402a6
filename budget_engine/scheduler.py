"""Next-occurrence scheduling for recurring income and fixed expenses.

The predicted date is always re-derived from the full link set: newest
linked transaction, advanced by the item's frequency, optionally pulled
back to the preceding Friday when it lands on a weekend.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence, Union

import pandas as pd

from . import db
from .errors import NotFoundError, ValidationError
from .models import (
    EXPENSE_FREQUENCIES,
    FORTNIGHTLY,
    INCOME,
    INCOME_FREQUENCIES,
    MONTHLY,
    QUARTERLY,
    WEEKLY,
    YEARLY,
    BudgetIncome,
    FixedExpense,
    Transaction,
    TransactionLink,
)

logger = logging.getLogger(__name__)

FREQUENCY_OFFSETS = {
    WEEKLY: pd.DateOffset(days=7),
    FORTNIGHTLY: pd.DateOffset(days=14),
    MONTHLY: pd.DateOffset(months=1),
    QUARTERLY: pd.DateOffset(months=3),
    YEARLY: pd.DateOffset(years=1),
}

RecurringItem = Union[BudgetIncome, FixedExpense]


def advance(date: Any, frequency: str) -> datetime:
    """Move ``date`` forward by one frequency unit.

    Calendar units clamp to the end of a shorter month (Jan 31 + 1 month is
    the last day of February).
    """
    try:
        offset = FREQUENCY_OFFSETS[frequency]
    except KeyError:
        raise ValidationError(f"Unknown frequency: {frequency!r}") from None
    return (pd.Timestamp(date) + offset).to_pydatetime()


def adjust_for_weekend(date: datetime) -> datetime:
    """Pull Saturday and Sunday back to the preceding Friday."""
    weekday = date.weekday()
    if weekday == 5:
        return date - timedelta(days=1)
    if weekday == 6:
        return date - timedelta(days=2)
    return date


def next_occurrence(last: Any, frequency: str, adjust_for_weekends: bool) -> datetime:
    predicted = advance(last, frequency)
    if adjust_for_weekends:
        predicted = adjust_for_weekend(predicted)
    return predicted


def compute_next_occurrence(
    item: RecurringItem,
    links: Sequence[TransactionLink],
) -> Optional[datetime]:
    """Derive an item's next occurrence from its links.

    Without links an income item falls back to its reference date; anything
    else has no prediction.
    """
    dates = [link.transaction_date for link in links if link.transaction_date is not None]
    if dates:
        last = max(dates)
    elif item.reference_date is not None:
        last = item.reference_date
    else:
        return None
    return next_occurrence(last, item.frequency, item.adjust_for_weekends)


def recompute_next_occurrence(
    conn: sqlite3.Connection,
    kind: str,
    item_id: str,
) -> Optional[datetime]:
    """Re-read the link set on ``conn`` and store the derived next occurrence."""
    item = db.get_item(None, kind, item_id, conn=conn)
    links = db.list_links(kind, item_id, conn=conn)
    predicted = compute_next_occurrence(item, links)
    db.update_item_fields(kind, item_id, conn=conn, next_occurrence=predicted)
    return predicted


def validate_frequency(kind: str, frequency: str) -> None:
    allowed = INCOME_FREQUENCIES if kind == INCOME else EXPENSE_FREQUENCIES
    if frequency not in allowed:
        raise ValidationError(
            f"Invalid frequency {frequency!r}; expected one of {', '.join(allowed)}"
        )


def tag_transaction(
    user_id: str,
    kind: str,
    item_id: str,
    transaction_id: str,
    *,
    auto_tagged: bool = False,
    reference_date: Any = None,
    budget_id: Optional[str] = None,
) -> RecurringItem:
    """Link a transaction to an income or fixed-expense item.

    Tagging income also records the counter-party account and, when the
    item has none yet, adopts it as the expected source for auto-tagging.
    The link write and the recomputation share one immediate transaction.
    When ``budget_id`` is given the item must belong to that budget.
    """
    if reference_date is not None and kind != INCOME:
        raise ValidationError("Only income items carry a reference date")

    with db.transaction() as conn:
        if budget_id is not None:
            db.get_budget(user_id, budget_id, conn=conn)
        item = db.get_item(user_id, kind, item_id, budget_id=budget_id, conn=conn)
        txn = db.get_transaction(user_id, transaction_id, conn=conn)
        if db.link_exists(kind, item_id, transaction_id, conn=conn):
            raise ValidationError("Transaction is already tagged to this item")

        from_account = txn.from_account
        db.create_link(
            kind,
            item_id,
            transaction_id,
            auto_tagged=auto_tagged,
            from_account=from_account,
            conn=conn,
        )

        if kind == INCOME:
            updates = {}
            if from_account and not item.expected_from_account:
                updates['expected_from_account'] = from_account
            if reference_date is not None:
                updates['reference_date'] = reference_date
            if updates:
                db.update_item_fields(kind, item_id, conn=conn, **updates)

        predicted = recompute_next_occurrence(conn, kind, item_id)
        item = db.get_item(None, kind, item_id, conn=conn)

    logger.info(
        "Tagged transaction %s to %s %s; next occurrence %s",
        transaction_id, kind, item_id, predicted.date() if predicted else None,
    )
    return item


def untag_transaction(
    user_id: str,
    kind: str,
    item_id: str,
    transaction_id: str,
    *,
    budget_id: Optional[str] = None,
) -> RecurringItem:
    """Remove a link and re-derive the item's next occurrence."""
    with db.transaction() as conn:
        if budget_id is not None:
            db.get_budget(user_id, budget_id, conn=conn)
        db.get_item(user_id, kind, item_id, budget_id=budget_id, conn=conn)
        if not db.delete_link(kind, item_id, transaction_id, conn=conn):
            raise NotFoundError("Transaction is not tagged to this item")
        predicted = recompute_next_occurrence(conn, kind, item_id)
        item = db.get_item(None, kind, item_id, conn=conn)

    logger.info(
        "Untagged transaction %s from %s %s; next occurrence %s",
        transaction_id, kind, item_id, predicted.date() if predicted else None,
    )
    return item


def auto_tag_income(user_id: str, transaction: Transaction) -> List[str]:
    """Tag a synced transaction to every income expecting its source account.

    Returns the ids of the income items that gained a link.
    """
    from_account = transaction.from_account
    if not from_account:
        return []

    tagged: List[str] = []
    for income in db.find_auto_tag_incomes(user_id, from_account):
        with db.transaction() as conn:
            if db.link_exists(INCOME, income.id, transaction.id, conn=conn):
                continue
            db.create_link(
                INCOME,
                income.id,
                transaction.id,
                auto_tagged=True,
                from_account=from_account,
                conn=conn,
            )
            recompute_next_occurrence(conn, INCOME, income.id)
        tagged.append(income.id)

    if tagged:
        logger.info("Auto-tagged transaction %s to %d income items", transaction.id, len(tagged))
    return tagged
