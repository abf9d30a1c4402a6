"""Reference rules - learned transaction-signature to category mappings.

A rule is keyed on ``(user_id, merchant, description, from_account)``.
Lookups cascade from the most specific signature to description alone, and
an optional amount condition lets one signature carry several tiers (a $50
bill is Utilities, a $200 bill is Rent).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import db
from .amount_conditions import matches, validate_condition
from .errors import NotFoundError, ValidationError
from .models import AmountCondition, ReferenceRule, Transaction, new_id

logger = logging.getLogger(__name__)

RULE_COLUMNS = (
    "id, user_id, merchant, description, from_account, category_id, amount_condition, "
    "created_at, updated_at"
)

CandidateQuery = Callable[[sqlite3.Connection], List[ReferenceRule]]


def _normalize(value: Optional[str]) -> str:
    return (value or '').strip()


def _row_to_rule(row: Any) -> ReferenceRule:
    condition = None
    if row['amount_condition']:
        data = json.loads(row['amount_condition'])
        condition = AmountCondition(operator=data['operator'], value=float(data['value']))
    return ReferenceRule(
        id=row['id'],
        user_id=row['user_id'],
        merchant=row['merchant'],
        description=row['description'],
        from_account=row['from_account'],
        category_id=row['category_id'],
        amount_condition=condition,
        created_at=db.from_iso(row['created_at']),
        updated_at=db.from_iso(row['updated_at']),
    )


def _passes(rule: ReferenceRule, amount: Optional[float]) -> bool:
    if rule.amount_condition is None or amount is None:
        return True
    return matches(rule.amount_condition, amount)


class ReferenceRuleStore:
    """CRUD and cascading lookup over the ``transaction_references`` table."""

    def _select(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        clause: str,
        params: Tuple[Any, ...],
    ) -> List[ReferenceRule]:
        rows = conn.execute(
            f"SELECT {RULE_COLUMNS} FROM transaction_references "
            f"WHERE user_id = ? AND {clause} ORDER BY updated_at DESC, id",
            (user_id, *params),
        ).fetchall()
        return [_row_to_rule(row) for row in rows]

    def _candidate_queries(
        self,
        user_id: str,
        merchant: str,
        description: str,
        from_account: str,
    ) -> List[Tuple[str, CandidateQuery]]:
        """Signature levels in priority order, most specific first."""
        levels: List[Tuple[str, str, Tuple[Any, ...]]] = [
            ('exact', "merchant = ? AND description = ? AND from_account = ?",
             (merchant, description, from_account)),
        ]
        if merchant:
            levels.append(('merchant', "merchant = ? AND description = ?", (merchant, description)))
        if from_account:
            levels.append(('from_account', "from_account = ? AND description = ?", (from_account, description)))
        levels.append(('description', "description = ?", (description,)))

        def _query(clause: str, params: Tuple[Any, ...]) -> CandidateQuery:
            return lambda conn: self._select(conn, user_id, clause, params)

        return [(name, _query(clause, params)) for name, clause, params in levels]

    def find(
        self,
        user_id: str,
        merchant: Optional[str],
        description: str,
        from_account: Optional[str],
        amount: Optional[float] = None,
        *,
        fall_through: bool = False,
    ) -> Optional[ReferenceRule]:
        """Return the most specific rule for a signature, or None.

        A level with no rows hands over to the next level. A level whose rows
        all reject ``amount`` ends the search unless ``fall_through`` is set,
        in which case the less specific levels are still consulted.
        """
        description = _normalize(description)
        if not description:
            raise ValidationError("A description is required to look up a reference rule")
        candidates = self._candidate_queries(
            user_id, _normalize(merchant), description, _normalize(from_account)
        )

        with db.connect() as conn:
            for level, query in candidates:
                rules = query(conn)
                if not rules:
                    continue
                for rule in rules:
                    if _passes(rule, amount):
                        return rule
                logger.debug("Rules at %s level rejected amount %s", level, amount)
                if not fall_through:
                    return None
        return None

    def upsert(
        self,
        user_id: str,
        merchant: Optional[str],
        description: str,
        from_account: Optional[str],
        category_id: str,
        amount: Optional[float] = None,
    ) -> ReferenceRule:
        """Learn ``category_id`` for a signature.

        An existing rule whose amount condition rejects ``amount`` is returned
        untouched. The amount condition itself is never written here.
        """
        merchant = _normalize(merchant)
        from_account = _normalize(from_account)
        description = _normalize(description)
        if not description:
            raise ValidationError("A description is required to learn a reference rule")
        key = (user_id, merchant, description, from_account)
        exact = "merchant = ? AND description = ? AND from_account = ?"

        with db.transaction() as conn:
            existing = self._select(conn, user_id, exact, key[1:])
            if existing:
                rule = existing[0]
                if not _passes(rule, amount):
                    logger.debug(
                        "Keeping rule %s: amount %s outside its condition", rule.id, amount
                    )
                    return rule

            now = db.to_iso(db.utcnow())
            conn.execute(
                """
                INSERT INTO transaction_references (id, user_id, merchant, description,
                    from_account, category_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, merchant, description, from_account) DO UPDATE SET
                    category_id = excluded.category_id,
                    updated_at = excluded.updated_at
                """,
                (new_id(), *key, category_id, now, now),
            )
            rule = self._select(conn, user_id, exact, key[1:])[0]

        logger.debug("Learned rule %s -> %s", description, category_id)
        return rule

    def get(self, user_id: str, rule_id: str) -> ReferenceRule:
        with db.connect() as conn:
            rules = self._select(conn, user_id, "id = ?", (rule_id,))
        if not rules:
            raise NotFoundError("Reference rule not found")
        return rules[0]

    def list_for_category(self, user_id: str, category_id: str) -> List[ReferenceRule]:
        with db.connect() as conn:
            return self._select(conn, user_id, "category_id = ?", (category_id,))

    def update_amount_condition(
        self,
        user_id: str,
        rule_id: str,
        condition: Any,
    ) -> ReferenceRule:
        """Set or clear (``None``) the amount condition of a rule."""
        validated = validate_condition(condition)
        payload = json.dumps(validated.to_dict()) if validated else None
        with db.connect() as conn:
            cursor = conn.execute(
                "UPDATE transaction_references SET amount_condition = ?, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (payload, db.to_iso(db.utcnow()), rule_id, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Reference rule not found")
            conn.commit()
        logger.info("Updated amount condition on rule %s", rule_id)
        return self.get(user_id, rule_id)

    def delete(self, user_id: str, rule_id: str) -> None:
        with db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM transaction_references WHERE id = ? AND user_id = ?",
                (rule_id, user_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Reference rule not found")
        logger.debug("Deleted reference rule %s", rule_id)


_store: Optional[ReferenceRuleStore] = None


def get_rule_store() -> ReferenceRuleStore:
    global _store
    if _store is None:
        _store = ReferenceRuleStore()
    return _store


def categorize_transaction(
    user_id: str,
    transaction_id: str,
    category_id: Optional[str],
) -> Transaction:
    """Assign (or clear) a transaction's category and learn from it.

    A rule is learned only when a category is set and the transaction has a
    description.
    """
    transaction = db.get_transaction(user_id, transaction_id)
    if category_id is not None:
        db.get_category(user_id, category_id)
    db.update_category_id(transaction_id, category_id)
    transaction.category_id = category_id

    if category_id and transaction.description:
        get_rule_store().upsert(
            user_id,
            transaction.merchant,
            transaction.description,
            transaction.from_account,
            category_id,
            amount=transaction.amount.value,
        )
    return transaction


def auto_categorize(user_id: str, transaction: Transaction) -> Optional[str]:
    """Categorize a freshly synced transaction from the learned rules.

    Returns the applied category id, or None when nothing was applied.
    """
    if transaction.category_id or not transaction.description:
        return None
    rule = get_rule_store().find(
        user_id,
        transaction.merchant,
        transaction.description,
        transaction.from_account,
        amount=transaction.amount.value,
    )
    if rule is None:
        return None
    db.update_category_id(transaction.id, rule.category_id)
    transaction.category_id = rule.category_id
    return rule.category_id


def apply_rules_to_uncategorized(user_id: str, dry_run: bool = False) -> Dict[str, int]:
    """Re-run rule lookup over every uncategorized transaction of a user.

    Returns:
        Dict with 'updated', 'skipped', 'total_checked' counts
    """
    store = get_rule_store()
    transactions = db.fetch_uncategorized_transactions(user_id)
    results = {
        'updated': 0,
        'skipped': 0,
        'total_checked': len(transactions),
    }

    for transaction in transactions:
        if not transaction.description:
            results['skipped'] += 1
            continue
        rule = store.find(
            user_id,
            transaction.merchant,
            transaction.description,
            transaction.from_account,
            amount=transaction.amount.value,
        )
        if rule is None:
            results['skipped'] += 1
            continue
        if not dry_run:
            db.update_category_id(transaction.id, rule.category_id)
        results['updated'] += 1

    logger.info(
        "Applied reference rules for %s: %d updated, %d skipped%s",
        user_id, results['updated'], results['skipped'], " (dry run)" if dry_run else "",
    )
    return results
