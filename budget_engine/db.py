from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import pandas as pd

from .config import DB_PATH
from .errors import NotFoundError, StorageError, ValidationError
from .models import (
    EXPENSE,
    INCOME,
    Budget,
    BudgetIncome,
    Category,
    CategoryAllocation,
    FixedExpense,
    Money,
    Transaction,
    TransactionLink,
    TransactionMeta,
    new_id,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    color TEXT DEFAULT '#64748b',
    description TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    external_id TEXT,
    transaction_date TEXT NOT NULL,
    description TEXT NOT NULL,
    amount REAL NOT NULL,
    currency TEXT,
    type TEXT,
    raw_category TEXT,
    merchant TEXT,
    meta TEXT,
    category_id TEXT REFERENCES categories (id) ON DELETE SET NULL,
    created_at TEXT,
    updated_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_txn_external ON transactions (user_id, external_id);
CREATE INDEX IF NOT EXISTS ix_txn_date ON transactions (transaction_date);
CREATE INDEX IF NOT EXISTS ix_txn_category ON transactions (category_id);

CREATE TABLE IF NOT EXISTS transaction_references (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    merchant TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL,
    from_account TEXT NOT NULL DEFAULT '',
    category_id TEXT NOT NULL REFERENCES categories (id) ON DELETE CASCADE,
    amount_condition TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (user_id, merchant, description, from_account)
);

CREATE INDEX IF NOT EXISTS ix_ref_description ON transaction_references (user_id, description);

CREATE TABLE IF NOT EXISTS budgets (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    period TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    status TEXT DEFAULT 'ACTIVE',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS budget_income (
    id TEXT PRIMARY KEY,
    budget_id TEXT NOT NULL REFERENCES budgets (id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    amount INTEGER NOT NULL,
    frequency TEXT NOT NULL,
    notes TEXT,
    reference_date TEXT,
    adjust_for_weekends INTEGER DEFAULT 1,
    next_occurrence TEXT,
    expected_from_account TEXT,
    auto_tag_enabled INTEGER DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS income_transactions (
    id TEXT PRIMARY KEY,
    income_id TEXT NOT NULL REFERENCES budget_income (id) ON DELETE CASCADE,
    transaction_id TEXT NOT NULL REFERENCES transactions (id) ON DELETE CASCADE,
    from_account TEXT,
    linked_at TEXT NOT NULL,
    auto_tagged INTEGER NOT NULL DEFAULT 0,
    UNIQUE (income_id, transaction_id)
);

CREATE TABLE IF NOT EXISTS fixed_expenses (
    id TEXT PRIMARY KEY,
    budget_id TEXT NOT NULL REFERENCES budgets (id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    category_id TEXT REFERENCES categories (id) ON DELETE SET NULL,
    name TEXT NOT NULL,
    description TEXT,
    amount INTEGER NOT NULL,
    frequency TEXT NOT NULL,
    match_pattern TEXT,
    next_occurrence TEXT,
    adjust_for_weekends INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS expense_transactions (
    id TEXT PRIMARY KEY,
    fixed_expense_id TEXT NOT NULL REFERENCES fixed_expenses (id) ON DELETE CASCADE,
    transaction_id TEXT NOT NULL REFERENCES transactions (id) ON DELETE CASCADE,
    from_account TEXT,
    linked_at TEXT NOT NULL,
    auto_tagged INTEGER NOT NULL DEFAULT 0,
    UNIQUE (fixed_expense_id, transaction_id)
);

CREATE TABLE IF NOT EXISTS category_allocations (
    id TEXT PRIMARY KEY,
    budget_id TEXT NOT NULL REFERENCES budgets (id) ON DELETE CASCADE,
    category_id TEXT NOT NULL REFERENCES categories (id) ON DELETE CASCADE,
    allocated_amount INTEGER NOT NULL,
    notes TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (budget_id, category_id)
);
"""

# Columns added after the first release, as table -> [(name, type)].
# SCHEMA_SQL already contains every column; entries here upgrade older files.
SCHEMA_MIGRATIONS: Dict[str, List[tuple]] = {}

# (item table, link table, link foreign key) per recurring item kind
ITEM_TABLES: Dict[str, tuple] = {
    INCOME: ('budget_income', 'income_transactions', 'income_id'),
    EXPENSE: ('fixed_expenses', 'expense_transactions', 'fixed_expense_id'),
}

TRANSACTION_COLUMNS = (
    "id, user_id, account_id, external_id, transaction_date, description, amount, "
    "currency, type, raw_category, merchant, meta, category_id"
)


def _ensure_dirs() -> None:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Open a connection to the configured database.

    Any ``sqlite3.Error`` raised while the connection is in use is re-raised
    as :class:`StorageError`.
    """
    _ensure_dirs()
    try:
        conn = sqlite3.connect(str(DB_PATH))
    except sqlite3.Error as exc:
        raise StorageError(f"Could not open database {DB_PATH}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        yield conn
    except sqlite3.Error as exc:
        raise StorageError(str(exc)) from exc
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``.

    The write lock is taken up front so that read-then-write sequences in the
    block (for example re-reading a link set before storing the derived next
    occurrence) cannot interleave with another writer.
    """
    with connect() as conn:
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")


@contextmanager
def _use(conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with connect() as own:
        yield own
        own.commit()


def init_db() -> None:
    with connect() as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        # Run migrations to add new columns if they don't exist
        _migrate_database(conn)


def _migrate_database(conn: sqlite3.Connection) -> None:
    """Add columns introduced after a database was first created."""
    cursor = conn.cursor()
    for table, columns in SCHEMA_MIGRATIONS.items():
        cursor.execute(f"PRAGMA table_info({table})")
        existing_columns = [row[1] for row in cursor.fetchall()]
        for column_name, column_type in columns:
            if column_name in existing_columns:
                continue
            try:
                cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column_name} {column_type}")
                logger.info("Added column %s to %s table", column_name, table)
            except sqlite3.OperationalError as e:
                if "duplicate column name" not in str(e):
                    raise
    conn.commit()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_iso(value: Any) -> Optional[str]:
    """Normalise a date-like value to a naive UTC ISO-8601 string."""
    if value is None or value == "":
        return None
    if hasattr(value, 'to_pydatetime'):
        value = value.to_pydatetime()
    if not isinstance(value, datetime):
        ts = pd.to_datetime(value, errors='coerce')
        if pd.isna(ts):
            raise ValidationError(f"Invalid date: {value!r}")
        value = ts.to_pydatetime()
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _sanitize_db_value(value: Any) -> Any:
    """Convert empty strings to NULL."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    return value


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

def _row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    meta = json.loads(row['meta']) if row['meta'] else {}
    return Transaction(
        id=row['id'],
        user_id=row['user_id'],
        account_id=row['account_id'],
        external_id=row['external_id'],
        date=from_iso(row['transaction_date']),
        description=row['description'],
        amount=Money(float(row['amount']), row['currency'] or 'NZD'),
        type=row['type'],
        raw_category=row['raw_category'],
        merchant=row['merchant'],
        meta=TransactionMeta.from_dict(meta),
        category_id=row['category_id'],
    )


def save_transaction(txn: Transaction, conn: Optional[sqlite3.Connection] = None) -> Transaction:
    """Insert a transaction, or refresh every field except ``category_id``."""
    now = to_iso(utcnow())
    meta = txn.meta.to_dict()
    with _use(conn) as c:
        c.execute(
            """
            INSERT INTO transactions (id, user_id, account_id, external_id, transaction_date,
                description, amount, currency, type, raw_category, merchant, meta, category_id,
                created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                account_id = excluded.account_id,
                transaction_date = excluded.transaction_date,
                description = excluded.description,
                amount = excluded.amount,
                currency = excluded.currency,
                type = excluded.type,
                raw_category = excluded.raw_category,
                merchant = excluded.merchant,
                meta = excluded.meta,
                updated_at = excluded.updated_at
            """,
            (
                txn.id,
                txn.user_id,
                txn.account_id,
                txn.external_id,
                to_iso(txn.date),
                txn.description,
                txn.amount.value,
                txn.amount.currency,
                _sanitize_db_value(txn.type),
                _sanitize_db_value(txn.raw_category),
                _sanitize_db_value(txn.merchant),
                json.dumps(meta) if meta else None,
                txn.category_id,
                now,
                now,
            ),
        )
    return txn


def upsert_transactions(
    user_id: str,
    account_id: str,
    records: Iterable[Mapping[str, Any]],
) -> List[Transaction]:
    """Store aggregator records, keyed on ``(user_id, external_id)``.

    A resync refreshes the ledger fields of an existing row but keeps the
    user-assigned category. Returns the stored transactions in input order.
    """
    stored: List[Transaction] = []
    now = to_iso(utcnow())
    with connect() as conn:
        for record in records:
            external_id = record.get('external_id') or record.get('_id')
            if not external_id:
                raise ValidationError("Transaction record is missing its external id")
            description = (record.get('description') or '').strip()
            if not description:
                raise ValidationError(f"Transaction {external_id} has no description")
            transaction_date = to_iso(record.get('date'))
            if transaction_date is None:
                raise ValidationError(f"Transaction {external_id} has no date")
            amount = Money.from_raw(record.get('amount'), record.get('currency'))
            meta = TransactionMeta.from_dict(record.get('meta')).to_dict()
            conn.execute(
                """
                INSERT INTO transactions (id, user_id, account_id, external_id, transaction_date,
                    description, amount, currency, type, raw_category, merchant, meta,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, external_id) DO UPDATE SET
                    account_id = excluded.account_id,
                    transaction_date = excluded.transaction_date,
                    description = excluded.description,
                    amount = excluded.amount,
                    currency = excluded.currency,
                    type = excluded.type,
                    raw_category = excluded.raw_category,
                    merchant = excluded.merchant,
                    meta = excluded.meta,
                    updated_at = excluded.updated_at
                """,
                (
                    new_id(),
                    user_id,
                    account_id,
                    external_id,
                    transaction_date,
                    description,
                    amount.value,
                    amount.currency,
                    _sanitize_db_value(record.get('type')),
                    _sanitize_db_value(record.get('category')),
                    _sanitize_db_value(record.get('merchant')),
                    json.dumps(meta) if meta else None,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            ).fetchone()
            stored.append(_row_to_transaction(row))
        conn.commit()
    logger.debug("Stored %d transactions for account %s", len(stored), account_id)
    return stored


def get_transaction(
    user_id: str,
    transaction_id: str,
    conn: Optional[sqlite3.Connection] = None,
) -> Transaction:
    with _use(conn) as c:
        row = c.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE id = ? AND user_id = ?",
            (transaction_id, user_id),
        ).fetchone()
    if row is None:
        raise NotFoundError("Transaction not found")
    return _row_to_transaction(row)


def fetch_transactions(
    user_id: str,
    start_date: Any = None,
    end_date: Any = None,
    category_ids: Optional[Sequence[str]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> pd.DataFrame:
    """Return a user's transactions as a DataFrame, oldest first.

    Both date bounds are inclusive.
    """
    where: List[str] = ["user_id = ?"]
    params: List[Any] = [user_id]

    if start_date is not None:
        where.append("transaction_date >= ?")
        params.append(to_iso(start_date))
    if end_date is not None:
        where.append("transaction_date <= ?")
        params.append(to_iso(end_date))
    if category_ids:
        where.append("category_id IN ({})".format(
            ",".join(["?" for _ in category_ids])
        ))
        params.extend(list(category_ids))

    sql = (
        "SELECT id, account_id AS 'Account', transaction_date AS 'Transaction Date', "
        "description AS 'Description', merchant AS 'Merchant', amount AS 'Amount', "
        "currency AS 'Currency', type AS 'Type', category_id AS 'Category ID' "
        "FROM transactions WHERE " + " AND ".join(where) +
        " ORDER BY transaction_date ASC, id ASC"
    )

    with _use(conn) as c:
        df = pd.read_sql_query(sql, c, params=params)
    df['Transaction Date'] = pd.to_datetime(df['Transaction Date'], format='ISO8601')
    return df


def find_by_category_and_date_range(
    user_id: str,
    category_id: str,
    start: Any,
    end: Any,
    conn: Optional[sqlite3.Connection] = None,
) -> pd.DataFrame:
    return fetch_transactions(user_id, start, end, [category_id], conn=conn)


def find_by_filters(
    user_id: str,
    merchant: Optional[str] = None,
    description: Optional[str] = None,
    account: Optional[str] = None,
    *,
    match_any: bool = False,
    limit: Optional[int] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> List[Transaction]:
    """Substring search over merchant/description, newest first.

    ``match_any`` ORs the merchant and description filters instead of ANDing
    them; the account filter always applies.
    """
    text_filters: List[str] = []
    params: List[Any] = [user_id]
    if merchant:
        text_filters.append("merchant LIKE ?")
        params.append(f"%{merchant}%")
    if description:
        text_filters.append("description LIKE ?")
        params.append(f"%{description}%")

    sql = f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE user_id = ?"
    if text_filters:
        joiner = " OR " if match_any else " AND "
        sql += " AND (" + joiner.join(text_filters) + ")"
    if account:
        sql += " AND account_id = ?"
        params.append(account)
    sql += " ORDER BY transaction_date DESC, id DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))

    with _use(conn) as c:
        rows = c.execute(sql, params).fetchall()
    return [_row_to_transaction(row) for row in rows]


def find_similar_transactions(
    user_id: str,
    reference: Transaction,
    limit: int = 20,
    conn: Optional[sqlite3.Connection] = None,
) -> List[Transaction]:
    """Transactions sharing the reference's merchant or its description prefix.

    The prefix is the first 20 characters of the reference description.
    """
    clauses = ["description LIKE ?"]
    params: List[Any] = [user_id, f"%{reference.description[:20]}%"]
    if reference.merchant:
        clauses.append("merchant = ?")
        params.append(reference.merchant)
    params.append(int(limit))
    with _use(conn) as c:
        rows = c.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE user_id = ? "
            f"AND ({' OR '.join(clauses)}) "
            "ORDER BY transaction_date DESC, id DESC LIMIT ?",
            params,
        ).fetchall()
    return [_row_to_transaction(row) for row in rows]


def fetch_uncategorized_transactions(
    user_id: str,
    conn: Optional[sqlite3.Connection] = None,
) -> List[Transaction]:
    """Fetch all transactions without a user-assigned category."""
    with _use(conn) as c:
        rows = c.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions "
            "WHERE user_id = ? AND category_id IS NULL "
            "ORDER BY transaction_date DESC, id DESC",
            (user_id,),
        ).fetchall()
    return [_row_to_transaction(row) for row in rows]


def update_category_id(
    transaction_id: str,
    category_id: Optional[str],
    conn: Optional[sqlite3.Connection] = None,
) -> bool:
    """Set or clear a transaction's category. Returns True if a row changed."""
    with _use(conn) as c:
        cursor = c.execute(
            "UPDATE transactions SET category_id = ?, updated_at = ? WHERE id = ?",
            (category_id, to_iso(utcnow()), transaction_id),
        )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def _row_to_category(row: Mapping[str, Any]) -> Category:
    return Category(
        id=row['id'],
        user_id=row['user_id'],
        name=row['name'],
        color=row['color'] or '#64748b',
        description=row['description'],
    )


def create_category(
    user_id: str,
    name: str,
    color: Optional[str] = None,
    description: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Category:
    name = (name or '').strip()
    if not name:
        raise ValidationError("Category name is required")
    category = Category(
        id=new_id(),
        user_id=user_id,
        name=name,
        color=color or '#64748b',
        description=_sanitize_db_value(description),
    )
    now = to_iso(utcnow())
    with _use(conn) as c:
        c.execute(
            "INSERT INTO categories (id, user_id, name, color, description, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (category.id, user_id, category.name, category.color, category.description, now, now),
        )
    return category


def get_category(
    user_id: str,
    category_id: str,
    conn: Optional[sqlite3.Connection] = None,
) -> Category:
    with _use(conn) as c:
        row = c.execute(
            "SELECT id, user_id, name, color, description FROM categories WHERE id = ? AND user_id = ?",
            (category_id, user_id),
        ).fetchone()
    if row is None:
        raise NotFoundError("Category not found")
    return _row_to_category(row)


def list_categories(user_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Category]:
    with _use(conn) as c:
        rows = c.execute(
            "SELECT id, user_id, name, color, description FROM categories WHERE user_id = ? ORDER BY name",
            (user_id,),
        ).fetchall()
    return [_row_to_category(row) for row in rows]


def delete_category(user_id: str, category_id: str) -> None:
    """Delete a category; referencing transactions become uncategorized."""
    with transaction() as conn:
        get_category(user_id, category_id, conn=conn)
        cleared = conn.execute(
            "UPDATE transactions SET category_id = NULL WHERE category_id = ?",
            (category_id,),
        ).rowcount
        conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
    logger.info("Deleted category %s (%d transactions uncategorized)", category_id, cleared)


# ---------------------------------------------------------------------------
# Budgets, recurring items and links
# ---------------------------------------------------------------------------

def _row_to_budget(row: Mapping[str, Any]) -> Budget:
    return Budget(
        id=row['id'],
        user_id=row['user_id'],
        name=row['name'],
        period=row['period'],
        period_start=from_iso(row['period_start']),
        period_end=from_iso(row['period_end']),
        status=row['status'] or 'ACTIVE',
    )


def insert_budget(budget: Budget, conn: Optional[sqlite3.Connection] = None) -> Budget:
    now = to_iso(utcnow())
    with _use(conn) as c:
        c.execute(
            "INSERT INTO budgets (id, user_id, name, period, period_start, period_end, status, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                budget.id,
                budget.user_id,
                budget.name,
                budget.period,
                to_iso(budget.period_start),
                to_iso(budget.period_end),
                budget.status,
                now,
                now,
            ),
        )
    return budget


def get_budget(
    user_id: str,
    budget_id: str,
    conn: Optional[sqlite3.Connection] = None,
) -> Budget:
    with _use(conn) as c:
        row = c.execute(
            "SELECT id, user_id, name, period, period_start, period_end, status "
            "FROM budgets WHERE id = ? AND user_id = ?",
            (budget_id, user_id),
        ).fetchone()
    if row is None:
        raise NotFoundError("Budget not found")
    return _row_to_budget(row)


def _row_to_income(row: Mapping[str, Any]) -> BudgetIncome:
    return BudgetIncome(
        id=row['id'],
        budget_id=row['budget_id'],
        user_id=row['user_id'],
        name=row['name'],
        amount=int(row['amount']),
        frequency=row['frequency'],
        notes=row['notes'],
        reference_date=from_iso(row['reference_date']),
        adjust_for_weekends=bool(row['adjust_for_weekends']) if row['adjust_for_weekends'] is not None else True,
        next_occurrence=from_iso(row['next_occurrence']),
        expected_from_account=row['expected_from_account'],
        auto_tag_enabled=bool(row['auto_tag_enabled']) if row['auto_tag_enabled'] is not None else True,
    )


def _row_to_expense(row: Mapping[str, Any]) -> FixedExpense:
    return FixedExpense(
        id=row['id'],
        budget_id=row['budget_id'],
        user_id=row['user_id'],
        name=row['name'],
        amount=int(row['amount']),
        frequency=row['frequency'],
        description=row['description'],
        category_id=row['category_id'],
        match_pattern=json.loads(row['match_pattern']) if row['match_pattern'] else None,
        next_occurrence=from_iso(row['next_occurrence']),
        adjust_for_weekends=bool(row['adjust_for_weekends']),
    )


def insert_income(income: BudgetIncome, conn: Optional[sqlite3.Connection] = None) -> BudgetIncome:
    now = to_iso(utcnow())
    with _use(conn) as c:
        c.execute(
            """
            INSERT INTO budget_income (id, budget_id, user_id, name, amount, frequency, notes,
                reference_date, adjust_for_weekends, next_occurrence, expected_from_account,
                auto_tag_enabled, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                income.id,
                income.budget_id,
                income.user_id,
                income.name,
                income.amount,
                income.frequency,
                income.notes,
                to_iso(income.reference_date),
                int(income.adjust_for_weekends),
                to_iso(income.next_occurrence),
                income.expected_from_account,
                int(income.auto_tag_enabled),
                now,
                now,
            ),
        )
    return income


def insert_fixed_expense(expense: FixedExpense, conn: Optional[sqlite3.Connection] = None) -> FixedExpense:
    now = to_iso(utcnow())
    with _use(conn) as c:
        c.execute(
            """
            INSERT INTO fixed_expenses (id, budget_id, user_id, category_id, name, description,
                amount, frequency, match_pattern, next_occurrence, adjust_for_weekends,
                created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense.id,
                expense.budget_id,
                expense.user_id,
                expense.category_id,
                expense.name,
                expense.description,
                expense.amount,
                expense.frequency,
                json.dumps(expense.match_pattern) if expense.match_pattern else None,
                to_iso(expense.next_occurrence),
                int(expense.adjust_for_weekends),
                now,
                now,
            ),
        )
    return expense


def _item_table(kind: str) -> tuple:
    try:
        return ITEM_TABLES[kind]
    except KeyError:
        raise ValidationError(f"Unknown recurring item kind: {kind!r}") from None


def get_item(
    user_id: Optional[str],
    kind: str,
    item_id: str,
    budget_id: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
):
    """Load an income or fixed-expense row.

    Ownership is checked unless ``user_id`` is None (internal recomputation).
    """
    table, _, _ = _item_table(kind)
    sql = f"SELECT * FROM {table} WHERE id = ?"
    params: List[Any] = [item_id]
    if user_id is not None:
        sql += " AND user_id = ?"
        params.append(user_id)
    if budget_id is not None:
        sql += " AND budget_id = ?"
        params.append(budget_id)
    with _use(conn) as c:
        row = c.execute(sql, params).fetchone()
    if row is None:
        label = 'Income item' if kind == INCOME else 'Fixed expense'
        raise NotFoundError(f"{label} not found")
    return _row_to_income(row) if kind == INCOME else _row_to_expense(row)


def list_items(kind: str, budget_id: str, conn: Optional[sqlite3.Connection] = None) -> list:
    table, _, _ = _item_table(kind)
    with _use(conn) as c:
        rows = c.execute(
            f"SELECT * FROM {table} WHERE budget_id = ? ORDER BY created_at, id",
            (budget_id,),
        ).fetchall()
    converter = _row_to_income if kind == INCOME else _row_to_expense
    return [converter(row) for row in rows]


_UPDATABLE_ITEM_FIELDS = {
    INCOME: {'next_occurrence', 'reference_date', 'expected_from_account',
             'adjust_for_weekends', 'auto_tag_enabled', 'frequency', 'amount', 'name', 'notes'},
    EXPENSE: {'next_occurrence', 'adjust_for_weekends', 'frequency', 'amount', 'name',
              'description', 'category_id'},
}


def update_item_fields(
    kind: str,
    item_id: str,
    conn: Optional[sqlite3.Connection] = None,
    **fields: Any,
) -> bool:
    table, _, _ = _item_table(kind)
    unknown = set(fields) - _UPDATABLE_ITEM_FIELDS[kind]
    if unknown:
        raise ValidationError(f"Cannot update {', '.join(sorted(unknown))} on {table}")
    if not fields:
        return False

    updates: List[str] = []
    params: List[Any] = []
    for name, value in fields.items():
        if name in {'next_occurrence', 'reference_date'}:
            value = to_iso(value)
        elif isinstance(value, bool):
            value = int(value)
        updates.append(f"{name} = ?")
        params.append(value)
    updates.append("updated_at = ?")
    params.append(to_iso(utcnow()))
    params.append(item_id)

    with _use(conn) as c:
        cursor = c.execute(f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?", params)
        return cursor.rowcount > 0


def list_links(kind: str, item_id: str, conn: Optional[sqlite3.Connection] = None) -> List[TransactionLink]:
    """Links for an item, ordered by the linked transaction's date (oldest first)."""
    _, link_table, fk = _item_table(kind)
    with _use(conn) as c:
        rows = c.execute(
            f"""
            SELECT l.id, l.{fk} AS item_id, l.transaction_id, l.linked_at, l.auto_tagged,
                   l.from_account, t.transaction_date
            FROM {link_table} l
            JOIN transactions t ON t.id = l.transaction_id
            WHERE l.{fk} = ?
            ORDER BY t.transaction_date ASC, l.linked_at ASC
            """,
            (item_id,),
        ).fetchall()
    return [
        TransactionLink(
            id=row['id'],
            item_id=row['item_id'],
            transaction_id=row['transaction_id'],
            transaction_date=from_iso(row['transaction_date']),
            linked_at=from_iso(row['linked_at']),
            auto_tagged=bool(row['auto_tagged']),
            from_account=row['from_account'],
        )
        for row in rows
    ]


def link_exists(kind: str, item_id: str, transaction_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    _, link_table, fk = _item_table(kind)
    with _use(conn) as c:
        row = c.execute(
            f"SELECT 1 FROM {link_table} WHERE {fk} = ? AND transaction_id = ?",
            (item_id, transaction_id),
        ).fetchone()
    return row is not None


def create_link(
    kind: str,
    item_id: str,
    transaction_id: str,
    *,
    auto_tagged: bool = False,
    from_account: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> str:
    _, link_table, fk = _item_table(kind)
    link_id = new_id()
    with _use(conn) as c:
        c.execute(
            f"INSERT INTO {link_table} (id, {fk}, transaction_id, from_account, linked_at, auto_tagged) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (link_id, item_id, transaction_id, from_account, to_iso(utcnow()), int(auto_tagged)),
        )
    return link_id


def delete_link(kind: str, item_id: str, transaction_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
    _, link_table, fk = _item_table(kind)
    with _use(conn) as c:
        cursor = c.execute(
            f"DELETE FROM {link_table} WHERE {fk} = ? AND transaction_id = ?",
            (item_id, transaction_id),
        )
        return cursor.rowcount > 0


def find_auto_tag_incomes(
    user_id: str,
    from_account: str,
    conn: Optional[sqlite3.Connection] = None,
) -> List[BudgetIncome]:
    with _use(conn) as c:
        rows = c.execute(
            "SELECT * FROM budget_income WHERE user_id = ? AND expected_from_account = ? "
            "AND auto_tag_enabled = 1",
            (user_id, from_account),
        ).fetchall()
    return [_row_to_income(row) for row in rows]


# ---------------------------------------------------------------------------
# Category allocations
# ---------------------------------------------------------------------------

def _row_to_allocation(row: Mapping[str, Any]) -> CategoryAllocation:
    return CategoryAllocation(
        id=row['id'],
        budget_id=row['budget_id'],
        category_id=row['category_id'],
        allocated_amount=int(row['allocated_amount']),
        notes=row['notes'],
    )


def upsert_allocation(
    budget_id: str,
    category_id: str,
    allocated_amount: int,
    notes: Optional[str] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> CategoryAllocation:
    """One allocation per (budget, category); repeated calls update it in place."""
    now = to_iso(utcnow())
    with _use(conn) as c:
        c.execute(
            """
            INSERT INTO category_allocations (id, budget_id, category_id, allocated_amount, notes,
                created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (budget_id, category_id) DO UPDATE SET
                allocated_amount = excluded.allocated_amount,
                notes = excluded.notes,
                updated_at = excluded.updated_at
            """,
            (new_id(), budget_id, category_id, int(allocated_amount), notes, now, now),
        )
        row = c.execute(
            "SELECT * FROM category_allocations WHERE budget_id = ? AND category_id = ?",
            (budget_id, category_id),
        ).fetchone()
    return _row_to_allocation(row)


def list_allocations(budget_id: str, conn: Optional[sqlite3.Connection] = None) -> List[CategoryAllocation]:
    with _use(conn) as c:
        rows = c.execute(
            "SELECT * FROM category_allocations WHERE budget_id = ? ORDER BY created_at, id",
            (budget_id,),
        ).fetchall()
    return [_row_to_allocation(row) for row in rows]


def clear_database() -> bool:
    """Remove every row from every table. Returns True if successful."""
    with transaction() as conn:
        for table in (
            'income_transactions', 'expense_transactions', 'category_allocations',
            'budget_income', 'fixed_expenses', 'budgets', 'transaction_references',
            'transactions', 'categories',
        ):
            conn.execute(f"DELETE FROM {table}")
    return True
