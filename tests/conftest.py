from datetime import datetime

import pytest

from budget_engine import db as db_mod
from budget_engine.models import Money, Transaction, TransactionMeta, new_id

USER = 'user-1'
OTHER_USER = 'user-2'


@pytest.fixture
def temp_db(tmp_path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "budget.db"
    monkeypatch.setattr(db_mod, "DB_PATH", str(db_path))
    db_mod.init_db()
    return db_path


@pytest.fixture
def add_txn(temp_db):
    """Factory that stores a transaction and returns it."""

    def _add(
        date,
        amount,
        description='EFTPOS PURCHASE',
        *,
        user_id=USER,
        merchant=None,
        other_account=None,
        txn_type=None,
        category_id=None,
        account_id='acc-1',
    ) -> Transaction:
        if isinstance(date, str):
            date = datetime.fromisoformat(date)
        txn = Transaction(
            id=new_id(),
            user_id=user_id,
            account_id=account_id,
            external_id=new_id(),
            date=date,
            description=description,
            amount=Money(amount),
            type=txn_type,
            merchant=merchant,
            meta=TransactionMeta(other_account=other_account),
            category_id=category_id,
        )
        return db_mod.save_transaction(txn)

    return _add
