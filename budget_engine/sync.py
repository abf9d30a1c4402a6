"""Post-sync processing for freshly fetched aggregator transactions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping

from . import db
from .category_rules import auto_categorize
from .scheduler import auto_tag_income

logger = logging.getLogger(__name__)


def ingest_transactions(
    user_id: str,
    account_id: str,
    records: Iterable[Mapping[str, Any]],
) -> Dict[str, int]:
    """Store synced records, then categorize and auto-tag them.

    Returns:
        Dict with 'stored', 'categorized', 'tagged' counts
    """
    stored = db.upsert_transactions(user_id, account_id, records)
    results = {'stored': len(stored), 'categorized': 0, 'tagged': 0}

    for transaction in stored:
        if auto_categorize(user_id, transaction):
            results['categorized'] += 1
        results['tagged'] += len(auto_tag_income(user_id, transaction))

    logger.info(
        "Synced account %s: %d stored, %d categorized, %d income links",
        account_id, results['stored'], results['categorized'], results['tagged'],
    )
    return results
