#!/usr/bin/env python3
"""Re-apply learned reference rules to a user's uncategorized transactions."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from budget_engine import db
from budget_engine.category_rules import apply_rules_to_uncategorized
from budget_engine.config import configure_logging


def main(user_id: str, dry_run: bool = False) -> None:
    db.init_db()
    results = apply_rules_to_uncategorized(user_id, dry_run=dry_run)

    prefix = "Would update" if dry_run else "Updated"
    print(f"Checked {results['total_checked']} uncategorized transactions")
    print(f"{prefix} {results['updated']}, skipped {results['skipped']}")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Apply reference rules to uncategorized transactions.')
    parser.add_argument('--user', required=True, help='User id whose transactions to process')
    parser.add_argument('--dry-run', action='store_true', help='Report matches without updating')
    parser.add_argument('--log-level', default=None, help='Override BUDGET_ENGINE_LOG_LEVEL')
    args = parser.parse_args()
    configure_logging(args.log_level)
    main(args.user, dry_run=args.dry_run)
