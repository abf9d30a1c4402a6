"""Configuration management for the budget engine.

This module centralizes configuration values including paths, logging
defaults, and environment variable overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

# Base project root - assumes this file is in budget_engine/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("BUDGET_ENGINE_DATA_DIR", _PROJECT_ROOT / "data"))

# Database
DB_PATH = Path(
    os.getenv("BUDGET_ENGINE_DB_PATH", DATA_DIR / "budget.db")
).resolve()

# Logging
LOG_LEVEL = os.getenv("BUDGET_ENGINE_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"

# Category-average suggestions always look back three calendar months.
SUGGESTION_LOOKBACK_MONTHS = 3

DEFAULT_CURRENCY = os.getenv("BUDGET_ENGINE_CURRENCY", "NZD")
DEFAULT_CATEGORY_COLOR = "#64748b"


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the project log format. Only command line entry points call this."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
