"""
Runtime configuration.

Values come from the process environment, optionally seeded from a `.env` file
next to this module (existing environment variables win).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv

_ENV_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env")
load_dotenv(dotenv_path=_ENV_PATH, override=False)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DB_PATH = os.getenv("FDR_DB_PATH") or "fdr_data.db"

# Scheduler floor between two deliveries (ms) and the slowest allowed rate.
MIN_DELAY_MS = max(1, _env_int("FDR_MIN_DELAY_MS", 10))
MIN_RATE = max(0.01, _env_float("FDR_MIN_RATE", 0.1))

# 0 disables idle eviction (sessions live for the whole process).
SESSION_IDLE_SEC = max(0.0, _env_float("FDR_SESSION_IDLE_SEC", 0.0))
EVICT_INTERVAL_SEC = max(1.0, _env_float("FDR_EVICT_INTERVAL_SEC", 60.0))

LOG_LEVEL = (os.getenv("FDR_LOG_LEVEL") or "INFO").strip().upper()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
