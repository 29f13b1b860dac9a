"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT_ENV = "ORDER_ANALYTICS_DATA_ROOT"


def _resolve_data_root() -> Path:
    override = os.environ.get(DATA_ROOT_ENV, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return APP_ROOT / "data"


DATA_ROOT = _resolve_data_root()


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it if needed."""

    if not DATA_ROOT.exists():
        LOGGER.info("Creating data directory %s", DATA_ROOT)
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return DATA_ROOT
