"""Local JSON mirror of the last successful store reads.

Used as a fallback when the hosted database is unreachable and as the only
data source when OFFLINE_MODE=1. Cache failures are logged, never raised.
"""
from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Any
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CACHE_DIR = Path(os.getenv("STUDIO_CACHE_DIR", ".studio_cache"))

SERVICES_KEY = "services"
SETTINGS_KEY = "settings"
UNAVAILABLE_DATES_KEY = "unavailable_dates"
PORTFOLIO_KEY = "portfolio"


def appointments_key(date_iso: str) -> str:
    return f"appointments_{date_iso}"


def _path(key: str) -> Path:
    return CACHE_DIR / f"{key}.json"


def save(key: str, data: Any) -> None:
    try:
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        tmp = _path(key).with_suffix(".tmp")
        tmp.write_text(json.dumps(data, default=str))
        tmp.replace(_path(key))
    except (OSError, TypeError, ValueError) as exc:
        logger.error("Error saving cache entry %s: %s", key, exc)


def load(key: str, default: Any = None) -> Any:
    try:
        return json.loads(_path(key).read_text())
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as exc:
        logger.error("Error loading cache entry %s: %s", key, exc)
        return default


def remove(key: str) -> None:
    try:
        _path(key).unlink(missing_ok=True)
    except OSError as exc:
        logger.error("Error removing cache entry %s: %s", key, exc)


def clear_all() -> None:
    if not CACHE_DIR.is_dir():
        return
    for entry in CACHE_DIR.glob("*.json"):
        remove(entry.stem)


def is_available() -> bool:
    """True when the cache directory is writable."""
    probe = "__cache_probe__"
    try:
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        _path(probe).write_text("{}")
        _path(probe).unlink()
        return True
    except OSError:
        return False
