from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT_SECONDS = 10.0
DEFAULT_LOCK_SETTINGS_MAX_AGE_SECONDS = 60.0


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def lock_timezone() -> str:
    return os.getenv("LOCK_TIMEZONE") or "UTC"


def store_timeout_seconds() -> float:
    return _float_env("STORE_TIMEOUT_SECONDS", DEFAULT_STORE_TIMEOUT_SECONDS)


def lock_settings_max_age_seconds() -> float:
    return _float_env("LOCK_SETTINGS_MAX_AGE_SECONDS", DEFAULT_LOCK_SETTINGS_MAX_AGE_SECONDS)
