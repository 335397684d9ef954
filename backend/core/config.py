"""Runtime configuration loaded from the environment (and .env)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("uvicorn.error")

DEFAULT_DEBOUNCE_MS = 200
DEFAULT_SAMPLE_ROWS = 250


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", key, raw, default)
        return default
    if value < 0:
        logger.warning("Ignoring negative %s=%r, using %d", key, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    storage_path: Optional[str] = None
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    query_latency_ms: int = 0
    sample_rows: int = DEFAULT_SAMPLE_ROWS
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Read settings fresh from the environment."""
    return Settings(
        storage_path=_env("LWA_STORAGE_PATH"),
        debounce_ms=_env_int("LWA_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS),
        query_latency_ms=_env_int("LWA_QUERY_LATENCY_MS", 0),
        sample_rows=_env_int("LWA_SAMPLE_ROWS", DEFAULT_SAMPLE_ROWS) or DEFAULT_SAMPLE_ROWS,
        log_level=(_env("LWA_LOG_LEVEL", "INFO") or "INFO").upper(),
    )
