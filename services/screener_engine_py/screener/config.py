"""Environment-driven settings and logger setup for the screener.

Every tunable (session TTL, retry budget, fetch timeout, concurrency, upstream
base URLs) is read from the environment so deployments can change them
without touching code.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


# ──────────────────────────────────────────────────────────────────────────────
# Env helpers (strip quotes/whitespace so .env "KEY=value " doesn’t break things)
# ──────────────────────────────────────────────────────────────────────────────

def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
        v = v[1:-1].strip()
    return v or default


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)) or default)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with the shared stream handler attached once."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        _h = logging.StreamHandler()
        _h.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(_h)
    logger.setLevel((_env("SCREENER_LOG_LEVEL", "INFO") or "INFO").upper())
    return logger


@dataclass(frozen=True)
class ScreenerSettings:
    session_ttl_seconds: float = 6000.0
    session_max_retries: int = 3
    session_failure_ceiling: int = 10
    session_backoff_base_secs: float = 0.5
    fetch_timeout_secs: float = 30.0
    scan_concurrency: int = 50
    moneycontrol_base_url: str = "https://priceapi.moneycontrol.com"
    nse_base_url: str = "https://www.nseindia.com"
    nse_charting_url: str = "https://charting.nseindia.com"


def load_settings() -> ScreenerSettings:
    """Build settings from the process environment, falling back to defaults."""
    defaults = ScreenerSettings()
    return ScreenerSettings(
        session_ttl_seconds=_env_float("SESSION_TTL_SECONDS", defaults.session_ttl_seconds),
        session_max_retries=_env_int("SESSION_MAX_RETRIES", defaults.session_max_retries),
        session_failure_ceiling=_env_int("SESSION_FAILURE_CEILING", defaults.session_failure_ceiling),
        session_backoff_base_secs=_env_float(
            "SESSION_BACKOFF_BASE_SECS", defaults.session_backoff_base_secs
        ),
        fetch_timeout_secs=_env_float("FETCH_TIMEOUT_SECS", defaults.fetch_timeout_secs),
        scan_concurrency=_env_int("SCAN_CONCURRENCY", defaults.scan_concurrency),
        moneycontrol_base_url=(
            _env("MONEYCONTROL_BASE_URL", defaults.moneycontrol_base_url) or ""
        ).rstrip("/"),
        nse_base_url=(_env("NSE_BASE_URL", defaults.nse_base_url) or "").rstrip("/"),
        nse_charting_url=(_env("NSE_CHARTING_URL", defaults.nse_charting_url) or "").rstrip("/"),
    )
