"""Core of the equity screener.

This package resamples OHLCV history into wider candles, computes EMA and
RSI indicators, and scans a universe of symbols concurrently against a
predicate.  Upstream history and the NSE session credential are fetched
with httpx; the resampling and indicator functions are pure and
deterministic when given the same inputs.
"""

from .errors import (
    ScreenerError,
    ValidationError,
    DataIntegrityError,
    TransientUpstreamError,
    CredentialError,
    InsufficientHistoryError,
)
from .config import ScreenerSettings, load_settings
from .resampler import OHLCV_COLUMNS, frame_from_arrays, resample
from .indicators import IndicatorSpec, compute_ema, compute_rsi, compute_indicators
from .session_cache import SessionCache, SessionState, SessionToken
from .ohlc_fetcher import (
    DerivativeQuote,
    MoneycontrolHistoryProvider,
    NSEChartHistoryProvider,
    NSECookieProvider,
    NSEDerivativesProvider,
    build_nse_session,
)
from .universe import UniverseEntry, StaticUniverseProvider, JsonUniverseProvider
from .rules import (
    Screen,
    ScreenContext,
    under_ema,
    emas_under_ema,
    rsi_compare,
    gap_up_gap_down,
    future_vs_current,
    rank_results,
    add_serial,
)
from .scanner import ConcurrentScanner, ScanReport, UnitState
from .backtester import BacktestResult, backtest_ema_trend

__all__ = [
    "ScreenerError",
    "ValidationError",
    "DataIntegrityError",
    "TransientUpstreamError",
    "CredentialError",
    "InsufficientHistoryError",
    "ScreenerSettings",
    "load_settings",
    "OHLCV_COLUMNS",
    "frame_from_arrays",
    "resample",
    "IndicatorSpec",
    "compute_ema",
    "compute_rsi",
    "compute_indicators",
    "SessionCache",
    "SessionState",
    "SessionToken",
    "DerivativeQuote",
    "MoneycontrolHistoryProvider",
    "NSEChartHistoryProvider",
    "NSECookieProvider",
    "NSEDerivativesProvider",
    "build_nse_session",
    "UniverseEntry",
    "StaticUniverseProvider",
    "JsonUniverseProvider",
    "Screen",
    "ScreenContext",
    "under_ema",
    "emas_under_ema",
    "rsi_compare",
    "gap_up_gap_down",
    "future_vs_current",
    "rank_results",
    "add_serial",
    "ConcurrentScanner",
    "ScanReport",
    "UnitState",
    "BacktestResult",
    "backtest_ema_trend",
]
