"""EMA and Wilder RSI over a close-price series, using pandas.

Both indicators return a float ``pandas.Series`` aligned with the input.
Positions before an indicator's seed hold ``NaN`` so nothing downstream can
mistake a placeholder for a real reading.  When the history is too short
for the requested period the whole indicator is absent and ``None`` is
returned instead of a series.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import ValidationError

EMA = "ema"
RSI = "rsi"
INDICATOR_KINDS = (EMA, RSI)

CloseLike = Union[pd.Series, Sequence[float]]


@dataclass(frozen=True)
class IndicatorSpec:
    """Typed key for one indicator series, e.g. ``IndicatorSpec.ema(200)``."""

    kind: str
    period: int

    def __post_init__(self) -> None:
        if self.kind not in INDICATOR_KINDS:
            raise ValidationError(f"unknown indicator kind {self.kind!r}")
        _check_period(self.period)

    @classmethod
    def ema(cls, period: int) -> "IndicatorSpec":
        return cls(EMA, period)

    @classmethod
    def rsi(cls, period: int) -> "IndicatorSpec":
        return cls(RSI, period)

    def __str__(self) -> str:
        return f"{self.kind.upper()}({self.period})"


IndicatorSet = Dict[IndicatorSpec, Optional[pd.Series]]


def _check_period(period: int) -> None:
    if isinstance(period, bool) or not isinstance(period, (int, np.integer)) or period <= 0:
        raise ValidationError(f"indicator period must be a positive integer, got {period!r}")


def _as_close_series(close: CloseLike) -> pd.Series:
    if isinstance(close, pd.Series):
        return close.astype(float)
    return pd.Series(list(close), dtype=float)


def compute_ema(close: CloseLike, window: int) -> Optional[pd.Series]:
    """
    Compute the exponential moving average (EMA) seeded with the simple mean
    of the first ``window`` closes.  From index ``window`` onwards
    ``ema[i] = close[i] * k + ema[i-1] * (1 - k)`` with ``k = 2 / (window + 1)``,
    which is exactly pandas’ ``ewm(span=window, adjust=False)`` recursion
    started from the seed.
    """
    _check_period(window)
    close = _as_close_series(close)
    if len(close) < window:
        return None
    ema = pd.Series(np.nan, index=close.index, dtype=float)
    tail = close.iloc[window - 1:].copy()
    tail.iloc[0] = close.iloc[:window].mean()
    ema.iloc[window - 1:] = tail.ewm(span=window, adjust=False).mean().to_numpy()
    return ema


def _wilder_average(values: pd.Series, window: int) -> pd.Series:
    # seed at `window` with the mean of deltas 1..window, then
    # avg = (avg * (window - 1) + x) / window
    out = pd.Series(np.nan, index=values.index, dtype=float)
    tail = values.iloc[window:].copy()
    tail.iloc[0] = values.iloc[1:window + 1].mean()
    out.iloc[window:] = tail.ewm(alpha=1.0 / window, adjust=False).mean().to_numpy()
    return out


def compute_rsi(close: CloseLike, window: int = 14) -> Optional[pd.Series]:
    """
    Compute the Relative Strength Index (RSI) using Wilder’s method.
    RSI oscillates between 0 and 100 and reads 100 whenever the smoothed
    loss is zero.  Needs at least ``window + 1`` closes.
    """
    _check_period(window)
    close = _as_close_series(close)
    if len(close) <= window:
        return None
    delta = close.diff()
    avg_gain = _wilder_average(delta.clip(lower=0.0), window)
    avg_loss = _wilder_average((-delta).clip(lower=0.0), window)
    with np.errstate(divide="ignore", invalid="ignore"):
        rs = avg_gain / avg_loss
        rsi = 100 - (100 / (1 + rs))
    return rsi.where(avg_loss != 0, 100.0)


_COMPUTE = {EMA: compute_ema, RSI: compute_rsi}


def compute_indicators(candles: pd.DataFrame, specs: Iterable[IndicatorSpec]) -> IndicatorSet:
    """Evaluate every spec over the candle closes; absent ones map to ``None``."""
    close = candles["close"].astype(float)
    return {spec: _COMPUTE[spec.kind](close, spec.period) for spec in specs}


def latest_value(series: Optional[pd.Series]) -> Optional[float]:
    """Last reading of an indicator, or ``None`` when absent or undefined."""
    if series is None or series.empty:
        return None
    value = series.iloc[-1]
    if pd.isna(value):
        return None
    return float(value)
