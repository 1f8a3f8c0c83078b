"""
Screening predicates and result shaping.

A predicate receives a :class:`ScreenContext` (the universe entry, its
resampled candles and the requested indicators) and returns a result
mapping when the symbol matches, ``None`` otherwise.  An indicator that is
absent because the history is too short always reads as "no match".
Quote screens see an empty candle frame and read ``ctx.quote`` instead.

Each ready-made screen is a :class:`Screen` bundling the indicators it
needs, its predicate and how its results are ranked.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from .errors import InsufficientHistoryError, ValidationError
from .indicators import IndicatorSet, IndicatorSpec, latest_value
from .ohlc_fetcher import DerivativeQuote
from .resampler import to_utc_datetimes
from .universe import UniverseEntry

ScreenResult = Dict[str, Any]


@dataclass(frozen=True)
class ScreenContext:
    entry: UniverseEntry
    candles: pd.DataFrame
    indicators: IndicatorSet = field(default_factory=dict)
    quote: Optional[DerivativeQuote] = None

    def series(self, spec: IndicatorSpec) -> Optional[pd.Series]:
        return self.indicators.get(spec)

    def latest(self, spec: IndicatorSpec) -> Optional[float]:
        return latest_value(self.indicators.get(spec))

    def require(self, spec: IndicatorSpec) -> float:
        value = self.latest(spec)
        if value is None:
            raise InsufficientHistoryError(f"{spec} undefined for {self.entry.symbol_id}")
        return value

    @property
    def last_candle(self) -> Optional[pd.Series]:
        if self.candles.empty:
            return None
        return self.candles.iloc[-1]

    def describe(self) -> ScreenResult:
        """Entry metadata plus the time of the latest candle."""
        out = self.entry.as_dict()
        last = self.last_candle
        out["time"] = None if last is None else to_utc_datetimes([last["timestamp"]])[0].isoformat()
        return out


Predicate = Callable[[ScreenContext], Optional[ScreenResult]]


@dataclass(frozen=True)
class Screen:
    name: str
    predicate: Predicate
    indicators: Tuple[IndicatorSpec, ...] = ()
    width: int = 1
    sort_key: Optional[str] = None
    descending: bool = False


def _cross_up(series1: pd.Series, series2: pd.Series) -> pd.Series:
    """Return True when series1 crosses above series2."""
    cond = (series1.shift(1) < series2.shift(1)) & (series1 >= series2)
    return cond


def _cross_down(series1: pd.Series, series2: pd.Series) -> pd.Series:
    """Return True when series1 crosses below series2."""
    cond = (series1.shift(1) > series2.shift(1)) & (series1 <= series2)
    return cond


def under_ema(period: int, width: int = 1) -> Screen:
    """Latest candle high below the latest EMA."""
    spec = IndicatorSpec.ema(period)

    def predicate(ctx: ScreenContext) -> Optional[ScreenResult]:
        ema = ctx.latest(spec)
        last = ctx.last_candle
        if ema is None or last is None:
            return None
        if not float(last["high"]) < ema:
            return None
        return {**ctx.describe(), "latest_high": float(last["high"]), "latest_ema": ema, "ema_period": period}

    return Screen(f"under-ema-{period}", predicate, (spec,), width, sort_key="symbol")


def emas_under_ema(
    fast: Sequence[int] = (20, 50, 100),
    slow: int = 200,
    plus_percent: float = 0.0,
    width: int = 5,
) -> Screen:
    """
    Every fast EMA sits below the slow EMA raised by ``plus_percent``
    (``slow * (1 + plus_percent / 100)``).
    """
    if not fast:
        raise ValidationError("at least one fast EMA period is required")
    fast_specs = tuple(IndicatorSpec.ema(p) for p in fast)
    slow_spec = IndicatorSpec.ema(slow)

    def predicate(ctx: ScreenContext) -> Optional[ScreenResult]:
        slow_value = ctx.latest(slow_spec)
        fast_values = {spec.period: ctx.latest(spec) for spec in fast_specs}
        if slow_value is None or any(v is None for v in fast_values.values()):
            return None
        ceiling = slow_value * (1 + plus_percent / 100)
        if not all(v < ceiling for v in fast_values.values()):
            return None
        last = ctx.last_candle
        return {
            **ctx.describe(),
            "close": float(last["close"]),
            "emas": {**fast_values, slow: slow_value},
            "ceiling": ceiling,
        }

    return Screen("emas-under-ema", predicate, fast_specs + (slow_spec,), width, sort_key="symbol")


def rsi_compare(
    period: int = 9,
    compare_value: Optional[float] = None,
    direction: str = "above",
    width: int = 5,
) -> Screen:
    """RSI strictly above (default 70) or below (default 20) a compare value."""
    if direction not in ("above", "below"):
        raise ValidationError("direction must be 'above' or 'below'")
    if compare_value is None:
        compare_value = 70.0 if direction == "above" else 20.0
    spec = IndicatorSpec.rsi(period)

    def predicate(ctx: ScreenContext) -> Optional[ScreenResult]:
        rsi = ctx.latest(spec)
        if rsi is None:
            return None
        hit = rsi > compare_value if direction == "above" else rsi < compare_value
        if not hit:
            return None
        return {
            **ctx.describe(),
            "close": float(ctx.last_candle["close"]),
            "rsi": rsi,
            "rsi_period": period,
            "compare_value": compare_value,
        }

    return Screen(f"rsi-{direction}", predicate, (spec,), width,
                  sort_key="rsi", descending=direction == "above")


def gap_up_gap_down(threshold_percent: float = 3.0) -> Screen:
    """Latest daily open gapped at least ``threshold_percent`` from the previous close."""
    if threshold_percent < 0:
        raise ValidationError("threshold_percent must not be negative")

    def predicate(ctx: ScreenContext) -> Optional[ScreenResult]:
        if len(ctx.candles) < 2:
            return None
        prev_close = float(ctx.candles["close"].iloc[-2])
        last = ctx.last_candle
        if prev_close == 0:
            return None
        change = (float(last["open"]) - prev_close) / prev_close * 100
        if abs(change) < threshold_percent:
            return None
        return {
            **ctx.describe(),
            "previous_close": prev_close,
            "open": float(last["open"]),
            "open_change_percent": change,
            "gap": "up" if change > 0 else "down",
        }

    return Screen("gap-up-gap-down", predicate, (), 1,
                  sort_key="open_change_percent", descending=True)


def future_vs_current(direction: str = "less") -> Screen:
    """
    Nearest stock future trading below (``less``) or above (``more``) the
    spot price.  Reads ``ctx.quote``, so it runs through
    :meth:`ConcurrentScanner.run_quote_screen`.  The widest gap ranks first.
    """
    if direction not in ("less", "more"):
        raise ValidationError("direction must be 'less' or 'more'")

    def predicate(ctx: ScreenContext) -> Optional[ScreenResult]:
        quote = ctx.quote
        if quote is None or not quote.spot_price:
            return None
        change = (quote.future_price - quote.spot_price) / quote.spot_price * 100
        hit = change < 0 if direction == "less" else change > 0
        if not hit:
            return None
        return {
            **ctx.describe(),
            "expiry": quote.expiry.date().isoformat(),
            "future_price": quote.future_price,
            "spot_price": quote.spot_price,
            "change_percent": change,
        }

    return Screen(f"future-{direction}-than-current", predicate, (), 1,
                  sort_key="change_percent", descending=direction == "more")


def rank_results(results: List[ScreenResult], key: str, descending: bool = False) -> List[ScreenResult]:
    """
    Sort results by ``key`` with ``symbol`` breaking ties, so equal values
    never fall back to completion order.  Rows missing ``key`` go last.
    """
    by_symbol = sorted(results, key=lambda r: str(r.get("symbol", "")))
    present = [r for r in by_symbol if r.get(key) is not None]
    missing = [r for r in by_symbol if r.get(key) is None]
    present.sort(key=lambda r: r[key], reverse=descending)
    return present + missing


def add_serial(results: List[ScreenResult]) -> List[ScreenResult]:
    for count, row in enumerate(results, start=1):
        row["no."] = count
    return results
