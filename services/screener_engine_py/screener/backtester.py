"""
Backtest of the single built-in strategy: EMA trend following.

The strategy is long only.  It buys a fixed cash amount when the candle
close crosses above its EMA and sells the whole position when the close
crosses back below.  It produces a list of trades, key performance
metrics, and an equity curve.  This is an example of the screening
pattern applied over time, not a general strategy engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from .errors import ValidationError
from .indicators import compute_ema
from .resampler import to_utc_datetimes
from .rules import _cross_down, _cross_up


@dataclass
class Trade:
    entry_time: pd.Timestamp
    exit_time: pd.Timestamp
    entry_price: float
    exit_price: float
    quantity: float
    profit_pct: float


@dataclass
class BacktestResult:
    trades: List[Trade] = field(default_factory=list)
    equity_curve: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))
    pnl: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    sharpe: float = 0.0


def ema_trend_signal(close: pd.Series, period: int) -> Optional[pd.Series]:
    """+1 where close crosses above its EMA, -1 where it crosses below, else 0."""
    ema = compute_ema(close, period)
    if ema is None:
        return None
    sig = pd.Series(0, index=close.index, dtype=np.int8)
    sig[_cross_up(close, ema)] = 1
    sig[_cross_down(close, ema)] = -1
    return sig


def _max_drawdown(equity: pd.Series) -> float:
    if equity.empty:
        return 0.0
    running_max = equity.cummax()
    drawdowns = (equity - running_max) / running_max
    return abs(float(drawdowns.min()))


def backtest_ema_trend(
    candles: pd.DataFrame,
    period: int,
    investment_per_purchase: float = 10000.0,
    fee_pct: float = 0.0,
) -> BacktestResult:
    """
    Replay ``candles`` through the EMA trend strategy.  Fees are deducted on
    both entry and exit.  ``pnl`` is realised profit relative to the cash
    put in per purchase; an open position at the end is marked to market in
    the equity curve only.  Too little history for the EMA yields an empty
    result.
    """
    if investment_per_purchase <= 0:
        raise ValidationError("investment_per_purchase must be positive")
    close = candles["close"].astype(float).reset_index(drop=True)
    times = to_utc_datetimes(candles["timestamp"])
    signal = ema_trend_signal(close, period)
    if signal is None:
        return BacktestResult()

    trades: List[Trade] = []
    realised = 0.0
    quantity = 0.0
    entry_price: Optional[float] = None
    entry_time: Optional[pd.Timestamp] = None
    equity = []
    for i, price in enumerate(close):
        sig = signal.iloc[i]
        # open position
        if sig > 0 and entry_price is None:
            entry_price = price * (1 + fee_pct)
            quantity = investment_per_purchase / entry_price
            entry_time = times[i]
        # close position
        elif sig < 0 and entry_price is not None:
            exit_price = price * (1 - fee_pct)
            profit_pct = (exit_price - entry_price) / entry_price
            trades.append(Trade(entry_time, times[i], entry_price, exit_price, quantity, profit_pct))
            realised += quantity * (exit_price - entry_price)
            entry_price = None
            entry_time = None
            quantity = 0.0
        unrealised = quantity * (price - entry_price) if entry_price is not None else 0.0
        equity.append(investment_per_purchase + realised + unrealised)

    equity_series = pd.Series(equity, index=times, dtype=float)
    returns = equity_series.pct_change().fillna(0.0)
    win_trades = [t for t in trades if t.profit_pct > 0]
    win_rate = len(win_trades) / len(trades) if trades else 0.0
    # sharpe ratio (per bar, scaled by sqrt(len))
    if returns.std(ddof=0) > 0:
        sharpe = float((returns.mean() / returns.std(ddof=0)) * np.sqrt(len(returns)))
    else:
        sharpe = 0.0
    return BacktestResult(
        trades=trades,
        equity_curve=equity_series,
        pnl=realised / investment_per_purchase,
        win_rate=win_rate,
        max_drawdown=_max_drawdown(equity_series),
        sharpe=sharpe,
    )
