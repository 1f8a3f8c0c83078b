"""Aggregate uniform-period OHLCV series into wider candles.

A series is a :class:`pandas.DataFrame` with the columns listed in
``OHLCV_COLUMNS`` and one row per base sampling period.  Timestamps are
Unix epoch seconds as served upstream, or pandas datetimes.  Windows are
non-overlapping and left-aligned starting at row 0; a shorter trailing window
is kept and aggregated exactly like a full one.
"""
from __future__ import annotations

import math
from typing import Mapping, Sequence, Union

import numpy as np
import pandas as pd

from .errors import DataIntegrityError, ValidationError

OHLCV_COLUMNS = ("timestamp", "open", "high", "low", "close", "volume")

SeriesLike = Union[pd.DataFrame, Mapping[str, Sequence[float]]]


def frame_from_arrays(arrays: Mapping[str, Sequence[float]]) -> pd.DataFrame:
    """
    Build a raw series frame from six parallel arrays.  Raises
    ``DataIntegrityError`` when an array is missing or the lengths differ.
    """
    missing = [col for col in OHLCV_COLUMNS if arrays.get(col) is None]
    if missing:
        raise DataIntegrityError(f"series is missing arrays: {', '.join(missing)}")
    lengths = {col: len(arrays[col]) for col in OHLCV_COLUMNS}
    if len(set(lengths.values())) != 1:
        raise DataIntegrityError(f"series arrays have mismatched lengths: {lengths}")
    return validate_frame(pd.DataFrame({col: list(arrays[col]) for col in OHLCV_COLUMNS}))


def empty_frame() -> pd.DataFrame:
    return pd.DataFrame({col: [] for col in OHLCV_COLUMNS})


def to_utc_datetimes(timestamps) -> pd.DatetimeIndex:
    """
    Timestamps as a UTC ``DatetimeIndex``.  Numbers are read as Unix epoch
    seconds; datetimes (naive ones taken as UTC) are converted as they are.
    """
    ts = pd.Series(timestamps)
    if pd.api.types.is_numeric_dtype(ts) and not pd.api.types.is_bool_dtype(ts):
        return pd.DatetimeIndex(pd.to_datetime(ts, unit="s", utc=True))
    return pd.DatetimeIndex(pd.to_datetime(ts, utc=True))


def validate_frame(df: pd.DataFrame) -> pd.DataFrame:
    missing = [col for col in OHLCV_COLUMNS if col not in df.columns]
    if missing:
        raise DataIntegrityError(f"series is missing columns: {', '.join(missing)}")
    ts = df["timestamp"]
    if len(ts) > 1 and not (ts.is_monotonic_increasing and ts.is_unique):
        raise DataIntegrityError("series timestamps are not strictly increasing")
    return df


def candle_count(n: int, width: int) -> int:
    return math.ceil(n / width)


def resample(series: SeriesLike, width: int) -> pd.DataFrame:
    """
    Aggregate ``series`` into candles of ``width`` base periods.

    Per window: open=first, high=max, low=min, close=last, volume=sum and
    timestamp=first.  ``width == 1`` returns the series unchanged.
    """
    if isinstance(width, bool) or not isinstance(width, (int, np.integer)) or width <= 0:
        raise ValidationError(f"candle width must be a positive integer, got {width!r}")
    if isinstance(series, pd.DataFrame):
        df = validate_frame(series)
    else:
        df = frame_from_arrays(series)

    n = len(df)
    if n == 0:
        return df.loc[:, list(OHLCV_COLUMNS)].reset_index(drop=True)

    starts = np.arange(0, n, width)
    ends = np.minimum(starts + width, n) - 1
    cols = {col: df[col].to_numpy() for col in OHLCV_COLUMNS}
    out = pd.DataFrame(
        {
            "timestamp": df["timestamp"].iloc[starts].reset_index(drop=True),
            "open": cols["open"][starts],
            "high": np.maximum.reduceat(cols["high"], starts),
            "low": np.minimum.reduceat(cols["low"], starts),
            "close": cols["close"][ends],
            "volume": np.add.reduceat(cols["volume"], starts),
        }
    )
    return out
