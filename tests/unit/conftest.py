import numpy as np
import pandas as pd
import pytest

from screener.universe import UniverseEntry

DAY = 86_400
START_TS = 1_700_000_000


def _frame_from_closes(closes) -> pd.DataFrame:
    closes = np.asarray(closes, dtype=float)
    n = len(closes)
    opens = np.concatenate([[closes[0]], closes[:-1]]) if n else closes
    return pd.DataFrame(
        {
            "timestamp": START_TS + np.arange(n, dtype=np.int64) * DAY,
            "open": opens,
            "high": np.maximum(opens, closes) + 1.0,
            "low": np.minimum(opens, closes) - 1.0,
            "close": closes,
            "volume": np.full(n, 1000.0),
        }
    )


@pytest.fixture
def series_from_closes():
    """Factory: daily raw series whose closes are the given values."""
    return _frame_from_closes


@pytest.fixture
def entry():
    def _make(symbol: str, market_cap: float = 150000.0) -> UniverseEntry:
        return UniverseEntry(symbol_id=symbol, display_name=f"{symbol} Ltd", market_cap=market_cap, exchange="NSE")
    return _make
