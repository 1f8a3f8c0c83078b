# screener/ohlc_fetcher.py
"""Fetch historical OHLCV data for Indian equities from public endpoints.

Two history providers are available:

* Moneycontrol tech-charts history (unauthenticated), hourly or daily.
* NSE charting data, which needs the NSE session cookie.  The cookie is
  obtained by :class:`NSECookieProvider` and cached by a
  :class:`~screener.session_cache.SessionCache` that the caller injects.

Both return a raw series frame (see :mod:`screener.resampler`) with
timestamps in Unix epoch seconds.  :class:`NSEDerivativesProvider` uses the
same cookie to read the nearest stock future against its spot price.
HTTP and network failures surface as
``TransientUpstreamError``; malformed payloads as ``DataIntegrityError``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import pandas as pd

from .config import ScreenerSettings, get_logger
from .errors import DataIntegrityError, TransientUpstreamError, ValidationError
from .resampler import empty_frame, frame_from_arrays
from .session_cache import SessionCache

logger = get_logger("ohlc_fetcher")

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"

_NSE_PAGE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-GB,en;q=0.6",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "User-Agent": USER_AGENT,
}

# upstream array keys -> raw series columns
_PAYLOAD_KEYS = {"t": "timestamp", "o": "open", "h": "high", "l": "low", "c": "close", "v": "volume"}

# candle unit -> Moneycontrol resolution
_RESOLUTIONS = {"H": "60", "D": "1D"}

# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def frame_from_payload(payload: Dict[str, Any]) -> pd.DataFrame:
    """Convert a ``{s, t, o, h, l, c, v}`` chart payload into a raw series frame."""
    if not isinstance(payload, dict) or not payload.get("s"):
        raise DataIntegrityError("faulty historical data: missing status")
    if payload["s"] == "no_data":
        return empty_frame()
    return frame_from_arrays({col: payload.get(key) for key, col in _PAYLOAD_KEYS.items()})


def candle_resolution(unit: str) -> str:
    try:
        return _RESOLUTIONS[unit.upper()]
    except (KeyError, AttributeError):
        raise ValidationError("candle unit should be 'H' for hours or 'D' for days") from None


def _now() -> int:
    return int(time.time())


async def _request_json(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> Any:
    try:
        resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPStatusError as e:
        raise TransientUpstreamError(f"{method} {url} returned {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise TransientUpstreamError(f"{method} {url} failed: {e}") from e
    except ValueError as e:
        raise DataIntegrityError(f"{method} {url} returned invalid JSON") from e

# ──────────────────────────────────────────────────────────────────────────────
# Moneycontrol
# ──────────────────────────────────────────────────────────────────────────────

class MoneycontrolHistoryProvider:
    """History from the Moneycontrol tech-charts endpoint (no credential needed).

    ``countback`` defaults to ``candle_width * 40 - 1`` base periods, enough
    history for the long EMAs once resampled.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = ScreenerSettings.moneycontrol_base_url,
        candle_unit: str = "D",
        candle_width: int = 1,
        countback: Optional[int] = None,
        currency_code: str = "INR",
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self.resolution = candle_resolution(candle_unit)
        self.countback = countback if countback is not None else candle_width * 40 - 1
        self.currency_code = currency_code

    async def fetch(self, symbol_id: str, from_ts: int = 0, to_ts: Optional[int] = None) -> pd.DataFrame:
        if not symbol_id:
            raise ValidationError("Please provide a valid symbol")
        params = {
            "symbol": symbol_id,
            "resolution": self.resolution,
            "from": from_ts,
            "to": to_ts if to_ts is not None else _now(),
            "countback": self.countback,
            "currencyCode": self.currency_code,
        }
        url = f"{self._base_url}/techCharts/indianMarket/stock/history"
        payload = await _request_json(self._client, "GET", url, params=params)
        df = frame_from_payload(payload)
        logger.debug("Moneycontrol history for %s: %s rows", symbol_id, len(df))
        return df

# ──────────────────────────────────────────────────────────────────────────────
# NSE
# ──────────────────────────────────────────────────────────────────────────────

class NSECookieProvider:
    """Obtain an NSE session cookie by loading a quotes page."""

    def __init__(self, client: httpx.AsyncClient, base_url: str = ScreenerSettings.nse_base_url) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def acquire(self) -> str:
        url = f"{self._base_url}/get-quotes/derivatives"
        try:
            resp = await self._client.get(url, headers=_NSE_PAGE_HEADERS)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"failed to fetch nse cookie: {e}") from e
        cookies = [c.split(";", 1)[0].strip() for c in resp.headers.get_list("set-cookie")]
        cookie = "; ".join(c for c in cookies if c)
        if not cookie:
            raise TransientUpstreamError("failed to fetch nse cookie: no set-cookie header")
        logger.info("Fetched new NSE cookie")
        return cookie


async def _authenticated_json(
    client: httpx.AsyncClient, session: SessionCache, method: str, url: str, **kwargs: Any
) -> Any:
    """Request ``url`` with the session cookie; a 401/403 invalidates the session."""
    cookie = await session.acquire()
    headers = {"Cookie": cookie, "User-Agent": USER_AGENT}
    try:
        return await _request_json(client, method, url, headers=headers, **kwargs)
    except TransientUpstreamError as e:
        cause = e.__cause__
        if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (401, 403):
            logger.warning("NSE rejected the session cookie (%s); invalidating", cause.response.status_code)
            session.invalidate()
        raise


class NSEChartHistoryProvider:
    """Daily equity history from NSE charting; every call needs the session cookie."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: SessionCache,
        charting_url: str = ScreenerSettings.nse_charting_url,
        series_type: str = "EQ",
        chart_period: str = "D",
    ) -> None:
        if series_type not in ("EQ",):
            raise ValidationError("Please provide a valid type from [EQ]")
        self._client = client
        self._session = session
        self._charting_url = charting_url.rstrip("/")
        self.series_type = series_type
        self.chart_period = chart_period

    async def fetch(self, symbol_id: str, from_ts: int = 0, to_ts: Optional[int] = None) -> pd.DataFrame:
        if not symbol_id:
            raise ValidationError("Please provide a valid symbol")
        payload = {
            "tradingSymbol": f"{symbol_id}-{self.series_type}",
            "exch": "N",
            "fromDate": from_ts,
            "toDate": to_ts if to_ts is not None else _now(),
            "timeInterval": 1,
            "chartPeriod": self.chart_period,
            "chartStart": 0,
        }
        url = f"{self._charting_url}/Charts/ChartData"
        data = await _authenticated_json(self._client, self._session, "POST", url, json=payload)
        return frame_from_payload(data)


@dataclass(frozen=True)
class DerivativeQuote:
    symbol_id: str
    expiry: pd.Timestamp
    future_price: float
    spot_price: float


def nearest_future(symbol_id: str, stocks: Optional[List[Dict[str, Any]]]) -> Optional[DerivativeQuote]:
    """
    Pick the nearest-expiry stock future out of the ``stocks`` list of an NSE
    ``quote-derivative`` response.  Each item carries ``metadata``
    (``instrumentType``, ``expiryDate`` like ``28-Nov-2024``, ``lastPrice``)
    and the spot ``underlyingValue``.  Options are ignored; a symbol with no
    listed future gives ``None``.
    """
    if not stocks:
        return None
    if not isinstance(stocks, list):
        raise DataIntegrityError(f"faulty derivatives data for {symbol_id}")
    futures = []
    for item in stocks:
        if not isinstance(item, dict):
            raise DataIntegrityError(f"faulty derivatives data for {symbol_id}")
        meta = item.get("metadata") or {}
        if meta.get("instrumentType") != "Stock Futures":
            continue
        try:
            expiry = pd.to_datetime(meta["expiryDate"], format="%d-%b-%Y")
            future_price = float(meta["lastPrice"])
            spot_price = float(item["underlyingValue"])
        except (KeyError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"malformed futures quote for {symbol_id}: {e}") from e
        futures.append(DerivativeQuote(symbol_id, expiry, future_price, spot_price))
    if not futures:
        return None
    return min(futures, key=lambda q: q.expiry)


class NSEDerivativesProvider:
    """Derivative quotes for an NSE symbol; needs the session cookie."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: SessionCache,
        base_url: str = ScreenerSettings.nse_base_url,
    ) -> None:
        self._client = client
        self._session = session
        self._base_url = base_url.rstrip("/")

    async def fetch_stocks(self, symbol_id: str) -> List[Dict[str, Any]]:
        if not symbol_id:
            raise ValidationError("Please provide a valid symbol")
        url = f"{self._base_url}/api/quote-derivative"
        data = await _authenticated_json(self._client, self._session, "GET", url, params={"symbol": symbol_id})
        if not isinstance(data, dict):
            raise DataIntegrityError(f"faulty derivatives data for {symbol_id}")
        return data.get("stocks") or []

    async def fetch(self, symbol_id: str) -> Optional[DerivativeQuote]:
        quote = nearest_future(symbol_id, await self.fetch_stocks(symbol_id))
        logger.debug("Nearest future for %s: %s", symbol_id, quote)
        return quote

# ──────────────────────────────────────────────────────────────────────────────
# Public entry
# ──────────────────────────────────────────────────────────────────────────────

def build_nse_session(client: httpx.AsyncClient, settings: ScreenerSettings) -> SessionCache:
    """Session cache over the NSE cookie; a hard reset also clears the client cookie jar."""
    return SessionCache.from_settings(
        NSECookieProvider(client, settings.nse_base_url),
        settings,
        on_hard_reset=client.cookies.clear,
    )
