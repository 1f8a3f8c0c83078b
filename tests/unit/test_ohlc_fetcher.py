import json

import httpx
import pandas as pd
import pytest

from screener.config import ScreenerSettings
from screener.errors import DataIntegrityError, TransientUpstreamError, ValidationError
from screener.ohlc_fetcher import (
    MoneycontrolHistoryProvider,
    NSEChartHistoryProvider,
    NSECookieProvider,
    NSEDerivativesProvider,
    build_nse_session,
    candle_resolution,
    frame_from_payload,
    nearest_future,
)
from screener.rules import future_vs_current
from screener.scanner import ConcurrentScanner, UnitState
from screener.session_cache import SessionCache, SessionState

NSE = "https://www.nseindia.com"
CHARTING = "https://charting.nseindia.com"
MONEYCONTROL = "https://priceapi.moneycontrol.com"


def payload(closes, start=1_700_000_000, step=86_400):
    n = len(closes)
    return {
        "s": "ok",
        "t": [start + i * step for i in range(n)],
        "o": list(closes),
        "h": [c + 1 for c in closes],
        "l": [c - 1 for c in closes],
        "c": list(closes),
        "v": [1000] * n,
    }


def test_frame_from_payload():
    df = frame_from_payload(payload([10.0, 11.0, 12.0]))
    assert list(df["close"]) == [10.0, 11.0, 12.0]
    assert list(df.columns) == ["timestamp", "open", "high", "low", "close", "volume"]


def test_frame_from_payload_no_data():
    assert frame_from_payload({"s": "no_data"}).empty


@pytest.mark.parametrize("bad", [{}, {"t": [1]}, [], {"s": "ok", "t": [1], "o": [1], "h": [1], "l": [1], "c": [1]}])
def test_frame_from_payload_rejects_faulty_payload(bad):
    with pytest.raises(DataIntegrityError):
        frame_from_payload(bad)


def test_candle_resolution():
    assert candle_resolution("H") == "60"
    assert candle_resolution("d") == "1D"
    with pytest.raises(ValidationError):
        candle_resolution("W")


@pytest.mark.asyncio
async def test_moneycontrol_request_parameters():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=payload([1.0, 2.0]))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = MoneycontrolHistoryProvider(client, MONEYCONTROL, candle_unit="H", candle_width=5)
        df = await provider.fetch("RELIANCE", to_ts=1_700_100_000)

    assert len(df) == 2
    req = seen[0]
    assert req.url.path == "/techCharts/indianMarket/stock/history"
    assert req.url.params["symbol"] == "RELIANCE"
    assert req.url.params["resolution"] == "60"
    assert req.url.params["countback"] == "199"
    assert req.url.params["to"] == "1700100000"
    assert req.url.params["currencyCode"] == "INR"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(500, text="oops"), TransientUpstreamError),
        (httpx.Response(200, text="<html>not json</html>"), DataIntegrityError),
        (httpx.Response(200, json={"t": []}), DataIntegrityError),
    ],
)
async def test_moneycontrol_failures(response, error):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)) as client:
        provider = MoneycontrolHistoryProvider(client, MONEYCONTROL)
        with pytest.raises(error):
            await provider.fetch("TCS")


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransientUpstreamError):
            await MoneycontrolHistoryProvider(client, MONEYCONTROL).fetch("TCS")


def nse_handler(seen, chart_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/get-quotes/derivatives":
            return httpx.Response(
                200,
                headers=[("set-cookie", "nsit=abc; Path=/; HttpOnly"), ("set-cookie", "nseappid=xyz; Path=/")],
                text="<html></html>",
            )
        if request.url.path == "/Charts/ChartData":
            if chart_status != 200:
                return httpx.Response(chart_status)
            return httpx.Response(200, json=payload([5.0, 6.0, 7.0]))
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_nse_cookie_provider_joins_cookies():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(nse_handler(seen))) as client:
        cookie = await NSECookieProvider(client, NSE).acquire()
    assert cookie == "nsit=abc; nseappid=xyz"
    assert "Mozilla" in seen[0].headers["user-agent"]


@pytest.mark.asyncio
async def test_nse_cookie_provider_without_cookie():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html></html>"))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(TransientUpstreamError):
            await NSECookieProvider(client, NSE).acquire()


@pytest.mark.asyncio
async def test_nse_chart_history_uses_cached_cookie():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(nse_handler(seen))) as client:
        session = SessionCache(NSECookieProvider(client, NSE), ttl_seconds=600)
        provider = NSEChartHistoryProvider(client, session, CHARTING)
        first = await provider.fetch("RELIANCE", to_ts=1_700_100_000)
        await provider.fetch("INFY", to_ts=1_700_100_000)

    assert list(first["close"]) == [5.0, 6.0, 7.0]
    chart_requests = [r for r in seen if r.url.path == "/Charts/ChartData"]
    assert len(seen) - len(chart_requests) == 1
    body = json.loads(chart_requests[0].content)
    assert body["tradingSymbol"] == "RELIANCE-EQ"
    assert body["toDate"] == 1_700_100_000
    assert chart_requests[1].headers["cookie"] == "nsit=abc; nseappid=xyz"


@pytest.mark.asyncio
async def test_nse_rejected_cookie_invalidates_session():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(nse_handler(seen, chart_status=401))) as client:
        session = SessionCache(NSECookieProvider(client, NSE), ttl_seconds=600)
        provider = NSEChartHistoryProvider(client, session, CHARTING)
        with pytest.raises(TransientUpstreamError):
            await provider.fetch("RELIANCE")
        assert session.state is SessionState.EXPIRED


def test_nse_chart_rejects_unknown_series_type():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    session = SessionCache(NSECookieProvider(client, NSE))
    with pytest.raises(ValidationError):
        NSEChartHistoryProvider(client, session, CHARTING, series_type="BE")


def test_hard_reset_clears_client_cookies():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    client.cookies.set("nsit", "abc", domain="www.nseindia.com")
    session = build_nse_session(client, ScreenerSettings(session_ttl_seconds=120))
    assert session.token.ttl_seconds == 120
    session.hard_reset()
    assert len(client.cookies) == 0


@pytest.mark.asyncio
async def test_scan_over_moneycontrol_isolates_bad_symbol(entry):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["symbol"] == "BROKEN":
            return httpx.Response(503)
        return httpx.Response(200, json=payload([100.0 + i for i in range(30)]))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = MoneycontrolHistoryProvider(client, MONEYCONTROL)
        universe = [entry("TCS"), entry("BROKEN"), entry("INFY")]
        report = await ConcurrentScanner(concurrency=2).run(
            universe, provider.fetch, 5, [], lambda ctx: ctx.describe()
        )

    assert sorted(r["symbol"] for r in report.results) == ["INFY", "TCS"]
    assert report.outcomes[UnitState.FETCH_FAILED] == 1
    assert "503" in report.failures["BROKEN"]


def stock(instrument, expiry, last_price, spot=2500.0):
    return {
        "metadata": {"instrumentType": instrument, "expiryDate": expiry, "lastPrice": last_price},
        "underlyingValue": spot,
    }


def test_nearest_future_ignores_options_and_later_expiries():
    stocks = [
        stock("Stock Options", "28-Nov-2024", 40.0),
        stock("Stock Futures", "26-Dec-2024", 2530.0),
        stock("Stock Futures", "28-Nov-2024", 2480.0),
    ]
    q = nearest_future("RELIANCE", stocks)
    assert q.expiry == pd.Timestamp("2024-11-28")
    assert (q.future_price, q.spot_price) == (2480.0, 2500.0)


def test_nearest_future_without_futures():
    assert nearest_future("TINY", []) is None
    assert nearest_future("TINY", [stock("Stock Options", "28-Nov-2024", 1.0)]) is None


def test_nearest_future_rejects_malformed_quote():
    with pytest.raises(DataIntegrityError):
        nearest_future("BAD", [stock("Stock Futures", "someday", 10.0)])
    with pytest.raises(DataIntegrityError):
        nearest_future("BAD", ["not a quote"])


def derivatives_handler(seen, books, status=200):
    cookie_page = nse_handler(seen)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path != "/api/quote-derivative":
            return cookie_page(request)
        seen.append(request)
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"stocks": books.get(request.url.params["symbol"], [])})

    return handler


@pytest.mark.asyncio
async def test_derivatives_provider_sends_cookie():
    seen = []
    books = {"RELIANCE": [stock("Stock Futures", "28-Nov-2024", 2480.0)]}
    async with httpx.AsyncClient(transport=httpx.MockTransport(derivatives_handler(seen, books))) as client:
        session = SessionCache(NSECookieProvider(client, NSE), ttl_seconds=600)
        q = await NSEDerivativesProvider(client, session, NSE).fetch("RELIANCE")

    assert q.future_price == 2480.0
    request = seen[-1]
    assert request.url.params["symbol"] == "RELIANCE"
    assert request.headers["cookie"] == "nsit=abc; nseappid=xyz"


@pytest.mark.asyncio
async def test_derivatives_provider_rejected_cookie_invalidates_session():
    seen = []
    transport = httpx.MockTransport(derivatives_handler(seen, {}, status=403))
    async with httpx.AsyncClient(transport=transport) as client:
        session = SessionCache(NSECookieProvider(client, NSE), ttl_seconds=600)
        with pytest.raises(TransientUpstreamError):
            await NSEDerivativesProvider(client, session, NSE).fetch("RELIANCE")
        assert session.state is SessionState.EXPIRED


@pytest.mark.asyncio
async def test_future_less_than_current_scan(entry):
    seen = []
    books = {
        "RELIANCE": [stock("Stock Futures", "28-Nov-2024", 2450.0, spot=2500.0)],
        "TCS": [stock("Stock Futures", "28-Nov-2024", 3960.0, spot=4000.0)],
        "INFY": [stock("Stock Futures", "28-Nov-2024", 1810.0, spot=1800.0)],
    }
    async with httpx.AsyncClient(transport=httpx.MockTransport(derivatives_handler(seen, books))) as client:
        session = SessionCache(NSECookieProvider(client, NSE), ttl_seconds=600)
        provider = NSEDerivativesProvider(client, session, NSE)
        universe = [entry(s) for s in ("RELIANCE", "TCS", "INFY", "TINY")]
        report = await ConcurrentScanner(concurrency=2).run_quote_screen(
            universe, provider.fetch, future_vs_current("less")
        )

    assert [r["symbol"] for r in report.results] == ["RELIANCE", "TCS"]
    assert report.results[0]["change_percent"] == pytest.approx(-2.0)
    assert report.outcomes[UnitState.UNMATCHED] == 2
    # one cookie fetch shared by every symbol
    assert session.refresh_count == 1
