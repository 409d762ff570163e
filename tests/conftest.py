"""
测试公共夹具：各接口族的上游响应样例、可计数的伪上游（httpx.MockTransport）与可控时钟
"""

import os
import sys
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Union

import httpx
import pytest

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


# ─────────────────────────────────────────────────────────
# 上游响应样例
# ─────────────────────────────────────────────────────────

def make_quote(
    symbol: str = "AAPL",
    price: str = "150.00",
    change: str = "+2.50",
    change_percent: str = "1.69%",
    volume: str = "1000000",
    latest_day: str = "2024-01-02",
    previous_close: str = "147.50",
) -> Dict[str, Any]:
    return {
        "Global Quote": {
            "01. symbol": symbol,
            "02. open": "148.00",
            "03. high": "151.00",
            "04. low": "147.00",
            "05. price": price,
            "06. volume": volume,
            "07. latest trading day": latest_day,
            "08. previous close": previous_close,
            "09. change": change,
            "10. change percent": change_percent,
        }
    }


def make_daily_series(closes: Dict[str, str], key: str = "Time Series (Daily)") -> Dict[str, Any]:
    return {
        "Meta Data": {"1. Information": "Daily Prices", "2. Symbol": "IBM"},
        key: {
            day: {
                "1. open": close,
                "2. high": close,
                "3. low": close,
                "4. close": close,
                "5. volume": "1000",
            }
            for day, close in closes.items()
        },
    }


def make_crypto_daily(closes: Dict[str, str], market: str = "USD") -> Dict[str, Any]:
    return {
        "Meta Data": {"2. Digital Currency Code": "BTC", "4. Market Code": market},
        "Time Series (Digital Currency Daily)": {
            day: {
                "1. open": close,
                "2. high": close,
                "3. low": close,
                "4. close": close,
                "5. volume": "1234.5",
            }
            for day, close in closes.items()
        },
    }


def make_fx_rate(rate: str = "1.0850", from_code: str = "EUR", to_code: str = "USD") -> Dict[str, Any]:
    return {
        "Realtime Currency Exchange Rate": {
            "1. From_Currency Code": from_code,
            "2. From_Currency Name": "Euro",
            "3. To_Currency Code": to_code,
            "4. To_Currency Name": "United States Dollar",
            "5. Exchange Rate": rate,
            "6. Last Refreshed": "2024-01-02 16:30:01",
            "7. Time Zone": "UTC",
            "8. Bid Price": rate,
            "9. Ask Price": rate,
        }
    }


def make_value_series(values: List[tuple], name: str = "Crude Oil Prices WTI") -> Dict[str, Any]:
    """values: [(date, value), ...]，按上游习惯最近的在前"""
    return {
        "name": name,
        "interval": "monthly",
        "unit": "dollars per barrel",
        "data": [{"date": d, "value": v} for d, v in values],
    }


def make_movers() -> Dict[str, Any]:
    return {
        "metadata": "Top gainers, losers, and most actively traded US tickers",
        "last_updated": "2024-01-02 16:15:59 US/Eastern",
        "top_gainers": [
            {"ticker": "XYZ", "price": "3.21", "change_amount": "1.61",
             "change_percentage": "100.625%", "volume": "35542384"},
            {"ticker": "ABC", "price": "0.50", "change_amount": "0.20",
             "change_percentage": "66.6667%", "volume": "120000"},
        ],
        "top_losers": [
            {"ticker": "DEF", "price": "1.10", "change_amount": "-0.90",
             "change_percentage": "-45.0%", "volume": "900000"},
        ],
        "most_actively_traded": [
            {"ticker": "SPY", "price": "472.65", "change_amount": "-2.66",
             "change_percentage": "-0.5596%", "volume": "123623659"},
        ],
    }


RATE_LIMIT_NOTE = {
    "Note": "Thank you for using Alpha Vantage! Our standard API call frequency is 5 calls per minute.",
}


# ─────────────────────────────────────────────────────────
# 伪上游与时钟
# ─────────────────────────────────────────────────────────

Route = Union[Dict[str, Any], Callable[[httpx.Request], httpx.Response], int]


class FakeUpstream:
    """
    按 (function, symbol) 路由的伪 Alpha Vantage

    路由值可以是 JSON 对象、HTTP 状态码，或接收 httpx.Request 返回 httpx.Response 的函数；
    未配置的请求返回 Error Message。
    """

    def __init__(self):
        self.routes: Dict[tuple, Route] = {}
        self.calls: List[httpx.Request] = []

    def add(self, function: str, response: Route, symbol: str = None) -> "FakeUpstream":
        self.routes[(function, symbol)] = response
        return self

    def count(self, function: str = None) -> int:
        if function is None:
            return len(self.calls)
        return sum(1 for r in self.calls if r.url.params.get("function") == function)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        params = request.url.params
        function = params.get("function")
        symbol = params.get("symbol") or params.get("from_currency") or params.get("from_symbol")
        route = self.routes.get((function, symbol), self.routes.get((function, None)))
        if route is None:
            return httpx.Response(200, json={"Error Message": f"Invalid API call: {function}"})
        if callable(route):
            return route(request)
        if isinstance(route, int):
            return httpx.Response(route, text="upstream failure")
        return httpx.Response(200, json=route)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def payloads() -> SimpleNamespace:
    """各接口族响应样例的构造函数"""
    return SimpleNamespace(
        quote=make_quote,
        daily=make_daily_series,
        crypto=make_crypto_daily,
        fx_rate=make_fx_rate,
        values=make_value_series,
        movers=make_movers,
        rate_limit=dict(RATE_LIMIT_NOTE),
    )
