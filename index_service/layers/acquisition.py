"""
Layer 1 – 数据获取层
向 Alpha Vantage（或同源中转接口）发起单次参数化请求，并对结果分类：
  非 2xx / 网络故障 / 非 JSON 响应  → TransportError
  响应体含 "Error Message"          → ApiError
  响应体含 "Note" / "Information"   → RateLimitedError
  其余                              → 原样返回 JSON 供处理层标准化

上游的错误信息在 HTTP 200 的响应体中返回，因此即使状态码成功也必须检查响应体。
本层不读写缓存，缓存记账由调用方负责。
"""

import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from index_service.errors import ApiError, RateLimitedError, TransportError

logger = logging.getLogger(__name__)

INTRADAY_INTERVALS = ("1min", "5min", "15min", "30min", "60min")

_FX_FUNCTIONS = {
    "1min": "FX_INTRADAY",
    "5min": "FX_INTRADAY",
    "15min": "FX_INTRADAY",
    "30min": "FX_INTRADAY",
    "60min": "FX_INTRADAY",
    "daily": "FX_DAILY",
    "weekly": "FX_WEEKLY",
    "monthly": "FX_MONTHLY",
}

_CRYPTO_FUNCTIONS = {
    "1min": "CRYPTO_INTRADAY",
    "5min": "CRYPTO_INTRADAY",
    "15min": "CRYPTO_INTRADAY",
    "30min": "CRYPTO_INTRADAY",
    "60min": "CRYPTO_INTRADAY",
    "daily": "DIGITAL_CURRENCY_DAILY",
    "weekly": "DIGITAL_CURRENCY_WEEKLY",
    "monthly": "DIGITAL_CURRENCY_MONTHLY",
}

# 技术指标可选参数：方法参数名 → 上游参数名
_INDICATOR_OPTIONS = {
    "time_period": "time_period",
    "series_type": "series_type",
    "fast_period": "fastperiod",
    "slow_period": "slowperiod",
    "signal_period": "signalperiod",
    "fastk_period": "fastkperiod",
    "slowk_period": "slowkperiod",
    "slowd_period": "slowdperiod",
    "fastd_period": "fastdperiod",
    "ma_type": "matype",
    "nbdevup": "nbdevup",
    "nbdevdn": "nbdevdn",
    "month": "month",
}


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _compact(params: Dict[str, Any]) -> Dict[str, str]:
    """去掉空值，其余统一转为字符串"""
    return {k: str(v) for k, v in params.items() if v is not None and v != ""}


class AlphaVantageClient:
    """Alpha Vantage 请求客户端：一次调用对应一次上游请求"""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://www.alphavantage.co/query",
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        user_agent: Optional[str] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url
        self._owns_http = http is None
        headers = {"Accept": "application/json"}
        if user_agent:
            headers["User-Agent"] = user_agent
        self._http = http or httpx.AsyncClient(timeout=timeout, headers=headers)

    @classmethod
    def from_settings(cls, cfg, http: Optional[httpx.AsyncClient] = None) -> "AlphaVantageClient":
        return cls(
            api_key=cfg.ALPHAVANTAGE_API_KEY,
            base_url=cfg.ALPHAVANTAGE_BASE_URL,
            http=http,
            timeout=cfg.HTTP_TIMEOUT,
            user_agent=cfg.HTTP_USER_AGENT,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── 请求与结果分类 ────────────────────────────────────

    async def request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        发起单次 GET 请求并返回 JSON 响应体

        Raises:
            TransportError: 非 2xx、网络故障或响应体不是 JSON 对象
            ApiError: 上游返回 "Error Message"
            RateLimitedError: 上游返回 "Note" / "Information"
        """
        query = _compact(params)
        function = query.get("function", "")
        symbol = query.get("symbol") or query.get("from_currency") or query.get("from_symbol")
        query["apikey"] = self._api_key
        context = {"symbol": symbol, "function": function}

        logger.debug(f"📡 Alpha Vantage 请求: {function} - {symbol or '-'}")
        try:
            resp = await self._http.get(self._base_url, params=query)
        except httpx.HTTPError as exc:
            raise TransportError(f"网络请求失败: {exc}", **context) from exc

        if not resp.is_success:
            raise TransportError(
                f"Alpha Vantage 返回状态码 {resp.status_code}",
                status_code=resp.status_code,
                **context,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError("响应体不是合法 JSON", status_code=resp.status_code, **context) from exc
        if not isinstance(data, dict):
            raise TransportError("响应体不是 JSON 对象", status_code=resp.status_code, **context)

        classify_payload(data, **context)
        return data

    # ── 核心股票接口 ──────────────────────────────────────

    @staticmethod
    def quote_params(symbol: str) -> Dict[str, str]:
        return {"function": "GLOBAL_QUOTE", "symbol": symbol}

    @staticmethod
    def intraday_params(
        symbol: str,
        interval: str = "5min",
        adjusted: Optional[bool] = None,
        extended_hours: Optional[bool] = None,
        month: Optional[str] = None,
        outputsize: Optional[str] = None,
    ) -> Dict[str, str]:
        if interval not in INTRADAY_INTERVALS:
            raise ValueError(f"不支持的分钟线周期: {interval}")
        return _compact({
            "function": "TIME_SERIES_INTRADAY",
            "symbol": symbol,
            "interval": interval,
            "adjusted": _flag(adjusted) if adjusted is not None else None,
            "extended_hours": _flag(extended_hours) if extended_hours is not None else None,
            "month": month,
            "outputsize": outputsize,
        })

    @staticmethod
    def daily_params(symbol: str, adjusted: bool = False, outputsize: str = "compact") -> Dict[str, str]:
        function = "TIME_SERIES_DAILY_ADJUSTED" if adjusted else "TIME_SERIES_DAILY"
        return {"function": function, "symbol": symbol, "outputsize": outputsize}

    @staticmethod
    def weekly_params(symbol: str, adjusted: bool = False) -> Dict[str, str]:
        function = "TIME_SERIES_WEEKLY_ADJUSTED" if adjusted else "TIME_SERIES_WEEKLY"
        return {"function": function, "symbol": symbol}

    @staticmethod
    def monthly_params(symbol: str, adjusted: bool = False) -> Dict[str, str]:
        function = "TIME_SERIES_MONTHLY_ADJUSTED" if adjusted else "TIME_SERIES_MONTHLY"
        return {"function": function, "symbol": symbol}

    @staticmethod
    def search_params(keywords: str) -> Dict[str, str]:
        return {"function": "SYMBOL_SEARCH", "keywords": keywords}

    @staticmethod
    def market_status_params() -> Dict[str, str]:
        return {"function": "MARKET_STATUS"}

    @staticmethod
    def overview_params(symbol: str) -> Dict[str, str]:
        return {"function": "OVERVIEW", "symbol": symbol}

    # ── 外汇 / 数字货币 ───────────────────────────────────

    @staticmethod
    def forex_rate_params(from_currency: str, to_currency: str) -> Dict[str, str]:
        return {
            "function": "CURRENCY_EXCHANGE_RATE",
            "from_currency": from_currency,
            "to_currency": to_currency,
        }

    @staticmethod
    def forex_series_params(
        from_symbol: str, to_symbol: str, interval: str = "daily", outputsize: str = "compact"
    ) -> Dict[str, str]:
        function = _FX_FUNCTIONS.get(interval)
        if function is None:
            raise ValueError(f"不支持的外汇周期: {interval}")
        params = {
            "function": function,
            "from_symbol": from_symbol,
            "to_symbol": to_symbol,
            "outputsize": outputsize,
        }
        if interval in INTRADAY_INTERVALS:
            params["interval"] = interval
        return params

    @staticmethod
    def crypto_series_params(symbol: str, market: str = "USD", interval: str = "daily") -> Dict[str, str]:
        function = _CRYPTO_FUNCTIONS.get(interval)
        if function is None:
            raise ValueError(f"不支持的数字货币周期: {interval}")
        params = {"function": function, "symbol": symbol, "market": market}
        if interval in INTRADAY_INTERVALS:
            params["interval"] = interval
        return params

    # ── 商品 / 经济指标 ───────────────────────────────────

    @staticmethod
    def commodity_params(commodity: str, interval: Optional[str] = None) -> Dict[str, str]:
        return _compact({"function": commodity, "interval": interval})

    @staticmethod
    def economic_params(
        indicator: str, interval: Optional[str] = None, maturity: Optional[str] = None
    ) -> Dict[str, str]:
        return _compact({"function": indicator, "interval": interval, "maturity": maturity})

    # ── 市场情报 / 技术指标 / 新闻 ────────────────────────

    @staticmethod
    def top_movers_params() -> Dict[str, str]:
        return {"function": "TOP_GAINERS_LOSERS"}

    @staticmethod
    def technical_indicator_params(symbol: str, indicator: str, interval: str, **options) -> Dict[str, str]:
        unknown = set(options) - set(_INDICATOR_OPTIONS)
        if unknown:
            raise ValueError(f"不支持的技术指标参数: {sorted(unknown)}")
        params = {"function": indicator, "symbol": symbol, "interval": interval}
        for name, value in options.items():
            params[_INDICATOR_OPTIONS[name]] = value
        return _compact(params)

    @staticmethod
    def news_params(
        tickers: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        time_from: Optional[str] = None,
        time_to: Optional[str] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, str]:
        return _compact({
            "function": "NEWS_SENTIMENT",
            "tickers": ",".join(tickers) if tickers else None,
            "topics": ",".join(topics) if topics else None,
            "time_from": time_from,
            "time_to": time_to,
            "sort": sort,
            "limit": limit,
        })


def classify_payload(data: Dict[str, Any], symbol: Optional[str] = None, function: Optional[str] = None) -> None:
    """检查响应体内的上游错误信号；中转接口也复用这套判定"""
    if data.get("Error Message"):
        raise ApiError(f"Alpha Vantage API Error: {data['Error Message']}", symbol=symbol, function=function)
    for field in ("Note", "Information"):
        if data.get(field):
            raise RateLimitedError(f"Alpha Vantage API {field}: {data[field]}", symbol=symbol, function=function)
