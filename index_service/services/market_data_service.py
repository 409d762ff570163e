"""
行情数据服务
整合获取、缓存、处理三层，对外提供按接口族划分的数据访问方法。

每个方法的流程相同：
  缓存新鲜 → 标准化缓存中的原始应答
  退避窗口内 → BackoffActiveError，不发起网络请求
  否则请求上游 → 标准化 → 写入缓存
  请求或标准化失败 → 记录失败（进入退避）并抛出分类后的错误
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from index_service.errors import BackoffActiveError, IndexDataError, NormalizationError
from index_service.layers.acquisition import AlphaVantageClient, INTRADAY_INTERVALS
from index_service.layers.cache import CacheKey, CacheStore
from index_service.layers.processing import ResponseNormalizer
from index_service.models.market import NormalizedQuote, SeriesPoint, ValuePoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DAILY = {"TIME_SERIES_DAILY", "TIME_SERIES_DAILY_ADJUSTED"}
_WEEKLY = {"TIME_SERIES_WEEKLY", "TIME_SERIES_WEEKLY_ADJUSTED"}
_MONTHLY = {"TIME_SERIES_MONTHLY", "TIME_SERIES_MONTHLY_ADJUSTED"}


class MarketDataService:
    """按接口族划分的行情数据访问（带缓存与失败退避）"""

    def __init__(
        self,
        client: AlphaVantageClient,
        cache: CacheStore,
        normalizer: Optional[ResponseNormalizer] = None,
    ):
        self._client = client
        self._cache = cache
        self._norm = normalizer or ResponseNormalizer()

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def normalizer(self) -> ResponseNormalizer:
        return self._norm

    @staticmethod
    def _normalize(key: CacheKey, normalize: Callable[[Dict[str, Any]], T], payload: Any) -> T:
        """结构异常的响应统一归为 NormalizationError"""
        try:
            return normalize(payload)
        except IndexDataError:
            raise
        except (TypeError, AttributeError, KeyError, ValueError) as exc:
            raise NormalizationError(
                f"{key} 响应结构异常: {type(exc).__name__}: {exc}",
                symbol=key.symbol,
                function=key.function,
            ) from exc

    async def _fetch(
        self,
        key: CacheKey,
        params: Dict[str, str],
        normalize: Callable[[Dict[str, Any]], T],
        force_refresh: bool = False,
    ) -> T:
        entry = await self._cache.get(key)
        if not force_refresh and self._cache.is_fresh(entry):
            logger.debug(f"🎯 缓存命中: {key}")
            return self._normalize(key, normalize, entry.payload)

        if not force_refresh and self._cache.in_backoff(entry):
            raise BackoffActiveError(
                f"{key} 处于退避窗口内（连续失败 {entry.failures} 次）",
                symbol=key.symbol,
                function=key.function,
            )

        logger.debug(f"🌐 拉取最新数据: {key}")
        try:
            payload = await self._client.request(params)
            result = self._normalize(key, normalize, payload)
        except IndexDataError:
            await self._cache.mark_failed_request(key)
            raise

        await self._cache.put(key, payload)
        return result

    # ── 报价 ──────────────────────────────────────────────

    async def get_quote(self, symbol: str, force_refresh: bool = False) -> NormalizedQuote:
        """获取实时报价（GLOBAL_QUOTE）"""
        return await self._fetch(
            CacheKey(symbol, "GLOBAL_QUOTE"),
            self._client.quote_params(symbol),
            self._norm.normalize_quote,
            force_refresh,
        )

    # ── 时间序列 ──────────────────────────────────────────

    async def get_time_series(
        self,
        symbol: str,
        function: str = "TIME_SERIES_DAILY",
        interval: Optional[str] = None,
        outputsize: str = "compact",
        force_refresh: bool = False,
    ) -> List[SeriesPoint]:
        """
        获取股票时间序列（分钟 / 日 / 周 / 月，含复权版本）

        Args:
            symbol: 股票代码
            function: TIME_SERIES_* 接口名
            interval: 分钟线周期，仅 TIME_SERIES_INTRADAY 需要
            outputsize: compact（最近 100 条）/ full
        """
        if function == "TIME_SERIES_INTRADAY":
            interval = interval or "5min"
            if interval not in INTRADAY_INTERVALS:
                raise ValueError(f"不支持的分钟线周期: {interval}")
            params = self._client.intraday_params(symbol, interval, outputsize=outputsize)
        elif function in _DAILY:
            interval = None
            params = self._client.daily_params(symbol, function.endswith("_ADJUSTED"), outputsize)
        elif function in _WEEKLY:
            interval = None
            params = self._client.weekly_params(symbol, function.endswith("_ADJUSTED"))
        elif function in _MONTHLY:
            interval = None
            params = self._client.monthly_params(symbol, function.endswith("_ADJUSTED"))
        else:
            raise ValueError(f"不支持的时间序列接口: {function}")

        return await self._fetch(
            CacheKey(symbol, function, interval),
            params,
            lambda payload: self._norm.normalize_time_series(payload, function, interval),
            force_refresh,
        )

    async def get_intraday(self, symbol: str, interval: str = "5min", force_refresh: bool = False) -> List[SeriesPoint]:
        return await self.get_time_series(symbol, "TIME_SERIES_INTRADAY", interval, force_refresh=force_refresh)

    async def get_daily(
        self, symbol: str, adjusted: bool = False, outputsize: str = "compact", force_refresh: bool = False
    ) -> List[SeriesPoint]:
        function = "TIME_SERIES_DAILY_ADJUSTED" if adjusted else "TIME_SERIES_DAILY"
        return await self.get_time_series(symbol, function, outputsize=outputsize, force_refresh=force_refresh)

    async def get_weekly(self, symbol: str, adjusted: bool = False, force_refresh: bool = False) -> List[SeriesPoint]:
        function = "TIME_SERIES_WEEKLY_ADJUSTED" if adjusted else "TIME_SERIES_WEEKLY"
        return await self.get_time_series(symbol, function, force_refresh=force_refresh)

    async def get_monthly(self, symbol: str, adjusted: bool = False, force_refresh: bool = False) -> List[SeriesPoint]:
        function = "TIME_SERIES_MONTHLY_ADJUSTED" if adjusted else "TIME_SERIES_MONTHLY"
        return await self.get_time_series(symbol, function, force_refresh=force_refresh)

    # ── 外汇 ──────────────────────────────────────────────

    async def get_forex_rate(self, from_currency: str, to_currency: str, force_refresh: bool = False) -> NormalizedQuote:
        """实时汇率；涨跌为名义近似值"""
        return await self._fetch(
            CacheKey(f"{from_currency}{to_currency}", "CURRENCY_EXCHANGE_RATE"),
            self._client.forex_rate_params(from_currency, to_currency),
            self._norm.normalize_forex_rate,
            force_refresh,
        )

    async def get_forex_series(
        self, from_symbol: str, to_symbol: str, interval: str = "daily", force_refresh: bool = False
    ) -> List[SeriesPoint]:
        params = self._client.forex_series_params(from_symbol, to_symbol, interval)
        function = params["function"]
        series_interval = params.get("interval")
        return await self._fetch(
            CacheKey(f"{from_symbol}{to_symbol}", function, series_interval),
            params,
            lambda payload: self._norm.normalize_time_series(payload, function, series_interval),
            force_refresh,
        )

    # ── 数字货币 ──────────────────────────────────────────

    async def get_crypto_daily(self, symbol: str, market: str = "USD", force_refresh: bool = False) -> NormalizedQuote:
        """数字货币日线，取最近两日收盘价计算涨跌"""
        return await self._fetch(
            CacheKey(f"{symbol}_{market}", "DIGITAL_CURRENCY_DAILY"),
            self._client.crypto_series_params(symbol, market, "daily"),
            lambda payload: self._norm.normalize_crypto_daily(payload, symbol, market),
            force_refresh,
        )

    async def get_crypto_series(
        self, symbol: str, market: str = "USD", interval: str = "daily", force_refresh: bool = False
    ) -> List[SeriesPoint]:
        """数字货币日 / 周 / 月线或分钟线（按日期升序）"""
        params = self._client.crypto_series_params(symbol, market, interval)
        function = params["function"]
        series_interval = params.get("interval")
        return await self._fetch(
            CacheKey(f"{symbol}_{market}", function, series_interval),
            params,
            lambda payload: self._norm.normalize_time_series(payload, function, series_interval, market=market),
            force_refresh,
        )

    # ── 商品 / 经济指标 ───────────────────────────────────

    async def get_commodity(
        self, commodity: str, interval: Optional[str] = None, force_refresh: bool = False
    ) -> List[ValuePoint]:
        """商品价格序列（按日期升序）"""
        return await self._fetch(
            CacheKey("", commodity, interval),
            self._client.commodity_params(commodity, interval),
            self._norm.value_points,
            force_refresh,
        )

    async def get_economic_indicator(
        self,
        indicator: str,
        interval: Optional[str] = None,
        maturity: Optional[str] = None,
        force_refresh: bool = False,
    ) -> List[ValuePoint]:
        """经济指标序列（按日期升序）"""
        variant = "_".join(p for p in (interval, maturity) if p) or None
        return await self._fetch(
            CacheKey("", indicator, variant),
            self._client.economic_params(indicator, interval, maturity),
            self._norm.value_points,
            force_refresh,
        )

    # ── 市场情报 ──────────────────────────────────────────

    async def get_top_movers(self, force_refresh: bool = False) -> Dict[str, List[Dict[str, Any]]]:
        """涨幅榜 / 跌幅榜 / 成交活跃榜"""
        return await self._fetch(
            CacheKey("", "TOP_GAINERS_LOSERS"),
            self._client.top_movers_params(),
            self._norm.mover_lists,
            force_refresh,
        )

    async def get_top_mover(self, list_name: str = "top_gainers", force_refresh: bool = False) -> NormalizedQuote:
        """指定榜单的榜首"""
        return await self._fetch(
            CacheKey("", "TOP_GAINERS_LOSERS"),
            self._client.top_movers_params(),
            lambda payload: self._norm.normalize_top_movers(payload, list_name),
            force_refresh,
        )

    # ── 技术指标 / 搜索 / 市场状态 / 新闻 / 基本面 ─────────

    async def get_technical_indicator(
        self, symbol: str, indicator: str, interval: str = "daily", force_refresh: bool = False, **options
    ) -> List[Dict[str, Any]]:
        params = self._client.technical_indicator_params(symbol, indicator, interval, **options)
        variant = "_".join([interval] + [f"{k}{v}" for k, v in sorted(options.items()) if v is not None])
        return await self._fetch(
            CacheKey(symbol, indicator, variant),
            params,
            lambda payload: self._norm.normalize_technical_indicator(payload, indicator),
            force_refresh,
        )

    async def search_symbols(self, keywords: str, force_refresh: bool = False) -> List[Dict[str, Any]]:
        return await self._fetch(
            CacheKey(keywords, "SYMBOL_SEARCH"),
            self._client.search_params(keywords),
            self._norm.normalize_search,
            force_refresh,
        )

    async def get_market_status(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        return await self._fetch(
            CacheKey("", "MARKET_STATUS"),
            self._client.market_status_params(),
            self._norm.normalize_market_status,
            force_refresh,
        )

    async def get_news_sentiment(
        self,
        tickers: Optional[Iterable[str]] = None,
        topics: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        force_refresh: bool = False,
    ) -> List[Dict[str, Any]]:
        tickers = list(tickers or [])
        topics = list(topics or [])
        variant = "_".join(topics + ([str(limit)] if limit else [])) or None
        return await self._fetch(
            CacheKey(",".join(tickers), "NEWS_SENTIMENT", variant),
            self._client.news_params(tickers, topics, limit=limit),
            self._norm.normalize_news,
            force_refresh,
        )

    async def get_company_overview(self, symbol: str, force_refresh: bool = False) -> Dict[str, Any]:
        return await self._fetch(
            CacheKey(symbol, "OVERVIEW"),
            self._client.overview_params(symbol),
            self._norm.normalize_overview,
            force_refresh,
        )
