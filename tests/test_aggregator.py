"""
指数聚合与服务层测试

覆盖范围：
  - 行情数据服务（缓存命中、失败退避、标准化失败记账）
  - 指数聚合（等长有序输出、报价场景、限流场景、混合成败、缓存幂等、退避、超时、严格分派）
  - FastAPI 路由（TestClient + MockTransport，不需要真实数据库与网络）
"""

import asyncio
import random
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from index_service.config import IndexServiceSettings
from index_service.errors import BackoffActiveError, NormalizationError, RateLimitedError, UnknownDataFamilyError
from index_service.instruments import DEFAULT_INSTRUMENTS
from index_service.layers.acquisition import AlphaVantageClient
from index_service.layers.cache import CacheKey, CacheStore, MemoryCacheBackend
from index_service.layers.processing import ResponseNormalizer
from index_service.models.market import DataFamily, InstrumentConfig, NormalizedQuote
from index_service.services.index_service import IndexService
from index_service.services.market_data_service import MarketDataService


def _stock(symbol: str) -> InstrumentConfig:
    return InstrumentConfig(
        id=f"{symbol}_STOCK", name=symbol, symbol=symbol, category="Stocks", family=DataFamily.STOCK,
    )


def _market_data(upstream, clock) -> MarketDataService:
    cache = CacheStore(MemoryCacheBackend(), clock=clock, backoff_base=60, backoff_max=7200)
    client = AlphaVantageClient("test-key", "https://av.test/query", http=upstream.client())
    return MarketDataService(client, cache)


def _index_service(upstream, clock, instruments=None, **kwargs) -> IndexService:
    kwargs.setdefault("rng", random.Random(0))
    return IndexService(_market_data(upstream, clock), instruments, **kwargs)


def _full_upstream(upstream, payloads):
    """为默认目录的每个数据族配置成功响应"""
    upstream.add("GLOBAL_QUOTE", payloads.quote())
    upstream.add("DIGITAL_CURRENCY_DAILY", payloads.crypto({"2024-01-02": "43000", "2024-01-03": "43500"}))
    upstream.add("CURRENCY_EXCHANGE_RATE", payloads.fx_rate("1.0850"))
    upstream.add("WTI", payloads.values([("2024-03-01", "80.5"), ("2024-02-01", "78.0")]))
    upstream.add("CPI", payloads.values(
        [(f"2023-{m:02d}-01", f"{300 + m}.0") for m in range(12, 0, -1)], name="Consumer Price Index",
    ))
    upstream.add("TOP_GAINERS_LOSERS", payloads.movers())
    return upstream


class _StubMarketData:
    """按代码控制延迟与异常的行情服务替身"""

    def __init__(self, delays=None, errors=None):
        self.delays = delays or {}
        self.errors = errors or {}

    async def get_quote(self, symbol, force_refresh=False):
        await asyncio.sleep(self.delays.get(symbol, 0))
        if symbol in self.errors:
            raise self.errors[symbol]
        return NormalizedQuote(
            symbol=symbol, price=10.0, change=0.1, change_percent=1.0, volume=100.0, date="2024-01-02",
        )


# ─────────────────────────────────────────────────────────
# 1. 行情数据服务
# ─────────────────────────────────────────────────────────

class TestMarketDataService:
    def test_quote_cached_within_ttl(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        svc = _market_data(upstream, clock)
        first = asyncio.run(svc.get_quote("AAPL"))
        second = asyncio.run(svc.get_quote("AAPL"))
        assert first == second
        assert upstream.count() == 1

        clock.advance(300)
        asyncio.run(svc.get_quote("AAPL"))
        assert upstream.count() == 2

    def test_force_refresh_skips_cache(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        svc = _market_data(upstream, clock)
        asyncio.run(svc.get_quote("AAPL"))
        asyncio.run(svc.get_quote("AAPL", force_refresh=True))
        assert upstream.count() == 2

    def test_failure_enters_backoff(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit)
        svc = _market_data(upstream, clock)
        with pytest.raises(RateLimitedError):
            asyncio.run(svc.get_quote("AAPL"))
        with pytest.raises(BackoffActiveError):
            asyncio.run(svc.get_quote("AAPL"))
        assert upstream.count() == 1

        clock.advance(60)
        with pytest.raises(RateLimitedError):
            asyncio.run(svc.get_quote("AAPL"))
        assert upstream.count() == 2

    def test_normalization_failure_not_cached(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote(price="N/A"))
        svc = _market_data(upstream, clock)
        with pytest.raises(NormalizationError):
            asyncio.run(svc.get_quote("AAPL"))
        entry = asyncio.run(svc.cache.get(CacheKey("AAPL", "GLOBAL_QUOTE")))
        assert entry.payload is None
        assert entry.failures == 1

    def test_daily_series(self, upstream, clock, payloads):
        upstream.add("TIME_SERIES_DAILY", payloads.daily({"2024-01-03": "101", "2024-01-02": "100"}))
        svc = _market_data(upstream, clock)
        points = asyncio.run(svc.get_daily("IBM"))
        assert [p.date for p in points] == ["2024-01-02", "2024-01-03"]
        asyncio.run(svc.get_time_series("IBM", "TIME_SERIES_DAILY"))
        assert upstream.count() == 1

    def test_intraday_rejects_unknown_interval(self, upstream, clock):
        svc = _market_data(upstream, clock)
        with pytest.raises(ValueError):
            asyncio.run(svc.get_intraday("IBM", "2min"))
        assert upstream.count() == 0

    def test_forex_series(self, upstream, clock):
        upstream.add("FX_WEEKLY", {
            "Meta Data": {},
            "Time Series FX (Weekly)": {
                "2024-01-05": {"1. open": "1.09", "2. high": "1.10", "3. low": "1.08", "4. close": "1.0950"},
            },
        })
        svc = _market_data(upstream, clock)
        points = asyncio.run(svc.get_forex_series("EUR", "USD", "weekly"))
        assert points[0].close == 1.095
        params = upstream.calls[0].url.params
        assert params["from_symbol"] == "EUR"
        assert params["to_symbol"] == "USD"

    def test_crypto_daily_uses_market(self, upstream, clock, payloads):
        upstream.add("DIGITAL_CURRENCY_DAILY", payloads.crypto({"2024-01-03": "43500"}))
        svc = _market_data(upstream, clock)
        quote = asyncio.run(svc.get_crypto_daily("BTC", "USD"))
        assert quote.price == 43500.0
        assert upstream.calls[0].url.params["market"] == "USD"

    def test_commodity_and_economic(self, upstream, clock, payloads):
        upstream.add("WTI", payloads.values([("2024-02-01", "78.0"), ("2024-03-01", "80.5")]))
        upstream.add("TREASURY_YIELD", payloads.values([("2024-03-01", "4.21")]))
        svc = _market_data(upstream, clock)
        wti = asyncio.run(svc.get_commodity("WTI", "monthly"))
        assert [p.value for p in wti] == [78.0, 80.5]
        ty = asyncio.run(svc.get_economic_indicator("TREASURY_YIELD", "monthly", "10year"))
        assert ty[0].value == 4.21
        assert upstream.calls[1].url.params["maturity"] == "10year"

    def test_movers_share_one_request(self, upstream, clock, payloads):
        upstream.add("TOP_GAINERS_LOSERS", payloads.movers())
        svc = _market_data(upstream, clock)
        lists = asyncio.run(svc.get_top_movers())
        top_loser = asyncio.run(svc.get_top_mover("top_losers"))
        assert lists["top_gainers"][0]["ticker"] == "XYZ"
        assert top_loser.symbol == "DEF"
        assert upstream.count() == 1

    def test_technical_indicator(self, upstream, clock):
        upstream.add("RSI", {
            "Meta Data": {},
            "Technical Analysis: RSI": {"2024-01-02": {"RSI": "55.1"}, "2024-01-03": {"RSI": "61.7"}},
        })
        svc = _market_data(upstream, clock)
        rows = asyncio.run(svc.get_technical_indicator("IBM", "RSI", "daily", time_period=14, series_type="close"))
        assert [r["rsi"] for r in rows] == [55.1, 61.7]
        params = upstream.calls[0].url.params
        assert params["time_period"] == "14"
        assert params["series_type"] == "close"

    def test_malformed_series_enters_backoff(self, upstream, clock):
        upstream.add("DIGITAL_CURRENCY_DAILY", {"Meta Data": {}, "Time Series (Digital Currency Daily)": None})
        svc = _market_data(upstream, clock)
        with pytest.raises(NormalizationError):
            asyncio.run(svc.get_crypto_daily("BTC"))
        with pytest.raises(BackoffActiveError):
            asyncio.run(svc.get_crypto_daily("BTC"))
        assert upstream.count() == 1

    def test_unexpected_shape_becomes_normalization_error(self, upstream, clock, payloads):
        class _FragileNormalizer(ResponseNormalizer):
            def normalize_quote(self, payload):
                return payload["missing"]

        upstream.add("GLOBAL_QUOTE", payloads.quote())
        cache = CacheStore(MemoryCacheBackend(), clock=clock)
        client = AlphaVantageClient("test-key", "https://av.test/query", http=upstream.client())
        svc = MarketDataService(client, cache, _FragileNormalizer())
        with pytest.raises(NormalizationError) as exc_info:
            asyncio.run(svc.get_quote("AAPL"))
        assert isinstance(exc_info.value.__cause__, KeyError)
        entry = asyncio.run(svc.cache.get(CacheKey("AAPL", "GLOBAL_QUOTE")))
        assert entry.failures == 1
        assert entry.payload is None

    def test_crypto_intraday(self, upstream, clock):
        bar = {"1. open": "43000", "2. high": "43100", "3. low": "42900", "5. volume": "12"}
        upstream.add("CRYPTO_INTRADAY", {
            "Meta Data": {},
            "Time Series Crypto (5min)": {
                "2024-01-02 10:05:00": dict(bar, **{"4. close": "43050"}),
                "2024-01-02 10:00:00": dict(bar, **{"4. close": "43000"}),
            },
        })
        svc = _market_data(upstream, clock)
        points = asyncio.run(svc.get_crypto_series("BTC", "USD", "5min"))
        assert [p.close for p in points] == [43000.0, 43050.0]
        assert upstream.calls[0].url.params["interval"] == "5min"
        entry = asyncio.run(svc.cache.get(CacheKey("BTC_USD", "CRYPTO_INTRADAY", "5min")))
        assert entry.has_payload


# ─────────────────────────────────────────────────────────
# 2. 指数聚合
# ─────────────────────────────────────────────────────────

class TestIndexAggregation:
    def test_all_failures_still_full_length(self, upstream, clock):
        svc = _index_service(upstream, clock)
        results = asyncio.run(svc.get_all_real_indices())
        assert [r.id for r in results] == [c.id for c in DEFAULT_INSTRUMENTS]
        assert all(r.is_fallback for r in results)

    def test_all_families_live(self, upstream, clock, payloads):
        _full_upstream(upstream, payloads)
        svc = _index_service(upstream, clock)
        results = asyncio.run(svc.get_all_real_indices())
        by_id = {r.id: r for r in results}

        assert [r.id for r in results] == [c.id for c in DEFAULT_INSTRUMENTS]
        assert not any(r.is_fallback for r in results)
        assert all(len(r.sparkline_data) == 8 for r in results)

        btc = by_id["BTC_PRICE"]
        assert btc.price == 43500.0
        assert btc.current_value == 4350000
        assert btc.value_label == "$43.5K"

        eur = by_id["EUR_USD"]
        assert eur.current_value == 10850
        assert eur.value_label == "1.0850"
        assert eur.change == "-0.45%"
        assert eur.is_positive is False
        assert eur.volume_24h == "N/A"

        oil = by_id["WTI_OIL"]
        assert oil.price == 80.5
        assert oil.change_value == "+2.50"

        cpi = by_id["US_CPI"]
        assert cpi.price == 312.0
        assert cpi.value_label == "312.00"
        assert cpi.sparkline_data == [305.0, 306.0, 307.0, 308.0, 309.0, 310.0, 311.0, 312.0]

        gainer = by_id["TOP_GAINER"]
        assert gainer.price == 3.21
        assert gainer.symbol == "top_gainers"
        assert gainer.change.startswith("+100.6")
        assert gainer.volume_24h == "35.5M"

    def test_quote_scenario(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        svc = _index_service(upstream, clock, [_stock("AAPL")])
        (rec,) = asyncio.run(svc.get_all_real_indices())
        assert rec.price == 150.00
        assert rec.is_positive is True
        assert rec.value_label == "$150.00"
        assert rec.current_value == 15000
        assert rec.change == "+1.69%"
        assert rec.change_value == "+2.50"
        assert rec.volume_24h == "1.0M"
        assert rec.last_updated == "2024-01-02"
        assert len(rec.sparkline_data) == 8
        assert rec.is_fallback is False

    def test_rate_limit_scenario(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit)
        svc = _index_service(upstream, clock, [_stock("AAPL"), _stock("TSLA")])
        results = asyncio.run(svc.get_all_real_indices())
        assert len(results) == 2
        assert all(r.is_fallback for r in results)
        assert results[0].value_label == "N/A"
        assert results[0].sparkline_data == [0.0] * 8

    def test_mixed_success_and_failure(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote(), symbol="AAPL")
        upstream.add("GLOBAL_QUOTE", payloads.quote(symbol="TSLA", price="N/A"), symbol="TSLA")
        svc = _index_service(upstream, clock, [_stock("TSLA"), _stock("AAPL")])
        results = asyncio.run(svc.get_all_real_indices())
        assert [r.id for r in results] == ["TSLA_STOCK", "AAPL_STOCK"]
        assert results[0].is_fallback is True
        assert results[1].is_fallback is False
        assert results[1].price == 150.0

    def test_order_follows_config_not_completion(self):
        configs = [_stock("A"), _stock("B"), _stock("C")]
        svc = IndexService(_StubMarketData(delays={"A": 0.03, "B": 0.0, "C": 0.01}), configs)
        results = asyncio.run(svc.get_all_real_indices())
        assert [r.symbol for r in results] == ["A", "B", "C"]

    def test_cache_idempotence(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        svc = _index_service(upstream, clock, [_stock("AAPL"), _stock("TSLA")])
        first = asyncio.run(svc.get_all_real_indices())
        calls = upstream.count()
        second = asyncio.run(svc.get_all_real_indices())
        assert upstream.count() == calls == 2
        for a, b in zip(first, second):
            assert (a.price, a.change, a.change_value, a.volume_24h) == (b.price, b.change, b.change_value, b.volume_24h)

    def test_backoff_skips_network(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit)
        svc = _index_service(upstream, clock, [_stock("AAPL")])
        asyncio.run(svc.get_all_real_indices())
        for failures in (1, 2):
            clock.advance(svc._data.cache.backoff_seconds(failures))
            asyncio.run(svc.get_all_real_indices())
        assert upstream.count() == 3

        (rec,) = asyncio.run(svc.get_all_real_indices())
        assert upstream.count() == 3
        assert rec.is_fallback is True

    def test_force_refresh_bypasses_backoff(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit)
        svc = _index_service(upstream, clock, [_stock("AAPL")])
        asyncio.run(svc.get_all_real_indices())
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        (rec,) = asyncio.run(svc.get_all_real_indices(force_refresh=True))
        assert upstream.count() == 2
        assert rec.is_fallback is False

    def test_unexpected_error_isolated(self):
        configs = [_stock("A"), _stock("B")]
        quote = NormalizedQuote(symbol="B", price=10.0, change=0.1, change_percent=1.0, volume=100.0, date="2024-01-02")
        data = AsyncMock()
        data.get_quote.side_effect = [KeyError("boom"), quote]
        svc = IndexService(data, configs)
        results = asyncio.run(svc.get_all_real_indices())
        assert results[0].is_fallback is True
        assert results[1].is_fallback is False

    def test_strict_dispatch_raises_programming_errors(self):
        configs = [_stock("A"), _stock("B")]
        svc = IndexService(_StubMarketData(errors={"A": KeyError("boom")}), configs, strict_dispatch=True)
        with pytest.raises(KeyError):
            asyncio.run(svc.get_all_real_indices())

    def test_unknown_family(self, upstream, clock, payloads):
        upstream.add("TOP_GAINERS_LOSERS", payloads.movers())
        gainer = next(c for c in DEFAULT_INSTRUMENTS if c.family == DataFamily.INTELLIGENCE)

        lenient = _index_service(upstream, clock, [gainer])
        lenient._builders.pop(DataFamily.INTELLIGENCE)
        (rec,) = asyncio.run(lenient.get_all_real_indices())
        assert rec.is_fallback is True

        strict = _index_service(upstream, clock, [gainer], strict_dispatch=True)
        strict._builders.pop(DataFamily.INTELLIGENCE)
        with pytest.raises(UnknownDataFamilyError):
            asyncio.run(strict.get_all_real_indices())

    def test_timeout_degrades_pending(self):
        configs = [_stock("FAST"), _stock("SLOW")]
        svc = IndexService(_StubMarketData(delays={"SLOW": 5}), configs, aggregate_timeout=0.1)
        results = asyncio.run(svc.get_all_real_indices())
        assert results[0].is_fallback is False
        assert results[1].is_fallback is True

    def test_reference_prices_opt_in(self, upstream, clock, payloads):
        upstream.add("DIGITAL_CURRENCY_DAILY", payloads.rate_limit)
        btc = next(c for c in DEFAULT_INSTRUMENTS if c.symbol == "BTC")
        svc = _index_service(upstream, clock, [btc], use_reference_prices=True)
        (rec,) = asyncio.run(svc.get_all_real_indices())
        assert rec.is_fallback is True
        assert rec.price == 43500.0

    def test_get_index(self, upstream, clock, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        svc = _index_service(upstream, clock, [_stock("AAPL"), _stock("TSLA")])
        rec = asyncio.run(svc.get_index("AAPL_STOCK"))
        assert rec.price == 150.0
        assert upstream.count() == 1
        assert asyncio.run(svc.get_index("NOPE")) is None

    def test_from_settings(self, upstream, clock):
        cfg = IndexServiceSettings(SPARKLINE_POINTS=12)
        svc = IndexService.from_settings(cfg, _market_data(upstream, clock), [_stock("AAPL")])
        (rec,) = asyncio.run(svc.get_all_real_indices())
        assert len(rec.sparkline_data) == 12

    def test_malformed_payload_falls_back_in_strict_mode(self, upstream, clock):
        upstream.add("DIGITAL_CURRENCY_DAILY", {"Time Series (Digital Currency Daily)": None})
        btc = next(c for c in DEFAULT_INSTRUMENTS if c.symbol == "BTC")
        svc = _index_service(upstream, clock, [btc], strict_dispatch=True)
        for _ in range(3):
            (rec,) = asyncio.run(svc.get_all_real_indices())
            assert rec.is_fallback is True
        assert upstream.count() == 1

    def test_zero_sparkline_points(self, upstream, clock, payloads):
        upstream.add("CPI", payloads.values([(f"2023-{m:02d}-01", "300.0") for m in range(12, 0, -1)]))
        cpi = next(c for c in DEFAULT_INSTRUMENTS if c.family == DataFamily.ECONOMIC)
        svc = _index_service(upstream, clock, [cpi], sparkline_points=0)
        (rec,) = asyncio.run(svc.get_all_real_indices())
        assert rec.is_fallback is False
        assert rec.sparkline_data == []


# ─────────────────────────────────────────────────────────
# 3. HTTP 路由测试（TestClient，不需要真实数据库）
# ─────────────────────────────────────────────────────────

@pytest.fixture
def api(upstream, payloads):
    """创建测试客户端：内存缓存 + 伪上游"""
    from index_service.main import create_app
    cfg = IndexServiceSettings(
        ALPHAVANTAGE_API_KEY="test-key",
        ALPHAVANTAGE_BASE_URL="https://av.test/query",
        ALPHAVANTAGE_UPSTREAM_URL="https://upstream.test/query",
        CACHE_BACKEND="memory",
    )
    app = create_app(
        cfg,
        transport=httpx.MockTransport(upstream.handler),
        cache_backend=MemoryCacheBackend(),
        instruments=[_stock("AAPL"), _stock("TSLA")],
    )
    with patch("index_service.main.close_connections", new_callable=AsyncMock), \
         patch("index_service.routers.health.check_health", new_callable=AsyncMock, return_value={
             "mongodb": {"status": "disabled"},
             "redis": {"status": "disabled"},
         }):
        with TestClient(app) as c:
            yield c


class TestHealthRoutes:
    def test_health_endpoint(self, api):
        resp = api.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["cache_backend"] == "memory"

    def test_probes(self, api):
        assert api.get("/healthz").json()["status"] == "ok"
        assert api.get("/readyz").json()["ready"] is True

    def test_health_passes_app_settings(self, api):
        from index_service.routers import health
        api.get("/health")
        (cfg,), _ = health.check_health.call_args
        assert cfg.ALPHAVANTAGE_API_KEY == "test-key"

    def test_check_health_uses_given_settings(self):
        from index_service.db import check_health
        cfg = IndexServiceSettings(REDIS_ENABLED=False, MONGODB_ENABLED=True)
        result = asyncio.run(check_health(cfg))
        assert result["redis"]["status"] == "disabled"
        assert result["mongodb"]["status"] == "disconnected"

    def test_root_endpoint(self, api):
        body = api.get("/").json()
        assert "version" in body
        assert body["indices"] == "/api/indices"


class TestIndexRoutes:
    def test_list_indices(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote(), symbol="AAPL")
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit, symbol="TSLA")
        resp = api.get("/api/indices")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["count"] == 2
        assert data["fallback_count"] == 1
        aapl, tsla = data["indices"]
        assert aapl["id"] == "AAPL_STOCK"
        assert aapl["valueLabel"] == "$150.00"
        assert aapl["isPositive"] is True
        assert len(aapl["sparklineData"]) == 8
        assert tsla["isFallback"] is True

    def test_single_index(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        resp = api.get("/api/indices/AAPL_STOCK")
        assert resp.status_code == 200
        assert resp.json()["data"]["currentValue"] == 15000

    def test_unknown_index(self, api):
        assert api.get("/api/indices/NOPE").status_code == 404


class TestMarketRoutes:
    def test_quote(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        resp = api.get("/api/market/quote/aapl")
        assert resp.status_code == 200
        assert resp.json()["data"]["price"] == 150.0
        assert upstream.calls[0].url.params["symbol"] == "AAPL"
        assert upstream.calls[0].url.params["apikey"] == "test-key"

    def test_error_mapping(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.rate_limit, symbol="AAPL")
        upstream.add("GLOBAL_QUOTE", payloads.quote(price="N/A"), symbol="TSLA")
        upstream.add("GLOBAL_QUOTE", 500, symbol="IBM")
        assert api.get("/api/market/quote/AAPL").status_code == 429
        assert api.get("/api/market/quote/AAPL").status_code == 503
        assert api.get("/api/market/quote/TSLA").status_code == 422
        assert api.get("/api/market/quote/IBM").status_code == 502
        assert api.get("/api/market/quote/NOPE").status_code == 400

    def test_history(self, api, upstream, payloads):
        upstream.add("TIME_SERIES_DAILY", payloads.daily({"2024-01-03": "101", "2024-01-02": "100"}))
        resp = api.get("/api/market/IBM/history")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["count"] == 2
        assert [p["close"] for p in data["data"]] == [100.0, 101.0]

    def test_history_bad_interval(self, api):
        resp = api.get("/api/market/IBM/history", params={"function": "TIME_SERIES_INTRADAY", "interval": "2min"})
        assert resp.status_code == 400

    def test_forex(self, api, upstream, payloads):
        upstream.add("CURRENCY_EXCHANGE_RATE", payloads.fx_rate("1.0850"))
        resp = api.get("/api/market/forex/EUR/USD")
        assert resp.status_code == 200
        assert resp.json()["data"]["symbol"] == "EURUSD"

    def test_commodity(self, api, upstream, payloads):
        upstream.add("WTI", payloads.values([("2024-03-01", "80.5"), ("2024-02-01", ".")]))
        resp = api.get("/api/market/commodities/wti")
        assert resp.status_code == 200
        assert resp.json()["data"]["count"] == 1

    def test_movers(self, api, upstream, payloads):
        upstream.add("TOP_GAINERS_LOSERS", payloads.movers())
        resp = api.get("/api/market/movers")
        assert resp.status_code == 200
        assert resp.json()["data"]["top_gainers"][0]["ticker"] == "XYZ"

    def test_data_error_envelope(self, api, upstream):
        upstream.add("TIME_SERIES_DAILY", {"Time Series (Daily)": ["x"]})
        resp = api.get("/api/market/IBM/history")
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error_kind"] == "normalization"

        resp = api.get("/api/market/IBM/history")
        assert resp.status_code == 503
        assert resp.json()["error_kind"] == "backoff"
        assert upstream.count() == 1


class TestCacheRoutes:
    def test_stats_cleanup_clear(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        api.get("/api/market/quote/AAPL")

        stats = api.get("/api/cache/stats").json()["data"]
        assert stats["backend"] == "memory"
        assert stats["totalEntries"] == 1

        assert api.post("/api/cache/cleanup").json()["data"]["removed"] == 0
        assert api.post("/api/cache/clear").json()["data"]["removed"] == 1
        assert api.get("/api/cache/stats").json()["data"]["totalEntries"] == 0

    def test_clear_single_key(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        api.get("/api/market/quote/AAPL")
        resp = api.post("/api/cache/clear", json={"symbol": "AAPL", "function": "GLOBAL_QUOTE"})
        assert resp.json()["data"]["key"] == "alphavantage:AAPL:GLOBAL_QUOTE"
        api.get("/api/market/quote/AAPL")
        assert upstream.count() == 2


class TestRelayRoute:
    def test_forwards_verbatim(self, api, upstream, payloads):
        upstream.add("GLOBAL_QUOTE", payloads.quote())
        resp = api.get("/api/alphavantage", params={"function": "GLOBAL_QUOTE", "symbol": "AAPL", "apikey": "leaked"})
        assert resp.status_code == 200
        assert resp.json() == payloads.quote()
        forwarded = upstream.calls[-1].url
        assert forwarded.host == "upstream.test"
        assert forwarded.params["apikey"] == "test-key"

    def test_missing_function(self, api):
        assert api.get("/api/alphavantage", params={"symbol": "AAPL"}).status_code == 400

    def test_in_band_errors(self, api, upstream):
        upstream.add("GLOBAL_QUOTE", {"Error Message": "Invalid API call."})
        upstream.add("OVERVIEW", {"Information": "rate limit"})
        assert api.get("/api/alphavantage", params={"function": "GLOBAL_QUOTE", "symbol": "X"}).status_code == 400
        assert api.get("/api/alphavantage", params={"function": "OVERVIEW", "symbol": "X"}).status_code == 429

    def test_upstream_status_passed_through(self, api, upstream):
        upstream.add("GLOBAL_QUOTE", 503)
        assert api.get("/api/alphavantage", params={"function": "GLOBAL_QUOTE"}).status_code == 503
