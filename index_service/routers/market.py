"""
行情数据路由（按接口族的底层访问）
GET /api/market/quote/{symbol}          - 实时报价
GET /api/market/{symbol}/history        - 股票时间序列
GET /api/market/forex/{from}/{to}       - 实时汇率
GET /api/market/forex/{from}/{to}/history
GET /api/market/crypto/{symbol}         - 数字货币日线报价
GET /api/market/crypto/{symbol}/history
GET /api/market/commodities/{name}      - 商品价格序列
GET /api/market/economic/{name}         - 经济指标序列
GET /api/market/movers                  - 涨跌榜
GET /api/market/technical/{symbol}      - 技术指标
GET /api/market/search                  - 代码搜索
GET /api/market/status                  - 全球市场开闭市状态
GET /api/market/news                    - 新闻情绪
GET /api/market/overview/{symbol}       - 公司概况
"""

from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status

from index_service.dependencies import get_market_data_service
from index_service.errors import (
    ApiError,
    BackoffActiveError,
    IndexDataError,
    NormalizationError,
    RateLimitedError,
    TransportError,
)
from index_service.models.response import ApiResponse
from index_service.services.market_data_service import MarketDataService

router = APIRouter(prefix="/api/market", tags=["行情数据"])

T = TypeVar("T")

_ERROR_STATUS = (
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (BackoffActiveError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NormalizationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ApiError, status.HTTP_400_BAD_REQUEST),
    (TransportError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: IndexDataError) -> int:
    """分类错误对应的 HTTP 状态码"""
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_502_BAD_GATEWAY


async def _run(call: Awaitable[T]) -> T:
    """执行服务调用；参数错误映射为 400，分类错误交给应用级处理器"""
    try:
        return await call
    except IndexDataError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _dump(items):
    return [item.model_dump() for item in items]


# ── 报价 / 时间序列 ───────────────────────────────────────

@router.get("/quote/{symbol}", response_model=ApiResponse)
async def get_quote(
    symbol: str,
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """获取实时报价"""
    quote = await _run(svc.get_quote(symbol.upper(), force_refresh=force_refresh))
    return ApiResponse.ok(data=quote.model_dump())


@router.get("/{symbol}/history", response_model=ApiResponse)
async def get_history(
    symbol: str,
    function: str = Query(default="TIME_SERIES_DAILY", description="TIME_SERIES_* 接口名"),
    interval: Optional[str] = Query(default=None, description="分钟线周期: 1min / 5min / 15min / 30min / 60min"),
    outputsize: str = Query(default="compact", description="compact / full"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """获取股票时间序列（按日期升序）"""
    points = await _run(svc.get_time_series(
        symbol.upper(), function.upper(), interval, outputsize, force_refresh=force_refresh,
    ))
    return ApiResponse.ok(
        data={"symbol": symbol.upper(), "function": function.upper(), "count": len(points), "data": _dump(points)},
    )


# ── 外汇 ──────────────────────────────────────────────────

@router.get("/forex/{from_currency}/{to_currency}", response_model=ApiResponse)
async def get_forex_rate(
    from_currency: str,
    to_currency: str,
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """获取实时汇率（涨跌为名义近似值）"""
    quote = await _run(svc.get_forex_rate(from_currency.upper(), to_currency.upper(), force_refresh=force_refresh))
    return ApiResponse.ok(data=quote.model_dump())


@router.get("/forex/{from_currency}/{to_currency}/history", response_model=ApiResponse)
async def get_forex_history(
    from_currency: str,
    to_currency: str,
    interval: str = Query(default="daily", description="daily / weekly / monthly / 分钟线周期"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    points = await _run(svc.get_forex_series(
        from_currency.upper(), to_currency.upper(), interval, force_refresh=force_refresh,
    ))
    return ApiResponse.ok(data={"count": len(points), "data": _dump(points)})


# ── 数字货币 ──────────────────────────────────────────────

@router.get("/crypto/{symbol}", response_model=ApiResponse)
async def get_crypto(
    symbol: str,
    market: str = Query(default="USD"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """数字货币日线报价（最近两日收盘价）"""
    quote = await _run(svc.get_crypto_daily(symbol.upper(), market.upper(), force_refresh=force_refresh))
    return ApiResponse.ok(data=quote.model_dump())


@router.get("/crypto/{symbol}/history", response_model=ApiResponse)
async def get_crypto_history(
    symbol: str,
    market: str = Query(default="USD"),
    interval: str = Query(default="daily"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    points = await _run(svc.get_crypto_series(symbol.upper(), market.upper(), interval, force_refresh=force_refresh))
    return ApiResponse.ok(data={"count": len(points), "data": _dump(points)})


# ── 商品 / 经济指标 ───────────────────────────────────────

@router.get("/commodities/{name}", response_model=ApiResponse)
async def get_commodity(
    name: str,
    interval: Optional[str] = Query(default=None, description="daily / weekly / monthly / quarterly / annual"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """商品价格序列（WTI / BRENT / NATURAL_GAS / COPPER ...）"""
    points = await _run(svc.get_commodity(name.upper(), interval, force_refresh=force_refresh))
    return ApiResponse.ok(data={"name": name.upper(), "count": len(points), "data": _dump(points)})


@router.get("/economic/{name}", response_model=ApiResponse)
async def get_economic(
    name: str,
    interval: Optional[str] = Query(default=None),
    maturity: Optional[str] = Query(default=None, description="TREASURY_YIELD 期限，如 10year"),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """经济指标序列（REAL_GDP / CPI / INFLATION / UNEMPLOYMENT ...）"""
    points = await _run(svc.get_economic_indicator(name.upper(), interval, maturity, force_refresh=force_refresh))
    return ApiResponse.ok(data={"name": name.upper(), "count": len(points), "data": _dump(points)})


# ── 市场情报 ──────────────────────────────────────────────

@router.get("/movers", response_model=ApiResponse)
async def get_movers(
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    """涨幅榜 / 跌幅榜 / 成交活跃榜"""
    movers = await _run(svc.get_top_movers(force_refresh=force_refresh))
    return ApiResponse.ok(data=movers)


@router.get("/technical/{symbol}", response_model=ApiResponse)
async def get_technical(
    symbol: str,
    indicator: str = Query(default="SMA", description="SMA / EMA / RSI / MACD / BBANDS ..."),
    interval: str = Query(default="daily"),
    time_period: Optional[int] = Query(default=None),
    series_type: Optional[str] = Query(default=None),
    force_refresh: bool = Query(default=False),
    svc: MarketDataService = Depends(get_market_data_service),
):
    rows = await _run(svc.get_technical_indicator(
        symbol.upper(), indicator.upper(), interval,
        force_refresh=force_refresh, time_period=time_period, series_type=series_type,
    ))
    return ApiResponse.ok(data={"symbol": symbol.upper(), "indicator": indicator.upper(), "data": rows})


@router.get("/search", response_model=ApiResponse)
async def search(
    keywords: str = Query(..., description="代码或名称关键词"),
    svc: MarketDataService = Depends(get_market_data_service),
):
    matches = await _run(svc.search_symbols(keywords))
    return ApiResponse.ok(data={"keywords": keywords, "count": len(matches), "matches": matches})


@router.get("/status", response_model=ApiResponse)
async def market_status(svc: MarketDataService = Depends(get_market_data_service)):
    markets = await _run(svc.get_market_status())
    return ApiResponse.ok(data=markets)


@router.get("/news", response_model=ApiResponse)
async def news(
    tickers: Optional[str] = Query(default=None, description="逗号分隔的代码"),
    topics: Optional[str] = Query(default=None, description="逗号分隔的主题"),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    svc: MarketDataService = Depends(get_market_data_service),
):
    feed = await _run(svc.get_news_sentiment(
        tickers=[t.strip().upper() for t in tickers.split(",") if t.strip()] if tickers else None,
        topics=[t.strip() for t in topics.split(",") if t.strip()] if topics else None,
        limit=limit,
    ))
    return ApiResponse.ok(data={"count": len(feed), "feed": feed})


@router.get("/overview/{symbol}", response_model=ApiResponse)
async def overview(
    symbol: str,
    svc: MarketDataService = Depends(get_market_data_service),
):
    data = await _run(svc.get_company_overview(symbol.upper()))
    return ApiResponse.ok(data=data)
