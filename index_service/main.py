"""
指数数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn index_service.main:app --host 0.0.0.0 --port 8002
    python -m index_service.main
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from index_service import __version__
from index_service.config import IndexServiceSettings, settings
from index_service.db import close_connections, get_mongo_db, get_redis, init_mongodb, init_redis
from index_service.errors import IndexDataError
from index_service.layers.acquisition import AlphaVantageClient
from index_service.layers.cache import CacheStore, build_backend
from index_service.models.market import InstrumentConfig
from index_service.models.response import ApiResponse
from index_service.routers import cache, health, indices, market, relay
from index_service.services.index_service import IndexService
from index_service.services.market_data_service import MarketDataService

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    cfg: Optional[IndexServiceSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache_backend=None,
    instruments: Optional[Sequence[InstrumentConfig]] = None,
) -> FastAPI:
    """
    构建应用实例

    Args:
        cfg: 配置，默认使用全局 settings
        transport: 替换 httpx 传输层（测试中使用 MockTransport）
        cache_backend: 直接指定缓存后端，跳过 Redis / MongoDB 初始化
        instruments: 替换默认的跟踪指数目录
    """
    cfg = cfg or settings

    # ── 生命周期管理 ──────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用启动/关闭生命周期钩子"""
        logger.info("=" * 60)
        logger.info(f"🚀 IndexDataService v{__version__} 启动中")
        logger.info(f"   Upstream  : {cfg.ALPHAVANTAGE_BASE_URL}")
        logger.info(f"   Cache     : {cfg.CACHE_BACKEND}")
        logger.info("=" * 60)

        backend = cache_backend
        if backend is None:
            choice = cfg.CACHE_BACKEND.lower()
            # 初始化存储连接（失败不阻断启动，降级运行）
            redis_ok = await init_redis(cfg) if choice in ("auto", "redis") else False
            mongo_ok = await init_mongodb(cfg) if choice in ("auto", "mongodb") else False
            if choice == "auto" and not (redis_ok or mongo_ok):
                logger.warning("⚠️ Redis / MongoDB 均不可用，降级为文件缓存模式")
            backend = build_backend(cfg, redis=get_redis(), mongo_db=get_mongo_db())
        logger.info(f"🗄️ 缓存后端: {backend.name}")

        http = httpx.AsyncClient(
            timeout=cfg.HTTP_TIMEOUT,
            headers={"Accept": "application/json", "User-Agent": cfg.HTTP_USER_AGENT},
            transport=transport,
        )
        store = CacheStore.from_settings(cfg, backend)
        client = AlphaVantageClient.from_settings(cfg, http=http)
        market_data = MarketDataService(client, store)

        app.state.settings = cfg
        app.state.http = http
        app.state.cache = store
        app.state.market_data = market_data
        app.state.index_service = IndexService.from_settings(cfg, market_data, instruments)
        logger.info(f"✅ 指数数据服务就绪，跟踪 {len(app.state.index_service.instruments)} 个指数")

        yield

        logger.info("🔄 指数数据服务正在关闭...")
        await http.aclose()
        await close_connections()
        logger.info("✅ 指数数据服务已关闭")

    # ── 应用实例 ──────────────────────────────────────────
    app = FastAPI(
        title="指数数据服务",
        description=(
            "基于 Alpha Vantage 的指数行情聚合服务，提供以下功能：\n"
            "- 📊 跟踪指数一次性聚合（股票 / 数字货币 / 外汇 / 商品 / 经济指标 / 涨跌榜）\n"
            "- 🌐 按接口族的底层行情访问\n"
            "- 🗄️ 按接口区分新鲜度的缓存（Redis → MongoDB → 文件）与失败退避\n"
            "- 🔁 同源中转接口\n\n"
            "**分层架构**\n"
            "```\n"
            "Acquisition Layer  ← 单次参数化请求与结果分类\n"
            "Cache Layer        ← 新鲜度判断与失败退避\n"
            "Processing Layer   ← 各接口族响应标准化\n"
            "Fallback Layer     ← 兜底记录与走势线合成\n"
            "```"
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── CORS 中间件 ───────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── 请求计时中间件 ─────────────────────────────────────
    @app.middleware("http")
    async def add_process_time(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
        return response

    # ── 全局异常处理 ──────────────────────────────────────
    @app.exception_handler(IndexDataError)
    async def index_data_error_handler(request: Request, exc: IndexDataError):
        logger.warning(f"行情数据请求失败 [{exc.kind}] {request.url.path}: {exc}")
        body = ApiResponse.fail(error=str(exc), message="行情数据获取失败", kind=exc.kind)
        return JSONResponse(status_code=market.status_for(exc), content=body.model_dump())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"未处理的异常: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "内部服务错误", "message": str(exc)},
        )

    # ── 注册路由 ──────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(indices.router)
    app.include_router(market.router)
    app.include_router(cache.router)
    app.include_router(relay.router)

    # ── 根路由 ───────────────────────────────────────────
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": "IndexDataService",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "indices": "/api/indices",
        }

    return app


app = create_app()


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "index_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
