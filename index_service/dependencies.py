"""路由依赖：从应用状态取出生命周期内创建的服务实例"""

import httpx
from fastapi import HTTPException, Request, status

from index_service.config import IndexServiceSettings, get_settings
from index_service.layers.cache import CacheStore
from index_service.services.index_service import IndexService
from index_service.services.market_data_service import MarketDataService


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"服务尚未就绪: {name}",
        )
    return value


def get_index_service(request: Request) -> IndexService:
    return _state(request, "index_service")


def get_market_data_service(request: Request) -> MarketDataService:
    return _state(request, "market_data")


def get_cache_store(request: Request) -> CacheStore:
    return _state(request, "cache")


def get_http_client(request: Request) -> httpx.AsyncClient:
    return _state(request, "http")


def get_app_settings(request: Request) -> IndexServiceSettings:
    return getattr(request.app.state, "settings", None) or get_settings()
