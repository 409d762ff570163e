"""健康检查路由"""

import time

from fastapi import APIRouter, Request

from index_service import __version__
from index_service.db import check_health

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(request: Request):
    """服务健康检查"""
    db_health = await check_health(getattr(request.app.state, "settings", None))
    cache = getattr(request.app.state, "cache", None)
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "IndexDataService",
            "cache_backend": cache.backend.name if cache else None,
            "databases": db_health,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Kubernetes readiness probe"""
    return {"ready": getattr(request.app.state, "index_service", None) is not None}
