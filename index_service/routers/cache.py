"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/cleanup   - 清理长期未活动的条目
POST /api/cache/clear     - 清空缓存，或删除单个键
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from index_service.dependencies import get_cache_store
from index_service.layers.cache import CacheKey, CacheStore
from index_service.models.response import ApiResponse

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    function: Optional[str] = None
    symbol: str = ""
    interval: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(cache: CacheStore = Depends(get_cache_store)):
    """获取缓存统计信息"""
    return ApiResponse.ok(data=await cache.stats())


@router.post("/cleanup", response_model=ApiResponse)
async def cleanup_cache(cache: CacheStore = Depends(get_cache_store)):
    """删除最后活动时间早于 TTL 若干倍的条目"""
    removed = await cache.cleanup_old_cache()
    return ApiResponse.ok(data={"removed": removed}, message=f"缓存清理完成，删除 {removed} 条")


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: Optional[ClearRequest] = None, cache: CacheStore = Depends(get_cache_store)):
    """不带 function 时清空全部缓存，否则只删除指定键"""
    if body is None or not body.function:
        removed = await cache.clear()
        return ApiResponse.ok(data={"removed": removed}, message=f"缓存已清空，共 {removed} 条")

    key = CacheKey(body.symbol, body.function, body.interval)
    await cache.delete(key)
    return ApiResponse.ok(data={"key": key.storage_key}, message=f"缓存已清理: {key}")
