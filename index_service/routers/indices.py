"""
指数路由
GET /api/indices        - 全部跟踪指数（失败项为兜底记录，长度恒等于配置数）
GET /api/indices/{id}   - 单个指数
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from index_service.dependencies import get_index_service
from index_service.models.response import ApiResponse
from index_service.services.index_service import IndexService

router = APIRouter(prefix="/api/indices", tags=["指数"])


@router.get("", response_model=ApiResponse)
async def list_indices(
    force_refresh: bool = Query(default=False, description="跳过缓存与失败退避"),
    svc: IndexService = Depends(get_index_service),
):
    """获取全部跟踪指数"""
    indices = await svc.get_all_real_indices(force_refresh=force_refresh)
    fallback_count = sum(1 for item in indices if item.is_fallback)
    return ApiResponse.ok(
        data={
            "count": len(indices),
            "fallback_count": fallback_count,
            "indices": [item.to_public() for item in indices],
        },
        message="获取指数列表成功",
    )


@router.get("/{index_id}", response_model=ApiResponse)
async def get_index(
    index_id: str,
    force_refresh: bool = Query(default=False),
    svc: IndexService = Depends(get_index_service),
):
    """按 id 获取单个指数"""
    item = await svc.get_index(index_id, force_refresh=force_refresh)
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"未知指数: {index_id}",
        )
    return ApiResponse.ok(data=item.to_public())
