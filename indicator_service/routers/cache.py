"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清理缓存（指定 key 或全部）
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from indicator_service.layers.cache import TTLCache, get_cache_layer
from indicator_service.models.response import ApiResponse

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    key: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(cache: TTLCache = Depends(get_cache_layer)):
    """获取缓存统计信息"""
    return ApiResponse.ok(data=cache.stats())


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(
    body: Optional[ClearRequest] = None,
    cache: TTLCache = Depends(get_cache_layer),
):
    """清理指定缓存条目；未指定 key 时清空全部"""
    if body is not None and body.key:
        cache.delete(body.key)
        return ApiResponse.ok(message=f"缓存已清理: {body.key}")
    cache.clear()
    return ApiResponse.ok(message="缓存已全部清理")
