"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from indicator_service import __version__
from indicator_service.layers.cache import TTLCache, get_cache_layer

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(cache: TTLCache = Depends(get_cache_layer)):
    """服务健康检查"""
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Market Indicator Service",
            "cache": {"size": cache.size()},
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}
