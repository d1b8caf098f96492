"""
市场指标路由
GET /api/indicators                       - 全部指标快照
GET /api/indicators/status                - 市场状态分析（多空信号）
GET /api/indicators/{key}                 - 单个指标详情
GET /api/indicators/{key}/history         - 历史序列
GET /api/indicators/{key}/stats           - 区间统计
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from indicator_service.models.indicator import IndicatorKey
from indicator_service.models.response import ApiResponse
from indicator_service.services.indicator_service import (
    MAX_DAYS,
    MIN_DAYS,
    AggregationError,
    IndicatorService,
    get_indicator_service,
)

router = APIRouter(prefix="/api/indicators", tags=["市场指标"])

_DEFAULT_DAYS = 30


def _days_query():
    return Query(default=_DEFAULT_DAYS, ge=MIN_DAYS, le=MAX_DAYS, description="天数 1-365")


def _server_error(exc: AggregationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )


@router.get("", response_model=ApiResponse)
async def get_all_indicators(svc: IndicatorService = Depends(get_indicator_service)):
    """获取全部指标；数据源失败的指标以备用数据补齐"""
    try:
        snapshot = await svc.get_all_indicators()
    except AggregationError as exc:
        raise _server_error(exc)
    message = "success"
    if snapshot.fallback_keys:
        message = f"部分指标使用备用数据: {', '.join(snapshot.fallback_keys)}"
    return ApiResponse.ok(data=snapshot.model_dump(mode="json"), message=message)


@router.get("/keys", response_model=ApiResponse)
async def list_indicator_keys():
    """支持的指标代码"""
    keys = [k.value for k in IndicatorKey]
    return ApiResponse.ok(data={"keys": keys, "count": len(keys)})


@router.get("/status", response_model=ApiResponse)
async def get_market_status(svc: IndicatorService = Depends(get_indicator_service)):
    """获取市场状态分析"""
    try:
        result = await svc.get_market_status()
    except AggregationError as exc:
        raise _server_error(exc)
    return ApiResponse.ok(data=result.model_dump(mode="json"))


@router.get("/{key}", response_model=ApiResponse)
async def get_indicator(key: str, svc: IndicatorService = Depends(get_indicator_service)):
    """获取单个指标详情"""
    try:
        snapshot = await svc.get_indicator(key)
    except AggregationError as exc:
        raise _server_error(exc)
    return ApiResponse.ok(data=snapshot.model_dump(mode="json"))


@router.get("/{key}/history", response_model=ApiResponse)
async def get_history(
    key: str,
    days: int = _days_query(),
    svc: IndicatorService = Depends(get_indicator_service),
):
    """获取指标历史序列（含十日均线）"""
    try:
        history = await svc.get_history(key, days)
    except AggregationError as exc:
        raise _server_error(exc)
    return ApiResponse.ok(
        data={
            "key": key,
            "days": days,
            "count": len(history),
            "history": [p.model_dump(mode="json") for p in history],
        },
    )


@router.get("/{key}/stats", response_model=ApiResponse)
async def get_stats(
    key: str,
    days: int = _days_query(),
    svc: IndicatorService = Depends(get_indicator_service),
):
    """获取指标区间统计"""
    try:
        stats = await svc.get_stats(key, days)
    except AggregationError as exc:
        raise _server_error(exc)
    return ApiResponse.ok(data=stats.model_dump(mode="json"))
