"""
台股市场指标看板 数据服务
FastAPI 应用程序入口

启动方式:
    uvicorn indicator_service.main:app --host 0.0.0.0 --port 8001
    python -m indicator_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from indicator_service import __version__
from indicator_service.config import settings
from indicator_service.layers.acquisition import close_acquisition_layer
from indicator_service.models.response import ApiResponse
from indicator_service.routers import cache, health, indicators
from indicator_service.services.indicator_service import (
    IndicatorNotFoundError,
    reset_indicator_service,
)

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Market Indicator Service v{__version__} 启动中")
    logger.info(f"   缓存 TTL   : {settings.CACHE_TTL}s")
    logger.info(f"   请求超时   : {settings.HTTP_TIMEOUT}s")
    logger.info(f"   FinnHub    : {'启用' if settings.FINNHUB_ENABLED else '未配置'}")
    logger.info("=" * 60)

    yield

    logger.info("🔄 指标数据服务正在关闭...")
    await close_acquisition_layer()
    reset_indicator_service()
    logger.info("✅ 指标数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="台股市场指标看板 数据服务",
    description=(
        "为市场指标看板提供数据的微服务：\n"
        "- 📊 台股加权指数、VIX、CNN 恐慌贪婪指数、台湾 VIX\n"
        "- 💰 融资余额、融资维持率\n"
        "- 🛢️ 原油、黄金、美元指数、美债殖利率、新台币汇率\n"
        "- 📈 十日均线、区间统计、多空信号分析\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 行情 API / 证交所 / 网页抓取\n"
        "Cache Layer        ← 进程内 TTL 缓存\n"
        "Processing Layer   ← 十日均线与历史序列\n"
        "Analysis Layer     ← 市场信号分析\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(IndicatorNotFoundError)
async def indicator_not_found_handler(request: Request, exc: IndicatorNotFoundError):
    return JSONResponse(status_code=404, content=ApiResponse.not_found(exc.key).model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(indicators.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Market Indicator Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "indicator_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
