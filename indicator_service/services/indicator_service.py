"""
指标数据服务
整合数据获取、缓存、处理、分析四层，对外提供统一的指标访问接口
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from indicator_service.config import settings
from indicator_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from indicator_service.layers.analysis import get_analysis_layer
from indicator_service.layers.cache import TTLCache, get_cache_layer
from indicator_service.layers.processing import get_processing_layer
from indicator_service.models.indicator import (
    AggregatedSnapshot,
    HistoryPoint,
    IndicatorKey,
    IndicatorSnapshot,
    IndicatorStats,
    MarketStatus,
)

logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 365
MONTHLY_MA_PERIOD = 20
QUARTERLY_MA_PERIOD = 60


class IndicatorNotFoundError(LookupError):
    """请求了不存在的指标"""

    def __init__(self, key: str):
        super().__init__(f"Indicator {key} not found")
        self.key = key


class AggregationError(RuntimeError):
    """聚合过程中出现数据源隔离之外的异常"""


@dataclass(frozen=True)
class IndicatorSpec:
    """指标元数据与备用值"""
    name: str
    symbol: str
    source: str                 # quote / twse / cnn / wantgoo / static
    fallback_value: float
    fallback_change: float = 0.0
    volatility: float = 1.0     # 模拟历史序列的波动幅度
    unit: Optional[str] = None
    fallback_label: Optional[str] = None
    fallback_extras: Dict[str, float] = field(default_factory=dict)


INDICATORS: Dict[IndicatorKey, IndicatorSpec] = {
    IndicatorKey.TAIEX: IndicatorSpec(
        "台湾加权指数", "^TWII", "quote", 30810.58, -0.42, 500,
        fallback_extras={"monthly_ma": 29335.0, "quarterly_ma": 28244.0},
    ),
    IndicatorKey.VIX: IndicatorSpec("VIX 指数", "^VIX", "quote", 15.39, -8.11, 3),
    IndicatorKey.FEAR_GREED: IndicatorSpec(
        "CNN 恐慌贪婪指数", "CNN_FGI", "cnn", 62, 0.0, 15, fallback_label="Greed",
    ),
    IndicatorKey.TAIWAN_VIX: IndicatorSpec(
        "台湾 VIX", "VIXTWN", "wantgoo", 22.67, 0.18, 2, fallback_label="Elevated",
    ),
    IndicatorKey.MARGIN_BALANCE: IndicatorSpec(
        "融资余额", "MARGIN_BALANCE", "twse", 3593, 8.5, 50, unit="亿",
    ),
    IndicatorKey.MARGIN_MAINTENANCE_RATIO: IndicatorSpec(
        "融资维持率", "MARGIN_MAINTENANCE", "static", settings.MARGIN_MAINTENANCE_RATIO, 0.0, 8, unit="%",
    ),
    IndicatorKey.CRUDE_OIL: IndicatorSpec("原油", "CL=F", "quote", 78.45, 0.0, 2, unit="USD/桶"),
    IndicatorKey.GOLD: IndicatorSpec("黄金", "GC=F", "quote", 2345.6, 0.0, 30, unit="USD/盎司"),
    IndicatorKey.DOLLAR_INDEX: IndicatorSpec("美元指数", "DX-Y.NYB", "quote", 104.25, 0.0, 0.8),
    IndicatorKey.US_10Y_BOND: IndicatorSpec("10年期美债殖利率", "^TNX", "quote", 4.25, 0.0, 0.1, unit="%"),
    IndicatorKey.TWD_USD: IndicatorSpec("新台币汇率", "TWD=X", "quote", 32.15, 0.0, 0.2, unit="TWD/USD"),
}


def partition_results(
    keys: Sequence[IndicatorKey], results: Sequence[Any]
) -> Tuple[Dict[IndicatorKey, IndicatorSnapshot], List[IndicatorKey]]:
    """
    将并发结果拆分为成功 / 失败两组

    results 与 keys 一一对应，元素为快照、None 或异常；None 与异常都视为失败。
    """
    ok: Dict[IndicatorKey, IndicatorSnapshot] = {}
    failed: List[IndicatorKey] = []
    for key, result in zip(keys, results):
        if isinstance(result, BaseException):
            logger.warning(f"指标 {key.value} 获取异常: {result!r}")
            failed.append(key)
        elif result is None:
            failed.append(key)
        else:
            ok[key] = result
    return ok, failed


class IndicatorService:
    """指标数据业务服务"""

    def __init__(self, cache: TTLCache, acquisition: AcquisitionLayer):
        self._cache = cache
        self._acq = acquisition
        self._proc = get_processing_layer()
        self._analysis = get_analysis_layer()

    # ── 单个数据源 ────────────────────────────────────────

    def _synthetic_history(self, value: float, volatility: float) -> List[HistoryPoint]:
        """以当前值收尾的模拟历史序列"""
        history = self._proc.generate_history(value, volatility, days=settings.HISTORY_DAYS)
        if history:
            history[-1] = history[-1].model_copy(update={"value": round(value, 2)})
        return history

    async def _fetch(self, key: IndicatorKey) -> Optional[IndicatorSnapshot]:
        spec = INDICATORS[key]

        if spec.source == "quote":
            reading = await self._cache.cached_call(
                f"quote:{spec.symbol}", lambda: self._acq.get_quote(spec.symbol)
            )
            if reading is None:
                return None
            return IndicatorSnapshot(
                key=key, name=spec.name, symbol=spec.symbol, unit=spec.unit,
                value=reading.value, change=reading.change,
                history=reading.history or self._synthetic_history(reading.value, spec.volatility),
                source=reading.source,
            )

        if spec.source == "twse":
            reading = await self._cache.cached_call("twse:margin", self._acq.fetch_twse_margin)
            if reading is None:
                return None
            return IndicatorSnapshot(
                key=key, name=spec.name, symbol=spec.symbol, unit=spec.unit,
                value=reading.balance, change=reading.change,
                history=self._synthetic_history(reading.balance, spec.volatility),
                source=reading.source,
            )

        if spec.source == "cnn":
            reading = await self._cache.cached_call("cnn:fear_greed", self._acq.fetch_cnn_fear_greed)
            if reading is None:
                return None
            return IndicatorSnapshot(
                key=key, name=spec.name, symbol=spec.symbol,
                value=reading.value, label=reading.sentiment,
                history=self._synthetic_history(reading.value, spec.volatility),
                source=reading.source,
            )

        if spec.source == "wantgoo":
            reading = await self._cache.cached_call("wantgoo:vixtwn", self._acq.fetch_taiwan_vix)
            if reading is None:
                return None
            return IndicatorSnapshot(
                key=key, name=spec.name, symbol=spec.symbol,
                value=reading.value, change=reading.change_percent, label=reading.level,
                history=self._synthetic_history(reading.value, spec.volatility),
                source=reading.source,
            )

        if spec.source == "static":
            # 融资维持率暂无数据源，直接使用配置值
            return IndicatorSnapshot(
                key=key, name=spec.name, symbol=spec.symbol, unit=spec.unit,
                value=settings.MARGIN_MAINTENANCE_RATIO,
                history=self._synthetic_history(settings.MARGIN_MAINTENANCE_RATIO, spec.volatility),
                source="static",
                safety_line=settings.MARGIN_SAFETY_LINE,
                break_line=settings.MARGIN_BREAK_LINE,
            )

        return None

    # ── 备用数据 ──────────────────────────────────────────

    def fallback_snapshot(self, key: IndicatorKey) -> IndicatorSnapshot:
        """固定默认值 + 模拟历史序列"""
        spec = INDICATORS[key]
        extras = dict(spec.fallback_extras)
        if key == IndicatorKey.MARGIN_MAINTENANCE_RATIO:
            extras.update(safety_line=settings.MARGIN_SAFETY_LINE, break_line=settings.MARGIN_BREAK_LINE)
        return IndicatorSnapshot(
            key=key,
            name=spec.name,
            symbol=spec.symbol,
            value=spec.fallback_value,
            change=spec.fallback_change,
            unit=spec.unit,
            label=spec.fallback_label,
            history=self._synthetic_history(spec.fallback_value, spec.volatility),
            source="fallback",
            is_fallback=True,
            **extras,
        )

    def _finalize(self, snapshot: IndicatorSnapshot) -> IndicatorSnapshot:
        """标注十日均线；加权指数另计算月线 / 季线"""
        history = self._proc.annotate_ma10(snapshot.history)
        update: Dict[str, Any] = {"history": history}
        if snapshot.key == IndicatorKey.TAIEX and not snapshot.is_fallback:
            update["monthly_ma"] = (
                self._proc.moving_average(history, MONTHLY_MA_PERIOD)
                if len(history) >= MONTHLY_MA_PERIOD else snapshot.value
            )
            update["quarterly_ma"] = (
                self._proc.moving_average(history, QUARTERLY_MA_PERIOD)
                if len(history) >= QUARTERLY_MA_PERIOD else snapshot.value
            )
        return snapshot.model_copy(update=update)

    # ── 聚合 ──────────────────────────────────────────────

    async def _collect(
        self, keys: Sequence[IndicatorKey]
    ) -> Tuple[Dict[str, IndicatorSnapshot], List[IndicatorKey]]:
        results = await asyncio.gather(*(self._fetch(k) for k in keys), return_exceptions=True)
        ok, failed = partition_results(keys, results)
        indicators = {}
        for key in keys:
            snapshot = ok[key] if key in ok else self.fallback_snapshot(key)
            indicators[key.value] = self._finalize(snapshot)
        if failed:
            logger.warning(f"以下指标使用备用数据: {[k.value for k in failed]}")
        return indicators, failed

    async def get_all_indicators(self) -> AggregatedSnapshot:
        """
        并发获取全部指标

        等待所有数据源完成（不因单个失败提前返回），失败者替换为备用数据，
        因此返回结果始终包含每一个指标。
        """
        try:
            indicators, failed = await self._collect(list(IndicatorKey))
        except Exception as exc:
            logger.error(f"指标聚合失败: {exc}", exc_info=True)
            raise AggregationError("获取市场指标失败") from exc
        return AggregatedSnapshot(
            indicators=indicators,
            fallback_keys=[k.value for k in failed],
            last_updated=datetime.now(tz=timezone.utc),
        )

    # ── 单个指标 ──────────────────────────────────────────

    async def get_indicator(self, key: str) -> IndicatorSnapshot:
        """获取单个指标详情，未知指标抛出 IndicatorNotFoundError"""
        parsed = IndicatorKey.parse(key)
        if parsed is None:
            raise IndicatorNotFoundError(key)
        try:
            indicators, _ = await self._collect([parsed])
        except Exception as exc:
            logger.error(f"指标 {key} 获取失败: {exc}", exc_info=True)
            raise AggregationError(f"获取指标 {key} 失败") from exc
        return indicators[parsed.value]

    async def get_history(self, key: str, days: int = 30) -> List[HistoryPoint]:
        """最近 min(days, 可用长度) 个历史点（含十日均线）"""
        if IndicatorKey.parse(key) is None:
            raise IndicatorNotFoundError(key)
        _check_days(days)
        snapshot = await self.get_indicator(key)
        return self._proc.slice_history(snapshot.history, days)

    async def get_stats(self, key: str, days: int = 30) -> IndicatorStats:
        """区间统计：最小 / 最大 / 平均 / 最新 / 涨跌幅"""
        history = await self.get_history(key, days)
        summary = self._proc.summarize(history)
        return IndicatorStats(key=IndicatorKey(key), days=days, **summary)

    async def get_market_status(self) -> MarketStatus:
        snapshot = await self.get_all_indicators()
        return self._analysis.analyze(snapshot)


def _check_days(days: int) -> None:
    if not MIN_DAYS <= days <= MAX_DAYS:
        raise ValueError(f"days 必须在 {MIN_DAYS}-{MAX_DAYS} 之间，收到 {days}")


# ── 模块级别单例 ──────────────────────────────────────────
_indicator_service: Optional[IndicatorService] = None


def get_indicator_service() -> IndicatorService:
    global _indicator_service
    if _indicator_service is None:
        _indicator_service = IndicatorService(
            cache=get_cache_layer(),
            acquisition=get_acquisition_layer(),
        )
    return _indicator_service


def reset_indicator_service() -> None:
    global _indicator_service
    _indicator_service = None
