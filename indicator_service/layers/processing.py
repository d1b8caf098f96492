"""
Layer 3 – 数据处理层
十日均线标注、模拟历史序列生成、区间截取与统计。
"""

import logging
import random
from datetime import date, timedelta
from typing import Dict, List, Optional

import pandas as pd

from indicator_service.models.indicator import HistoryPoint

logger = logging.getLogger(__name__)

MA_WINDOW = 10


def _day_label(d: date) -> str:
    return f"{d.month:02d}/{d.day:02d}"


class ProcessingLayer:
    """数据处理层：历史序列的标准化与衍生计算"""

    # ── 均线 ──────────────────────────────────────────────

    def annotate_ma10(
        self, history: List[HistoryPoint], window: int = MA_WINDOW
    ) -> List[HistoryPoint]:
        """
        为序列每个点附加十日均线

        第 i 点取 [max(0, i-9), i] 区间均值，保留 2 位小数；
        序列开头不足 10 点时以已有点求均值。返回新列表，不修改输入。
        """
        if not history:
            return []
        values = pd.Series([p.value for p in history], dtype="float64")
        ma = values.rolling(window=window, min_periods=1).mean().round(2)
        return [
            p.model_copy(update={"ma10": float(m)})
            for p, m in zip(history, ma.tolist())
        ]

    def moving_average(self, history: List[HistoryPoint], period: int) -> Optional[float]:
        """最近 period 个点的均值；不足时取全部点"""
        if not history:
            return None
        tail = pd.Series([p.value for p in history[-period:]], dtype="float64")
        return round(float(tail.mean()), 2)

    # ── 模拟历史序列 ──────────────────────────────────────

    def generate_history(
        self,
        base: float,
        volatility: float,
        days: int = 30,
        floor_ratio: float = 0.7,
        end: Optional[date] = None,
        rng: Optional[random.Random] = None,
    ) -> List[HistoryPoint]:
        """以 base 为起点生成随机游走序列，按日期升序，最低不低于 base * floor_ratio"""
        rng = rng or random.Random()
        end = end or date.today()
        floor = base * floor_ratio
        value = base
        points = []
        for offset in range(days - 1, -1, -1):
            value = max(floor, value + (rng.random() - 0.5) * volatility)
            d = end - timedelta(days=offset)
            points.append(HistoryPoint(day=_day_label(d), date=d.isoformat(), value=round(value, 2)))
        return points

    def from_closes(self, dates: List[date], closes: List[Optional[float]]) -> List[HistoryPoint]:
        """将日期与收盘价两列转换为历史序列，丢弃空值并按日期排序"""
        df = pd.DataFrame({"date": dates, "value": closes}).dropna()
        df = df.drop_duplicates(subset=["date"], keep="last").sort_values("date")
        return [
            HistoryPoint(day=_day_label(d), date=d.isoformat(), value=round(float(v), 2))
            for d, v in zip(df["date"], df["value"])
        ]

    # ── 区间截取与统计 ────────────────────────────────────

    def slice_history(self, history: List[HistoryPoint], days: int) -> List[HistoryPoint]:
        """取最近 min(days, len) 个点"""
        if days <= 0:
            return []
        return list(history[-days:])

    def summarize(self, history: List[HistoryPoint]) -> Dict[str, float]:
        """最小 / 最大 / 平均 / 最新 / 区间涨跌幅（%）"""
        if not history:
            return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "latest": 0.0, "change_percent": 0.0}
        values = pd.Series([p.value for p in history], dtype="float64")
        first, latest = float(values.iloc[0]), float(values.iloc[-1])
        change_percent = (latest - first) / first * 100 if first else 0.0
        return {
            "count": int(values.size),
            "min": round(float(values.min()), 2),
            "max": round(float(values.max()), 2),
            "avg": round(float(values.mean()), 2),
            "latest": round(latest, 2),
            "change_percent": round(change_percent, 2),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
