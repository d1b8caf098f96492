"""指标数据模型"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class IndicatorKey(str, Enum):
    """看板追踪的指标"""
    TAIEX = "taiex"
    VIX = "vix"
    FEAR_GREED = "fear_greed"
    TAIWAN_VIX = "taiwan_vix"
    MARGIN_BALANCE = "margin_balance"
    MARGIN_MAINTENANCE_RATIO = "margin_maintenance_ratio"
    CRUDE_OIL = "crude_oil"
    GOLD = "gold"
    DOLLAR_INDEX = "dollar_index"
    US_10Y_BOND = "us_10y_bond"
    TWD_USD = "twd_usd"

    @classmethod
    def parse(cls, raw: str) -> Optional["IndicatorKey"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class HistoryPoint(BaseModel):
    """历史序列中的一个点（按日期升序排列）"""
    day: str                           # MM/DD
    date: Optional[str] = None         # YYYY-MM-DD
    value: float
    ma10: Optional[float] = None       # 十日均线，仅在计算后存在


class IndicatorSnapshot(BaseModel):
    """单个指标快照"""
    key: IndicatorKey
    name: str
    symbol: str
    value: float
    change: float = 0.0
    unit: Optional[str] = None
    label: Optional[str] = None
    history: List[HistoryPoint] = Field(default_factory=list)
    source: str
    is_fallback: bool = False

    # 仅部分指标使用
    monthly_ma: Optional[float] = None
    quarterly_ma: Optional[float] = None
    safety_line: Optional[float] = None
    break_line: Optional[float] = None


class AggregatedSnapshot(BaseModel):
    """一次聚合得到的全部指标"""
    indicators: Dict[str, IndicatorSnapshot]
    fallback_keys: List[str] = Field(default_factory=list)
    last_updated: datetime


class IndicatorStats(BaseModel):
    """区间统计"""
    key: IndicatorKey
    days: int
    count: int
    min: float
    max: float
    avg: float
    latest: float
    change_percent: float


class MarketStatus(BaseModel):
    """市场状态分析结果"""
    bullish_signals: List[str]
    risk_signals: List[str]
    overall_sentiment: str             # positive / cautious
    last_updated: datetime


# ── 数据源读数（在获取层边界完成校验） ─────────────────────

class QuoteReading(BaseModel):
    value: float
    change: float                      # 涨跌幅 %
    high: Optional[float] = None
    low: Optional[float] = None
    history: List[HistoryPoint] = Field(default_factory=list)
    source: str


class MarginReading(BaseModel):
    balance: float                     # 亿元
    change: float
    source: str = "twse"


class FearGreedReading(BaseModel):
    value: int = Field(ge=0, le=100)
    sentiment: str
    source: str = "cnn"


class TaiwanVixReading(BaseModel):
    value: float = Field(gt=0)
    change: float = 0.0
    change_percent: float = 0.0
    level: str
    source: str = "wantgoo"
