"""
Layer 4 – 市场分析层
以固定阈值判断聚合快照，给出多方信号、风险信号与整体情绪。
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from indicator_service.models.indicator import (
    AggregatedSnapshot,
    IndicatorKey,
    IndicatorSnapshot,
    MarketStatus,
)

logger = logging.getLogger(__name__)

VIX_CALM = 20.0
VIX_STRESS = 30.0
TAIWAN_VIX_ELEVATED = 20.0
FEAR_GREED_OPTIMISTIC = 50
FEAR_GREED_EXTREME = 75
MARGIN_BALANCE_HIGH = 3500.0      # 亿元
SAFETY_LINE_BUFFER = 10.0


class AnalysisLayer:
    """市场分析层：无状态的阈值判断"""

    def bullish_signals(self, data: Dict[str, IndicatorSnapshot]) -> List[str]:
        signals = []

        taiex = data.get(IndicatorKey.TAIEX.value)
        if taiex is not None:
            ma10 = _latest_ma10(taiex)
            if ma10 is not None and taiex.value > ma10:
                signals.append("台股位阶在十日均线以上")
            if taiex.monthly_ma is not None and taiex.value > taiex.monthly_ma:
                signals.append("台股位阶在月线以上")
            if taiex.quarterly_ma is not None and taiex.value > taiex.quarterly_ma:
                signals.append("台股位阶在季线以上")

        vix = data.get(IndicatorKey.VIX.value)
        if vix is not None and vix.value < VIX_CALM:
            signals.append("VIX 指数低于 20，市场风险情绪稳定")

        fear_greed = data.get(IndicatorKey.FEAR_GREED.value)
        if fear_greed is not None and fear_greed.value > FEAR_GREED_OPTIMISTIC:
            signals.append("CNN 恐慌指数显示乐观情绪")

        ratio = data.get(IndicatorKey.MARGIN_MAINTENANCE_RATIO.value)
        if ratio is not None and ratio.safety_line is not None and ratio.value > ratio.safety_line:
            signals.append("融资维持率高于安全线")

        return signals

    def risk_signals(self, data: Dict[str, IndicatorSnapshot]) -> List[str]:
        signals = []

        vix = data.get(IndicatorKey.VIX.value)
        if vix is not None and vix.value > VIX_STRESS:
            signals.append("VIX 指数高于 30，市场恐慌升温")

        taiwan_vix = data.get(IndicatorKey.TAIWAN_VIX.value)
        if taiwan_vix is not None and taiwan_vix.value > TAIWAN_VIX_ELEVATED:
            signals.append("台湾 VIX 处于中性偏高")

        fear_greed = data.get(IndicatorKey.FEAR_GREED.value)
        if fear_greed is not None and fear_greed.value > FEAR_GREED_EXTREME:
            signals.append("CNN 恐慌指数处于极度贪婪")

        ratio = data.get(IndicatorKey.MARGIN_MAINTENANCE_RATIO.value)
        if (
            ratio is not None
            and ratio.safety_line is not None
            and ratio.value < ratio.safety_line + SAFETY_LINE_BUFFER
        ):
            signals.append("融资维持率接近安全线")

        margin = data.get(IndicatorKey.MARGIN_BALANCE.value)
        if margin is not None and margin.value > MARGIN_BALANCE_HIGH:
            signals.append("融资余额处于高位")

        return signals

    def analyze(self, snapshot: AggregatedSnapshot) -> MarketStatus:
        bullish = self.bullish_signals(snapshot.indicators)
        risks = self.risk_signals(snapshot.indicators)
        sentiment = "positive" if len(bullish) > len(risks) else "cautious"
        logger.debug(f"市场分析: 多方 {len(bullish)} / 风险 {len(risks)} → {sentiment}")
        return MarketStatus(
            bullish_signals=bullish,
            risk_signals=risks,
            overall_sentiment=sentiment,
            last_updated=datetime.now(tz=timezone.utc),
        )


def _latest_ma10(snapshot: IndicatorSnapshot) -> Optional[float]:
    if not snapshot.history:
        return None
    return snapshot.history[-1].ma10


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis
