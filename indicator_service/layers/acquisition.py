"""
Layer 1 – 数据获取层
从行情 API（Yahoo Finance / FinnHub）、证交所开放数据与两个网页（CNN、玩股网）
拉取原始数据，在此层完成解析与校验。

每个数据源只发起一次 GET 请求、使用固定超时、不重试；
网络错误与解析失败一律记录警告并返回 None，由上层替换为备用数据。
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from indicator_service.config import settings
from indicator_service.layers.processing import get_processing_layer
from indicator_service.models.indicator import (
    FearGreedReading,
    HistoryPoint,
    MarginReading,
    QuoteReading,
    TaiwanVixReading,
)

logger = logging.getLogger(__name__)


# ── 行情数据提供商优先级顺序 ──────────────────────────────
_QUOTE_PROVIDER_ORDER = ["yahoo", "finnhub"]

_FEAR_GREED_RE = re.compile(r"Fear\s*(?:&|&amp;)\s*Greed Index\s+(\d+)")
_VIXTWN_VALUE_RE = re.compile(r"VIXTWN[^0-9]*(\d+\.\d+)")
_VIXTWN_CHANGE_RE = re.compile(r"([+-]?\d+\.\d+)\s+([+-]?\d+\.\d+)%")

# 仟元 → 亿元
_THOUSAND_TO_YI = 100_000

# (上限, 标签)，按分数升序判断
FEAR_GREED_BUCKETS = [
    (25, "Extreme Fear"),
    (45, "Fear"),
    (55, "Neutral"),
    (75, "Greed"),
]
VOLATILITY_BUCKETS = [
    (15.0, "Calm"),
    (20.0, "Neutral"),
    (30.0, "Elevated"),
]


def classify_fear_greed(score: float) -> str:
    """恐慌贪婪分数五档分类：≤25 / ≤45 / ≤55 / ≤75 / >75"""
    for upper, label in FEAR_GREED_BUCKETS:
        if score <= upper:
            return label
    return "Extreme Greed"


def classify_volatility(value: float) -> str:
    """波动率指数四档分类：≤15 / ≤20 / ≤30 / >30"""
    for upper, label in VOLATILITY_BUCKETS:
        if value <= upper:
            return label
    return "Panic"


def _to_number(raw: Any) -> float:
    return float(str(raw).replace(",", "").strip())


class AcquisitionLayer:
    """数据获取层：封装多数据源，提供统一的数据拉取接口"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT,
            headers={"User-Agent": settings.USER_AGENT},
            follow_redirects=True,
        )
        self._proc = get_processing_layer()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, url: str, timeout: Optional[float] = None, **params: Any) -> httpx.Response:
        resp = await self._client.get(
            url,
            params=params or None,
            headers={"User-Agent": settings.USER_AGENT},
            timeout=timeout or settings.HTTP_TIMEOUT,
        )
        resp.raise_for_status()
        return resp

    # ── 行情报价 ──────────────────────────────────────────

    async def get_quote(self, symbol: str) -> Optional[QuoteReading]:
        """按提供商优先级获取报价，全部失败返回 None"""
        for provider in _QUOTE_PROVIDER_ORDER:
            if provider == "finnhub" and not settings.FINNHUB_ENABLED:
                continue
            reading = await self._fetch_quote(provider, symbol)
            if reading is not None:
                return reading
        return None

    async def _fetch_quote(self, provider: str, symbol: str) -> Optional[QuoteReading]:
        if provider == "yahoo":
            return await self.fetch_yahoo_quote(symbol)
        if provider == "finnhub":
            return await self.fetch_finnhub_quote(symbol)
        return None

    # ── Yahoo Finance ─────────────────────────────────────

    async def fetch_yahoo_quote(self, symbol: str) -> Optional[QuoteReading]:
        url = settings.YAHOO_CHART_URL.format(symbol=symbol)
        try:
            resp = await self._get(url, range=settings.YAHOO_RANGE, interval="1d")
            return self._parse_yahoo_chart(resp.json())
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, ValidationError) as exc:
            logger.warning(f"Yahoo 报价获取失败（{symbol}）: {exc}")
            return None

    def _parse_yahoo_chart(self, payload: Dict[str, Any]) -> QuoteReading:
        result = payload["chart"]["result"][0]
        meta = result["meta"]
        price = float(meta["regularMarketPrice"])

        timestamps = result.get("timestamp") or []
        closes = (result.get("indicators", {}).get("quote") or [{}])[0].get("close") or []
        dates = [datetime.fromtimestamp(ts, tz=timezone.utc).date() for ts in timestamps]
        closes = list(closes[: len(dates)]) + [None] * max(0, len(dates) - len(closes))
        history = self._proc.from_closes(dates, closes)

        # chartPreviousClose 是区间起点前的收盘价，日涨跌幅以前一交易日收盘为基准
        if len(history) >= 2:
            prev_close = history[-2].value
        else:
            prev_close = float(meta.get("previousClose") or price)
        change = (price - prev_close) / prev_close * 100 if prev_close else 0.0

        return QuoteReading(
            value=round(price, 2),
            change=round(change, 2),
            high=meta.get("fiftyTwoWeekHigh"),
            low=meta.get("fiftyTwoWeekLow"),
            history=history,
            source="yahoo",
        )

    # ── FinnHub ───────────────────────────────────────────

    async def fetch_finnhub_quote(self, symbol: str) -> Optional[QuoteReading]:
        base = settings.FINNHUB_BASE_URL
        token = settings.FINNHUB_API_KEY
        try:
            resp = await self._get(
                f"{base}/quote", timeout=settings.FINNHUB_TIMEOUT, symbol=symbol, token=token
            )
            quote = resp.json()
            if not quote or not quote.get("c"):
                raise ValueError("报价为空")
            price, prev_close = float(quote["c"]), float(quote.get("pc") or quote["c"])
            change = (price - prev_close) / prev_close * 100 if prev_close else 0.0
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"FinnHub 报价获取失败（{symbol}）: {exc}")
            return None

        return QuoteReading(
            value=round(price, 2),
            change=round(change, 2),
            high=quote.get("h"),
            low=quote.get("l"),
            history=await self._finnhub_history(symbol),
            source="finnhub",
        )

    async def _finnhub_history(self, symbol: str, days: int = 30) -> List[HistoryPoint]:
        now = int(time.time())
        try:
            resp = await self._get(
                f"{settings.FINNHUB_BASE_URL}/stock/candle",
                timeout=settings.FINNHUB_TIMEOUT,
                symbol=symbol,
                resolution="D",
                token=settings.FINNHUB_API_KEY,
                **{"from": now - days * 86400, "to": now},
            )
            data = resp.json()
            if data.get("s") != "ok" or not data.get("c"):
                return []
            dates = [datetime.fromtimestamp(ts, tz=timezone.utc).date() for ts in data["t"]]
            return self._proc.from_closes(dates, data["c"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"FinnHub 历史数据获取失败（{symbol}）: {exc}")
            return []

    # ── 证交所融资余额 ────────────────────────────────────

    async def fetch_twse_margin(self) -> Optional[MarginReading]:
        """
        证交所融资余额

        数据行格式：[日期, 融资(交易单位), 融资(金额, 仟元), 融券(交易单位), ...]，
        取最后两行计算余额与变化。
        """
        try:
            resp = await self._get(settings.TWSE_MARGIN_URL)
            rows = resp.json().get("data") or []
            if not rows:
                raise ValueError("无融资余额数据")
            latest = rows[-1]
            previous = rows[-2] if len(rows) > 1 else latest
            balance = _to_number(latest[2]) / _THOUSAND_TO_YI
            prev_balance = _to_number(previous[2]) / _THOUSAND_TO_YI
        except (httpx.HTTPError, ValueError, IndexError, AttributeError, TypeError) as exc:
            logger.warning(f"证交所融资余额获取失败: {exc}")
            return None

        return MarginReading(balance=round(balance, 2), change=round(balance - prev_balance, 2))

    # ── CNN 恐慌贪婪指数 ──────────────────────────────────

    async def fetch_cnn_fear_greed(self) -> Optional[FearGreedReading]:
        try:
            resp = await self._get(settings.CNN_FEAR_GREED_URL)
        except httpx.HTTPError as exc:
            logger.warning(f"CNN 恐慌指数获取失败: {exc}")
            return None

        match = _FEAR_GREED_RE.search(resp.text)
        if not match:
            logger.warning("CNN 恐慌指数：页面中未找到数值")
            return None
        score = int(match.group(1))
        if score > 100:
            logger.warning(f"CNN 恐慌指数：数值超出范围 {score}")
            return None
        return FearGreedReading(value=score, sentiment=classify_fear_greed(score))

    # ── 台湾 VIX（玩股网） ────────────────────────────────

    async def fetch_taiwan_vix(self) -> Optional[TaiwanVixReading]:
        try:
            resp = await self._get(settings.WANTGOO_VIX_URL)
        except httpx.HTTPError as exc:
            logger.warning(f"台湾 VIX 获取失败: {exc}")
            return None

        html = resp.text
        value_match = _VIXTWN_VALUE_RE.search(html)
        if not value_match:
            logger.warning("台湾 VIX：页面中未找到数值")
            return None
        value = float(value_match.group(1))
        if value <= 0:
            logger.warning(f"台湾 VIX：数值无效 {value}")
            return None

        change, change_percent = 0.0, 0.0
        change_match = _VIXTWN_CHANGE_RE.search(html, value_match.end())
        if change_match:
            change = float(change_match.group(1))
            change_percent = float(change_match.group(2))

        return TaiwanVixReading(
            value=value,
            change=change,
            change_percent=change_percent,
            level=classify_volatility(value),
        )


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition


async def close_acquisition_layer() -> None:
    global _acquisition
    if _acquisition is not None:
        await _acquisition.close()
        _acquisition = None
