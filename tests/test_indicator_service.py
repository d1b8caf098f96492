"""
指标数据服务单元测试

覆盖范围：
  - 配置模块（默认值、环境变量覆盖）
  - 缓存层（TTL 过期、带缓存的数据源调用）
  - 处理层（十日均线、模拟序列、区间截取与统计）
  - 分析层（多空信号、整体情绪）
  - 聚合服务（备用数据替换、输出完整性、未知指标）
  - API 响应模型
  - FastAPI 路由（通过 TestClient 测试，不访问外部数据源）
"""

import asyncio
import os
import random
import sys
from datetime import date, datetime, timezone
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from indicator_service.models.indicator import (  # noqa: E402
    AggregatedSnapshot,
    FearGreedReading,
    HistoryPoint,
    IndicatorKey,
    IndicatorSnapshot,
    MarginReading,
    QuoteReading,
    TaiwanVixReading,
)


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _points(values) -> list:
    return [
        HistoryPoint(day=f"01/{i + 1:02d}", date=f"2024-01-{i + 1:02d}", value=float(v))
        for i, v in enumerate(values)
    ]


class StubAcquisition:
    """替代真实数据获取层；fail 中列出的数据源抛出网络异常"""

    def __init__(self, fail=(), empty=()):
        self.fail = set(fail)
        self.empty = set(empty)
        self.calls = []

    def _check(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise httpx.ConnectError(f"{name} unreachable")
        return name not in self.empty

    async def get_quote(self, symbol):
        if not self._check(symbol):
            return None
        return QuoteReading(value=130.0, change=1.5, history=_points(range(90, 130)), source="yahoo")

    async def fetch_twse_margin(self):
        if not self._check("twse"):
            return None
        return MarginReading(balance=3601.5, change=8.5)

    async def fetch_cnn_fear_greed(self):
        if not self._check("cnn"):
            return None
        return FearGreedReading(value=40, sentiment="Fear")

    async def fetch_taiwan_vix(self):
        if not self._check("wantgoo"):
            return None
        return TaiwanVixReading(value=18.2, change=-0.3, change_percent=-1.62, level="Neutral")


class BarrierAcquisition(StubAcquisition):
    """所有数据源调用都发出后才一并放行；串行等待会一直阻塞"""

    def __init__(self, expected, fail=()):
        super().__init__(fail=fail)
        self.expected = expected
        self.arrived = []
        self._released = None

    async def _gate(self, name):
        if self._released is None:
            self._released = asyncio.Event()
        self.arrived.append(name)
        if len(self.arrived) == self.expected:
            self._released.set()
        if name in self.fail:
            raise httpx.ConnectError(f"{name} unreachable")
        await self._released.wait()

    async def get_quote(self, symbol):
        await self._gate(symbol)
        return await super().get_quote(symbol)

    async def fetch_twse_margin(self):
        await self._gate("twse")
        return await super().fetch_twse_margin()

    async def fetch_cnn_fear_greed(self):
        await self._gate("cnn")
        return await super().fetch_cnn_fear_greed()

    async def fetch_taiwan_vix(self):
        await self._gate("wantgoo")
        return await super().fetch_taiwan_vix()


ALL_SOURCES = ["^TWII", "^VIX", "CL=F", "GC=F", "DX-Y.NYB", "^TNX", "TWD=X", "twse", "cnn", "wantgoo"]


def _service(acquisition=None, cache=None):
    from indicator_service.layers.cache import TTLCache
    from indicator_service.services.indicator_service import IndicatorService
    return IndicatorService(cache=cache or TTLCache(), acquisition=acquisition or StubAcquisition())


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        from indicator_service.config import IndicatorServiceSettings
        s = IndicatorServiceSettings(_env_file=None)
        assert s.PORT == 8001
        assert s.CACHE_TTL == 300
        assert s.MARGIN_SAFETY_LINE == 160.0

    def test_env_override(self):
        from indicator_service.config import IndicatorServiceSettings
        with patch.dict(os.environ, {"CACHE_TTL": "60", "HTTP_TIMEOUT": "5"}, clear=False):
            s = IndicatorServiceSettings(_env_file=None)
        assert s.CACHE_TTL == 60
        assert s.HTTP_TIMEOUT == 5.0

    def test_finnhub_enabled_follows_key(self):
        from indicator_service.config import IndicatorServiceSettings
        assert not IndicatorServiceSettings(_env_file=None, FINNHUB_API_KEY="").FINNHUB_ENABLED
        assert IndicatorServiceSettings(_env_file=None, FINNHUB_API_KEY="abc").FINNHUB_ENABLED


# ─────────────────────────────────────────────────────────
# 2. 缓存层测试
# ─────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCacheLayer:
    def setup_method(self):
        from indicator_service.layers.cache import TTLCache
        self.clock = FakeClock()
        self.cache = TTLCache(default_ttl=300, clock=self.clock)

    def test_get_after_set(self):
        self.cache.set("k", {"v": 1})
        assert self.cache.get("k") == {"v": 1}
        assert self.cache.has("k")

    def test_missing_key(self):
        assert self.cache.get("nope") is None
        assert not self.cache.has("nope")

    def test_zero_ttl_expires_immediately(self):
        self.cache.set("k", 1, ttl=0)
        assert self.cache.get("k") is None
        assert self.cache.size() == 0

    def test_expires_after_ttl(self):
        self.cache.set("k", 1, ttl=10)
        self.clock.now += 9.9
        assert self.cache.get("k") == 1
        self.clock.now += 0.1
        assert self.cache.get("k") is None
        assert "k" not in self.cache.keys()

    def test_delete_clear_size(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        assert self.cache.size() == 2
        self.cache.delete("a")
        self.cache.delete("missing")
        assert self.cache.keys() == ["b"]
        self.cache.clear()
        assert self.cache.size() == 0

    def test_stats(self):
        self.cache.set("a", 1)
        stats = self.cache.stats()
        assert stats["size"] == 1 and stats["keys"] == ["a"]

    def test_cached_call_hits_once(self):
        calls = []

        async def fetcher():
            calls.append(1)
            return "data"

        async def run():
            first = await self.cache.cached_call("k", fetcher)
            second = await self.cache.cached_call("k", fetcher)
            return first, second

        assert asyncio.run(run()) == ("data", "data")
        assert len(calls) == 1

    def test_cached_call_does_not_store_none(self):
        async def fetcher():
            return None

        assert asyncio.run(self.cache.cached_call("k", fetcher)) is None
        assert self.cache.size() == 0

    def test_cached_call_propagates_errors(self):
        async def fetcher():
            raise httpx.ReadTimeout("slow")

        with pytest.raises(httpx.ReadTimeout):
            asyncio.run(self.cache.cached_call("k", fetcher))


# ─────────────────────────────────────────────────────────
# 3. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        from indicator_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_ma10_reference_sequence(self):
        result = self.proc.annotate_ma10(_points(range(100, 111)))
        assert len(result) == 11
        assert result[0].ma10 == 100
        assert result[9].ma10 == 104.5
        assert result[10].ma10 == 105.5

    def test_ma10_short_sequence(self):
        result = self.proc.annotate_ma10(_points([100, 102, 104]))
        assert [p.ma10 for p in result] == [100, 101, 102]

    def test_ma10_matches_trailing_mean(self):
        values = [random.uniform(10, 20) for _ in range(40)]
        result = self.proc.annotate_ma10(_points(values))
        for i, point in enumerate(result):
            window = values[max(0, i - 9): i + 1]
            assert point.ma10 == pytest.approx(sum(window) / len(window), abs=0.006)

    def test_ma10_preserves_points(self):
        source = _points([100, 102])
        result = self.proc.annotate_ma10(source)
        assert result[0].day == "01/01" and result[0].value == 100
        assert source[0].ma10 is None

    def test_ma10_empty(self):
        assert self.proc.annotate_ma10([]) == []

    def test_moving_average(self):
        history = _points(range(1, 31))
        assert self.proc.moving_average(history, 20) == 20.5
        assert self.proc.moving_average(history[:5], 20) == 3.0
        assert self.proc.moving_average([], 20) is None

    def test_generate_history(self):
        history = self.proc.generate_history(
            100.0, 5.0, days=30, end=date(2024, 3, 31), rng=random.Random(7)
        )
        assert len(history) == 30
        assert history[-1].date == "2024-03-31" and history[-1].day == "03/31"
        dates = [p.date for p in history]
        assert dates == sorted(dates)
        assert all(p.value >= 70.0 for p in history)

    def test_from_closes_drops_nulls_and_sorts(self):
        dates = [date(2024, 1, 3), date(2024, 1, 1), date(2024, 1, 2)]
        history = self.proc.from_closes(dates, [3.0, 1.0, None])
        assert [p.date for p in history] == ["2024-01-01", "2024-01-03"]

    def test_slice_history_bounds(self):
        history = _points(range(40))
        assert len(self.proc.slice_history(history, 7)) == 7
        assert len(self.proc.slice_history(history, 365)) == 40
        assert self.proc.slice_history(history, 7)[-1] == history[-1]

    def test_summarize(self):
        stats = self.proc.summarize(_points([10, 12, 8, 11]))
        assert stats == {
            "count": 4, "min": 8.0, "max": 12.0, "avg": 10.25, "latest": 11.0, "change_percent": 10.0,
        }

    def test_summarize_empty(self):
        assert self.proc.summarize([])["count"] == 0


# ─────────────────────────────────────────────────────────
# 4. 分析层测试
# ─────────────────────────────────────────────────────────

def _snap(key: IndicatorKey, value: float, **kwargs) -> IndicatorSnapshot:
    return IndicatorSnapshot(key=key, name=key.value, symbol=key.value, value=value, source="test", **kwargs)


def _aggregate(*snaps) -> AggregatedSnapshot:
    return AggregatedSnapshot(
        indicators={s.key.value: s for s in snaps},
        last_updated=datetime.now(tz=timezone.utc),
    )


class TestAnalysisLayer:
    def setup_method(self):
        from indicator_service.layers.analysis import AnalysisLayer
        self.analysis = AnalysisLayer()

    def test_positive_market(self):
        history = [HistoryPoint(day="01/01", value=100, ma10=100)]
        status = self.analysis.analyze(_aggregate(
            _snap(IndicatorKey.TAIEX, 110, monthly_ma=105, quarterly_ma=100, history=history),
            _snap(IndicatorKey.VIX, 14),
            _snap(IndicatorKey.FEAR_GREED, 60),
            _snap(IndicatorKey.MARGIN_MAINTENANCE_RATIO, 180, safety_line=160),
        ))
        assert len(status.bullish_signals) == 6
        assert status.risk_signals == []
        assert status.overall_sentiment == "positive"

    def test_cautious_market(self):
        status = self.analysis.analyze(_aggregate(
            _snap(IndicatorKey.VIX, 35),
            _snap(IndicatorKey.TAIWAN_VIX, 28),
            _snap(IndicatorKey.MARGIN_BALANCE, 3600),
            _snap(IndicatorKey.MARGIN_MAINTENANCE_RATIO, 165, safety_line=160),
        ))
        assert len(status.risk_signals) == 4
        assert len(status.bullish_signals) == 1
        assert status.overall_sentiment == "cautious"

    def test_tie_is_cautious(self):
        status = self.analysis.analyze(_aggregate(
            _snap(IndicatorKey.VIX, 15),
            _snap(IndicatorKey.TAIWAN_VIX, 25),
        ))
        assert status.overall_sentiment == "cautious"

    def test_extreme_greed_is_both_bullish_and_risky(self):
        status = self.analysis.analyze(_aggregate(_snap(IndicatorKey.FEAR_GREED, 80)))
        assert len(status.bullish_signals) == 1 and len(status.risk_signals) == 1

    def test_empty_snapshot(self):
        status = self.analysis.analyze(_aggregate())
        assert status.bullish_signals == [] and status.risk_signals == []
        assert status.overall_sentiment == "cautious"


# ─────────────────────────────────────────────────────────
# 5. 聚合服务测试
# ─────────────────────────────────────────────────────────

class TestIndicatorService:
    def test_partition_results(self):
        from indicator_service.services.indicator_service import partition_results
        snap = _snap(IndicatorKey.VIX, 15)
        keys = [IndicatorKey.VIX, IndicatorKey.GOLD, IndicatorKey.TAIEX]
        ok, failed = partition_results(keys, [snap, None, RuntimeError("x")])
        assert ok == {IndicatorKey.VIX: snap}
        assert failed == [IndicatorKey.GOLD, IndicatorKey.TAIEX]

    def test_all_live(self):
        snapshot = asyncio.run(_service().get_all_indicators())
        assert set(snapshot.indicators) == {k.value for k in IndicatorKey}
        assert snapshot.fallback_keys == []
        assert snapshot.indicators["fear_greed"].label == "Fear"
        assert snapshot.indicators["margin_balance"].value == 3601.5
        assert snapshot.indicators["margin_maintenance_ratio"].source == "static"

    @pytest.mark.parametrize("fail_count", [0, 1, 4, 7, len(ALL_SOURCES)])
    def test_output_complete_regardless_of_failures(self, fail_count):
        failing = ALL_SOURCES[:fail_count]
        snapshot = asyncio.run(_service(StubAcquisition(fail=failing)).get_all_indicators())
        assert set(snapshot.indicators) == {k.value for k in IndicatorKey}
        assert len(snapshot.fallback_keys) == fail_count
        for key in snapshot.fallback_keys:
            item = snapshot.indicators[key]
            assert item.is_fallback and item.source == "fallback"
            assert len(item.history) == 30

    def test_sources_fetched_concurrently(self):
        # cnn 在其他数据源仍挂起时失败，其余数据源照常完成
        acq = BarrierAcquisition(expected=len(ALL_SOURCES), fail=["cnn"])

        async def run():
            return await asyncio.wait_for(_service(acq).get_all_indicators(), timeout=2)

        snapshot = asyncio.run(run())
        assert sorted(acq.arrived) == sorted(ALL_SOURCES)
        assert snapshot.fallback_keys == ["fear_greed"]
        assert snapshot.indicators["taiwan_vix"].value == 18.2
        assert not snapshot.indicators["taiex"].is_fallback

    def test_null_results_use_fallback(self):
        acq = StubAcquisition(empty=["cnn", "wantgoo"])
        snapshot = asyncio.run(_service(acq).get_all_indicators())
        assert set(snapshot.fallback_keys) == {"fear_greed", "taiwan_vix"}
        assert snapshot.indicators["fear_greed"].value == 62
        assert snapshot.indicators["fear_greed"].label == "Greed"
        assert snapshot.indicators["taiwan_vix"].value == 22.67

    def test_every_series_has_ma10(self):
        acq = StubAcquisition(fail=["^VIX", "twse"])
        snapshot = asyncio.run(_service(acq).get_all_indicators())
        for item in snapshot.indicators.values():
            assert item.history
            assert all(p.ma10 is not None for p in item.history)
            dates = [p.date for p in item.history]
            assert dates == sorted(dates)

    def test_taiex_moving_averages(self):
        snapshot = asyncio.run(_service().get_all_indicators())
        taiex = snapshot.indicators["taiex"]
        # 40 点历史 90..129：月线取最后 20 点，季线不足 60 点时取现值
        assert taiex.monthly_ma == 119.5
        assert taiex.quarterly_ma == 130.0
        assert taiex.history[-1].ma10 == 124.5

    def test_fallback_taiex_keeps_fixed_averages(self):
        acq = StubAcquisition(fail=["^TWII"])
        taiex = asyncio.run(_service(acq).get_all_indicators()).indicators["taiex"]
        assert taiex.value == 30810.58
        assert taiex.monthly_ma == 29335.0 and taiex.quarterly_ma == 28244.0

    def test_fallback_logged(self, caplog):
        acq = StubAcquisition(fail=["cnn"])
        with caplog.at_level("WARNING", logger="indicator_service.services.indicator_service"):
            asyncio.run(_service(acq).get_all_indicators())
        assert any("备用数据" in r.getMessage() and "fear_greed" in r.getMessage() for r in caplog.records)

    def test_results_are_cached(self):
        acq = StubAcquisition()
        svc = _service(acq)
        asyncio.run(svc.get_all_indicators())
        asyncio.run(svc.get_all_indicators())
        assert acq.calls.count("^TWII") == 1
        assert acq.calls.count("cnn") == 1

    def test_failures_are_not_cached(self):
        acq = StubAcquisition(fail=["cnn"])
        svc = _service(acq)
        asyncio.run(svc.get_all_indicators())
        asyncio.run(svc.get_all_indicators())
        assert acq.calls.count("cnn") == 2

    def test_unexpected_error_is_aggregated(self):
        from indicator_service.services.indicator_service import AggregationError
        svc = _service()
        with patch.object(svc, "_finalize", side_effect=RuntimeError("bug")):
            with pytest.raises(AggregationError):
                asyncio.run(svc.get_all_indicators())

    def test_get_indicator(self):
        acq = StubAcquisition()
        item = asyncio.run(_service(acq).get_indicator("vix"))
        assert item.key == IndicatorKey.VIX and item.value == 130.0
        assert acq.calls == ["^VIX"]

    def test_get_indicator_unknown(self):
        from indicator_service.services.indicator_service import IndicatorNotFoundError
        with pytest.raises(IndicatorNotFoundError):
            asyncio.run(_service().get_indicator("bitcoin"))

    def test_get_indicator_fallback(self):
        item = asyncio.run(_service(StubAcquisition(fail=["twse"])).get_indicator("margin_balance"))
        assert item.is_fallback and item.value == 3593 and item.unit == "亿"

    def test_history_length(self):
        svc = _service()
        assert len(asyncio.run(svc.get_history("taiex", 7))) == 7
        assert len(asyncio.run(svc.get_history("taiex", 365))) == 40
        assert len(asyncio.run(svc.get_history("fear_greed", 365))) == 30

    @pytest.mark.parametrize("days", [0, -1, 366])
    def test_history_days_out_of_range(self, days):
        with pytest.raises(ValueError):
            asyncio.run(_service().get_history("taiex", days))

    def test_history_unknown_key_wins_over_days(self):
        from indicator_service.services.indicator_service import IndicatorNotFoundError
        with pytest.raises(IndicatorNotFoundError):
            asyncio.run(_service().get_history("bitcoin", 0))

    def test_stats(self):
        stats = asyncio.run(_service().get_stats("taiex", 10))
        assert stats.count == 10
        assert stats.min == 120.0 and stats.max == 129.0
        assert stats.avg == 124.5 and stats.latest == 129.0
        assert stats.change_percent == 7.5

    def test_market_status(self):
        status = asyncio.run(_service().get_market_status())
        assert status.overall_sentiment in ("positive", "cautious")
        assert isinstance(status.bullish_signals, list)


# ─────────────────────────────────────────────────────────
# 6. API 响应模型测试
# ─────────────────────────────────────────────────────────

class TestApiResponse:
    def test_ok(self):
        from indicator_service.models.response import ApiResponse
        r = ApiResponse.ok(data={"key": "value"}, message="done")
        assert r.success is True
        assert r.data == {"key": "value"}
        assert r.error is None

    def test_fail(self):
        from indicator_service.models.response import ApiResponse
        r = ApiResponse.fail(error="boom")
        assert r.success is False
        assert r.error == "boom"

    def test_not_found(self):
        from indicator_service.models.response import ApiResponse
        r = ApiResponse.not_found("bitcoin")
        assert r.success is False
        assert r.error == "indicator not found"
        assert "bitcoin" in r.message


# ─────────────────────────────────────────────────────────
# 7. HTTP 路由测试（TestClient，不访问外部数据源）
# ─────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def client():
    """创建测试客户端，以桩数据源替换聚合服务"""
    from indicator_service.main import app
    from indicator_service.services.indicator_service import get_indicator_service

    app.dependency_overrides[get_indicator_service] = lambda: _service(StubAcquisition(fail=["cnn"]))
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"

    def test_healthz_endpoint(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_readyz_endpoint(self, client):
        assert client.get("/readyz").json()["ready"] is True

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body and "docs" in body

    def test_process_time_header(self, client):
        assert "X-Process-Time" in client.get("/healthz").headers


class TestIndicatorRoutes:
    def test_all_indicators(self, client):
        resp = client.get("/api/indicators")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert set(body["data"]["indicators"]) == {k.value for k in IndicatorKey}
        assert body["data"]["fallback_keys"] == ["fear_greed"]
        assert "last_updated" in body["data"]

    def test_keys(self, client):
        data = client.get("/api/indicators/keys").json()["data"]
        assert data["count"] == len(IndicatorKey)

    def test_detail(self, client):
        resp = client.get("/api/indicators/taiex")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["key"] == "taiex" and data["symbol"] == "^TWII"
        assert data["history"][-1]["ma10"] is not None

    def test_detail_unknown(self, client):
        resp = client.get("/api/indicators/bitcoin")
        assert resp.status_code == 404
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "indicator not found"

    def test_history(self, client):
        data = client.get("/api/indicators/vix/history", params={"days": 5}).json()["data"]
        assert data["count"] == 5 and len(data["history"]) == 5

    def test_history_default_days(self, client):
        assert client.get("/api/indicators/vix/history").json()["data"]["count"] == 30

    @pytest.mark.parametrize("days", [0, 366])
    def test_history_days_validated(self, client, days):
        assert client.get("/api/indicators/vix/history", params={"days": days}).status_code == 422

    def test_history_unknown(self, client):
        assert client.get("/api/indicators/bitcoin/history").status_code == 404

    def test_stats(self, client):
        data = client.get("/api/indicators/gold/stats", params={"days": 10}).json()["data"]
        assert data["count"] == 10
        assert data["min"] <= data["avg"] <= data["max"]

    def test_status(self, client):
        data = client.get("/api/indicators/status").json()["data"]
        assert data["overall_sentiment"] in ("positive", "cautious")
        assert "bullish_signals" in data and "risk_signals" in data


class TestCacheRoutes:
    def test_stats_and_clear(self, client):
        from indicator_service.layers.cache import get_cache_layer
        cache = get_cache_layer()
        cache.set("quote:^TWII", 1)
        assert "quote:^TWII" in client.get("/api/cache/stats").json()["data"]["keys"]

        resp = client.post("/api/cache/clear", json={"key": "quote:^TWII"})
        assert resp.status_code == 200
        assert not cache.has("quote:^TWII")

    def test_clear_all(self, client):
        from indicator_service.layers.cache import get_cache_layer
        cache = get_cache_layer()
        cache.set("a", 1)
        assert client.post("/api/cache/clear").status_code == 200
        assert cache.size() == 0
