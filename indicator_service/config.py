"""
指标数据服务配置模块
支持从环境变量 / .env 文件读取配置
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class IndicatorServiceSettings(BaseSettings):
    """指标数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8001)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 外部数据源 ─────────────────────────────────────────
    HTTP_TIMEOUT: float = Field(default=10.0)      # 秒，单次请求超时
    FINNHUB_TIMEOUT: float = Field(default=5.0)
    USER_AGENT: str = Field(default=_BROWSER_UA)
    YAHOO_CHART_URL: str = Field(
        default="https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
    )
    YAHOO_RANGE: str = Field(default="3mo")
    TWSE_MARGIN_URL: str = Field(
        default="https://openapi.twse.com.tw/v1/exchangeReport/MI_MARGN"
    )
    CNN_FEAR_GREED_URL: str = Field(default="https://www.cnn.com/markets/fear-and-greed")
    WANTGOO_VIX_URL: str = Field(default="https://www.wantgoo.com/index/vixtwn")
    FINNHUB_BASE_URL: str = Field(default="https://finnhub.io/api/v1")
    FINNHUB_API_KEY: str = Field(default="")

    @property
    def FINNHUB_ENABLED(self) -> bool:
        return bool(self.FINNHUB_API_KEY)

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_TTL: int = Field(default=300)            # 数据源缓存 TTL（秒）
    HISTORY_DAYS: int = Field(default=30)          # 模拟历史序列长度

    # ── 融资维持率 ────────────────────────────────────────
    # 尚无可靠数据源，暂以固定值提供
    MARGIN_MAINTENANCE_RATIO: float = Field(default=170.23)
    MARGIN_SAFETY_LINE: float = Field(default=160.0)
    MARGIN_BREAK_LINE: float = Field(default=130.0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Taipei")


@lru_cache
def get_settings() -> IndicatorServiceSettings:
    """获取全局配置（单例）"""
    return IndicatorServiceSettings()


settings = get_settings()
