"""
Layer 2 – 缓存层
进程内 TTL 缓存：读取时按墙钟时间惰性过期，不做后台清理。
所有读写都在同一个事件循环内完成，无需加锁。
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from indicator_service.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    created_at: float
    ttl: float          # 秒


class TTLCache:
    """键 → CacheEntry 的内存缓存"""

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._entries: Dict[str, CacheEntry] = {}
        self._default_ttl = settings.CACHE_TTL if default_ttl is None else default_ttl
        self._clock = clock

    def _alive(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at < entry.ttl

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None:
            ttl = self._default_ttl
        self._entries[key] = CacheEntry(data=value, created_at=self._clock(), ttl=ttl)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._alive(entry):
            del self._entries[key]
            return None
        return entry.data

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def stats(self) -> dict:
        """返回缓存条目数量与键列表（可能包含尚未被读取清理的过期条目）"""
        return {"size": self.size(), "keys": self.keys(), "default_ttl": self._default_ttl}

    async def cached_call(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Optional[Any]:
        """
        带缓存的数据源调用

        命中直接返回；未命中则调用 fetcher，结果非 None 时写入缓存。
        fetcher 抛出的异常不在此处处理，由聚合层统一隔离。
        """
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"缓存命中: {key}")
            return cached

        logger.debug(f"缓存未命中: {key}，请求数据源")
        data = await fetcher()
        if data is not None:
            self.set(key, data, ttl)
        return data


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[TTLCache] = None


def get_cache_layer() -> TTLCache:
    global _cache
    if _cache is None:
        _cache = TTLCache()
    return _cache
