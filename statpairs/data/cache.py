"""TTL-based in-memory cache for kline frames to reduce upstream calls."""

from __future__ import annotations

import time
from typing import Any

import pandas as pd
import structlog

from statpairs.data.provider import KlineProvider

logger = structlog.get_logger()


class CacheEntry:
    """A cached value with expiration time."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl_seconds: float) -> None:
        self.value = value
        self.expires_at = time.monotonic() + ttl_seconds

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class KlineCache:
    """TTL cache keyed by ``symbol:interval:limit``.

    The candidate generator visits the same symbol once per group it belongs
    to; caching keeps that to one upstream fetch per cycle.
    """

    def __init__(self, ttl_seconds: float = 60.0) -> None:
        self._ttl = ttl_seconds
        self._klines: dict[str, CacheEntry] = {}
        self._log = logger.bind(component="kline_cache")
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(symbol: str, interval: str, limit: int) -> str:
        return f"{symbol}:{interval}:{limit}"

    def get(self, symbol: str, interval: str, limit: int) -> pd.DataFrame | None:
        entry = self._klines.get(self._key(symbol, interval, limit))
        if entry and not entry.is_expired:
            self._hits += 1
            return entry.value
        self._misses += 1
        return None

    def set(self, symbol: str, interval: str, limit: int, df: pd.DataFrame) -> None:
        self._klines[self._key(symbol, interval, limit)] = CacheEntry(df, self._ttl)

    def evict_expired(self) -> int:
        """Remove expired entries. Returns number of entries evicted."""
        expired_keys = [k for k, v in self._klines.items() if v.is_expired]
        for key in expired_keys:
            del self._klines[key]
        if expired_keys:
            self._log.debug("cache_evicted", count=len(expired_keys))
        return len(expired_keys)

    @property
    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0.0,
            "klines_cached": len(self._klines),
        }


class CachedKlineProvider:
    """Wraps a ``KlineProvider`` with a ``KlineCache``."""

    def __init__(self, inner: KlineProvider, cache: KlineCache) -> None:
        self._inner = inner
        self._cache = cache

    @property
    def cache(self) -> KlineCache:
        return self._cache

    def get_klines(self, symbol: str, interval: str, limit: int = 500) -> pd.DataFrame:
        cached = self._cache.get(symbol, interval, limit)
        if cached is not None:
            return cached
        df = self._inner.get_klines(symbol, interval, limit)
        self._cache.set(symbol, interval, limit, df)
        return df

    def __getattr__(self, name: str) -> Any:
        # Funding/depth lookups pass straight through
        return getattr(self._inner, name)
