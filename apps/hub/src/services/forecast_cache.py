from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from services.forecast import Forecast

logger = logging.getLogger("weatherhub.forecast.cache")

CacheKey = Tuple[str, int]


@dataclass
class CachedForecast:
    forecast: Forecast
    expires_at: Optional[float]


class ForecastCache:
    """Memoizes forecasts per (station, horizon).

    A hit returns the forecast exactly as it was generated, so ``generated_at``
    reflects the original computation. Concurrent misses for one key share a
    single computation; results computed across an invalidation are not stored.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = max(ttl_seconds, 0.0)
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CachedForecast]" = OrderedDict()
        self._inflight: Dict[CacheKey, asyncio.Future[Forecast]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get_or_compute(
        self,
        station_id: str,
        hours: int,
        compute: Callable[[], Awaitable[Forecast]],
    ) -> Forecast:
        key = (station_id, hours)
        cached = self._lookup(key)
        if cached is not None:
            self._hits += 1
            return cached

        inflight = self._inflight.get(key)
        if inflight is None:
            self._misses += 1
            inflight = asyncio.ensure_future(self._compute_and_store(key, compute, self._marker(station_id)))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda task, key=key: self._forget_inflight(key, task))
        else:
            logger.debug("Joining in-flight forecast for %s/%sh", station_id, hours)
        return await asyncio.shield(inflight)

    def get(self, station_id: str, hours: int) -> Optional[Forecast]:
        return self._lookup((station_id, hours))

    def invalidate(self, station_id: Optional[str] = None) -> int:
        """Drop cached forecasts for one station, or for every station when omitted."""
        if station_id is None:
            removed = len(self._entries)
            self._entries.clear()
            self._epoch += 1
            self._inflight.clear()
        else:
            keys = [key for key in self._entries if key[0] == station_id]
            for key in keys:
                del self._entries[key]
            removed = len(keys)
            for key in [key for key in self._inflight if key[0] == station_id]:
                del self._inflight[key]
            self._generations[station_id] = self._generations.get(station_id, 0) + 1
        if removed:
            logger.debug("Invalidated %s cached forecast(s) for %s", removed, station_id or "all stations")
        return removed

    def clear(self) -> None:
        self.invalidate()
        self._generations.clear()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def stats(self) -> Dict[str, object]:
        return {
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "inflight": len(self._inflight),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _forget_inflight(self, key: CacheKey, task: "asyncio.Future[Forecast]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Callers may all have been cancelled; mark the failure as retrieved.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Forecast for %s/%sh failed: %s", key[0], key[1], task.exception())

    def _marker(self, station_id: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(station_id, 0)

    async def _compute_and_store(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[Forecast]],
        marker: Tuple[int, int],
    ) -> Forecast:
        forecast = await compute()
        if marker == self._marker(key[0]):
            self._store(key, forecast)
        else:
            logger.debug("Discarding forecast for %s/%sh computed across an invalidation", key[0], key[1])
        return forecast

    def _lookup(self, key: CacheKey) -> Optional[Forecast]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.forecast

    def _store(self, key: CacheKey, forecast: Forecast) -> None:
        expires_at = self._clock() + self._ttl if self._ttl > 0 else None
        self._entries.pop(key, None)
        self._entries[key] = CachedForecast(forecast=forecast, expires_at=expires_at)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Evicted cached forecast for %s/%sh", evicted[0], evicted[1])
