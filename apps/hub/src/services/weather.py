from __future__ import annotations

import logging
from typing import List

from config import settings
from services.forecast import Forecast, ForecastConfig, ForecastEngine
from services.forecast_cache import ForecastCache
from services.ingestion import IngestResult, ReadingDeduplicator
from services.readings import Reading, ReadingStore, reading_store

logger = logging.getLogger("weatherhub.weather")


class WeatherService:
    """Entry point shared by the HTTP API and the MQTT consumer."""

    def __init__(
        self,
        store: ReadingStore,
        engine: ForecastEngine,
        cache: ForecastCache,
        *,
        invalidate_on_ingest: bool = True,
    ) -> None:
        self._store = store
        self._deduplicator = ReadingDeduplicator(store)
        self._engine = engine
        self._cache = cache
        self._invalidate_on_ingest = invalidate_on_ingest

    @property
    def store(self) -> ReadingStore:
        return self._store

    @property
    def cache(self) -> ForecastCache:
        return self._cache

    @property
    def engine(self) -> ForecastEngine:
        return self._engine

    async def ingest(self, reading: Reading) -> IngestResult:
        result = await self._deduplicator.ingest(reading)
        if result is IngestResult.STORED and self._invalidate_on_ingest:
            self._cache.invalidate(reading.station_id)
        return result

    async def get_forecast(self, station_id: str, hours: int) -> Forecast:
        # Reject bad horizons before they reach the cache.
        hours = self._engine.validate_horizon(hours)
        return await self._cache.get_or_compute(
            station_id,
            hours,
            lambda: self._engine.forecast(station_id, hours),
        )

    async def latest_readings(self, station_id: str, limit: int) -> List[Reading]:
        return await self._store.latest(station_id, limit)

    async def reading_count(self) -> int:
        return await self._store.count()


def build_weather_service(store: ReadingStore) -> WeatherService:
    engine = ForecastEngine(
        store,
        ForecastConfig(
            history_size=settings.forecast_history_size,
            max_forecast_hours=settings.forecast_max_hours,
        ),
    )
    cache = ForecastCache(
        ttl_seconds=settings.forecast_cache_ttl,
        max_entries=settings.forecast_cache_max_entries,
    )
    return WeatherService(
        store,
        engine,
        cache,
        invalidate_on_ingest=settings.forecast_cache_invalidate_on_ingest,
    )


weather_service = build_weather_service(reading_store)
