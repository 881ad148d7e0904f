from __future__ import annotations

from datetime import datetime, timezone

import pytest

from services.forecast import ForecastConfig, ForecastEngine, InvalidHorizon
from services.forecast_cache import ForecastCache
from services.ingestion import IngestResult
from services.readings import ReadingStore
from services.weather import WeatherService


class _TickingClock:
    def __init__(self) -> None:
        self.minute = 0

    def __call__(self) -> datetime:
        self.minute += 1
        return datetime(2025, 6, 1, 12, self.minute, tzinfo=timezone.utc)


@pytest.fixture
def ticking_service(store: ReadingStore) -> WeatherService:
    engine = ForecastEngine(store, ForecastConfig(), clock=_TickingClock())
    return WeatherService(store, engine, ForecastCache(ttl_seconds=0))


@pytest.mark.anyio
async def test_repeated_forecast_is_served_from_cache(ticking_service: WeatherService, reading_factory):
    await ticking_service.ingest(reading_factory(hours_ago=1, temperature=20.0))
    await ticking_service.ingest(reading_factory(hours_ago=0, temperature=21.0))

    first = await ticking_service.get_forecast("station-1", 4)
    second = await ticking_service.get_forecast("station-1", 4)

    assert second == first
    assert second.generated_at == first.generated_at
    assert ticking_service.cache.stats()["hits"] == 1


@pytest.mark.anyio
async def test_new_reading_invalidates_station_forecasts(ticking_service: WeatherService, reading_factory):
    await ticking_service.ingest(reading_factory(hours_ago=1, temperature=20.0))
    other = await ticking_service.get_forecast("station-2", 1)
    before = await ticking_service.get_forecast("station-1", 2)

    assert await ticking_service.ingest(reading_factory(hours_ago=0, temperature=22.0)) is IngestResult.STORED
    after = await ticking_service.get_forecast("station-1", 2)

    assert after.generated_at > before.generated_at
    assert after.points[0].temperature == 24.0
    assert ticking_service.cache.get("station-2", 1) is other


@pytest.mark.anyio
async def test_duplicate_reading_keeps_cached_forecast(ticking_service: WeatherService, reading_factory):
    reading = reading_factory()
    await ticking_service.ingest(reading)
    before = await ticking_service.get_forecast("station-1", 1)

    assert await ticking_service.ingest(reading) is IngestResult.DUPLICATE
    assert await ticking_service.get_forecast("station-1", 1) is before


@pytest.mark.anyio
async def test_invalidation_can_be_disabled(store: ReadingStore, reading_factory):
    engine = ForecastEngine(store, ForecastConfig(), clock=_TickingClock())
    service = WeatherService(store, engine, ForecastCache(), invalidate_on_ingest=False)
    before = await service.get_forecast("station-1", 1)

    await service.ingest(reading_factory())

    assert await service.get_forecast("station-1", 1) is before


@pytest.mark.anyio
@pytest.mark.parametrize("hours", [0, 25])
async def test_invalid_horizon_never_reaches_cache(ticking_service: WeatherService, hours):
    with pytest.raises(InvalidHorizon):
        await ticking_service.get_forecast("station-1", hours)
    assert ticking_service.cache.stats()["misses"] == 0
    assert len(ticking_service.cache) == 0


@pytest.mark.anyio
async def test_reading_pass_throughs(ticking_service: WeatherService, reading_factory):
    await ticking_service.ingest(reading_factory(hours_ago=1))
    await ticking_service.ingest(reading_factory(hours_ago=0, temperature=30.0))

    latest = await ticking_service.latest_readings("station-1", 1)
    assert [reading.temperature for reading in latest] == [30.0]
    assert await ticking_service.reading_count() == 2
