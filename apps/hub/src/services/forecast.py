from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from services.readings import Reading, ReadingStore, ensure_utc

logger = logging.getLogger("weatherhub.forecast")

TEMPERATURE_BOUNDS = (-50.0, 50.0)
HUMIDITY_BOUNDS = (0.0, 100.0)
PRESSURE_BOUNDS = (900.0, 1100.0)
PRECIPITATION_BOUNDS = (0.0, 100.0)

DEFAULT_TEMPERATURE = 20.0
DEFAULT_HUMIDITY = 60.0
DEFAULT_PRESSURE = 1013.0
DEFAULT_PRECIPITATION = 0.0

DEGRADED_TEMPERATURE_STEP = 0.5
DEGRADED_HUMIDITY_STEP = 2.0
DEGRADED_HUMIDITY_FLOOR = 30.0
DEGRADED_PRESSURE_STEP = 0.1

MIN_TREND_WINDOW_HOURS = 1.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _wire_timestamp(timestamp: datetime) -> str:
    return ensure_utc(timestamp).strftime("%Y-%m-%dT%H:%M:%SZ")


def round_tenth(value: float) -> float:
    """Round half-up to one decimal place."""
    return math.floor(value * 10.0 + 0.5) / 10.0


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


class InvalidHorizon(ValueError):
    """Raised when a forecast is requested for an unsupported number of hours."""

    def __init__(self, hours: Any, max_hours: int) -> None:
        super().__init__(f"Hours must be between 1 and {max_hours}")
        self.hours = hours
        self.max_hours = max_hours


@dataclass(frozen=True, slots=True)
class ForecastConfig:
    history_size: int = 15
    max_forecast_hours: int = 24

    def __post_init__(self) -> None:
        if self.history_size < 2:
            raise ValueError("history_size must be at least 2 to compute a trend")
        if self.max_forecast_hours < 1:
            raise ValueError("max_forecast_hours must be positive")


@dataclass(frozen=True, slots=True)
class ForecastPoint:
    timestamp: datetime
    temperature: float
    humidity: float
    pressure: float
    precipitation: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": _wire_timestamp(self.timestamp),
            "temperature": self.temperature,
            "humidity": self.humidity,
            "pressure": self.pressure,
            "precipitation": self.precipitation,
        }


@dataclass(frozen=True, slots=True)
class Forecast:
    station_id: str
    generated_at: datetime
    points: Tuple[ForecastPoint, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "generatedAt": _wire_timestamp(self.generated_at),
            "forecasts": [point.to_payload() for point in self.points],
        }


class ForecastEngine:
    """Projects recent station history forward hour by hour.

    With at least two readings the two newest define a per-hour trend for each
    metric which is continued linearly and clamped to physical bounds. With less
    history a gently drifting forecast is synthesized from whatever is known, so
    freshly registered stations still get a usable answer. Store failures are
    never hidden behind that fallback.
    """

    def __init__(
        self,
        store: ReadingStore,
        config: Optional[ForecastConfig] = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._config = config or ForecastConfig()
        self._clock = clock

    @property
    def config(self) -> ForecastConfig:
        return self._config

    def validate_horizon(self, hours: Any) -> int:
        max_hours = self._config.max_forecast_hours
        if isinstance(hours, bool) or not isinstance(hours, int):
            raise InvalidHorizon(hours, max_hours)
        if hours < 1 or hours > max_hours:
            raise InvalidHorizon(hours, max_hours)
        return hours

    async def forecast(self, station_id: str, hours: int) -> Forecast:
        hours = self.validate_horizon(hours)
        logger.info("Generating forecast for station %s, hours %s", station_id, hours)

        history = await self._store.latest(station_id, self._config.history_size)
        now = ensure_utc(self._clock())

        if len(history) < 2:
            logger.warning(
                "Not enough history for station %s (%s readings); using degraded forecast",
                station_id,
                len(history),
            )
            points = self._degraded_points(history, now, hours)
        else:
            points = self._trend_points(history, now, hours)

        logger.debug("Generated %s forecast points for station %s", len(points), station_id)
        return Forecast(station_id=station_id, generated_at=now, points=tuple(points))

    def _trend_points(self, history: Sequence[Reading], now: datetime, hours: int) -> List[ForecastPoint]:
        latest, previous = history[0], history[1]
        elapsed = latest.timestamp - previous.timestamp
        window = max(MIN_TREND_WINDOW_HOURS, float(int(elapsed.total_seconds() // 3600)))

        temperature_trend = (latest.temperature - previous.temperature) / window
        humidity_trend = (latest.humidity - previous.humidity) / window
        pressure_trend = (latest.pressure - previous.pressure) / window
        precipitation_trend = (latest.precipitation - previous.precipitation) / window

        points: List[ForecastPoint] = []
        for offset in range(1, hours + 1):
            temperature = _clamp(latest.temperature + temperature_trend * offset, TEMPERATURE_BOUNDS)
            humidity = _clamp(latest.humidity + humidity_trend * offset, HUMIDITY_BOUNDS)
            pressure = _clamp(latest.pressure + pressure_trend * offset, PRESSURE_BOUNDS)
            precipitation = _clamp(latest.precipitation + precipitation_trend * offset, PRECIPITATION_BOUNDS)
            points.append(
                ForecastPoint(
                    timestamp=now + timedelta(hours=offset),
                    temperature=round_tenth(temperature),
                    humidity=round_tenth(humidity),
                    pressure=round_tenth(pressure),
                    precipitation=round_tenth(precipitation),
                )
            )
        return points

    def _degraded_points(self, history: Sequence[Reading], now: datetime, hours: int) -> List[ForecastPoint]:
        if history:
            seed = history[0]
            base_temperature = seed.temperature
            base_humidity = seed.humidity
            base_pressure = seed.pressure
            base_precipitation = seed.precipitation
        else:
            base_temperature = DEFAULT_TEMPERATURE
            base_humidity = DEFAULT_HUMIDITY
            base_pressure = DEFAULT_PRESSURE
            base_precipitation = DEFAULT_PRECIPITATION

        points: List[ForecastPoint] = []
        for offset in range(1, hours + 1):
            points.append(
                ForecastPoint(
                    timestamp=now + timedelta(hours=offset),
                    temperature=round_tenth(base_temperature + DEGRADED_TEMPERATURE_STEP * offset),
                    humidity=round_tenth(max(DEGRADED_HUMIDITY_FLOOR, base_humidity - DEGRADED_HUMIDITY_STEP * offset)),
                    pressure=round_tenth(base_pressure + DEGRADED_PRESSURE_STEP * offset),
                    precipitation=round_tenth(base_precipitation),
                )
            )
        return points
