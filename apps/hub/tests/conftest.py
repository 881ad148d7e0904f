import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Keep the module-level store out of the working tree.
os.environ.setdefault(
    "READING_STORE_DB",
    str(Path(tempfile.mkdtemp(prefix="weatherhub-tests-")) / "readings.sqlite"),
)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from main import create_app  # noqa: E402
from services.forecast import ForecastConfig, ForecastEngine  # noqa: E402
from services.forecast_cache import ForecastCache  # noqa: E402
from services.readings import Reading, ReadingStore  # noqa: E402
from services.weather import WeatherService  # noqa: E402

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def disable_mqtt(settings_override: Callable[..., None]) -> None:
    settings_override(mqtt_enabled=False)
    yield


@pytest.fixture
def reading_factory() -> Callable[..., Reading]:
    def _build(
        *,
        station_id: str = "station-1",
        hours_ago: float = 0.0,
        temperature: float = 20.0,
        humidity: float = 60.0,
        pressure: float = 1013.0,
        precipitation: float = 0.0,
        now: datetime = FIXED_NOW,
    ) -> Reading:
        return Reading(
            station_id=station_id,
            timestamp=now - timedelta(hours=hours_ago),
            temperature=temperature,
            humidity=humidity,
            pressure=pressure,
            precipitation=precipitation,
        )

    return _build


@pytest.fixture
def store(tmp_path: Path) -> ReadingStore:
    return ReadingStore(db_path=tmp_path / "readings.sqlite")


@pytest.fixture
def service(store: ReadingStore) -> WeatherService:
    engine = ForecastEngine(store, ForecastConfig(history_size=15, max_forecast_hours=24))
    cache = ForecastCache(ttl_seconds=300, max_entries=64)
    return WeatherService(store, engine, cache)


@pytest.fixture
def client(disable_mqtt: None, service: WeatherService, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    from api.v1 import health_router, weather_router

    monkeypatch.setattr(weather_router, "weather_service", service)
    monkeypatch.setattr(health_router, "weather_service", service)
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
