from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load apps/hub/.env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "Weather Station Hub"
    app_version: str = "0.1.0"
    debug: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000
    log_level: str = Field(default="INFO", description="Root log level applied by basicConfig.")

    # MQTT
    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str = "weather-station-hub"
    mqtt_tls: bool = False
    mqtt_readings_topic: str = Field(
        default="weather/stations/+/readings",
        description="Topic filter carrying station readings; the '+' segment is the station id.",
    )
    mqtt_reconnect_initial_delay: float = Field(default=1.0, gt=0.0, description="First reconnect backoff (seconds).")
    mqtt_reconnect_max_delay: float = Field(default=30.0, gt=0.0, description="Reconnect backoff ceiling (seconds).")
    mqtt_ingest_attempts: int = Field(
        default=3,
        ge=1,
        description="Tries per MQTT reading when the store fails; backs off with the reconnect delays.",
    )

    # Reading store
    reading_store_db: str = Field(
        default="data/readings.sqlite",
        description="SQLite database path for persisted station readings.",
    )
    reading_store_timeout: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds SQLite waits on a locked database before failing.",
    )

    # Forecasting
    forecast_history_size: int = Field(
        default=15,
        ge=2,
        description="Number of most recent readings loaded when building a forecast.",
    )
    forecast_max_hours: int = Field(
        default=24,
        ge=1,
        le=24,
        description="Largest forecast horizon (hours) the engine accepts; the HTTP API allows at most 24.",
    )
    forecast_cache_ttl: int = Field(default=300, ge=0, description="Cache duration (seconds) for forecasts; 0 never expires")
    forecast_cache_max_entries: int = Field(
        default=1024,
        ge=1,
        description="Maximum number of (station, horizon) forecasts kept in memory.",
    )
    forecast_cache_invalidate_on_ingest: bool = Field(
        default=True,
        description="Drop a station's cached forecasts when a new reading for it is stored.",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

settings = Settings()
