from __future__ import annotations

import asyncio
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings


def ensure_utc(timestamp: datetime) -> datetime:
    """Normalize timestamps so everything is stored in UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def isoformat_ms(timestamp: datetime) -> str:
    """Serialize timestamps with millisecond precision and trailing Z."""
    iso = ensure_utc(timestamp).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


def parse_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class StoreUnavailable(RuntimeError):
    """Raised when the reading store cannot be queried or written."""


class DuplicateReading(RuntimeError):
    """Raised by the store when a (station, timestamp) pair is already persisted."""

    def __init__(self, station_id: str, timestamp: datetime) -> None:
        super().__init__(f"Reading already stored for {station_id} at {isoformat_ms(timestamp)}")
        self.station_id = station_id
        self.timestamp = timestamp


@dataclass(frozen=True, slots=True)
class Reading:
    """A single telemetry sample reported by a weather station."""

    station_id: str
    timestamp: datetime
    temperature: float
    humidity: float
    pressure: float
    precipitation: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "stationId": self.station_id,
            "timestamp": isoformat_ms(self.timestamp),
            "temperature": self.temperature,
            "humidity": self.humidity,
            "pressure": self.pressure,
            "precipitation": self.precipitation,
        }


class ReadingPayload(BaseModel):
    """Boundary shape for readings arriving over HTTP or MQTT."""

    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    station_id: str = Field(alias="stationId", min_length=1, description="Reporting station identifier.")
    timestamp: datetime = Field(description="Observation time; naive values are treated as UTC.")
    temperature: float = Field(ge=-100.0, le=100.0, description="Air temperature in °C.")
    humidity: float = Field(ge=0.0, le=100.0, description="Relative humidity in percent.")
    pressure: float = Field(ge=800.0, le=1200.0, description="Barometric pressure in hPa.")
    precipitation: float = Field(ge=0.0, description="Precipitation in mm.")

    @field_validator("station_id", mode="before")
    @classmethod
    def strip_station(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def to_reading(self) -> Reading:
        return Reading(
            station_id=self.station_id,
            timestamp=self.timestamp,
            temperature=self.temperature,
            humidity=self.humidity,
            pressure=self.pressure,
            precipitation=self.precipitation,
        )


class ReadingStore:
    """SQLite-backed history of station readings keyed by (station, timestamp)."""

    def __init__(self, *, db_path: Path, timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._connection() as conn:
            # The unique key is what keeps concurrent duplicate deliveries from producing two rows.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    station_id TEXT NOT NULL,
                    ts TEXT NOT NULL,
                    temperature REAL NOT NULL,
                    humidity REAL NOT NULL,
                    pressure REAL NOT NULL,
                    precipitation REAL NOT NULL,
                    received_at TEXT NOT NULL,
                    UNIQUE (station_id, ts)
                );
                """
            )
            conn.commit()

    async def exists(self, station_id: str, timestamp: datetime) -> bool:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._select_exists, station_id, isoformat_ms(timestamp))
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to query readings for {station_id}: {exc}") from exc

    async def save(self, reading: Reading) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._insert_row, reading)
            except sqlite3.IntegrityError as exc:
                raise DuplicateReading(reading.station_id, reading.timestamp) from exc
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to store reading for {reading.station_id}: {exc}") from exc

    async def latest(self, station_id: str, limit: int) -> List[Reading]:
        """Return up to ``limit`` readings for a station, newest first."""
        if not station_id or limit <= 0:
            return []
        async with self._lock:
            try:
                return await asyncio.to_thread(self._select_latest, station_id, limit)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to load readings for {station_id}: {exc}") from exc

    async def count(self) -> int:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._select_count)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Failed to count readings: {exc}") from exc

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._truncate)

    def _select_exists(self, station_id: str, ts_iso: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM readings WHERE station_id = ? AND ts = ? LIMIT 1;",
                (station_id, ts_iso),
            ).fetchone()
            return row is not None

    def _insert_row(self, reading: Reading) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO readings
                    (station_id, ts, temperature, humidity, pressure, precipitation, received_at)
                VALUES
                    (:station_id, :ts, :temperature, :humidity, :pressure, :precipitation, :received_at);
                """,
                {
                    "station_id": reading.station_id,
                    "ts": isoformat_ms(reading.timestamp),
                    "temperature": reading.temperature,
                    "humidity": reading.humidity,
                    "pressure": reading.pressure,
                    "precipitation": reading.precipitation,
                    "received_at": isoformat_ms(datetime.now(timezone.utc)),
                },
            )
            conn.commit()

    def _select_latest(self, station_id: str, limit: int) -> List[Reading]:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                SELECT station_id, ts, temperature, humidity, pressure, precipitation
                FROM readings
                WHERE station_id = ?
                ORDER BY ts DESC
                LIMIT ?;
                """,
                (station_id, limit),
            )
            return [
                Reading(
                    station_id=row["station_id"],
                    timestamp=parse_iso(row["ts"]),
                    temperature=row["temperature"],
                    humidity=row["humidity"],
                    pressure=row["pressure"],
                    precipitation=row["precipitation"],
                )
                for row in cursor
            ]

    def _select_count(self) -> int:
        with self._connection() as conn:
            return int(conn.execute("SELECT COUNT(1) FROM readings;").fetchone()[0])

    def _truncate(self) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM readings;")
            conn.commit()


def _resolve_db_path() -> Path:
    return Path(settings.reading_store_db)


reading_store = ReadingStore(db_path=_resolve_db_path(), timeout=settings.reading_store_timeout)
