from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from services.readings import DuplicateReading, Reading, ReadingStore, StoreUnavailable, isoformat_ms

logger = logging.getLogger("weatherhub.ingestion")


class IngestResult(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"


class IngestionFailure(RuntimeError):
    """Raised when a reading could not be checked or persisted; the sender should redeliver."""

    def __init__(self, station_id: str, timestamp: datetime, reason: Optional[str] = None) -> None:
        message = f"Failed to ingest reading for {station_id} at {isoformat_ms(timestamp)}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.station_id = station_id
        self.timestamp = timestamp


class ReadingDeduplicator:
    """Persists readings whose (station, timestamp) key has not been seen before.

    Delivery is at-least-once, so the same reading may arrive more than once and
    from several consumers at the same time. The existence check keeps the common
    case write-free; the store's unique key settles concurrent races, and a lost
    race is reported as a duplicate rather than a failure.
    """

    def __init__(self, store: ReadingStore) -> None:
        self._store = store

    async def ingest(self, reading: Reading) -> IngestResult:
        if not reading.station_id:
            raise ValueError("Reading is missing a station identifier")

        try:
            already_stored = await self._store.exists(reading.station_id, reading.timestamp)
        except StoreUnavailable as exc:
            logger.error(
                "Existence check failed for station %s at %s: %s",
                reading.station_id,
                isoformat_ms(reading.timestamp),
                exc,
            )
            raise IngestionFailure(reading.station_id, reading.timestamp, str(exc)) from exc

        if already_stored:
            logger.warning(
                "Reading already exists for station %s at %s",
                reading.station_id,
                isoformat_ms(reading.timestamp),
            )
            return IngestResult.DUPLICATE

        try:
            await self._store.save(reading)
        except DuplicateReading:
            logger.warning(
                "Concurrent duplicate for station %s at %s discarded",
                reading.station_id,
                isoformat_ms(reading.timestamp),
            )
            return IngestResult.DUPLICATE
        except StoreUnavailable as exc:
            logger.error(
                "Failed to store reading for station %s at %s: %s",
                reading.station_id,
                isoformat_ms(reading.timestamp),
                exc,
            )
            raise IngestionFailure(reading.station_id, reading.timestamp, str(exc)) from exc

        logger.info("Stored reading for station %s at %s", reading.station_id, isoformat_ms(reading.timestamp))
        return IngestResult.STORED
