from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, Optional

from asyncio_mqtt import Client, Message, MqttCodeError, MqttError
from paho.mqtt.client import topic_matches_sub
from pydantic import ValidationError

from services.ingestion import IngestionFailure, IngestResult
from services.readings import Reading, ReadingPayload
from services.weather import WeatherService

LOGGER_NAME = "weatherhub.mqtt.consumer"


def _topic_matches(topic: Any, wildcard: str) -> bool:
    if hasattr(topic, "matches"):
        try:
            return topic.matches(wildcard)
        except ValueError:
            # Fall back to string matching for invalid combinations
            pass
    return topic_matches_sub(wildcard, str(topic))


def extract_station_id(topic: Any, topic_filter: str) -> Optional[str]:
    """Return the topic segment matched by the filter's single-level wildcard."""
    filter_parts = topic_filter.split("/")
    if "+" not in filter_parts:
        return None
    index = filter_parts.index("+")
    parts = str(topic).split("/")
    if len(parts) <= index:
        return None
    station_id = parts[index].strip()
    return station_id or None


def build_reading(payload: bytes | str, station_id: Optional[str] = None) -> Optional[Reading]:
    """Decode a JSON reading payload, using the topic's station id when the body omits one."""
    try:
        decoded = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        data = json.loads(decoded)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None

    if not data.get("stationId") and not data.get("station_id") and station_id:
        data["stationId"] = station_id

    try:
        return ReadingPayload.model_validate(data).to_reading()
    except ValidationError:
        return None


def is_disconnect_error(exc: BaseException) -> bool:
    """True when the broker session is gone and only a reconnect can help."""
    if isinstance(exc, MqttCodeError) and exc.rc in (4, 7):
        return True
    return isinstance(exc, MqttError) and "Disconnected" in str(exc)


DisconnectCallback = Callable[[str, Optional[BaseException]], Awaitable[None]]


class ReadingConsumer:
    """Feeds station readings published over MQTT into the weather service.

    The consumer owns a single subscription. Transient loop failures are retried
    after ``retry_delay``; a lost session is reported through ``on_disconnect``
    and ends the loop, leaving reconnection to the owner of the client.

    A QoS 1 message is acknowledged before it is handled, so the broker never
    redelivers it. ``IngestionFailure`` is therefore retried up to
    ``ingest_attempts`` times, backing off from ``ingest_backoff`` to
    ``ingest_max_backoff`` seconds, before the reading is counted as failed.
    """

    def __init__(
        self,
        client: Client,
        service: WeatherService,
        *,
        topic_filter: str,
        logger: Optional[logging.Logger] = None,
        on_disconnect: Optional[DisconnectCallback] = None,
        retry_delay: float = 1.0,
        ingest_attempts: int = 3,
        ingest_backoff: float = 1.0,
        ingest_max_backoff: float = 30.0,
    ) -> None:
        self._client = client
        self._service = service
        self._topic_filter = topic_filter
        self._logger = logger or logging.getLogger(LOGGER_NAME)
        self._on_disconnect = on_disconnect
        self._retry_delay = retry_delay
        self._ingest_attempts = max(1, ingest_attempts)
        self._ingest_backoff = ingest_backoff
        self._ingest_max_backoff = max(ingest_max_backoff, ingest_backoff)
        self._task: Optional[asyncio.Task[None]] = None
        self._outcomes: Counter[str] = Counter()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def outcomes(self) -> Dict[str, int]:
        """Messages handled so far, by outcome: stored, duplicate, rejected or failed."""
        return {key: self._outcomes[key] for key in ("stored", "duplicate", "rejected", "failed")}

    async def start(self) -> None:
        if self._task is not None:
            return
        self._logger.info("Consuming station readings from %s", self._topic_filter)
        self._task = asyncio.create_task(self._run(), name="mqtt-reading-consumer")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # pragma: no cover - logged on shutdown only
            self._logger.warning("Reading consumer ended with error: %s", exc)
        self._logger.info("Stopped consuming %s", self._topic_filter)

    async def handle_message(self, message: Message) -> Optional[IngestResult]:
        station_id = extract_station_id(message.topic, self._topic_filter)
        reading = build_reading(message.payload, station_id)
        if reading is None:
            self._logger.debug("Ignoring reading payload on %s that could not be validated", message.topic)
            self._outcomes["rejected"] += 1
            return None

        self._logger.debug("Received reading for station %s", reading.station_id)
        result = await self._ingest_with_retry(reading, message.topic)
        self._outcomes[result.value if result is not None else "failed"] += 1
        return result

    async def _ingest_with_retry(self, reading: Reading, topic: Any) -> Optional[IngestResult]:
        delay = self._ingest_backoff
        for attempt in range(1, self._ingest_attempts + 1):
            try:
                return await self._service.ingest(reading)
            except IngestionFailure as exc:
                if attempt == self._ingest_attempts:
                    self._logger.error(
                        "Failed to process reading from %s after %s attempt(s): %s", topic, attempt, exc
                    )
                    return None
                self._logger.warning(
                    "Ingest attempt %s/%s for %s failed, retrying in %.1fs: %s",
                    attempt,
                    self._ingest_attempts,
                    topic,
                    delay,
                    exc,
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, self._ingest_max_backoff)
        return None

    async def _run(self) -> None:
        while True:
            try:
                await self._consume()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_disconnect_error(exc):
                    await self._report_disconnect(exc)
                    return
                self._logger.warning("Reading consumer interrupted, resubscribing in %.1fs: %s", self._retry_delay, exc)
                await asyncio.sleep(self._retry_delay)

    async def _consume(self) -> None:
        async with self._client.messages() as messages:
            await self._client.subscribe(self._topic_filter, qos=1)
            try:
                async for message in messages:
                    if _topic_matches(message.topic, self._topic_filter):
                        await self.handle_message(message)
            finally:
                await self._unsubscribe()

    async def _unsubscribe(self) -> None:
        try:
            await self._client.unsubscribe(self._topic_filter)
        except MqttError as exc:
            self._logger.debug("Unsubscribe from %s failed: %s", self._topic_filter, exc)

    async def _report_disconnect(self, exc: BaseException) -> None:
        self._logger.warning("Reading consumer lost the broker session: %s", exc)
        if self._on_disconnect is None:
            return
        try:
            await self._on_disconnect("reading consumer", exc)
        except Exception as callback_exc:  # pragma: no cover - callback errors are only logged
            self._logger.error("Disconnect callback failed: %s", callback_exc)
