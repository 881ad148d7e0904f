import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from asyncio_mqtt import Client, MqttCodeError, MqttError

from services.weather import WeatherService, weather_service
from .consumer import ReadingConsumer

LOGGER_NAME = "weatherhub.mqtt"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(slots=True)
class BrokerOptions:
    host: str
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    tls: bool = False

    def client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"port": self.port, "client_id": self.client_id}
        if self.username:
            kwargs["username"] = self.username
            kwargs["password"] = self.password
        if self.tls:
            kwargs["tls_context"] = ssl.create_default_context()
        return kwargs


class MqttManager:
    """Keeps one broker session alive and a ReadingConsumer attached to it.

    A disconnect reported by the consumer schedules a reconnect loop with
    exponential backoff; counters from every consumer generation are folded
    into ``status_snapshot`` so they survive reconnects.
    """

    def __init__(
        self,
        broker: BrokerOptions,
        service: WeatherService,
        *,
        topic_filter: str,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        ingest_attempts: int = 3,
    ):
        self.broker = broker
        self.topic_filter = topic_filter
        self.log = logging.getLogger(LOGGER_NAME)
        self._service = service
        self._initial_backoff = initial_backoff
        self._max_backoff = max(max_backoff, initial_backoff)
        self._ingest_attempts = ingest_attempts
        self._client: Optional[Client] = None
        self._consumer: Optional[ReadingConsumer] = None
        self._retired_outcomes: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._connected_at: Optional[datetime] = None
        self._disconnected_at: Optional[datetime] = None
        self._disconnect_reason: Optional[str] = None

    @property
    def host(self) -> str:
        return self.broker.host

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        self._running = True
        async with self._lock:
            await self._open_session()

    async def disconnect(self) -> None:
        self._running = False
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._close_session("shutdown")

    async def notify_disconnect(self, source: str, exc: BaseException | None = None) -> None:
        if not self._running:
            return
        reason = f"{source}: {exc}" if exc else source
        self.log.warning("MQTT session lost (%s)", reason)
        self._disconnect_reason = reason
        self._disconnected_at = _utc_now()
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect(), name="mqtt-reconnect")

    async def _reconnect(self) -> None:
        delay = self._initial_backoff
        try:
            while self._running:
                async with self._lock:
                    await self._close_session(None)
                await asyncio.sleep(delay)
                try:
                    async with self._lock:
                        if not self._running:
                            return
                        await self._open_session()
                except MqttError as exc:
                    self.log.warning("MQTT reconnect to %s failed: %s", self.broker.host, exc)
                    delay = min(delay * 2.0, self._max_backoff)
                    continue
                self.log.info("MQTT reconnected to %s after %.1fs backoff", self.broker.host, delay)
                return
        finally:
            self._reconnect_task = None

    async def _open_session(self) -> None:
        client = Client(self.broker.host, **self.broker.client_kwargs())
        await client.connect()
        self._client = client
        self._connected_at = _utc_now()
        self._disconnect_reason = None
        self.log.info("MQTT connected to %s:%s, consuming %s", self.broker.host, self.broker.port, self.topic_filter)
        self._consumer = ReadingConsumer(
            client,
            self._service,
            topic_filter=self.topic_filter,
            on_disconnect=self.notify_disconnect,
            ingest_attempts=self._ingest_attempts,
            ingest_backoff=self._initial_backoff,
            ingest_max_backoff=self._max_backoff,
        )
        await self._consumer.start()

    async def _close_session(self, reason: Optional[str]) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await consumer.stop()
            self._retire(consumer)
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except (MqttCodeError, MqttError):
            await client.force_disconnect()
        self.log.info("MQTT disconnected from %s", self.broker.host)
        self._disconnected_at = _utc_now()
        if self._disconnect_reason is None:
            self._disconnect_reason = reason

    def _retire(self, consumer: ReadingConsumer) -> None:
        outcomes = getattr(consumer, "outcomes", None) or {}
        for key, value in outcomes.items():
            self._retired_outcomes[key] = self._retired_outcomes.get(key, 0) + value

    def reading_outcomes(self) -> Dict[str, int]:
        totals = dict(self._retired_outcomes)
        current = getattr(self._consumer, "outcomes", None) or {}
        for key, value in current.items():
            totals[key] = totals.get(key, 0) + value
        return totals

    def status_snapshot(self) -> dict:
        return {
            "connected": self.connected,
            "reconnecting": self._reconnect_task is not None and not self._reconnect_task.done(),
            "host": self.broker.host,
            "port": self.broker.port,
            "client_id": self.broker.client_id,
            "topic": self.topic_filter,
            "last_connect_time": _iso(self._connected_at),
            "last_disconnect_time": _iso(self._disconnected_at),
            "last_disconnect_reason": self._disconnect_reason,
            "readings": self.reading_outcomes(),
        }


_manager: Optional[MqttManager] = None


def get_mqtt_manager() -> Optional[MqttManager]:
    return _manager


def build_manager(settings, service: Optional[WeatherService] = None) -> MqttManager:
    broker = BrokerOptions(
        host=settings.mqtt_host,
        port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        tls=settings.mqtt_tls,
    )
    return MqttManager(
        broker,
        service or weather_service,
        topic_filter=settings.mqtt_readings_topic,
        initial_backoff=settings.mqtt_reconnect_initial_delay,
        max_backoff=settings.mqtt_reconnect_max_delay,
        ingest_attempts=settings.mqtt_ingest_attempts,
    )


async def startup(settings, service: Optional[WeatherService] = None) -> None:
    global _manager
    manager = build_manager(settings, service)
    try:
        await manager.connect()
    except MqttError as exc:
        logging.getLogger(LOGGER_NAME).error("MQTT failed to connect to %s: %s", settings.mqtt_host, exc)
        _manager = None
        return
    _manager = manager


async def shutdown() -> None:
    global _manager
    manager, _manager = _manager, None
    if manager is not None:
        await manager.disconnect()
