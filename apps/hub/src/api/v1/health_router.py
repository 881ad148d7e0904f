from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from fastapi import APIRouter, Request

from config import settings
from mqtt.client import get_mqtt_manager
from services.readings import StoreUnavailable, isoformat_ms
from services.weather import weather_service

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger("weatherhub.health")

_SEVERITY = {"disabled": 0, "ok": 1, "warning": 2, "critical": 3}


def worst_status(statuses: Iterable[str]) -> str:
    return max(statuses, key=lambda status: _SEVERITY.get(status, 0), default="ok")


@router.get("")
async def health_summary(request: Request) -> Dict[str, object]:
    readings = await _reading_store_health()
    mqtt = _mqtt_health()
    return {
        "status": worst_status([readings["status"], mqtt["status"]]),
        "version": settings.app_version,
        "uptime": _uptime(request),
        "readings": readings,
        "forecast_cache": weather_service.cache.stats(),
        "mqtt": {"enabled": mqtt["enabled"], "status": mqtt["status"]},
    }


@router.get("/mqtt")
async def health_mqtt() -> Dict[str, object]:
    return _mqtt_health()


def _mqtt_health() -> Dict[str, object]:
    if not settings.mqtt_enabled:
        return {"enabled": False, "status": "disabled", "connection": None}

    manager = get_mqtt_manager()
    if manager is not None:
        connection = manager.status_snapshot()
        if connection["connected"]:
            status = "ok"
        else:
            status = "warning" if connection["reconnecting"] else "critical"
        return {"enabled": True, "status": status, "connection": connection}

    # startup failed to reach the broker, so there is no manager to ask
    return {
        "enabled": True,
        "status": "critical",
        "connection": {
            "connected": False,
            "reconnecting": False,
            "host": settings.mqtt_host,
            "port": settings.mqtt_port,
            "client_id": settings.mqtt_client_id,
            "topic": settings.mqtt_readings_topic,
            "last_connect_time": None,
            "last_disconnect_time": None,
            "last_disconnect_reason": "manager_unavailable",
            "readings": None,
        },
    }


def _uptime(request: Request) -> Dict[str, object]:
    started_at: Optional[datetime] = getattr(request.app.state, "started_at", None)
    if started_at is None:
        return {"started_at": None, "seconds": None}
    elapsed = datetime.now(timezone.utc) - started_at
    return {"started_at": isoformat_ms(started_at), "seconds": round(elapsed.total_seconds(), 3)}


async def _reading_store_health() -> Dict[str, object]:
    store = weather_service.store
    payload: Dict[str, object] = {"path": str(store.db_path), "count": None, "error": None}
    try:
        payload["count"] = await store.count()
    except StoreUnavailable as exc:
        logger.warning("Reading store health check failed: %s", exc)
        payload.update(status="critical", error=str(exc))
        return payload
    payload["status"] = "ok"
    return payload
