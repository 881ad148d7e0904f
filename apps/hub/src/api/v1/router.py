from fastapi import APIRouter

from config import settings
from .health_router import router as health_router
from .weather_router import router as weather_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(health_router)
router.include_router(weather_router)


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "mqtt_enabled": settings.mqtt_enabled,
        "mqtt_host": settings.mqtt_host,
        "mqtt_port": settings.mqtt_port,
        "mqtt_readings_topic": settings.mqtt_readings_topic,
        "forecast_max_hours": settings.forecast_max_hours,
        "forecast_history_size": settings.forecast_history_size,
    }
