import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api.v1.router import router as v1_router
from mqtt.client import shutdown as mqtt_shutdown, startup as mqtt_startup
from services.readings import StoreUnavailable

logger = logging.getLogger("weatherhub.hub")


def configure_logging(level: str) -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
    app.state.started_at = datetime.now(timezone.utc)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    # Store failures not translated by a router become 503s here.
    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("Reading store unavailable during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": f"Reading store unavailable: {exc}"}, status_code=503)

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version, "docs": app.docs_url}

    @app.get("/health", tags=["meta"])
    async def health():
        return {"status": "ok", "version": settings.app_version}

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        logger.info(
            "Starting %s %s (history=%s readings, max horizon=%sh, cache ttl=%ss)",
            settings.app_name,
            settings.app_version,
            settings.forecast_history_size,
            settings.forecast_max_hours,
            settings.forecast_cache_ttl,
        )
        if not settings.mqtt_enabled:
            logger.info("MQTT ingestion disabled (set MQTT_ENABLED=true to consume %s)", settings.mqtt_readings_topic)
            return
        await mqtt_startup(settings)

    @app.on_event("shutdown")
    async def _shutdown():
        await mqtt_shutdown()

    return app


app = create_app()
