from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal

from fastapi import APIRouter, HTTPException, Path, Query, status
from pydantic import BaseModel, Field

from services.forecast import InvalidHorizon
from services.ingestion import IngestionFailure
from services.readings import ReadingPayload, StoreUnavailable, isoformat_ms
from services.weather import weather_service

router = APIRouter(prefix="/weather", tags=["weather"])
logger = logging.getLogger("weatherhub.api.weather")

MIN_FORECAST_HOURS = 1
MAX_FORECAST_HOURS = 24
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500


class IngestResponse(BaseModel):
    status: Literal["stored", "duplicate"] = Field(description="Whether the reading was new or already known.")
    stationId: str
    timestamp: str


class ForecastPointModel(BaseModel):
    timestamp: str = Field(description="Hour the projection applies to (ISO-8601 UTC).")
    temperature: float
    humidity: float
    pressure: float
    precipitation: float


class ForecastResponse(BaseModel):
    stationId: str
    generatedAt: str = Field(description="When the forecast was computed; cached responses keep the original time.")
    forecasts: List[ForecastPointModel]


class ReadingHistoryResponse(BaseModel):
    stationId: str
    count: int
    data: List[Dict[str, Any]]


@router.post("/data", status_code=status.HTTP_202_ACCEPTED, response_model=IngestResponse)
async def submit_reading(payload: ReadingPayload) -> IngestResponse:
    reading = payload.to_reading()
    logger.info("Received reading from station %s", reading.station_id)
    try:
        result = await weather_service.ingest(reading)
    except IngestionFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestResponse(
        status=result.value,
        stationId=reading.station_id,
        timestamp=isoformat_ms(reading.timestamp),
    )


@router.get("/forecast", response_model=ForecastResponse)
async def get_forecast(
    station_id: str = Query(..., alias="stationId", min_length=1, description="Station to forecast for"),
    hours: int = Query(1, ge=MIN_FORECAST_HOURS, le=MAX_FORECAST_HOURS, description="Forecast horizon in hours"),
) -> Dict[str, Any]:
    station_id = station_id.strip()
    if not station_id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stationId must not be blank")

    logger.info("Requesting forecast for station %s, hours %s", station_id, hours)
    try:
        forecast = await weather_service.get_forecast(station_id, hours)
    except InvalidHorizon as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        logger.error("Forecast for station %s failed: %s", station_id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return forecast.to_payload()


@router.get("/stations/{station_id}/readings", response_model=ReadingHistoryResponse)
async def list_station_readings(
    station_id: str = Path(..., min_length=1),
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT, description="Maximum readings, newest first"),
) -> Dict[str, Any]:
    readings = await weather_service.latest_readings(station_id, limit)
    data = [reading.to_payload() for reading in readings]
    return {"stationId": station_id, "count": len(data), "data": data}
