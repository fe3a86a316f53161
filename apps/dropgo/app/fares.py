import json
import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from .db import GlobalConfig, get_session, utcnow
from .geo import haversine_km

logger = logging.getLogger("dropgo.fares")

router = APIRouter()

TARIFFS_KEY = "tariffs"


class TariffConfig(BaseModel):
    """Tariffs in Bs. Persisted (and exposed) with the web client's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    base_fare: float = Field(default=7, ge=0, alias="baseFare")
    day_per_km: float = Field(default=2.5, ge=0, alias="dayPerKm")
    night_per_km: float = Field(default=3.5, ge=0, alias="nightPerKm")
    night_start: float = Field(default=21, ge=0, le=24, alias="nightStart")
    night_end: float = Field(default=6, ge=0, le=24, alias="nightEnd")
    extra_per_passenger: float = Field(default=2, ge=0, alias="extraPerPassenger")
    route_factor: float = Field(default=1.2, gt=0, alias="routeFactor")


DEFAULT_TARIFFS = TariffConfig()


def load_tariffs(s: Session) -> TariffConfig:
    row = s.get(GlobalConfig, TARIFFS_KEY)
    if not row or not (row.config_value or "").strip():
        return DEFAULT_TARIFFS
    try:
        return TariffConfig.model_validate(json.loads(row.config_value))
    except (ValueError, ValidationError):
        logger.warning("stored tariffs unreadable, using defaults", exc_info=True)
        return DEFAULT_TARIFFS


def save_tariffs(s: Session, cfg: TariffConfig, updated_by: Optional[str]) -> GlobalConfig:
    row = s.get(GlobalConfig, TARIFFS_KEY)
    if not row:
        row = GlobalConfig(config_key=TARIFFS_KEY)
    row.config_value = json.dumps(cfg.model_dump(by_alias=True))
    row.updated_by = updated_by
    row.updated_at = utcnow()
    s.add(row); s.commit(); s.refresh(row)
    return row


def seed_tariffs(s: Session):
    if s.get(GlobalConfig, TARIFFS_KEY) is None:
        save_tariffs(s, DEFAULT_TARIFFS, "system")


def is_night(time_str: Optional[str], night_start: float, night_end: float) -> bool:
    if not time_str:
        return False
    h, m = (int(p) for p in time_str.split(":")[:2])
    hour = h + m / 60
    if night_start < night_end:
        return night_start <= hour < night_end
    # window wraps midnight, e.g. 21:00-06:00
    return hour >= night_start or hour < night_end


class FareOut(BaseModel):
    base_fare: float
    distance_fare: float
    extra_fare: float
    total: float
    distance_km: float
    is_night: bool
    per_km: float
    passengers: int


def calculate_fare(distance_km: float, passengers: int, time_str: Optional[str], cfg: TariffConfig) -> FareOut:
    if distance_km is None or not math.isfinite(distance_km) or distance_km <= 0:
        raise ValueError("invalid distance")
    adjusted = distance_km * cfg.route_factor
    night = is_night(time_str, cfg.night_start, cfg.night_end)
    per_km = cfg.night_per_km if night else cfg.day_per_km
    distance_fare = adjusted * per_km
    extra_fare = max(0, passengers - 1) * cfg.extra_per_passenger
    return FareOut(
        base_fare=cfg.base_fare,
        distance_fare=distance_fare,
        extra_fare=extra_fare,
        total=cfg.base_fare + distance_fare + extra_fare,
        distance_km=adjusted,
        is_night=night,
        per_km=per_km,
        passengers=passengers,
    )


class FareQuoteReq(BaseModel):
    distance_km: Optional[float] = None
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    passengers: int = Field(default=1, ge=1, le=8)
    time: Optional[str] = Field(default=None, pattern=r"^([01]?\d|2[0-3]):[0-5]\d$")

    @model_validator(mode="after")
    def _distance_or_points(self):
        points = (self.origin_lat, self.origin_lng, self.dest_lat, self.dest_lng)
        if self.distance_km is None and any(p is None for p in points):
            raise ValueError("distance_km or origin/destination coordinates required")
        return self


@router.post("/fares/quote", response_model=FareOut)
def fare_quote(req: FareQuoteReq, s: Session = Depends(get_session)):
    km = req.distance_km
    if km is None:
        km = haversine_km(req.origin_lat, req.origin_lng, req.dest_lat, req.dest_lng)
    time_str = req.time or datetime.now().strftime("%H:%M")
    try:
        return calculate_fare(km, req.passengers, time_str, load_tariffs(s))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/config/tariffs", response_model=TariffConfig)
def get_tariffs(s: Session = Depends(get_session)):
    return load_tariffs(s)
