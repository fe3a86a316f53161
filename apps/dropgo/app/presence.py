import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .accounts import DriverOut, get_driver_or_404
from .db import BUSY_STATUSES, Driver, RideRequest, as_utc, get_session, utcnow
from .geo import eta_minutes, haversine_km
from .realtime import publish_row
from .rides import busy_ride_for_driver, get_ride_or_404

logger = logging.getLogger("dropgo.presence")

router = APIRouter()


class OnlineReq(BaseModel):
    is_online: bool


class LocationReq(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class PushTokenReq(BaseModel):
    token: str = Field(min_length=1, max_length=256)


def _save(s: Session, d: Driver) -> Driver:
    d.updated_at = utcnow()
    s.add(d); s.commit(); s.refresh(d)
    publish_row("UPDATE", d)
    return d


@router.post("/drivers/{driver_id}/online", response_model=DriverOut)
def set_online(driver_id: str, req: OnlineReq, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    d.is_online = req.is_online
    logger.info("driver availability", extra={"driver_id": driver_id, "is_online": req.is_online})
    return _save(s, d)


@router.post("/drivers/{driver_id}/location", response_model=DriverOut)
def update_location(driver_id: str, req: LocationReq, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    d.latitude = req.latitude
    d.longitude = req.longitude
    d.last_location_update = utcnow()
    return _save(s, d)


@router.post("/drivers/{driver_id}/live_location", response_model=DriverOut)
def share_live_location(driver_id: str, req: LocationReq, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    if busy_ride_for_driver(s, driver_id) is None:
        raise HTTPException(status_code=409, detail="no active ride")
    d.current_lat = req.latitude
    d.current_lng = req.longitude
    d.is_sharing_location = True
    d.last_location_update = utcnow()
    return _save(s, d)


@router.delete("/drivers/{driver_id}/live_location", response_model=DriverOut)
def stop_live_location(driver_id: str, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    d.is_sharing_location = False
    d.current_lat = None
    d.current_lng = None
    return _save(s, d)


@router.post("/drivers/{driver_id}/push_token")
def register_push_token(driver_id: str, req: PushTokenReq, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    d.push_token = req.token.strip()
    _save(s, d)
    return {"ok": True}


class DriverLocationOut(BaseModel):
    ride_id: str
    driver_id: str
    latitude: float
    longitude: float
    last_update: Optional[str]
    distance_km: float
    eta_minutes: int


@router.get("/rides/{ride_id}/driver_location", response_model=DriverLocationOut)
def ride_driver_location(ride_id: str, customer_id: Optional[str] = None, s: Session = Depends(get_session)):
    r: RideRequest = get_ride_or_404(s, ride_id)
    if customer_id is not None and r.customer_id != customer_id:
        raise HTTPException(status_code=403, detail="not your ride")
    d = s.get(Driver, r.driver_id)
    if r.status not in BUSY_STATUSES or not d or not d.is_sharing_location or d.current_lat is None or d.current_lng is None:
        raise HTTPException(status_code=404, detail="driver location not available")
    km = haversine_km(d.current_lat, d.current_lng, r.pickup_latitude, r.pickup_longitude)
    last = as_utc(d.last_location_update)
    return DriverLocationOut(
        ride_id=r.id,
        driver_id=d.id,
        latitude=d.current_lat,
        longitude=d.current_lng,
        last_update=last.isoformat() if last else None,
        distance_km=round(km, 3),
        eta_minutes=eta_minutes(km),
    )
