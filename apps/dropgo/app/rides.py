import logging
import uuid
from datetime import datetime, time, timezone
from typing import Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import fcm, settings
from .accounts import get_customer_or_404, get_driver_or_404
from .db import (
    ACCEPTED,
    ACTIVE_STATUSES,
    BUSY_STATUSES,
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    PENDING,
    Customer,
    Driver,
    Rating,
    RideRequest,
    get_session,
    utcnow,
)
from .geo import eta_minutes, haversine_km, nearby
from .realtime import publish_row

logger = logging.getLogger("dropgo.rides")

router = APIRouter()


# ---- Schemas ----
class FindDriversReq(BaseModel):
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    max_distance: float = Field(default=5, gt=0, le=100)


class NearbyDriverOut(BaseModel):
    id: str
    full_name: Optional[str]
    phone: str
    profile_image_url: Optional[str]
    latitude: float
    longitude: float
    distance: float
    eta_minutes: int


class RideRequestReq(BaseModel):
    customer_id: Optional[str] = None
    pickup_location: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    dropoff_location: Optional[str] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    driver_id: Optional[str] = None


class RideOut(BaseModel):
    id: str
    request_group_id: Optional[str]
    customer_id: str
    driver_id: str
    pickup_location: str
    pickup_latitude: float
    pickup_longitude: float
    dropoff_location: Optional[str]
    dropoff_latitude: Optional[float]
    dropoff_longitude: Optional[float]
    status: str
    created_at: Optional[datetime]
    accepted_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancelled_by: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class RideDetailOut(RideOut):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    driver_image_url: Optional[str] = None
    distance_km: Optional[float] = None
    has_rated: Optional[bool] = None
    customer_rating: Optional[int] = None
    customer_comment: Optional[str] = None


class RequestRideOut(BaseModel):
    success: bool
    request_group_id: Optional[str]
    drivers_notified: int
    requests: List[RideOut]


class HistoryStats(BaseModel):
    total: int
    completed: int
    cancelled: int


class DriverHistoryOut(BaseModel):
    rides: List[RideDetailOut]
    stats: HistoryStats


# ---- Helpers ----
def get_ride_or_404(s: Session, ride_id: str) -> RideRequest:
    r = s.get(RideRequest, ride_id)
    if not r:
        raise HTTPException(status_code=404, detail="ride not found")
    return r


def busy_ride_for_driver(s: Session, driver_id: str) -> Optional[RideRequest]:
    return s.scalar(
        select(RideRequest)
        .where(RideRequest.driver_id == driver_id, RideRequest.status.in_(BUSY_STATUSES))
        .order_by(RideRequest.created_at.desc())
        .limit(1)
    )


def active_rides_for_customer(s: Session, customer_id: str) -> List[RideRequest]:
    return list(
        s.scalars(
            select(RideRequest)
            .where(RideRequest.customer_id == customer_id, RideRequest.status.in_(ACTIVE_STATUSES))
            .order_by(RideRequest.created_at.desc())
        )
    )


def available_drivers(s: Session, pickup_lat: float, pickup_lng: float, max_km: float, skip_busy: bool = True):
    """Online drivers within ``max_km`` of the pickup, nearest first; drivers on a ride are left out unless ``skip_busy`` is off."""
    q = select(Driver).where(Driver.is_online.is_(True))
    if skip_busy:
        busy = select(RideRequest.driver_id).where(RideRequest.status.in_(BUSY_STATUSES))
        q = q.where(Driver.id.not_in(busy))
    candidates = s.scalars(q).all()
    return nearby(pickup_lat, pickup_lng, candidates, max_km)


def _publish(rides: Iterable[RideRequest], event: str = "UPDATE"):
    for r in rides:
        publish_row(event, r)


def _notify(driver: Driver, ride: RideRequest, distance_km: Optional[float]):
    try:
        fcm.notify_driver_new_request(driver, ride, distance_km)
    except Exception:
        logger.warning("push failed", extra={"driver_id": driver.id, "ride_id": ride.id}, exc_info=True)


def _stop_sharing(s: Session, driver_id: str):
    d = s.get(Driver, driver_id)
    if d and d.is_sharing_location:
        d.is_sharing_location = False
        d.current_lat = None
        d.current_lng = None
        s.add(d)
        return d
    return None


def _customers(s: Session, ids: Iterable[str]) -> Dict[str, Customer]:
    ids = set(ids)
    if not ids:
        return {}
    return {c.id: c for c in s.scalars(select(Customer).where(Customer.id.in_(ids)))}


def _drivers(s: Session, ids: Iterable[str]) -> Dict[str, Driver]:
    ids = set(ids)
    if not ids:
        return {}
    return {d.id: d for d in s.scalars(select(Driver).where(Driver.id.in_(ids)))}


def _with_customer(s: Session, rides: List[RideRequest]) -> List[RideDetailOut]:
    customers = _customers(s, (r.customer_id for r in rides))
    out = []
    for r in rides:
        c = customers.get(r.customer_id)
        item = RideDetailOut.model_validate(r)
        item.customer_name = (c.full_name if c else None) or "Customer"
        item.customer_phone = (c.phone if c else None) or ""
        out.append(item)
    return out


def _with_driver(s: Session, rides: List[RideRequest], default_name: Optional[str] = None) -> List[RideDetailOut]:
    drivers = _drivers(s, (r.driver_id for r in rides))
    out = []
    for r in rides:
        d = drivers.get(r.driver_id)
        item = RideDetailOut.model_validate(r)
        item.driver_name = (d.full_name if d else None) or default_name
        item.driver_phone = d.phone if d else None
        item.driver_image_url = d.profile_image_url if d else None
        out.append(item)
    return out


# ---- Matching ----
@router.post("/rides/find-drivers")
def find_drivers(req: FindDriversReq, s: Session = Depends(get_session)):
    if req.pickup_latitude is None or req.pickup_longitude is None:
        raise HTTPException(status_code=400, detail="pickup location required")
    found = available_drivers(s, req.pickup_latitude, req.pickup_longitude, req.max_distance, skip_busy=False)
    drivers = [
        NearbyDriverOut(
            id=d.id,
            full_name=d.full_name,
            phone=d.phone,
            profile_image_url=d.profile_image_url,
            latitude=d.latitude,
            longitude=d.longitude,
            distance=round(km, 3),
            eta_minutes=eta_minutes(km),
        )
        for d, km in found
    ]
    return {"drivers": drivers, "count": len(drivers)}


@router.post("/rides/request", response_model=RequestRideOut)
def request_ride(req: RideRequestReq, s: Session = Depends(get_session)):
    if (
        not req.customer_id
        or not (req.pickup_location or "").strip()
        or req.pickup_latitude is None
        or req.pickup_longitude is None
    ):
        raise HTTPException(status_code=400, detail="missing required fields")
    customer = get_customer_or_404(s, req.customer_id)
    if active_rides_for_customer(s, customer.id):
        raise HTTPException(status_code=409, detail="customer already has an active ride")

    if req.driver_id:
        d = get_driver_or_404(s, req.driver_id)
        if not d.is_online:
            raise HTTPException(status_code=409, detail="driver is offline")
        if busy_ride_for_driver(s, d.id) is not None:
            raise HTTPException(status_code=409, detail="driver is busy")
        targets = [(d, None)]
        group_id = None
    else:
        targets = available_drivers(s, req.pickup_latitude, req.pickup_longitude, settings.NEARBY_RADIUS_KM)
        if not targets:
            raise HTTPException(status_code=404, detail="no drivers available nearby")
        group_id = str(uuid.uuid4())

    now = utcnow()
    rides = []
    for d, _km in targets:
        r = RideRequest(
            id=str(uuid.uuid4()),
            request_group_id=group_id,
            customer_id=customer.id,
            driver_id=d.id,
            pickup_location=req.pickup_location.strip(),
            pickup_latitude=req.pickup_latitude,
            pickup_longitude=req.pickup_longitude,
            dropoff_location=req.dropoff_location,
            dropoff_latitude=req.dropoff_latitude,
            dropoff_longitude=req.dropoff_longitude,
            status=PENDING,
            created_at=now,
        )
        s.add(r)
        rides.append(r)
    s.commit()
    for r in rides:
        s.refresh(r)
    logger.info(
        "ride requested",
        extra={"customer_id": customer.id, "request_group_id": group_id, "drivers_notified": len(rides)},
    )
    _publish(rides, "INSERT")
    for (d, km), r in zip(targets, rides):
        _notify(d, r, km)
    return RequestRideOut(
        success=True,
        request_group_id=group_id,
        drivers_notified=len(rides),
        requests=[RideOut.model_validate(r) for r in rides],
    )


# ---- Lifecycle ----
def _own_ride(s: Session, ride_id: str, driver_id: str) -> RideRequest:
    r = get_ride_or_404(s, ride_id)
    if r.driver_id != driver_id:
        raise HTTPException(status_code=403, detail="not your ride")
    return r


def accept_ride_request(s: Session, ride_id: str, driver_id: str) -> RideRequest:
    """
    Flip one pending row to accepted and cancel its pending siblings, in a
    single transaction. The pending -> accepted update is conditional so two
    drivers racing for the same group cannot both win.
    """
    r = _own_ride(s, ride_id, driver_id)
    if r.status != PENDING:
        raise HTTPException(status_code=409, detail="ride no longer available")
    if busy_ride_for_driver(s, driver_id) is not None:
        raise HTTPException(status_code=409, detail="driver already has an active ride")
    group_id = r.request_group_id
    now = utcnow()
    try:
        res = s.execute(
            update(RideRequest)
            .where(RideRequest.id == ride_id, RideRequest.status == PENDING)
            .values(status=ACCEPTED, accepted_at=now)
        )
        if res.rowcount != 1:
            raise HTTPException(status_code=409, detail="ride no longer available")
        sibling_ids: List[str] = []
        if group_id:
            sibling_ids = list(
                s.scalars(
                    select(RideRequest.id).where(
                        RideRequest.request_group_id == group_id,
                        RideRequest.id != ride_id,
                        RideRequest.status == PENDING,
                    )
                )
            )
            if sibling_ids:
                s.execute(
                    update(RideRequest)
                    .where(RideRequest.id.in_(sibling_ids), RideRequest.status == PENDING)
                    .values(status=CANCELLED, cancelled_at=now, cancelled_by="system")
                )
            won = s.scalar(
                select(func.count())
                .select_from(RideRequest)
                .where(RideRequest.request_group_id == group_id, RideRequest.status.in_(BUSY_STATUSES))
            )
            if won != 1:
                raise HTTPException(status_code=409, detail="ride no longer available")
        s.commit()
    except HTTPException:
        s.rollback()
        raise
    except OperationalError:
        # lock conflict with a concurrent accept
        s.rollback()
        logger.info("accept lost race", extra={"ride_id": ride_id, "driver_id": driver_id})
        raise HTTPException(status_code=409, detail="ride no longer available")
    s.expire_all()
    r = s.get(RideRequest, ride_id)
    logger.info("ride accepted", extra={"ride_id": ride_id, "driver_id": driver_id, "cancelled_siblings": len(sibling_ids)})
    _publish([r])
    if sibling_ids:
        _publish(s.scalars(select(RideRequest).where(RideRequest.id.in_(sibling_ids))).all())
    return r


@router.post("/rides/{ride_id}/accept", response_model=RideOut)
def accept_ride(ride_id: str, driver_id: str, s: Session = Depends(get_session)):
    return accept_ride_request(s, ride_id, driver_id)


@router.post("/rides/{ride_id}/reject", response_model=RideOut)
def reject_ride(ride_id: str, driver_id: str, s: Session = Depends(get_session)):
    r = _own_ride(s, ride_id, driver_id)
    if r.status != PENDING:
        raise HTTPException(status_code=409, detail="ride is not pending")
    r.status = CANCELLED; r.cancelled_at = utcnow(); r.cancelled_by = "driver"
    s.add(r); s.commit(); s.refresh(r)
    _publish([r])
    return r


@router.post("/rides/{ride_id}/start", response_model=RideOut)
def start_ride(ride_id: str, driver_id: str, s: Session = Depends(get_session)):
    r = _own_ride(s, ride_id, driver_id)
    if r.status != ACCEPTED:
        raise HTTPException(status_code=409, detail="cannot start")
    r.status = IN_PROGRESS; r.started_at = utcnow()
    s.add(r); s.commit(); s.refresh(r)
    _publish([r])
    return r


@router.post("/rides/{ride_id}/complete", response_model=RideOut)
def complete_ride(ride_id: str, driver_id: str, s: Session = Depends(get_session)):
    r = _own_ride(s, ride_id, driver_id)
    if r.status != IN_PROGRESS:
        raise HTTPException(status_code=409, detail="cannot complete")
    r.status = COMPLETED; r.completed_at = utcnow()
    s.add(r)
    d = _stop_sharing(s, driver_id)
    s.commit(); s.refresh(r)
    _publish([r])
    if d is not None:
        s.refresh(d)
        publish_row("UPDATE", d)
    return r


@router.post("/customers/{customer_id}/rides/cancel")
def cancel_customer_rides(customer_id: str, s: Session = Depends(get_session)):
    get_customer_or_404(s, customer_id)
    rides = active_rides_for_customer(s, customer_id)
    if not rides:
        raise HTTPException(status_code=404, detail="no active rides")
    now = utcnow()
    stopped = []
    for r in rides:
        if r.status in BUSY_STATUSES:
            d = _stop_sharing(s, r.driver_id)
            if d is not None:
                stopped.append(d)
        r.status = CANCELLED; r.cancelled_at = now; r.cancelled_by = "customer"
        s.add(r)
    s.commit()
    logger.info("customer cancelled", extra={"customer_id": customer_id, "cancelled": len(rides)})
    _publish(rides)
    for d in stopped:
        publish_row("UPDATE", d)
    return {"success": True, "cancelled": len(rides)}


# ---- Listings ----
@router.get("/rides/{ride_id}", response_model=RideOut)
def get_ride(ride_id: str, s: Session = Depends(get_session)):
    return get_ride_or_404(s, ride_id)


@router.get("/drivers/{driver_id}/requests", response_model=List[RideDetailOut])
def driver_pending_requests(driver_id: str, s: Session = Depends(get_session)):
    d = get_driver_or_404(s, driver_id)
    rides = list(
        s.scalars(
            select(RideRequest)
            .where(RideRequest.driver_id == driver_id, RideRequest.status == PENDING)
            .order_by(RideRequest.created_at.desc())
        )
    )
    out = _with_customer(s, rides)
    if d.latitude is not None and d.longitude is not None:
        for item in out:
            km = haversine_km(d.latitude, d.longitude, item.pickup_latitude, item.pickup_longitude)
            item.distance_km = round(km, 3)
    return out


@router.get("/drivers/{driver_id}/active_ride", response_model=RideDetailOut)
def driver_active_ride(driver_id: str, s: Session = Depends(get_session)):
    get_driver_or_404(s, driver_id)
    r = busy_ride_for_driver(s, driver_id)
    if r is None:
        raise HTTPException(status_code=404, detail="no active ride")
    return _with_customer(s, [r])[0]


@router.get("/drivers/{driver_id}/history", response_model=DriverHistoryOut)
def driver_history(driver_id: str, filter: str = "all", limit: int = 100, s: Session = Depends(get_session)):
    get_driver_or_404(s, driver_id)
    if filter == "completed":
        statuses = (COMPLETED,)
    elif filter == "cancelled":
        statuses = (CANCELLED,)
    elif filter == "all":
        statuses = (COMPLETED, CANCELLED)
    else:
        raise HTTPException(status_code=400, detail="filter must be all, completed or cancelled")
    limit = max(1, min(limit, 500))
    rides = list(
        s.scalars(
            select(RideRequest)
            .where(RideRequest.driver_id == driver_id, RideRequest.status.in_(statuses))
            .order_by(RideRequest.created_at.desc())
            .limit(limit)
        )
    )
    out = _with_customer(s, rides)
    ratings = {}
    if rides:
        ratings = {
            rt.ride_request_id: rt
            for rt in s.scalars(
                select(Rating).where(
                    Rating.ride_request_id.in_([r.id for r in rides]), Rating.rating_from == "customer"
                )
            )
        }
    for item in out:
        rt = ratings.get(item.id)
        if rt:
            item.customer_rating = rt.rating
            item.customer_comment = rt.comment
    counts = dict(
        s.execute(
            select(RideRequest.status, func.count())
            .where(RideRequest.driver_id == driver_id, RideRequest.status.in_((COMPLETED, CANCELLED)))
            .group_by(RideRequest.status)
        ).all()
    )
    stats = HistoryStats(
        total=sum(counts.values()),
        completed=counts.get(COMPLETED, 0),
        cancelled=counts.get(CANCELLED, 0),
    )
    return DriverHistoryOut(rides=out, stats=stats)


@router.get("/customers/{customer_id}/requests", response_model=List[RideDetailOut])
def customer_requests(customer_id: str, s: Session = Depends(get_session)):
    get_customer_or_404(s, customer_id)
    return _with_driver(s, active_rides_for_customer(s, customer_id))


@router.get("/customers/{customer_id}/ride_status", response_model=RideDetailOut)
def customer_ride_status(customer_id: str, s: Session = Depends(get_session)):
    get_customer_or_404(s, customer_id)
    r = s.scalar(
        select(RideRequest)
        .where(
            RideRequest.customer_id == customer_id,
            RideRequest.status.in_((PENDING, ACCEPTED, IN_PROGRESS, COMPLETED)),
        )
        .order_by(RideRequest.created_at.desc())
        .limit(1)
    )
    if r is None:
        raise HTTPException(status_code=404, detail="no rides")
    item = _with_driver(s, [r])[0]
    item.has_rated = (
        s.scalar(select(Rating.id).where(Rating.ride_request_id == r.id, Rating.rating_from == "customer"))
        is not None
    )
    return item


@router.get("/customers/{customer_id}/notifications", response_model=List[RideDetailOut])
def customer_notifications(customer_id: str, s: Session = Depends(get_session)):
    get_customer_or_404(s, customer_id)
    rides = list(
        s.scalars(
            select(RideRequest)
            .where(RideRequest.customer_id == customer_id, RideRequest.status == ACCEPTED)
            .order_by(RideRequest.accepted_at.desc())
            .limit(10)
        )
    )
    return _with_driver(s, rides, default_name="Driver")


def rides_since(s: Session, since: datetime, status: Optional[str] = None) -> int:
    q = select(func.count()).select_from(RideRequest).where(RideRequest.created_at >= since)
    if status:
        q = q.where(RideRequest.status == status)
    return int(s.scalar(q) or 0)


def start_of_today() -> datetime:
    return datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
