import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from . import settings
from .accounts import CustomerOut, DriverOut, require_admin
from .db import ACTIVE_STATUSES, CANCELLED, COMPLETED, Admin, Customer, Driver, RideRequest, get_session, row_dict, utcnow
from .fares import TariffConfig, load_tariffs, save_tariffs
from .realtime import publish_delete, publish_row
from .rides import rides_since, start_of_today

logger = logging.getLogger("dropgo.admin")

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


class DashboardOut(BaseModel):
    total_customers: int
    total_drivers: int
    online_drivers: int
    rides_today: int
    completed_today: int
    estimated_revenue: float


def _count(s: Session, model, *where) -> int:
    return int(s.scalar(select(func.count()).select_from(model).where(*where)) or 0)


@router.get("/dashboard", response_model=DashboardOut)
def dashboard(s: Session = Depends(get_session)):
    today = start_of_today()
    completed = rides_since(s, today, COMPLETED)
    return DashboardOut(
        total_customers=_count(s, Customer),
        total_drivers=_count(s, Driver),
        online_drivers=_count(s, Driver, Driver.is_online.is_(True)),
        rides_today=rides_since(s, today),
        completed_today=completed,
        estimated_revenue=completed * settings.ADMIN_AVG_FARE,
    )


@router.get("/drivers", response_model=List[DriverOut])
def list_drivers(limit: int = 200, s: Session = Depends(get_session)):
    limit = max(1, min(limit, 1000))
    return s.scalars(select(Driver).order_by(Driver.created_at.desc()).limit(limit)).all()


@router.get("/customers", response_model=List[CustomerOut])
def list_customers(limit: int = 200, s: Session = Depends(get_session)):
    limit = max(1, min(limit, 1000))
    return s.scalars(select(Customer).order_by(Customer.created_at.desc()).limit(limit)).all()


def _cancel_open_rides(s: Session, *where) -> List[RideRequest]:
    rides = list(s.scalars(select(RideRequest).where(RideRequest.status.in_(ACTIVE_STATUSES), or_(*where))))
    now = utcnow()
    for r in rides:
        r.status = CANCELLED; r.cancelled_at = now; r.cancelled_by = "system"
        s.add(r)
    return rides


@router.delete("/drivers/{driver_id}")
def delete_driver(driver_id: str, s: Session = Depends(get_session)):
    d = s.get(Driver, driver_id)
    if not d:
        raise HTTPException(status_code=404, detail="driver not found")
    snapshot = row_dict(d)
    rides = _cancel_open_rides(s, RideRequest.driver_id == driver_id)
    s.delete(d)
    s.commit()
    logger.info("driver deleted", extra={"driver_id": driver_id, "cancelled_rides": len(rides)})
    for r in rides:
        publish_row("UPDATE", r)
    publish_delete("drivers", snapshot)
    return {"ok": True}


@router.delete("/customers/{customer_id}")
def delete_customer(customer_id: str, s: Session = Depends(get_session)):
    c = s.get(Customer, customer_id)
    if not c:
        raise HTTPException(status_code=404, detail="customer not found")
    snapshot = row_dict(c)
    rides = _cancel_open_rides(s, RideRequest.customer_id == customer_id)
    s.delete(c)
    s.commit()
    logger.info("customer deleted", extra={"customer_id": customer_id, "cancelled_rides": len(rides)})
    for r in rides:
        publish_row("UPDATE", r)
    publish_delete("customers", snapshot)
    return {"ok": True}


@router.get("/config/tariffs", response_model=TariffConfig)
def get_tariffs(s: Session = Depends(get_session)):
    return load_tariffs(s)


@router.put("/config/tariffs", response_model=TariffConfig)
def put_tariffs(cfg: TariffConfig, admin: Admin = Depends(require_admin), s: Session = Depends(get_session)):
    save_tariffs(s, cfg, admin.username)
    logger.info("tariffs updated", extra={"admin": admin.username})
    return load_tariffs(s)
