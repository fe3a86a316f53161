import logging
import uuid
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .accounts import get_driver_or_404
from .db import COMPLETED, Rating, get_session, utcnow
from .realtime import publish_row
from .rides import get_ride_or_404

logger = logging.getLogger("dropgo.ratings")

router = APIRouter()


class RatingReq(BaseModel):
    rating_from: Literal["customer", "driver"]
    rater_id: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


class RatingOut(BaseModel):
    id: str
    ride_request_id: str
    customer_id: str
    driver_id: str
    rating_from: str
    rating: int
    comment: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


def driver_rating_summary(s: Session, driver_id: str):
    avg, count = s.execute(
        select(func.avg(Rating.rating), func.count(Rating.id)).where(
            Rating.driver_id == driver_id, Rating.rating_from == "customer"
        )
    ).one()
    return (round(float(avg), 2) if avg is not None else None), int(count or 0)


@router.post("/rides/{ride_id}/ratings", response_model=RatingOut)
def rate_ride(ride_id: str, req: RatingReq, s: Session = Depends(get_session)):
    r = get_ride_or_404(s, ride_id)
    if r.status != COMPLETED:
        raise HTTPException(status_code=409, detail="ride not completed")
    party = r.customer_id if req.rating_from == "customer" else r.driver_id
    if req.rater_id != party:
        raise HTTPException(status_code=403, detail="not a party to this ride")
    exists = s.scalar(
        select(Rating.id).where(Rating.ride_request_id == ride_id, Rating.rating_from == req.rating_from)
    )
    if exists:
        raise HTTPException(status_code=409, detail="already rated")
    comment = (req.comment or "").strip() or None
    rt = Rating(
        id=str(uuid.uuid4()),
        ride_request_id=r.id,
        customer_id=r.customer_id,
        driver_id=r.driver_id,
        rating_from=req.rating_from,
        rating=req.rating,
        comment=comment,
        created_at=utcnow(),
    )
    s.add(rt)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail="already rated")
    s.refresh(rt)
    logger.info("ride rated", extra={"ride_id": r.id, "rating_from": rt.rating_from, "rating": rt.rating})
    publish_row("INSERT", rt)
    return rt


@router.get("/rides/{ride_id}/ratings")
def get_ride_ratings(ride_id: str, rating_from: Optional[str] = None, s: Session = Depends(get_session)):
    get_ride_or_404(s, ride_id)
    q = select(Rating).where(Rating.ride_request_id == ride_id)
    if rating_from:
        q = q.where(Rating.rating_from == rating_from)
    rows = [RatingOut.model_validate(rt) for rt in s.scalars(q.order_by(Rating.created_at.asc()))]
    return {"rated": bool(rows), "ratings": rows}


@router.get("/drivers/{driver_id}/rating")
def get_driver_rating(driver_id: str, s: Session = Depends(get_session)):
    get_driver_or_404(s, driver_id)
    avg, count = driver_rating_summary(s, driver_id)
    return {"driver_id": driver_id, "average": avg, "count": count}
