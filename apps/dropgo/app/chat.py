import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import RideMessage, RideRequest, get_session, utcnow
from .realtime import publish_row
from .rides import get_ride_or_404

logger = logging.getLogger("dropgo.chat")

router = APIRouter()

QUICK_MESSAGES = [
    "Ya llegué 📍",
    "5 minutos ⏱️",
    "Estoy en camino 🚗",
    "¿Dónde estás? 📍",
    "Gracias 👍",
]

SENDER_TYPES = ("customer", "driver")


class MessageReq(BaseModel):
    sender_type: str
    sender_id: str
    message: str = Field(max_length=1000)
    is_predefined: bool = False


class MessageOut(BaseModel):
    id: str
    ride_request_id: str
    sender_type: str
    sender_id: str
    message: str
    is_predefined: bool
    created_at: Optional[datetime]
    read_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


def is_participant(ride: RideRequest, party_type: str, party_id: str) -> bool:
    if party_type == "customer":
        return ride.customer_id == party_id
    if party_type == "driver":
        return ride.driver_id == party_id
    return False


@router.get("/chat/quick_messages")
def quick_messages():
    return {"messages": QUICK_MESSAGES}


@router.get("/rides/{ride_id}/messages", response_model=List[MessageOut])
def list_messages(
    ride_id: str,
    viewer_type: Optional[str] = None,
    viewer_id: Optional[str] = None,
    s: Session = Depends(get_session),
):
    r = get_ride_or_404(s, ride_id)
    msgs = list(
        s.scalars(
            select(RideMessage)
            .where(RideMessage.ride_request_id == ride_id)
            .order_by(RideMessage.created_at.asc(), RideMessage.id.asc())
        )
    )
    if viewer_type and viewer_id and is_participant(r, viewer_type, viewer_id):
        now = utcnow()
        unread = [m for m in msgs if m.sender_type != viewer_type and m.read_at is None]
        for m in unread:
            m.read_at = now
            s.add(m)
        if unread:
            s.commit()
            for m in unread:
                s.refresh(m)
                publish_row("UPDATE", m)
    return msgs


@router.post("/rides/{ride_id}/messages", response_model=MessageOut)
def send_message(ride_id: str, req: MessageReq, s: Session = Depends(get_session)):
    r = get_ride_or_404(s, ride_id)
    if req.sender_type not in SENDER_TYPES:
        raise HTTPException(status_code=400, detail="sender_type must be customer or driver")
    if not is_participant(r, req.sender_type, req.sender_id):
        raise HTTPException(status_code=403, detail="not a participant of this ride")
    text = req.message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="message required")
    m = RideMessage(
        id=str(uuid.uuid4()),
        ride_request_id=r.id,
        sender_type=req.sender_type,
        sender_id=req.sender_id,
        message=text,
        is_predefined=req.is_predefined,
        created_at=utcnow(),
    )
    s.add(m); s.commit(); s.refresh(m)
    logger.info("ride message", extra={"ride_id": r.id, "sender_type": m.sender_type})
    publish_row("INSERT", m)
    return m
