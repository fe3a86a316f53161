import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint, create_engine, inspect, text
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .settings import DB_SCHEMA, DB_URL

logger = logging.getLogger("dropgo.db")

# Ride lifecycle
PENDING = "pending"
ACCEPTED = "accepted"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = (PENDING, ACCEPTED, IN_PROGRESS)  # customer has a ride going
BUSY_STATUSES = (ACCEPTED, IN_PROGRESS)  # driver is on a ride


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC.
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _schema_args(*args):
    return (*args, {"schema": DB_SCHEMA}) if DB_SCHEMA else (*args, {})


class Base(DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = _schema_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    profile_image_url: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Driver(Base):
    __tablename__ = "drivers"
    __table_args__ = _schema_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    profile_image_url: Mapped[Optional[str]] = mapped_column(String(512), default=None)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    # last known position, used for matching
    latitude: Mapped[Optional[float]] = mapped_column(Float, default=None)
    longitude: Mapped[Optional[float]] = mapped_column(Float, default=None)
    last_location_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # live position, only while on a ride
    is_sharing_location: Mapped[bool] = mapped_column(Boolean, default=False)
    current_lat: Mapped[Optional[float]] = mapped_column(Float, default=None)
    current_lng: Mapped[Optional[float]] = mapped_column(Float, default=None)
    push_token: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RideRequest(Base):
    __tablename__ = "ride_requests"
    __table_args__ = _schema_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    request_group_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    customer_id: Mapped[str] = mapped_column(String(36), index=True)
    driver_id: Mapped[str] = mapped_column(String(36), index=True)
    pickup_location: Mapped[str] = mapped_column(String(255))
    pickup_latitude: Mapped[float] = mapped_column(Float)
    pickup_longitude: Mapped[float] = mapped_column(Float)
    dropoff_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    dropoff_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=PENDING)  # pending|accepted|in_progress|completed|cancelled
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # customer|driver|system


class RideMessage(Base):
    __tablename__ = "ride_messages"
    __table_args__ = _schema_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ride_request_id: Mapped[str] = mapped_column(String(36), index=True)
    sender_type: Mapped[str] = mapped_column(String(16))  # customer|driver
    sender_id: Mapped[str] = mapped_column(String(36))
    message: Mapped[str] = mapped_column(String(1000))
    is_predefined: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Rating(Base):
    __tablename__ = "ratings"
    __table_args__ = _schema_args(UniqueConstraint("ride_request_id", "rating_from", name="uq_ratings_ride_side"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ride_request_id: Mapped[str] = mapped_column(String(36), index=True)
    customer_id: Mapped[str] = mapped_column(String(36))
    driver_id: Mapped[str] = mapped_column(String(36), index=True)
    rating_from: Mapped[str] = mapped_column(String(16))  # customer|driver
    rating: Mapped[int] = mapped_column(Integer)
    comment: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)


class Admin(Base):
    __tablename__ = "admins"
    __table_args__ = _schema_args()
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    password_hash: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)


class AdminSession(Base):
    __tablename__ = "admin_sessions"
    __table_args__ = _schema_args()
    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    admin_id: Mapped[str] = mapped_column(String(36), index=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class GlobalConfig(Base):
    __tablename__ = "global_config"
    __table_args__ = _schema_args()
    config_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    config_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)


engine = create_engine(DB_URL, future=True)


def get_session() -> Session:
    with Session(engine) as s:
        yield s


def ping():
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def row_dict(obj: Any) -> dict:
    """Column values of an ORM row, JSON-safe (datetimes as ISO strings)."""
    out = {}
    for col in obj.__table__.columns:
        v = getattr(obj, col.key)
        if isinstance(v, (datetime, date)):
            v = v.isoformat()
        out[col.key] = v
    return out


# columns added after the first release; sqlite has no ALTER ... IF NOT EXISTS
_LATE_COLUMNS = {
    "drivers": [
        ("is_sharing_location", "BOOLEAN DEFAULT 0"),
        ("current_lat", "FLOAT"),
        ("current_lng", "FLOAT"),
        ("push_token", "VARCHAR(256)"),
    ],
    "ride_requests": [
        ("request_group_id", "VARCHAR(36)"),
        ("cancelled_by", "VARCHAR(16)"),
    ],
}


def init_db(bind=None):
    from .fares import seed_tariffs

    bind = bind or engine
    Base.metadata.create_all(bind)
    if str(bind.url).startswith("sqlite"):
        insp = inspect(bind)
        for table, columns in _LATE_COLUMNS.items():
            existing = {c["name"] for c in insp.get_columns(table)}
            for col, ddl in columns:
                if col in existing:
                    continue
                with bind.begin() as conn:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {ddl}"))
                logger.info("added column", extra={"table": table, "column": col})
    with Session(bind) as s:
        seed_tariffs(s)
