import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional, Type, Union

import bcrypt
from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import settings
from .db import Admin, AdminSession, Customer, Driver, as_utc, get_session, utcnow
from .realtime import publish_row
from .storage import CUSTOMER_BUCKET, DRIVER_BUCKET, save_profile_image

logger = logging.getLogger("dropgo.accounts")

router = APIRouter()

_PHONE_JUNK = re.compile(r"[\s\-().+]")

Account = Union[Customer, Driver]


def normalize_phone(raw: Optional[str]) -> str:
    phone = _PHONE_JUNK.sub("", raw or "")
    if not phone.isdigit() or not (8 <= len(phone) <= 15):
        raise HTTPException(status_code=400, detail="invalid phone")
    return phone


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), (hashed or "").encode())
    except ValueError:
        # malformed stored hash
        return False


# ---- Schemas ----
class RegisterReq(BaseModel):
    phone: Optional[str] = None
    full_name: Optional[str] = None


class LoginReq(BaseModel):
    phone: Optional[str] = None


class ProfileReq(BaseModel):
    full_name: Optional[str] = None


class CustomerOut(BaseModel):
    id: str
    phone: str
    full_name: Optional[str]
    profile_image_url: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class DriverOut(BaseModel):
    id: str
    phone: str
    full_name: Optional[str]
    profile_image_url: Optional[str]
    is_online: bool
    latitude: Optional[float]
    longitude: Optional[float]
    last_location_update: Optional[datetime]
    is_sharing_location: bool
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


# ---- Shared customer/driver flow ----
def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="full name required")
    return name


def _register(s: Session, model: Type[Account], req: RegisterReq) -> Account:
    phone = normalize_phone(req.phone)
    name = _clean_name(req.full_name)
    if s.scalar(select(model).where(model.phone == phone)) is not None:
        raise HTTPException(status_code=409, detail="phone already registered")
    acct = model(id=str(uuid.uuid4()), phone=phone, full_name=name)
    s.add(acct)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail="phone already registered")
    s.refresh(acct)
    logger.info("account registered", extra={"table": model.__tablename__, "account_id": acct.id})
    publish_row("INSERT", acct)
    return acct


def _login(s: Session, model: Type[Account], req: LoginReq) -> Account:
    phone = normalize_phone(req.phone)
    acct = s.scalar(select(model).where(model.phone == phone))
    if acct is None:
        raise HTTPException(status_code=404, detail="phone not registered")
    return acct


def get_customer_or_404(s: Session, customer_id: str) -> Customer:
    c = s.get(Customer, customer_id)
    if not c:
        raise HTTPException(status_code=404, detail="customer not found")
    return c


def get_driver_or_404(s: Session, driver_id: str) -> Driver:
    d = s.get(Driver, driver_id)
    if not d:
        raise HTTPException(status_code=404, detail="driver not found")
    return d


def _update_profile(s: Session, acct: Account, req: ProfileReq) -> Account:
    acct.full_name = _clean_name(req.full_name)
    acct.updated_at = utcnow()
    s.add(acct); s.commit(); s.refresh(acct)
    publish_row("UPDATE", acct)
    return acct


def _update_image(s: Session, acct: Account, bucket: str, file: UploadFile) -> Account:
    acct.profile_image_url = save_profile_image(bucket, acct.id, file)
    acct.updated_at = utcnow()
    s.add(acct); s.commit(); s.refresh(acct)
    publish_row("UPDATE", acct)
    return acct


# ---- Customers ----
@router.post("/customers/register", response_model=CustomerOut)
def register_customer(req: RegisterReq, s: Session = Depends(get_session)):
    return _register(s, Customer, req)


@router.post("/customers/login", response_model=CustomerOut)
def login_customer(req: LoginReq, s: Session = Depends(get_session)):
    return _login(s, Customer, req)


@router.get("/customers/{customer_id}", response_model=CustomerOut)
def get_customer(customer_id: str, s: Session = Depends(get_session)):
    return get_customer_or_404(s, customer_id)


@router.post("/customers/{customer_id}/profile", response_model=CustomerOut)
def update_customer_profile(customer_id: str, req: ProfileReq, s: Session = Depends(get_session)):
    return _update_profile(s, get_customer_or_404(s, customer_id), req)


@router.post("/customers/{customer_id}/profile_image", response_model=CustomerOut)
def upload_customer_image(customer_id: str, file: UploadFile = File(...), s: Session = Depends(get_session)):
    return _update_image(s, get_customer_or_404(s, customer_id), CUSTOMER_BUCKET, file)


# ---- Drivers ----
@router.post("/drivers/register", response_model=DriverOut)
def register_driver(req: RegisterReq, s: Session = Depends(get_session)):
    return _register(s, Driver, req)


@router.post("/drivers/login", response_model=DriverOut)
def login_driver(req: LoginReq, s: Session = Depends(get_session)):
    return _login(s, Driver, req)


@router.get("/drivers/{driver_id}", response_model=DriverOut)
def get_driver(driver_id: str, s: Session = Depends(get_session)):
    return get_driver_or_404(s, driver_id)


@router.post("/drivers/{driver_id}/profile", response_model=DriverOut)
def update_driver_profile(driver_id: str, req: ProfileReq, s: Session = Depends(get_session)):
    return _update_profile(s, get_driver_or_404(s, driver_id), req)


@router.post("/drivers/{driver_id}/profile_image", response_model=DriverOut)
def upload_driver_image(driver_id: str, file: UploadFile = File(...), s: Session = Depends(get_session)):
    return _update_image(s, get_driver_or_404(s, driver_id), DRIVER_BUCKET, file)


# ---- Admins ----
class AdminLoginReq(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class AdminPasswordReq(BaseModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


def _bearer(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="admin token required")
    return token.strip()


def require_admin(authorization: Optional[str] = Header(default=None), s: Session = Depends(get_session)) -> Admin:
    sess = s.get(AdminSession, _bearer(authorization))
    if not sess or as_utc(sess.expires_at) <= utcnow():
        raise HTTPException(status_code=401, detail="invalid or expired session")
    admin = s.get(Admin, sess.admin_id)
    if not admin:
        raise HTTPException(status_code=401, detail="invalid or expired session")
    return admin


def create_admin_session(s: Session, admin: Admin) -> AdminSession:
    now = utcnow()
    sess = AdminSession(
        token=secrets.token_urlsafe(32),
        admin_id=admin.id,
        created_at=now,
        expires_at=now + timedelta(hours=settings.ADMIN_SESSION_TTL_HOURS),
    )
    s.add(sess); s.commit(); s.refresh(sess)
    return sess


@router.post("/admin/login")
def admin_login(req: AdminLoginReq, s: Session = Depends(get_session)):
    username = (req.username or "").strip()
    if not username or not req.password:
        raise HTTPException(status_code=401, detail="invalid username or password")
    admin = s.scalar(select(Admin).where(Admin.username == username))
    if not admin or not verify_password(req.password, admin.password_hash):
        logger.info("admin login failed", extra={"username": username})
        raise HTTPException(status_code=401, detail="invalid username or password")
    sess = create_admin_session(s, admin)
    logger.info("admin login", extra={"admin_id": admin.id})
    return {"id": admin.id, "username": admin.username, "token": sess.token, "expires_at": sess.expires_at}


@router.post("/admin/logout")
def admin_logout(authorization: Optional[str] = Header(default=None), s: Session = Depends(get_session)):
    token = _bearer(authorization)
    s.execute(delete(AdminSession).where(AdminSession.token == token))
    s.commit()
    return {"ok": True}


@router.post("/admin/password")
def admin_change_password(req: AdminPasswordReq, admin: Admin = Depends(require_admin), s: Session = Depends(get_session)):
    if not req.current_password or not req.new_password or not req.confirm_password:
        raise HTTPException(status_code=400, detail="all fields are required")
    if req.new_password != req.confirm_password:
        raise HTTPException(status_code=400, detail="passwords do not match")
    if len(req.new_password) < 6:
        raise HTTPException(status_code=400, detail="password must be at least 6 characters")
    if not verify_password(req.current_password, admin.password_hash):
        raise HTTPException(status_code=403, detail="current password is incorrect")
    admin.password_hash = hash_password(req.new_password)
    s.add(admin); s.commit()
    logger.info("admin password changed", extra={"admin_id": admin.id})
    return {"ok": True}
