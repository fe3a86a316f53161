import os
import tempfile
import uuid
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DROPGO_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="dropgo-media-"))

from apps.dropgo.app import db, fcm  # noqa: E402


@pytest.fixture()
def engine(monkeypatch):
    """
    Isolated in-memory SQLite engine shared by the app and the test body.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    monkeypatch.setattr(db, "engine", eng)
    db.init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture(scope="session")
def app():
    from apps.dropgo.app.main import app as dropgo_app

    return dropgo_app


@pytest.fixture()
def client(app, engine):
    """
    TestClient with the lifespan running, so the change-feed hub is live.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def pushes(monkeypatch) -> List[Dict]:
    """
    Record FCM sends instead of calling Google.
    """
    sent: List[Dict] = []

    def _fake_deliver(message):
        note = message["notification"]
        sent.append({"token": message["token"], "title": note["title"], "body": note["body"], "data": message["data"]})
        return True

    monkeypatch.setattr(fcm, "deliver", _fake_deliver)
    return sent


_phone_seq = iter(range(70000000, 79999999))


def _next_phone() -> str:
    return str(next(_phone_seq))


@pytest.fixture()
def make_customer(engine):
    def _make(**overrides) -> db.Customer:
        with Session(engine, expire_on_commit=False) as s:
            c = db.Customer(
                id=str(uuid.uuid4()),
                phone=overrides.get("phone") or _next_phone(),
                full_name=overrides.get("full_name", "Ana Pérez"),
            )
            s.add(c)
            s.commit()
            return c

    return _make


@pytest.fixture()
def make_driver(engine):
    # Default position: central Santa Cruz de la Sierra.
    def _make(**overrides) -> db.Driver:
        with Session(engine, expire_on_commit=False) as s:
            d = db.Driver(
                id=str(uuid.uuid4()),
                phone=overrides.get("phone") or _next_phone(),
                full_name=overrides.get("full_name", "Juan Mamani"),
                is_online=overrides.get("is_online", True),
                latitude=overrides.get("lat", -17.7833),
                longitude=overrides.get("lng", -63.1821),
                push_token=overrides.get("push_token"),
            )
            s.add(d)
            s.commit()
            return d

    return _make


@pytest.fixture()
def make_admin(engine):
    from apps.dropgo.app.accounts import hash_password

    def _make(username: str = "admin", password: str = "admin123") -> db.Admin:
        with Session(engine, expire_on_commit=False) as s:
            a = db.Admin(id=str(uuid.uuid4()), username=username, password_hash=hash_password(password))
            s.add(a)
            s.commit()
            return a

    return _make


@pytest.fixture()
def admin_headers(client, make_admin) -> Dict[str, str]:
    make_admin()
    resp = client.post("/admin/login", json={"username": "admin", "password": "admin123"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture()
def pickup() -> Dict:
    return {
        "pickup_location": "Plaza 24 de Septiembre",
        "pickup_latitude": -17.7834,
        "pickup_longitude": -63.1822,
    }
