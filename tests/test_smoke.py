"""
Smoke tests: the app is wired, health answers and cross-cutting middleware runs.
"""
import logging

from dropgo_shared.logging import JsonFormatter
from dropgo_shared.request_id import _clean


def test_health_reports_database(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["service"] == "DropGo API"
    assert data["database"] == "ok"


def test_health_degraded_when_database_is_down(client, monkeypatch):
    from apps.dropgo.app import db

    def _boom():
        raise ConnectionError("db down")

    monkeypatch.setattr(db, "ping", _boom)
    resp = client.get("/health")
    assert resp.status_code == 503
    assert resp.json()["status"] == "degraded"
    assert resp.json()["database"] == "ConnectionError"


def test_request_id_is_echoed_or_generated(client):
    resp = client.get("/config/tariffs", headers={"X-Request-ID": "abc-123"})
    assert resp.headers["X-Request-ID"] == "abc-123"
    generated = client.get("/config/tariffs").headers["X-Request-ID"]
    assert generated and generated != "abc-123"


def test_request_id_cleaning():
    assert _clean(" abc ") == "abc"
    for raw in ("x" * 100, "bad\nid", None):
        rid = _clean(raw)
        assert len(rid) == 32 and rid != raw


def test_json_log_lines_carry_extra_fields():
    import json

    record = logging.LogRecord("dropgo.rides", logging.INFO, __file__, 1, "ride requested", None, None)
    record.ride_id = "r-1"
    line = json.loads(JsonFormatter().format(record))
    assert line["message"] == "ride requested"
    assert line["logger"] == "dropgo.rides"
    assert line["ride_id"] == "r-1"
