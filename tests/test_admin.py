import pytest
from sqlalchemy.orm import Session

from apps.dropgo.app import db


def test_admin_routes_require_a_session(client):
    assert client.get("/admin/dashboard").status_code == 401
    assert client.get("/admin/drivers", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.put("/admin/config/tariffs", json={}).status_code == 401


def test_dashboard_counts(client, admin_headers, make_customer, make_driver, pickup):
    c1, c2 = make_customer(), make_customer()
    d = make_driver()
    make_driver(is_online=False)

    rid = client.post("/rides/request", json={"customer_id": c1.id, **pickup}).json()["requests"][0]["id"]
    for step in ("accept", "start", "complete"):
        client.post(f"/rides/{rid}/{step}", params={"driver_id": d.id})
    client.post("/rides/request", json={"customer_id": c2.id, **pickup})

    body = client.get("/admin/dashboard", headers=admin_headers).json()
    assert body == {
        "total_customers": 2,
        "total_drivers": 2,
        "online_drivers": 1,
        "rides_today": 2,
        "completed_today": 1,
        "estimated_revenue": 20.0,
    }


def test_lists_and_deletes(client, admin_headers, make_customer, make_driver, pickup, engine):
    c = make_customer()
    d = make_driver()
    rid = client.post("/rides/request", json={"customer_id": c.id, **pickup}).json()["requests"][0]["id"]

    drivers = client.get("/admin/drivers", headers=admin_headers).json()
    assert [x["id"] for x in drivers] == [d.id]
    customers = client.get("/admin/customers", headers=admin_headers, params={"limit": 5}).json()
    assert [x["id"] for x in customers] == [c.id]

    assert client.delete(f"/admin/drivers/{d.id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/admin/drivers/{d.id}", headers=admin_headers).status_code == 404
    with Session(engine) as s:
        assert s.get(db.Driver, d.id) is None
        ride = s.get(db.RideRequest, rid)
        assert ride.status == "cancelled"
        assert ride.cancelled_by == "system"

    assert client.delete(f"/admin/customers/{c.id}", headers=admin_headers).status_code == 200
    assert client.get(f"/customers/{c.id}").status_code == 404


def test_tariff_update_drives_quotes(client, admin_headers, engine):
    current = client.get("/admin/config/tariffs", headers=admin_headers).json()
    assert current["baseFare"] == 7

    new = dict(current, baseFare=10, dayPerKm=3)
    resp = client.put("/admin/config/tariffs", headers=admin_headers, json=new)
    assert resp.status_code == 200
    assert resp.json()["baseFare"] == 10

    with Session(engine) as s:
        assert s.get(db.GlobalConfig, "tariffs").updated_by == "admin"

    quote = client.post("/fares/quote", json={"distance_km": 10, "time": "12:00"}).json()
    assert quote["total"] == pytest.approx(10 + 12 * 3)

    bad = client.put("/admin/config/tariffs", headers=admin_headers, json=dict(current, nightStart=30))
    assert bad.status_code == 422
