import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.dropgo.app import db, rides
from apps.dropgo.app.rides import RideRequestReq, accept_ride_request, available_drivers, request_ride


def _request(client, customer, pickup, **extra):
    return client.post("/rides/request", json={"customer_id": customer.id, **pickup, **extra})


def test_find_drivers_returns_online_drivers_in_range_nearest_first(client, make_driver, pickup):
    near = make_driver(lat=-17.7840, lng=-63.1822)
    mid = make_driver(lat=-17.7950, lng=-63.1822)
    make_driver(lat=-17.7835, lng=-63.1822, is_online=False)
    make_driver(lat=-17.95, lng=-63.1822)  # ~18 km away

    resp = client.post("/rides/find-drivers", json=pickup)
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 2
    assert [d["id"] for d in body["drivers"]] == [near.id, mid.id]
    assert body["drivers"][0]["distance"] <= body["drivers"][1]["distance"]
    assert body["drivers"][1]["eta_minutes"] >= 1


def test_find_drivers_requires_pickup(client):
    resp = client.post("/rides/find-drivers", json={"pickup_latitude": -17.78})
    assert resp.status_code == 400


def test_request_fans_out_to_nearby_drivers(client, make_customer, make_driver, pickup, pushes):
    c = make_customer()
    d1 = make_driver(push_token="tok-1")
    d2 = make_driver(lat=-17.7900, lng=-63.1800)
    make_driver(lat=-18.2, lng=-63.5)  # out of range

    resp = _request(client, c, pickup, dropoff_location="Equipetrol")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["drivers_notified"] == 2
    group = body["request_group_id"]
    assert group
    assert {r["driver_id"] for r in body["requests"]} == {d1.id, d2.id}
    assert all(r["status"] == "pending" and r["request_group_id"] == group for r in body["requests"])

    # only the driver with a device token gets a push
    assert [p["token"] for p in pushes] == ["tok-1"]
    assert pushes[0]["data"]["request_group_id"] == group


def test_request_without_nearby_drivers_is_404(client, make_customer, make_driver, pickup):
    c = make_customer()
    make_driver(lat=-18.2, lng=-63.5)
    resp = _request(client, c, pickup)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "no drivers available nearby"


def test_request_validation(client, make_customer, pickup):
    c = make_customer()
    assert client.post("/rides/request", json={"customer_id": c.id}).status_code == 400
    assert client.post("/rides/request", json={"customer_id": "missing", **pickup}).status_code == 404


def test_customer_has_at_most_one_active_ride(client, make_customer, make_driver, pickup):
    c = make_customer()
    make_driver()
    assert _request(client, c, pickup).status_code == 200
    again = _request(client, c, pickup)
    assert again.status_code == 409


def test_request_for_a_chosen_driver(client, make_customer, make_driver, pickup):
    c = make_customer()
    chosen = make_driver(lat=-17.80, lng=-63.20)
    make_driver()
    resp = _request(client, c, pickup, driver_id=chosen.id)
    assert resp.status_code == 200
    body = resp.json()
    assert body["request_group_id"] is None
    assert body["drivers_notified"] == 1
    assert body["requests"][0]["driver_id"] == chosen.id

    offline = make_driver(is_online=False)
    other = make_customer()
    assert _request(client, other, pickup, driver_id=offline.id).status_code == 409


def test_accept_cancels_pending_siblings(client, make_customer, make_driver, pickup, engine):
    c = make_customer()
    d1, d2, d3 = make_driver(), make_driver(), make_driver()
    body = _request(client, c, pickup).json()
    by_driver = {r["driver_id"]: r["id"] for r in body["requests"]}

    resp = client.post(f"/rides/{by_driver[d2.id]}/accept", params={"driver_id": d2.id})
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"
    assert resp.json()["accepted_at"]

    with Session(engine) as s:
        rows = {r.driver_id: r for r in s.scalars(select(db.RideRequest))}
    assert rows[d2.id].status == "accepted"
    for d in (d1, d3):
        assert rows[d.id].status == "cancelled"
        assert rows[d.id].cancelled_by == "system"

    # the group is taken; a sibling cannot be accepted afterwards
    late = client.post(f"/rides/{by_driver[d1.id]}/accept", params={"driver_id": d1.id})
    assert late.status_code == 409


def test_accept_checks_ownership_and_busy_driver(client, make_customer, make_driver, pickup):
    d = make_driver()
    c1, c2 = make_customer(), make_customer()
    first = _request(client, c1, pickup, driver_id=d.id).json()["requests"][0]
    other = make_driver()
    assert client.post(f"/rides/{first['id']}/accept", params={"driver_id": other.id}).status_code == 403
    assert client.post(f"/rides/{first['id']}/accept", params={"driver_id": d.id}).status_code == 200

    # direct request to a busy driver is refused up front
    assert _request(client, c2, pickup, driver_id=d.id).status_code == 409


def test_driver_cannot_accept_a_second_ride_while_busy(client, make_customer, make_driver, pickup):
    d = make_driver()
    c1, c2 = make_customer(), make_customer()
    first = _request(client, c1, pickup).json()["requests"][0]
    second = _request(client, c2, pickup).json()["requests"][0]
    assert first["driver_id"] == second["driver_id"] == d.id

    assert client.post(f"/rides/{first['id']}/accept", params={"driver_id": d.id}).status_code == 200
    resp = client.post(f"/rides/{second['id']}/accept", params={"driver_id": d.id})
    assert resp.status_code == 409
    assert resp.json()["detail"] == "driver already has an active ride"
    assert client.get(f"/rides/{second['id']}").json()["status"] == "pending"


def test_busy_driver_is_not_offered_new_requests(session, make_customer, make_driver, pickup):
    d = make_driver()
    c1, c2 = make_customer(), make_customer()
    out = request_ride(RideRequestReq(customer_id=c1.id, **pickup), s=session)
    accept_ride_request(session, out.requests[0].id, d.id)

    assert available_drivers(session, pickup["pickup_latitude"], pickup["pickup_longitude"], 5) == []
    listed = available_drivers(session, pickup["pickup_latitude"], pickup["pickup_longitude"], 5, skip_busy=False)
    assert [row.id for row, _ in listed] == [d.id]
    with pytest.raises(HTTPException) as excinfo:
        request_ride(RideRequestReq(customer_id=c2.id, **pickup), s=session)
    assert excinfo.value.status_code == 404


def test_find_drivers_lists_online_drivers_even_when_busy(client, make_customer, make_driver, pickup):
    d = make_driver()
    rid = _request(client, make_customer(), pickup).json()["requests"][0]["id"]
    assert client.post(f"/rides/{rid}/accept", params={"driver_id": d.id}).status_code == 200

    resp = client.post("/rides/find-drivers", json=pickup)
    assert resp.status_code == 200
    assert [x["id"] for x in resp.json()["drivers"]] == [d.id]
    assert _request(client, make_customer(), pickup).status_code == 404


def test_conditional_accept_loses_to_concurrent_cancel(session, make_customer, make_driver, pickup, monkeypatch):
    """
    If the row stops being pending between the read and the update, the
    accept fails with 409 and nothing is committed.
    """
    d = make_driver()
    c = make_customer()
    out = request_ride(RideRequestReq(customer_id=c.id, **pickup), s=session)
    ride_id = out.requests[0].id

    real_busy = rides.busy_ride_for_driver

    def _cancel_then_check(s, driver_id):
        s.connection().exec_driver_sql(
            "UPDATE ride_requests SET status = 'cancelled', cancelled_by = 'customer' WHERE id = ?", (ride_id,)
        )
        return real_busy(s, driver_id)

    monkeypatch.setattr(rides, "busy_ride_for_driver", _cancel_then_check)
    with pytest.raises(HTTPException) as excinfo:
        accept_ride_request(session, ride_id, d.id)
    assert excinfo.value.status_code == 409


def test_reject_start_complete(client, make_customer, make_driver, pickup, engine):
    c = make_customer()
    d = make_driver()
    ride = _request(client, c, pickup).json()["requests"][0]
    rid = ride["id"]

    assert client.post(f"/rides/{rid}/start", params={"driver_id": d.id}).status_code == 409
    assert client.post(f"/rides/{rid}/accept", params={"driver_id": d.id}).status_code == 200
    assert client.post(f"/rides/{rid}/reject", params={"driver_id": d.id}).status_code == 409
    assert client.post(f"/rides/{rid}/complete", params={"driver_id": d.id}).status_code == 409

    started = client.post(f"/rides/{rid}/start", params={"driver_id": d.id})
    assert started.status_code == 200
    assert started.json()["status"] == "in_progress"

    client.post(f"/drivers/{d.id}/live_location", json={"latitude": -17.78, "longitude": -63.18})
    done = client.post(f"/rides/{rid}/complete", params={"driver_id": d.id})
    assert done.status_code == 200
    assert done.json()["status"] == "completed"
    assert done.json()["completed_at"]

    with Session(engine) as s:
        drv = s.get(db.Driver, d.id)
        assert drv.is_sharing_location is False
        assert drv.current_lat is None


def test_driver_reject(client, make_customer, make_driver, pickup):
    c = make_customer()
    d = make_driver()
    rid = _request(client, c, pickup).json()["requests"][0]["id"]
    resp = client.post(f"/rides/{rid}/reject", params={"driver_id": d.id})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancelled_by"] == "driver"


def test_customer_cancel(client, make_customer, make_driver, pickup):
    c = make_customer()
    make_driver(), make_driver()
    _request(client, c, pickup)
    resp = client.post(f"/customers/{c.id}/rides/cancel")
    assert resp.status_code == 200
    assert resp.json()["cancelled"] == 2
    assert client.post(f"/customers/{c.id}/rides/cancel").status_code == 404

    # the customer can ask again once nothing is active
    assert _request(client, c, pickup).status_code == 200


def test_driver_listings(client, make_customer, make_driver, pickup):
    c = make_customer(full_name="Ana")
    d = make_driver()
    rid = _request(client, c, pickup).json()["requests"][0]["id"]

    pending = client.get(f"/drivers/{d.id}/requests").json()
    assert [r["id"] for r in pending] == [rid]
    assert pending[0]["customer_name"] == "Ana"
    assert pending[0]["distance_km"] < 1

    assert client.get(f"/drivers/{d.id}/active_ride").status_code == 404
    client.post(f"/rides/{rid}/accept", params={"driver_id": d.id})
    active = client.get(f"/drivers/{d.id}/active_ride")
    assert active.status_code == 200
    assert active.json()["id"] == rid
    assert active.json()["customer_phone"] == c.phone

    client.post(f"/rides/{rid}/start", params={"driver_id": d.id})
    client.post(f"/rides/{rid}/complete", params={"driver_id": d.id})
    client.post(f"/rides/{rid}/ratings", json={"rating_from": "customer", "rater_id": c.id, "rating": 5, "comment": "Excelente"})

    hist = client.get(f"/drivers/{d.id}/history").json()
    assert hist["stats"] == {"total": 1, "completed": 1, "cancelled": 0}
    assert hist["rides"][0]["customer_rating"] == 5
    assert client.get(f"/drivers/{d.id}/history", params={"filter": "cancelled"}).json()["rides"] == []
    assert client.get(f"/drivers/{d.id}/history", params={"filter": "bogus"}).status_code == 400


def test_customer_listings(client, make_customer, make_driver, pickup):
    c = make_customer()
    d = make_driver(full_name="Juan")
    assert client.get(f"/customers/{c.id}/ride_status").status_code == 404

    rid = _request(client, c, pickup).json()["requests"][0]["id"]
    active = client.get(f"/customers/{c.id}/requests").json()
    assert [r["id"] for r in active] == [rid]
    assert active[0]["driver_name"] == "Juan"

    client.post(f"/rides/{rid}/accept", params={"driver_id": d.id})
    notes = client.get(f"/customers/{c.id}/notifications").json()
    assert notes[0]["id"] == rid
    assert notes[0]["driver_name"] == "Juan"

    status = client.get(f"/customers/{c.id}/ride_status").json()
    assert status["status"] == "accepted"
    assert status["has_rated"] is False
    assert client.get(f"/rides/{rid}").json()["status"] == "accepted"
    assert client.get("/rides/missing").status_code == 404
