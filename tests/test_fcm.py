import httpx

from apps.dropgo.app import db, fcm
from apps.dropgo.app.fcm import deliver, new_request_message


def _ride(**kw):
    defaults = dict(
        id="ride-1",
        request_group_id="group-1",
        customer_id="c1",
        driver_id="d1",
        pickup_location="Plaza 24 de Septiembre",
        pickup_latitude=-17.7833,
        pickup_longitude=-63.1821,
        status=db.PENDING,
    )
    defaults.update(kw)
    return db.RideRequest(**defaults)


def test_new_request_message_carries_ride_data():
    msg = new_request_message(db.Driver(id="d1", push_token=" tok-1 "), _ride(), 1.234)
    assert msg["token"] == "tok-1"
    assert msg["notification"]["title"] == "Nueva solicitud de viaje"
    assert msg["notification"]["body"] == "Recogida: Plaza 24 de Septiembre · 1.2 km"
    assert msg["data"] == {
        "type": "ride_request",
        "ride_id": "ride-1",
        "request_group_id": "group-1",
        "pickup_location": "Plaza 24 de Septiembre",
        "pickup_lat": "-17.7833",
        "pickup_lng": "-63.1821",
        "distance_km": "1.23",
    }
    assert all(isinstance(v, str) for v in msg["data"].values())
    assert msg["android"]["priority"] == "high"


def test_new_request_message_for_a_direct_request_without_distance():
    msg = new_request_message(db.Driver(id="d1", push_token="tok"), _ride(request_group_id=None))
    assert msg["notification"]["body"] == "Recogida: Plaza 24 de Septiembre"
    assert msg["data"]["request_group_id"] == ""
    assert "distance_km" not in msg["data"]


def test_no_message_without_device_token():
    assert new_request_message(db.Driver(id="d1", push_token="  "), _ride()) is None
    assert new_request_message(db.Driver(id="d1", push_token=None), _ride()) is None


def test_deliver_is_a_no_op_without_credentials(monkeypatch):
    monkeypatch.setattr(fcm, "FCM_SERVICE_ACCOUNT_FILE", "")
    called = []
    monkeypatch.setattr(fcm.httpx, "post", lambda *a, **kw: called.append(a))
    msg = new_request_message(db.Driver(id="d1", push_token="tok"), _ride())
    assert deliver(msg) is False
    assert called == []


def test_deliver_posts_the_message_and_survives_http_errors(monkeypatch):
    monkeypatch.setattr(fcm, "_access_token", lambda: "oauth-token")
    posted = []

    def _post(url, headers, json, timeout):
        posted.append((url, headers, json))
        return httpx.Response(200, json={"name": "projects/p/messages/1"}, request=httpx.Request("POST", url))

    monkeypatch.setattr(fcm.httpx, "post", _post)
    msg = new_request_message(db.Driver(id="d1", push_token="tok"), _ride())
    assert deliver(msg) is True
    url, headers, body = posted[0]
    assert url.endswith("/messages:send")
    assert headers["Authorization"] == "Bearer oauth-token"
    assert body == {"message": msg}

    def _down(*args, **kwargs):
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(fcm.httpx, "post", _down)
    assert deliver(msg) is False
