import logging
from typing import Dict, Optional

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from .db import Driver, RideRequest
from .settings import FCM_PROJECT_ID, FCM_SERVICE_ACCOUNT_FILE

logger = logging.getLogger("dropgo.fcm")

SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]
NEW_REQUEST_TITLE = "Nueva solicitud de viaje"


def _access_token() -> Optional[str]:
    """OAuth token for the FCM v1 API, or None when no service account is configured."""
    if not FCM_SERVICE_ACCOUNT_FILE:
        return None
    try:
        credentials = service_account.Credentials.from_service_account_file(
            FCM_SERVICE_ACCOUNT_FILE, scopes=SCOPES
        )
        credentials.refresh(Request())
        return credentials.token
    except Exception:
        logger.warning("fcm credentials unavailable", exc_info=True)
        return None


def new_request_message(driver: Driver, ride: RideRequest, distance_km: Optional[float] = None) -> Optional[Dict]:
    """
    FCM message telling a driver about a pending ride, or None when the
    driver has no device token. Data values are strings, as FCM requires;
    the driver app opens the ride from ``ride_id``.
    """
    token = (driver.push_token or "").strip()
    if not token:
        return None
    details = [f"Recogida: {ride.pickup_location}"]
    if distance_km is not None:
        details.append(f"{distance_km:.1f} km")
    data = {
        "type": "ride_request",
        "ride_id": ride.id,
        "request_group_id": ride.request_group_id or "",
        "pickup_location": ride.pickup_location or "",
        "pickup_lat": str(ride.pickup_latitude),
        "pickup_lng": str(ride.pickup_longitude),
    }
    if distance_km is not None:
        data["distance_km"] = f"{distance_km:.2f}"
    return {
        "token": token,
        "notification": {"title": NEW_REQUEST_TITLE, "body": " · ".join(details)},
        "data": data,
        # requests expire quickly, wake the device
        "android": {"priority": "high", "ttl": "60s"},
    }


def deliver(message: Dict) -> bool:
    """Posts one message to FCM. False when push is disabled or delivery fails."""
    access_token = _access_token()
    if not access_token:
        return False
    url = f"https://fcm.googleapis.com/v1/projects/{FCM_PROJECT_ID}/messages:send"
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        r = httpx.post(url, headers=headers, json={"message": message}, timeout=5)
        r.raise_for_status()
    except httpx.HTTPError:
        logger.warning("fcm send failed", extra={"ride_id": message["data"].get("ride_id")}, exc_info=True)
        return False
    return True


def notify_driver_new_request(driver: Driver, ride: RideRequest, distance_km: Optional[float] = None) -> bool:
    message = new_request_message(driver, ride, distance_km)
    if message is None:
        return False
    return deliver(message)
