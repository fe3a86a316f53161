import math
from typing import Iterable, List, Optional, Tuple, TypeVar

from .settings import AVG_SPEED_KMH

EARTH_RADIUS_KM = 6371.0

T = TypeVar("T")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    # Returns great-circle distance in kilometers
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def eta_minutes(km: float, avg_speed_kmh: Optional[float] = None) -> int:
    """City ETA at a flat average speed, rounded up to whole minutes."""
    speed = max(0.1, avg_speed_kmh if avg_speed_kmh is not None else AVG_SPEED_KMH)
    return int(math.ceil((km / speed) * 60))


def nearby(pickup_lat: float, pickup_lng: float, candidates: Iterable[T], max_km: float) -> List[Tuple[T, float]]:
    """
    Pair each candidate that has a position (``latitude``/``longitude``
    attributes) with its distance to the pickup point, keep those within
    ``max_km`` and sort nearest first.
    """
    out = []
    for c in candidates:
        lat = getattr(c, "latitude", None)
        lng = getattr(c, "longitude", None)
        if lat is None or lng is None:
            continue
        dist = haversine_km(pickup_lat, pickup_lng, lat, lng)
        if dist <= max_km:
            out.append((c, dist))
    out.sort(key=lambda pair: pair[1])
    return out
