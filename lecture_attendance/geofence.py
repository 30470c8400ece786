import math
from typing import Optional

from .models import GeoPoint, SessionLocation

EARTH_RADIUS_M = 6_371_000.0
# Float slack so a point exactly on the radius passes.
BOUNDARY_TOLERANCE_M = 1e-6


def haversine_distance_m(a: GeoPoint, b: GeoPoint) -> float:
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_range(subject_location: Optional[GeoPoint], session_location: Optional[SessionLocation]) -> bool:
    """Fail-closed geofence check; the radius bound is inclusive."""
    if session_location is None:
        return True
    if subject_location is None:
        return False

    center = GeoPoint(session_location.latitude, session_location.longitude)
    return haversine_distance_m(subject_location, center) <= session_location.radius_m + BOUNDARY_TOLERANCE_M
