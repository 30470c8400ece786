import math

from lecture_attendance.geofence import EARTH_RADIUS_M, haversine_distance_m, within_range
from lecture_attendance.models import GeoPoint, SessionLocation

CENTER = SessionLocation(latitude=12.9716, longitude=77.5946, radius_m=100.0)


def _north_of(location: SessionLocation, metres: float) -> GeoPoint:
    return GeoPoint(location.latitude + math.degrees(metres / EARTH_RADIUS_M), location.longitude)


def test_haversine_known_distance():
    # One degree of latitude on a 6371 km sphere.
    distance = haversine_distance_m(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
    assert abs(distance - 111_194.9) < 1.0


def test_point_exactly_on_radius_is_inside():
    assert within_range(_north_of(CENTER, CENTER.radius_m), CENTER)


def test_point_inside_radius_is_inside():
    assert within_range(_north_of(CENTER, 50.0), CENTER)


def test_point_beyond_radius_is_outside():
    assert not within_range(_north_of(CENTER, CENTER.radius_m + 1.0), CENTER)


def test_no_session_location_always_passes():
    assert within_range(GeoPoint(0.0, 0.0), None)
    assert within_range(None, None)


def test_missing_subject_location_fails_closed():
    assert not within_range(None, CENTER)
