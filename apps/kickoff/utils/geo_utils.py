"""
Great-circle distance helpers used for radius queries.
"""

import math
from typing import Tuple

# Mean Earth radius (IUGG) in meters
EARTH_RADIUS_METERS = 6371008.8
METERS_PER_KM = 1000.0


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance in meters between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Clamp against floating-point drift just above 1.0
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_METERS * c


def radius_km_to_meters(radius_km: float) -> float:
    return radius_km * METERS_PER_KM


def bounding_box(lat: float, lng: float, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    Return (min_lat, max_lat, min_lng, max_lng) enclosing a circle of
    radius_meters around (lat, lng).

    Used as a cheap SQL pre-filter; callers must still apply the exact
    haversine check. Near the poles, or when the circle crosses the
    antimeridian, the longitude range widens to the full [-180, 180].
    """
    angular = radius_meters / EARTH_RADIUS_METERS
    d_lat = math.degrees(angular)
    min_lat = max(-90.0, lat - d_lat)
    max_lat = min(90.0, lat + d_lat)

    if min_lat <= -90.0 or max_lat >= 90.0:
        return min_lat, max_lat, -180.0, 180.0

    # Widest longitude of the circle is reached off the origin's parallel,
    # at asin(sin(angular) / cos(lat)), not angular / cos(lat)
    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if ratio >= 1.0:
        return min_lat, max_lat, -180.0, 180.0
    d_lng = math.degrees(math.asin(ratio))
    min_lng = lng - d_lng
    max_lng = lng + d_lng
    if min_lng < -180.0 or max_lng > 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, min_lng, max_lng


def validate_coordinates(lat, lng) -> Tuple[float, float]:
    """
    Coerce and validate a latitude/longitude pair.

    Raises:
        ValueError: If either value is missing, non-numeric, NaN or out of range
    """
    if lat is None or lng is None:
        raise ValueError("latitude and longitude are required")
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise ValueError("latitude and longitude must be numbers")
    if math.isnan(lat_f) or math.isnan(lng_f):
        raise ValueError("latitude and longitude must be numbers")
    if not -90.0 <= lat_f <= 90.0:
        raise ValueError("latitude must be between -90 and 90")
    if not -180.0 <= lng_f <= 180.0:
        raise ValueError("longitude must be between -180 and 180")
    return lat_f, lng_f
