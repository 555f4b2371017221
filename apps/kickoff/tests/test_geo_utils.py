"""
Tests for distance helpers.
"""

import math

import pytest

from kickoff.utils.geo_utils import (
    EARTH_RADIUS_METERS,
    haversine_meters,
    bounding_box,
    radius_km_to_meters,
    validate_coordinates,
)


def test_haversine_known_distance():
    # Berlin Brandenburg Gate to Berlin TV tower is roughly 2.3 km
    distance = haversine_meters(52.5163, 13.3777, 52.5208, 13.4094)
    assert 2100 < distance < 2400


def test_haversine_zero_and_symmetric():
    assert haversine_meters(10, 20, 10, 20) == 0
    assert math.isclose(
        haversine_meters(1, 2, 3, 4), haversine_meters(3, 4, 1, 2), rel_tol=1e-12
    )


def test_one_degree_of_latitude():
    assert 111_000 < haversine_meters(0, 0, 1, 0) < 111_400


def test_bounding_box_contains_circle():
    lat, lng = 52.52, 13.405
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km_to_meters(5))
    assert min_lat < lat < max_lat
    assert min_lng < lng < max_lng
    # Points 5 km due north and east sit inside the box
    assert haversine_meters(lat, lng, max_lat, lng) >= 4999
    assert haversine_meters(lat, lng, lat, max_lng) >= 4990


def _destination(lat, lng, bearing_deg, distance_m):
    """Point reached travelling distance_m from (lat, lng) on an initial bearing."""
    phi1 = math.radians(lat)
    lambda1 = math.radians(lng)
    theta = math.radians(bearing_deg)
    delta = distance_m / EARTH_RADIUS_METERS
    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    lambda2 = lambda1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    return math.degrees(phi2), math.degrees(lambda2)


@pytest.mark.parametrize(
    "lat, lng, radius_m",
    [(70.0, 20.0, 300_000), (-65.0, -60.0, 500_000), (52.52, 13.405, 50_000), (0.0, 0.0, 1_000_000)],
)
def test_bounding_box_contains_every_bearing(lat, lng, radius_m):
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)
    for bearing in range(360):
        point_lat, point_lng = _destination(lat, lng, bearing, radius_m * 0.999)
        assert min_lat <= point_lat <= max_lat, bearing
        assert min_lng <= point_lng <= max_lng, bearing


def test_bounding_box_widens_near_pole_and_antimeridian():
    assert bounding_box(89.99, 0, 5000)[2:] == (-180.0, 180.0)
    assert bounding_box(0, 179.99, 5000)[2:] == (-180.0, 180.0)


@pytest.mark.parametrize(
    "lat, lng",
    [(None, 1), (1, None), ("x", 1), (float("nan"), 1), (90.1, 0), (0, -180.5)],
)
def test_validate_coordinates_rejects(lat, lng):
    with pytest.raises(ValueError):
        validate_coordinates(lat, lng)


def test_validate_coordinates_coerces_strings():
    assert validate_coordinates("52.5", "-13") == (52.5, -13.0)
