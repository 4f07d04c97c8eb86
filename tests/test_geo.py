"""Tests for distance and location boosting."""

import pytest

from visual_dna.geo import (
    case_coordinates, case_distance, format_distance, haversine_miles,
    location_boost, location_score,
)
from visual_dna.models import CaseInfo


class TestHaversine:
    """Tests for great-circle distance."""

    def test_one_degree_latitude(self):
        assert haversine_miles(0, 0, 1, 0) == pytest.approx(69.09, abs=0.01)

    def test_same_point(self):
        assert haversine_miles(40.7, -74.0, 40.7, -74.0) == pytest.approx(0.0)

    def test_symmetric(self):
        there = haversine_miles(51.5074, -0.1278, 48.8566, 2.3522)
        back = haversine_miles(48.8566, 2.3522, 51.5074, -0.1278)
        assert there == pytest.approx(back)
        assert there == pytest.approx(213.5, abs=2)


class TestLocationBoost:
    """Tests for the exponential proximity boost."""

    def test_same_place_is_max(self):
        assert location_boost(0) == 15

    def test_unknown_distance(self):
        assert location_boost(None) == 0

    def test_decays_with_distance(self):
        assert location_boost(25, 50) == 6
        assert location_boost(5) > location_boost(50) > location_boost(200)

    def test_wider_radius_decays_slower(self):
        assert location_boost(40, 200) > location_boost(40, 20)


class TestLocationScore:
    """Tests for the linear proximity score."""

    def test_values(self):
        assert location_score(0) == 100
        assert location_score(100) == 50
        assert location_score(350) == 0
        assert location_score(None) is None


class TestFormatDistance:
    """Tests for human-readable distances."""

    def test_branches(self):
        assert format_distance(0.05) == "Same area"
        assert format_distance(0.5) == "2640 ft away"
        assert format_distance(3.4) == "3.4 mi away"
        assert format_distance(42.6) == "43 mi away"


class TestCaseCoordinates:
    """Tests for reading case coordinates from different shapes."""

    def test_explicit_fields(self):
        case = CaseInfo("c1", "lost_item", latitude=37.77, longitude=-122.42)
        assert case_coordinates(case) == (37.77, -122.42)

    def test_lat_lng_mapping(self):
        case = CaseInfo("c1", "lost_item", location={"lat": 37.77, "lng": -122.42})
        assert case_coordinates(case) == (37.77, -122.42)

    def test_geojson_point(self):
        case = CaseInfo("c1", "lost_item",
                        location={"type": "Point", "coordinates": [-122.42, 37.77]})
        assert case_coordinates(case) == (37.77, -122.42)

    def test_missing(self):
        assert case_coordinates(CaseInfo("c1", "lost_item")) is None
        assert case_coordinates(CaseInfo("c1", "lost_item", location={"city": "Oakland"})) is None

    def test_case_distance(self):
        a = CaseInfo("a", "lost_item", latitude=0, longitude=0)
        b = CaseInfo("b", "found_item", location={"latitude": 1, "longitude": 0})
        assert case_distance(a, b) == pytest.approx(69.09, abs=0.01)
        assert case_distance(a, CaseInfo("c", "found_item")) is None
