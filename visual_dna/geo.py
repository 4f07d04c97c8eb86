"""Great-circle distance and location-based match boosting."""

import math
import logging
from typing import Any, Mapping, Optional, Tuple

from .models import CaseInfo

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8
MAX_LOCATION_BOOST = 15
DEFAULT_SEARCH_RADIUS = 50.0
# Location score falls linearly to zero at this distance
LOCATION_SCORE_RANGE_MILES = 200.0
# Matches within this distance get a location reason
LOCATION_REASON_MAX_MILES = 100.0


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in miles."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _from_location(location: Optional[Mapping[str, Any]]) -> Optional[Tuple[float, float]]:
    if not location:
        return None
    if location.get("lat") is not None and location.get("lng") is not None:
        return float(location["lat"]), float(location["lng"])
    if location.get("latitude") is not None and location.get("longitude") is not None:
        return float(location["latitude"]), float(location["longitude"])
    coords = location.get("coordinates")
    if coords and len(coords) >= 2:
        # GeoJSON order is [longitude, latitude]
        return float(coords[1]), float(coords[0])
    return None


def case_coordinates(case: CaseInfo) -> Optional[Tuple[float, float]]:
    """(lat, lon) of a case from explicit fields or its location mapping."""
    if case.latitude is not None and case.longitude is not None:
        return float(case.latitude), float(case.longitude)
    return _from_location(case.location)


def case_distance(a: CaseInfo, b: CaseInfo) -> Optional[float]:
    """Distance in miles between two cases, or None if either lacks coordinates."""
    pa, pb = case_coordinates(a), case_coordinates(b)
    if pa is None or pb is None:
        return None
    return haversine_miles(pa[0], pa[1], pb[0], pb[1])


def location_boost(distance_miles: Optional[float],
                   search_radius: float = DEFAULT_SEARCH_RADIUS) -> int:
    """
    Score bonus for nearby matches, decaying exponentially with distance.

    Returns:
        0..MAX_LOCATION_BOOST; 0 when the distance is unknown.
    """
    if distance_miles is None:
        return 0
    if distance_miles <= 0:
        return MAX_LOCATION_BOOST
    radius = search_radius or DEFAULT_SEARCH_RADIUS
    return int(round(MAX_LOCATION_BOOST * math.exp(-distance_miles / (radius * 0.5))))


def location_score(distance_miles: Optional[float]) -> Optional[int]:
    """Linear 100 -> 0 proximity score over LOCATION_SCORE_RANGE_MILES."""
    if distance_miles is None:
        return None
    return int(round(max(0.0, 100 * (1 - distance_miles / LOCATION_SCORE_RANGE_MILES))))


def format_distance(distance_miles: float) -> str:
    if distance_miles < 0.1:
        return "Same area"
    if distance_miles < 1:
        return f"{int(round(distance_miles * 5280))} ft away"
    if distance_miles < 10:
        return f"{distance_miles:.1f} mi away"
    return f"{int(round(distance_miles))} mi away"
