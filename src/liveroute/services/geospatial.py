"""Geospatial helper functions."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0
COORDINATE_MATCH_TOLERANCE = 1e-5


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def coordinates_match(
    lat1: float, lon1: float, lat2: float, lon2: float, tolerance: float = COORDINATE_MATCH_TOLERANCE
) -> bool:
    """True when both axes differ by less than ``tolerance`` degrees."""

    return abs(lat1 - lat2) < tolerance and abs(lon1 - lon2) < tolerance


def eta_minutes(distance_km: float, average_speed_kmh: float = 30.0) -> int:
    """Straight-line ETA in whole minutes, rounded up."""

    if average_speed_kmh <= 0:
        raise ValueError("Average speed must be positive.")
    return math.ceil((distance_km / average_speed_kmh) * 60)
