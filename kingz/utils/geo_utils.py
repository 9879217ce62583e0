"""
Geospatial helpers: great-circle distance and human-readable formatting.
"""

import math

EARTH_RADIUS_KM = 6371.0


def calculate_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Haversine great-circle distance between two coordinates.

    Args:
        lat1, lon1: First point in decimal degrees
        lat2, lon2: Second point in decimal degrees

    Returns:
        Distance in kilometres (0.0 for identical points)
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    a = min(1.0, a)  # float drift near antipodes
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def format_distance(distance_km: float) -> str:
    """Format a distance for display: "350 m", "2.5 km", "12 km"."""
    if distance_km < 1:
        return f"{round(distance_km * 1000)} m"
    if distance_km < 10:
        return f"{distance_km:.1f} km"
    return f"{round(distance_km)} km"


def is_within_distance(
    lat1: float, lon1: float, lat2: float, lon2: float, max_distance_km: float
) -> bool:
    """True if the two points are no further apart than max_distance_km."""
    return calculate_distance_km(lat1, lon1, lat2, lon2) <= max_distance_km
