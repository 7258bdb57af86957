"""Great-circle helpers used for proximity matching."""

from math import asin, cos, floor, radians, sin, sqrt
from typing import List, Optional, Tuple

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111320.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * asin(sqrt(a)) * EARTH_RADIUS_M


def valid_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    """Both present, within range, and not the (0, 0) null-island placeholder."""
    if lat is None or lon is None:
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return False
    return not (lat == 0.0 and lon == 0.0)


def bounding_box(lat: float, lon: float, radius_m: float) -> Tuple[float, float, float, float]:
    """(min_lat, min_lon, max_lat, max_lon) enclosing a circle of ``radius_m``."""
    dlat = radius_m / METERS_PER_DEGREE
    # cos() vanishes at the poles; clamp so the box stays finite.
    dlon = radius_m / (METERS_PER_DEGREE * max(cos(radians(lat)), 0.01))
    return lat - dlat, lon - dlon, lat + dlat, lon + dlon


def cell_keys(lat: float, cell_m: float) -> List[int]:
    """Lock keys for the latitude band containing the point and its two neighbours.

    Bands are ``cell_m`` tall, so two writers whose points lie within ``cell_m``
    of each other always share at least one key whatever their longitude.
    Keys come back sorted so every writer acquires them in the same order.
    """
    size = cell_m / METERS_PER_DEGREE
    band = floor(lat / size)
    return [band - 1, band, band + 1]
