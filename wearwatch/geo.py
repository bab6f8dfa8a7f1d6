import math
from typing import NamedTuple, Protocol

EARTH_RADIUS_M = 6_371_000

class HasPosition(Protocol):
    latitude: float
    longitude: float

class Coordinate(NamedTuple):
    latitude: float
    longitude: float

def distance_meters(a: HasPosition, b: HasPosition) -> float:
    """Great-circle distance in meters (haversine, spherical earth)."""
    d_lat = math.radians(b.latitude - a.latitude)
    d_lng = math.radians(b.longitude - a.longitude)
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)

    h = math.sin(d_lat / 2) ** 2 + math.sin(d_lng / 2) ** 2 * (math.cos(lat1) * math.cos(lat2))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
