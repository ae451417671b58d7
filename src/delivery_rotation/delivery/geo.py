"""
Distance and coordinate helpers
"""

from math import asin, cos, radians, sin, sqrt
from typing import Callable

from delivery_rotation.delivery.models import Address, Location

EARTH_RADIUS_KM = 6371.0

DistanceFunction = Callable[[Location, Location], float]


def haversine_km(a: Location, b: Location) -> float:
    """Great-circle distance between two points in kilometres"""
    lat1, lon1, lat2, lon2 = map(radians, [a.latitude, a.longitude, b.latitude, b.longitude])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(h))


def location_of(address: Address) -> Location | None:
    """
    Coordinates of an address, or None if missing or out of range

    (0, 0) is treated as missing: it is what upstream forms send when the
    geocoder returned nothing.
    """
    if address.latitude is None or address.longitude is None:
        return None
    if address.latitude == 0 and address.longitude == 0:
        return None
    if not (-90.0 <= address.latitude <= 90.0 and -180.0 <= address.longitude <= 180.0):
        return None
    return Location(latitude=address.latitude, longitude=address.longitude)
