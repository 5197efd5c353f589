from __future__ import annotations

import math

from curbside.errors import InvalidCoordinate
from curbside.geohash import encode

EARTH_RADIUS_M = 6371000.0

SIDE_FALLBACK_PRECISION = 8

_FALLBACK_SIDES = ("N", "E", "S", "W")


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def side_from_bearing(bearing: float) -> str:
    if not math.isfinite(bearing):
        raise InvalidCoordinate(f"Invalid bearing: {bearing}")
    b = bearing % 360.0
    if b >= 315.0 or b < 45.0:
        return "N"
    if b < 135.0:
        return "E"
    if b < 225.0:
        return "S"
    return "W"


def determine_side(lat: float, lng: float, bearing: float | None = None) -> str:
    """Street side for a point.

    With a bearing the mapping is exact. Without one the side is derived from
    the last character of the precision-8 geohash; that is a stable
    placeholder, it says nothing about the actual street orientation.
    """
    if bearing is not None:
        return side_from_bearing(bearing)

    last = encode(lat, lng, SIDE_FALLBACK_PRECISION)[-1]
    return _FALLBACK_SIDES[ord(last) % 4]
