from __future__ import annotations

import math
from dataclasses import dataclass

from curbside.errors import InvalidCoordinate

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(BASE32)}

REPORT_PRECISION = 6
AREA_PRECISION = 5

# (lat step, lng step) in cell units: N, NE, E, SE, S, SW, W, NW
_DIRECTIONS = (
    (1, 0),
    (1, 1),
    (0, 1),
    (-1, 1),
    (-1, 0),
    (-1, -1),
    (0, -1),
    (1, -1),
)


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def center(self) -> tuple[float, float]:
        return ((self.min_lat + self.max_lat) / 2, (self.min_lng + self.max_lng) / 2)

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def validate_coordinate(lat: object, lng: object) -> tuple[float, float]:
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidCoordinate("Invalid lat/lng values")
    try:
        lat_f = float(lat)  # type: ignore[arg-type]
        lng_f = float(lng)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidCoordinate("Invalid lat/lng values") from None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate("Invalid lat/lng values")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinate(f"Latitude out of range [-90, 90]: {lat_f}")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(f"Longitude out of range [-180, 180]: {lng_f}")
    return lat_f, lng_f


def encode(lat: float, lng: float, precision: int = REPORT_PRECISION) -> str:
    lat, lng = validate_coordinate(lat, lng)
    if precision < 1:
        raise ValueError("precision must be >= 1")

    lat_min, lat_max = -90.0, 90.0
    lng_min, lng_max = -180.0, 180.0
    out: list[str] = []
    is_lng = True

    while len(out) < precision:
        val = 0
        for bit in range(5):
            if is_lng:
                mid = (lng_min + lng_max) / 2
                if lng > mid:
                    val |= 1 << (4 - bit)
                    lng_min = mid
                else:
                    lng_max = mid
            else:
                mid = (lat_min + lat_max) / 2
                if lat > mid:
                    val |= 1 << (4 - bit)
                    lat_min = mid
                else:
                    lat_max = mid
            is_lng = not is_lng
        out.append(BASE32[val])

    return "".join(out)


def bounding_box(cell: str) -> BoundingBox:
    if not cell:
        raise InvalidCoordinate("Geohash must be non-empty")

    lat_min, lat_max = -90.0, 90.0
    lng_min, lng_max = -180.0, 180.0
    is_lng = True

    for ch in cell.lower():
        idx = _DECODE_MAP.get(ch)
        if idx is None:
            raise InvalidCoordinate(f"Invalid geohash character {ch!r} in {cell!r}")
        for bit in range(4, -1, -1):
            on = (idx >> bit) & 1
            if is_lng:
                mid = (lng_min + lng_max) / 2
                if on:
                    lng_min = mid
                else:
                    lng_max = mid
            else:
                mid = (lat_min + lat_max) / 2
                if on:
                    lat_min = mid
                else:
                    lat_max = mid
            is_lng = not is_lng

    return BoundingBox(min_lat=lat_min, max_lat=lat_max, min_lng=lng_min, max_lng=lng_max)


def decode(cell: str) -> tuple[float, float]:
    """Centre point ``(lat, lng)`` of the cell."""
    return bounding_box(cell).center


def _shifted(lat: float, lng: float, d_lat: float, d_lng: float, precision: int) -> str:
    n_lat = lat + d_lat
    n_lng = lng + d_lng
    # Stepping over a pole lands in the same latitude band on the far meridian.
    if n_lat > 90.0:
        n_lat = 180.0 - n_lat
        n_lng += 180.0
    elif n_lat < -90.0:
        n_lat = -180.0 - n_lat
        n_lng += 180.0
    n_lng = ((n_lng + 180.0) % 360.0) - 180.0
    return encode(n_lat, n_lng, precision)


def neighbors(cell: str) -> list[str]:
    """The 8 adjacent cells, ordered N, NE, E, SE, S, SW, W, NW."""
    box = bounding_box(cell)
    lat, lng = box.center
    height = box.max_lat - box.min_lat
    width = box.max_lng - box.min_lng
    return [
        _shifted(lat, lng, d_lat * height, d_lng * width, len(cell))
        for d_lat, d_lng in _DIRECTIONS
    ]


def area_hash(lat: float, lng: float) -> str:
    return encode(lat, lng, AREA_PRECISION)
