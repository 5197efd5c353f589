from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from curbside.errors import InvalidCoordinate
from curbside.geo import haversine_m
from curbside.geohash import REPORT_PRECISION, encode, neighbors, validate_coordinate
from curbside.models import Cluster, utcnow
from curbside.store import KeyedStore

logger = logging.getLogger(__name__)


def _mean_confidence(confidences: list[float]) -> float:
    # Halves round up (0.125 -> 0.13).
    mean = Decimal(str(sum(confidences) / len(confidences)))
    return float(mean.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def search_cells(lat: float, lng: float) -> list[str]:
    center = encode(lat, lng, REPORT_PRECISION)
    return [center, *neighbors(center)]


def _fetch_candidates(store: KeyedStore, cells: list[str]) -> list[dict[str, Any]]:
    # Any failing read aborts the whole search; StoreUnavailable propagates.
    rows: list[dict[str, Any]] = []
    for cell in cells:
        rows.extend(store.query_prefix(cell))
    return rows


def find_nearby(
    store: KeyedStore,
    lat: float,
    lng: float,
    radius_m: float,
    now: datetime | None = None,
) -> list[Cluster]:
    """Clusters of live reports within ``radius_m`` of the centre.

    Reports are grouped by ``(geoHash6, side)``. Each cluster takes its bucket,
    timestamp and position from the newest report in the group and its
    confidence from the mean over all of them.
    """
    lat, lng = validate_coordinate(lat, lng)
    if radius_m is None or not math.isfinite(radius_m) or radius_m <= 0:
        raise InvalidCoordinate(f"Invalid radius: {radius_m}")

    now_s = (now or utcnow()).timestamp()
    rows = _fetch_candidates(store, search_cells(lat, lng))

    groups: dict[tuple[str, str], dict[str, Any]] = {}
    for r in rows:
        if r["expiresAt"] < now_s:
            continue
        if haversine_m(lat, lng, r["lat"], r["lng"]) > radius_m:
            continue

        key = (r["geoHash6"], r["side"])
        group = groups.get(key)
        if group is None:
            groups[key] = {"latest": r, "confidences": [float(r["confidence"])]}
            continue
        group["confidences"].append(float(r["confidence"]))
        if r["ts"] > group["latest"]["ts"]:
            group["latest"] = r

    clusters: list[Cluster] = []
    for (cell, side), group in groups.items():
        latest = group["latest"]
        confidences = group["confidences"]
        clusters.append(
            Cluster(
                geo_hash6=cell,
                side=side,
                count_bucket=latest["count_bucket"],
                confidence=_mean_confidence(confidences),
                last_ts=latest["ts"],
                lat=latest["lat"],
                lng=latest["lng"],
            )
        )

    logger.debug(f"find_nearby({lat}, {lng}, {radius_m}): {len(rows)} candidates, {len(clusters)} clusters")
    return clusters
