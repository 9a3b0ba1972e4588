"""Geospatial helpers: great-circle distance, bounding boxes and the geo stage."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

from .models import LocationFilter, SearchDocument

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @property
    def crosses_antimeridian(self) -> bool:
        return self.min_lon > self.max_lon

    def contains(self, lat: float, lon: float) -> bool:
        if not self.min_lat <= lat <= self.max_lat:
            return False
        if self.crosses_antimeridian:
            return lon >= self.min_lon or lon <= self.max_lon
        return self.min_lon <= lon <= self.max_lon

    def to_es(self) -> dict:
        return {
            "top_left": {"lat": self.max_lat, "lon": self.min_lon},
            "bottom_right": {"lat": self.min_lat, "lon": self.max_lon},
        }


def bounding_box(lat: float, lon: float, radius_km: float) -> BoundingBox:
    """Smallest lat/lon box that contains the circle of ``radius_km``.

    The box is a superset of the circle; corners must still be checked with
    :func:`haversine_km`.
    """

    angular = radius_km / EARTH_RADIUS_KM
    min_lat = lat - math.degrees(angular)
    max_lat = lat + math.degrees(angular)
    if min_lat <= -90.0 or max_lat >= 90.0:
        # The circle contains a pole, every longitude is reachable.
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    delta_lon = math.degrees(math.asin(min(1.0, math.sin(angular) / math.cos(math.radians(lat)))))
    min_lon = lon - delta_lon
    max_lon = lon + delta_lon
    if min_lon < -180.0:
        min_lon += 360.0
    if max_lon > 180.0:
        max_lon -= 360.0
    return BoundingBox(min_lat, max_lat, min_lon, max_lon)


def distance_score(distance_km: float | None) -> float:
    if distance_km is None:
        return 0.0
    return 1.0 / (1.0 + max(0.0, distance_km))


class GeoFilter:
    """Restricts candidates to a radius and annotates each with its distance."""

    def within(self, doc: SearchDocument, location: LocationFilter, box: BoundingBox) -> float | None:
        if not doc.has_valid_location():
            return None
        point = doc.location
        if not box.contains(point.lat, point.lon):
            return None
        distance = haversine_km(location.lat, location.lon, point.lat, point.lon)
        if distance > location.radius_km:
            return None
        return distance

    def apply(self, docs: Iterable[SearchDocument], location: LocationFilter) -> dict[str, float]:
        """Return ``{doc_id: distance_km}`` for every document inside the radius."""

        box = bounding_box(location.lat, location.lon, location.radius_km)
        distances: dict[str, float] = {}
        skipped = 0
        for doc in docs:
            distance = self.within(doc, location, box)
            if distance is None:
                if not doc.has_valid_location():
                    skipped += 1
                continue
            distances[doc.id] = distance
        if skipped:
            logger.debug("geo filter skipped %s documents without valid coordinates", skipped)
        return distances
