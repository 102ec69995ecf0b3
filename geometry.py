"""
Planar and geographic distance helpers.

Property and station coordinates are SVY21 (EPSG:3414), a local projection
in meters, so plain Euclidean distance is accurate enough at city scale.
Planning-zone polygons arrive in WGS84, and only the zone locator needs
the geographic helpers at the bottom of this module.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple, TypeVar

T = TypeVar("T")

# Mean meters per degree of latitude; longitude shrinks by cos(lat).
METERS_PER_DEG_LAT = 110574.0
METERS_PER_DEG_LON_EQUATOR = 111320.0
EARTH_RADIUS_M = 6371008.8


@dataclass(frozen=True)
class PlanarPoint:
    """An SVY21 x/y pair in meters."""
    x: float
    y: float


@dataclass(frozen=True)
class SearchBounds:
    """Axis-aligned rectangle used as a cheap pre-filter."""
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    def contains(self, point) -> bool:
        return (
            self.min_x <= point.x <= self.max_x
            and self.min_y <= point.y <= self.max_y
        )


# =============================================================================
# Planar (SVY21)
# =============================================================================

def distance_meters(a, b) -> float:
    """Euclidean distance between two objects exposing .x and .y."""
    dx = b.x - a.x
    dy = b.y - a.y
    return math.sqrt(dx * dx + dy * dy)


def distance_km(a, b) -> float:
    return distance_meters(a, b) / 1000.0


def search_bounds(center, radius_m: float) -> SearchBounds:
    """Square of side 2*radius centered on *center*.

    Necessary but not sufficient for the circle: the corners add ~21%
    of extra area which the exact distance test removes.
    """
    return SearchBounds(
        min_x=center.x - radius_m,
        max_x=center.x + radius_m,
        min_y=center.y - radius_m,
        max_y=center.y + radius_m,
    )


def within_radius(items: Iterable[T], center, radius_m: float) -> List[T]:
    """Items whose coordinate lies within radius_m of center (inclusive)."""
    bounds = search_bounds(center, radius_m)
    return [
        item for item in items
        if bounds.contains(item) and distance_meters(item, center) <= radius_m
    ]


def sort_by_distance(items: Iterable[T], center) -> List[Tuple[T, float]]:
    """Pair each item with its distance (meters) and sort ascending.

    Python's sort is stable, so equal distances keep their input order.
    """
    paired = [(item, distance_meters(item, center)) for item in items]
    paired.sort(key=lambda pair: pair[1])
    return paired


# =============================================================================
# Geographic (WGS84), planning zones only
# =============================================================================

def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)

    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r

    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2)
    c = 2 * math.asin(math.sqrt(a))

    return EARTH_RADIUS_M * c


def geographic_bbox_for_radius(
    lat: float, lon: float, radius_m: float
) -> Tuple[float, float, float, float]:
    """(min_lon, min_lat, max_lon, max_lat) of a disk of radius_m around a point."""
    dlat = radius_m / METERS_PER_DEG_LAT
    dlon = radius_m / (METERS_PER_DEG_LON_EQUATOR * math.cos(math.radians(lat)))
    return (lon - dlon, lat - dlat, lon + dlon, lat + dlat)


def bbox_intersects(
    a: Tuple[float, float, float, float],
    b: Tuple[float, float, float, float],
) -> bool:
    """Whether two (min_x, min_y, max_x, max_y) boxes overlap (touching counts)."""
    return not (a[2] < b[0] or a[0] > b[2] or a[3] < b[1] or a[1] > b[3])
