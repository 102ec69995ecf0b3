"""
Planning-zone locator over the URA Master Plan 2019 land-use layer.

The GeoJSON is loaded once per locator.  Each feature keeps its
attributes as an HTML table inside the free-text "Description" property;
parse_description_table() recovers them row by row and ignores rows it
cannot read.

Two behaviors are inherited from the source data model and kept as-is:
  - find_zone() returns the FIRST zone in file order that covers the
    point.  Zones are assumed not to overlap; where they do, file order
    decides, not polygon size.
  - find_nearby_zones() keeps a zone if it covers the point or if its
    centroid is within the radius.  Large zones that only clip the disk
    can be missed, and zones mostly outside it can be included.

Coordinates are WGS84 (lat/lon).  Geometry is handled with shapely.
"""

import json
import logging
import math
import os
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup
from dotenv import load_dotenv
from shapely.errors import ShapelyError
from shapely.geometry import Point, shape

from geometry import bbox_intersects, geographic_bbox_for_radius, haversine_meters
from search_config import SEARCH_CONFIG
from ttl_cache import MISSING, TTLCache

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_ZONES_PATH = "data/planning-zones/MasterPlan2019LandUselayer.geojson"


def _zones_path() -> str:
    return os.environ.get("SGPROX_ZONES_PATH", DEFAULT_ZONES_PATH)


# =============================================================================
# Parsing
# =============================================================================

@dataclass
class PlanningZone:
    zone_id: str
    land_use: str
    land_use_text: str = ""
    gross_plot_ratio: str = ""
    max_height: str = ""
    min_gross_plot_ratio: str = ""
    incremental_crc: str = ""
    last_updated: str = ""
    geometry: object = field(default=None, repr=False)   # shapely Polygon / MultiPolygon
    bbox: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)  # min_lon, min_lat, max_lon, max_lat


def parse_description_table(html: str) -> Dict[str, str]:
    """Header -> value pairs from <tr><th>KEY</th><td>VALUE</td></tr> rows."""
    if not html:
        return {}
    soup = BeautifulSoup(html, "html.parser")
    attributes = {}
    for row in soup.find_all("tr"):
        header = row.find("th")
        value = row.find("td")
        if header is None or value is None:
            continue
        key = header.get_text(strip=True)
        if key:
            attributes[key] = value.get_text(strip=True)
    return attributes


def _zone_from_feature(index: int, feature: Dict) -> PlanningZone:
    attrs = parse_description_table((feature.get("properties") or {}).get("Description", ""))
    geom = shape(feature["geometry"])
    return PlanningZone(
        zone_id=f"zone_{index}",
        land_use=attrs.get("LU_DESC") or "UNKNOWN",
        land_use_text=attrs.get("LU_TEXT", ""),
        gross_plot_ratio=attrs.get("GPR", ""),
        max_height=attrs.get("WHI_Q_MX", ""),
        min_gross_plot_ratio=attrs.get("GPR_B_MN", ""),
        incremental_crc=attrs.get("INC_CRC", ""),
        last_updated=attrs.get("FMEL_UPD_D", ""),
        geometry=geom,
        bbox=tuple(geom.bounds),
    )


# =============================================================================
# Land-use statistics
# =============================================================================

@dataclass
class LandUseShare:
    count: int
    percentage: int


def land_use_mix(zones: List[PlanningZone]) -> Dict[str, LandUseShare]:
    """Zones per land-use category, with whole-number percentages."""
    total = len(zones)
    counts = Counter(zone.land_use for zone in zones)
    return {
        land_use: LandUseShare(
            count=count,
            percentage=int(count / total * 100 + 0.5) if total else 0,
        )
        for land_use, count in counts.items()
    }


def diversity_score(mix: Dict[str, LandUseShare]) -> float:
    """Shannon entropy of the rounded category percentages over log(k).

    0 for a single category; 1 for an even spread.  The shares are the
    whole-number percentages as reported, so three categories at 33%
    score just under 1.
    """
    if len(mix) <= 1:
        return 0.0
    shares = [s.percentage / 100.0 for s in mix.values() if s.percentage > 0]
    entropy = -sum(p * math.log(p) for p in shares)
    return entropy / math.log(len(mix))


@dataclass
class ZoneAnalysis:
    property_zone: Optional[PlanningZone]
    nearby_zones: List[PlanningZone]
    land_use_mix: Dict[str, LandUseShare]
    diversity: float
    total_zones: int
    radius_m: float


# =============================================================================
# Locator
# =============================================================================

class _Load:
    """One in-flight load shared by every caller that arrives during it."""

    def __init__(self):
        self.done = threading.Event()
        self.error: Optional[BaseException] = None


class PlanningZoneLocator:
    """
    Usage:
        locator = PlanningZoneLocator()
        zone = locator.find_zone(1.3521, 103.8198)
        report = locator.analyze(1.3521, 103.8198, radius_m=800)
    """

    def __init__(self, path: Optional[str] = None, cache: Optional[TTLCache] = None):
        self.path = path or _zones_path()
        self.cache = cache if cache is not None else TTLCache(
            default_ttl=SEARCH_CONFIG.cache.zones, name="planning-zones"
        )
        self._zones: Optional[List[PlanningZone]] = None
        self._lock = threading.Lock()
        self._inflight: Optional[_Load] = None

    def ensure_loaded(self) -> None:
        """Load the dataset exactly once.

        Callers arriving while a load is running wait for it and see its
        outcome; a failed load raises to all of them and leaves the
        locator unloaded so a later call can try again.
        """
        if self._zones is not None:
            return
        with self._lock:
            if self._zones is not None:
                return
            load = self._inflight
            owner = load is None
            if owner:
                load = self._inflight = _Load()

        if not owner:
            load.done.wait()
            if load.error is not None:
                raise load.error
            return

        try:
            zones = self._read_zones()
        except Exception as e:
            load.error = e
            with self._lock:
                self._inflight = None
            load.done.set()
            raise

        with self._lock:
            self._zones = zones
            self._inflight = None
        load.done.set()

    def _read_zones(self) -> List[PlanningZone]:
        if not os.path.exists(self.path):
            raise FileNotFoundError(f"Planning zones data file not found: {self.path}")

        logger.info("Loading planning zones from %s", self.path)
        with open(self.path, encoding="utf-8") as f:
            collection = json.load(f)

        features = collection.get("features") or []
        zones = []
        for index, feature in enumerate(features):
            try:
                zones.append(_zone_from_feature(index, feature))
            except (KeyError, TypeError, ValueError, AttributeError, ShapelyError) as e:
                logger.warning("Skipping planning zone %d with unusable geometry: %s", index, e)

        distribution = Counter(z.land_use for z in zones)
        logger.info(
            "Loaded %d planning zones (%d land-use types)", len(zones), len(distribution)
        )
        logger.debug("Land use distribution: %s", dict(distribution))
        return zones

    @property
    def zones(self) -> List[PlanningZone]:
        self.ensure_loaded()
        return self._zones

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def find_zone(self, latitude: float, longitude: float) -> Optional[PlanningZone]:
        """First zone in file order covering the point, or None."""
        zones = self.zones
        key = ("zone", latitude, longitude)
        cached = self.cache.get(key, MISSING)
        if cached is not MISSING:
            return cached

        point = Point(longitude, latitude)
        found = None
        for zone in zones:
            min_lon, min_lat, max_lon, max_lat = zone.bbox
            if not (min_lon <= longitude <= max_lon and min_lat <= latitude <= max_lat):
                continue
            try:
                if zone.geometry.covers(point):
                    found = zone
                    break
            except Exception as e:
                logger.warning("Error checking point in %s: %s", zone.zone_id, e)

        self.cache.set(key, found)
        return found

    def find_nearby_zones(
        self, latitude: float, longitude: float, radius_m: float
    ) -> List[PlanningZone]:
        """Zones covering the point or with a centroid within radius_m."""
        zones = self.zones
        key = ("nearby", latitude, longitude, radius_m)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        disk_bbox = geographic_bbox_for_radius(latitude, longitude, radius_m)
        point = Point(longitude, latitude)
        nearby = []
        for zone in zones:
            if not bbox_intersects(zone.bbox, disk_bbox):
                continue
            try:
                if zone.geometry.covers(point):
                    nearby.append(zone)
                    continue
                centroid = zone.geometry.centroid
                if haversine_meters(latitude, longitude, centroid.y, centroid.x) <= radius_m:
                    nearby.append(zone)
            except Exception as e:
                logger.warning("Error checking %s: %s", zone.zone_id, e)

        self.cache.set(key, nearby)
        return nearby

    def analyze(
        self,
        latitude: float,
        longitude: float,
        radius_m: float = SEARCH_CONFIG.search.zone_radius_m,
    ) -> ZoneAnalysis:
        property_zone = self.find_zone(latitude, longitude)
        nearby = self.find_nearby_zones(latitude, longitude, radius_m)
        mix = land_use_mix(nearby)
        return ZoneAnalysis(
            property_zone=property_zone,
            nearby_zones=nearby,
            land_use_mix=mix,
            diversity=diversity_score(mix),
            total_zones=len(nearby),
            radius_m=radius_m,
        )

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def zone_count(self) -> int:
        return len(self.zones)

    def land_use_types(self) -> List[str]:
        return sorted({zone.land_use for zone in self.zones})

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()
