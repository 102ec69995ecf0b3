"""
MRT station finder: which stations can be reached from a location
within a travel-time budget, and how the transport modes compare.

Pipeline for find_stations_within_time():
  resolve origin -> load stations -> 15km prefilter -> sort by distance
  -> collapse exits into one entry per station -> route the closest 40
  -> keep those within the budget, fastest first.

An unresolvable origin aborts the query.  A station that cannot be
routed is reported in `failures` and the rest of the result stands.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from batch_router import AdaptiveBatchRouter, filter_within_time
from geometry import distance_km, sort_by_distance, within_radius
from onemap_client import (
    TRANSPORT_MODES,
    MRTStation,
    OneMapClient,
    ResolvedLocation,
    RouteError,
    RouteOptions,
    RouteResult,
)
from search_config import SEARCH_CONFIG, SearchConfig
from sg_trace import trace_stage
from station_dedupe import deduplicate_stations, duplicate_groups

logger = logging.getLogger(__name__)

VALID_LINES = (
    "NS", "EW", "NE", "CC", "DT", "TE", "CE",
    "JE", "JS", "CG", "BP", "SW", "PE", "PW", "SE",
)


class StationNotFoundError(Exception):
    """Raised when a named station matches nothing in the station list."""

    pass


# =============================================================================
# Data types
# =============================================================================

@dataclass
class NearbyStation:
    """A station with its straight-line distance (km) from the origin."""
    station: MRTStation
    distance: float

    @property
    def name(self) -> str:
        return self.station.name


@dataclass
class StationRoute:
    station: MRTStation
    total_minutes: int
    distance_km: float
    mode: str
    walk_minutes: Optional[int] = None
    transit_minutes: Optional[int] = None
    transfers: Optional[int] = None
    within_time_limit: bool = True


@dataclass
class StationFailure:
    station: MRTStation
    error: str
    error_kind: str


@dataclass
class TransitSearchResult:
    origin: ResolvedLocation
    routes: List[StationRoute] = field(default_factory=list)
    failures: List[StationFailure] = field(default_factory=list)
    checked: int = 0


@dataclass
class DetailedRoute:
    """The chosen route to one station, plus the next-fastest alternatives (pt only)."""
    origin: ResolvedLocation
    station: MRTStation
    mode: str
    primary: RouteResult
    alternatives: List[RouteResult] = field(default_factory=list)
    options: Optional[RouteOptions] = None


@dataclass
class ModeComparison:
    station: MRTStation
    modes: Dict[str, StationRoute] = field(default_factory=dict)
    recommendation: str = "walk"


def _station_route(
    station: MRTStation, origin, result: RouteResult, mode: str, max_minutes: float
) -> StationRoute:
    return StationRoute(
        station=station,
        total_minutes=result.total_minutes,
        distance_km=distance_km(origin, station),
        mode=mode,
        walk_minutes=result.walk_minutes,
        transit_minutes=result.transit_minutes,
        transfers=result.transfers,
        within_time_limit=result.total_minutes <= max_minutes,
    )


# =============================================================================
# Finder
# =============================================================================

class MRTFinder:
    """
    Usage:
        finder = MRTFinder(OneMapClient())
        result = finder.find_stations_within_time("Clementi Mall", max_minutes=20)
        for route in result.routes:
            print(route.station.name, route.total_minutes)
    """

    def __init__(
        self,
        client: Optional[OneMapClient] = None,
        router: Optional[AdaptiveBatchRouter] = None,
        config: SearchConfig = SEARCH_CONFIG,
        sleep=time.sleep,
    ):
        self.client = client or OneMapClient()
        self.config = config
        self.router = router or AdaptiveBatchRouter(
            self._route_to_station, config.router, sleep=sleep
        )

    def _route_to_station(self, origin, nearby: NearbyStation, mode, options) -> RouteResult:
        station = nearby.station
        return self.client.compute_route(
            origin, (station.latitude, station.longitude), mode, options
        )

    def _nearby_stations(self, origin: ResolvedLocation) -> List[NearbyStation]:
        """Stations within the prefilter radius, nearest first."""
        stations = self.client.get_all_mrt_stations()
        radius_m = self.config.search.station_prefilter_km * 1000
        nearby = within_radius(stations, origin, radius_m)
        return [
            NearbyStation(station=s, distance=d / 1000.0)
            for s, d in sort_by_distance(nearby, origin)
        ]

    def find_stations_within_time(
        self,
        location_query: str,
        max_minutes: float = SEARCH_CONFIG.search.max_travel_minutes,
        mode: str = "pt",
        options: Optional[RouteOptions] = None,
    ) -> TransitSearchResult:
        if mode not in TRANSPORT_MODES:
            raise ValueError(f"Unknown transport mode {mode!r}")

        with trace_stage("resolve"):
            origin = self.client.resolve(location_query)
        logger.info(
            "Resolved %r to SVY21(%.0f, %.0f) WGS84(%.5f, %.5f)",
            location_query, origin.x, origin.y, origin.latitude, origin.longitude,
        )

        with trace_stage("stations"):
            nearby = self._nearby_stations(origin)

        with trace_stage("dedupe"):
            duplicate_groups(nearby[:100])
            unique = deduplicate_stations(nearby)
        to_check = unique[:self.config.search.max_stations_routed]
        logger.info(
            "%d stations within %.0fkm, %d unique, routing closest %d",
            len(nearby), self.config.search.station_prefilter_km, len(unique), len(to_check),
        )

        with trace_stage("routing"):
            outcomes = self.router.route_all(
                (origin.latitude, origin.longitude), to_check, mode, options
            )

        failures = [
            StationFailure(o.destination.station, o.error, o.error_kind)
            for o in outcomes if not o.ok
        ]
        routes = [
            _station_route(o.destination.station, origin, o.result, mode, max_minutes)
            for o in filter_within_time(outcomes, max_minutes)
        ]

        logger.info(
            "Summary: %d routed, %d failed, %d within %s minutes",
            len(outcomes) - len(failures), len(failures), len(routes), max_minutes,
        )
        for failure in failures:
            logger.warning(
                "  - %s: %s", failure.station.name,
                "Rate Limited" if failure.error_kind == "rate_limited" else failure.error,
            )

        return TransitSearchResult(
            origin=origin, routes=routes, failures=failures, checked=len(to_check)
        )

    def find_nearest_stations(self, location_query: str, count: int = 5) -> List[NearbyStation]:
        """Closest station entries by straight-line distance (exits not collapsed)."""
        origin = self.client.resolve(location_query)
        stations = self.client.get_all_mrt_stations()
        return [
            NearbyStation(station=s, distance=d / 1000.0)
            for s, d in sort_by_distance(stations, origin)[:count]
        ]

    def _find_station(self, station_name: str) -> MRTStation:
        needle = station_name.lower()
        for station in self.client.get_all_mrt_stations():
            if (
                needle in station.name.lower()
                or needle in station.building.lower()
                or (station.station_code or "").lower() == needle
            ):
                return station
        raise StationNotFoundError(f'Station "{station_name}" not found')

    def compare_transport_modes(
        self, location_query: str, station_name: Optional[str] = None
    ) -> ModeComparison:
        """Travel times to one station for every mode.

        The recommendation is the fastest mode within the default travel
        budget, or "walk" when none qualifies.
        """
        origin = self.client.resolve(location_query)
        if station_name:
            station = self._find_station(station_name)
        else:
            ranked = sort_by_distance(self.client.get_all_mrt_stations(), origin)
            if not ranked:
                raise StationNotFoundError("No MRT stations available")
            station = ranked[0][0]

        limit = self.config.search.max_travel_minutes
        comparison = ModeComparison(station=station)
        for mode in TRANSPORT_MODES:
            try:
                result = self.client.compute_route(
                    (origin.latitude, origin.longitude),
                    (station.latitude, station.longitude),
                    mode,
                    RouteOptions() if mode == "pt" else None,
                )
            except RouteError as e:
                logger.warning("Could not route %s to %s: %s", mode, station.name, e)
                continue
            comparison.modes[mode] = _station_route(station, origin, result, mode, limit)

        qualifying = sorted(
            (r for r in comparison.modes.values() if r.within_time_limit),
            key=lambda r: r.total_minutes,
        )
        if qualifying:
            comparison.recommendation = qualifying[0].mode
        return comparison

    def get_detailed_route(
        self,
        location_query: str,
        station_name: str,
        mode: str = "pt",
        include_alternatives: bool = False,
        options: Optional[RouteOptions] = None,
    ) -> DetailedRoute:
        """Route to a named station (name, building or code such as "CC24").

        For public transport the fastest itinerary is the primary route;
        with include_alternatives the next two fastest come along too.
        """
        if mode not in TRANSPORT_MODES:
            raise ValueError(f"Unknown transport mode {mode!r}")
        origin = self.client.resolve(location_query)
        station = self._find_station(station_name)

        if mode == "pt":
            options = options or RouteOptions()
        else:
            options = None
        routes = self.client.compute_routes(
            (origin.latitude, origin.longitude),
            (station.latitude, station.longitude),
            mode,
            options,
        )
        alternatives = []
        if include_alternatives and mode == "pt":
            alternatives = routes[1:1 + self.config.search.max_route_alternatives]
        logger.info(
            "Route %s -> %s by %s: %d min (%d alternatives)",
            location_query, station.name, mode, routes[0].total_minutes, len(alternatives),
        )
        return DetailedRoute(
            origin=origin,
            station=station,
            mode=mode,
            primary=routes[0],
            alternatives=alternatives,
            options=options,
        )

    def filter_by_lines(
        self,
        location_query: str,
        lines: Sequence[str],
        max_minutes: float = SEARCH_CONFIG.search.max_travel_minutes,
        mode: str = "pt",
    ) -> Dict[str, List[StationRoute]]:
        """Reachable stations grouped by the requested line codes."""
        wanted = [line.upper() for line in lines]
        invalid = [line for line in wanted if line not in VALID_LINES]
        if invalid:
            raise ValueError(
                f"Invalid line code(s): {', '.join(invalid)}. Valid: {', '.join(VALID_LINES)}"
            )

        result = self.find_stations_within_time(location_query, max_minutes, mode)
        return {
            line: [r for r in result.routes if (r.station.line or "").upper() == line]
            for line in wanted
        }
