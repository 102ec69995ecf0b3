"""
OneMap API client: token auth, location search, coordinate conversion,
the MRT station list and routing.

All OneMap HTTP goes through OneMapClient._request(), which records the
call on the active sg_trace and maps HTTP failures onto the error classes
below.  Retrying is NOT done here: the batch router decides which
failures are worth another attempt.  The one exception is an expired
token, which is refreshed and retried exactly once.

Caching uses the TTLCache instances handed to the constructors.  Only
successful responses are cached.
"""

import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from dotenv import load_dotenv

from geometry import PlanarPoint
from search_config import SEARCH_CONFIG, CacheTTLs
from sg_trace import get_trace
from ttl_cache import MISSING, TTLCache

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.onemap.gov.sg/api"
TRANSPORT_MODES = ("walk", "cycle", "drive", "pt")


# =============================================================================
# Errors
# =============================================================================

class LocationNotFoundError(Exception):
    """Raised when a location query resolves to nothing."""

    pass


class RouteError(Exception):
    """Base class for failed OneMap calls; not retried on its own."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class RouteRateLimitedError(RouteError):
    """Raised on HTTP 429."""

    pass


class RouteServerError(RouteError):
    """Raised on HTTP 5xx, timeouts and dropped connections."""

    pass


class AuthExpiredError(RouteError):
    """Raised when OneMap rejects the token even after one refresh."""

    pass


def _error_for_status(status_code: int, message: str) -> RouteError:
    if status_code == 429:
        return RouteRateLimitedError(message, status_code)
    if status_code in (401, 403):
        return AuthExpiredError(message, status_code)
    if status_code >= 500:
        return RouteServerError(message, status_code)
    return RouteError(message, status_code)


def _provider_status(status_code: int) -> str:
    if status_code == 0:
        return "network_error"
    if status_code == 429:
        return "rate_limit"
    if status_code in (401, 403):
        return "auth"
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "ok"


def _record(endpoint: str, elapsed_ms: int, status_code: int,
            provider_status: Optional[str] = None, retried: bool = False):
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="onemap",
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status or _provider_status(status_code),
            retried=retried,
        )


# =============================================================================
# Data types
# =============================================================================

@dataclass
class ResolvedLocation:
    """A location known in both coordinate systems."""
    x: float
    y: float
    latitude: float
    longitude: float
    address: str = ""
    postal_code: str = ""


@dataclass
class MRTStation:
    """One OneMap search hit for "MRT STATION" (a station or one of its exits)."""
    name: str
    building: str
    address: str
    postal: str
    x: float
    y: float
    latitude: float
    longitude: float
    line: Optional[str] = None          # "CC"
    station_code: Optional[str] = None  # "CC24"


@dataclass
class RouteOptions:
    """Public-transport routing parameters; ignored for other modes."""
    date: Optional[str] = None          # MM-DD-YYYY, defaults to today
    time: str = "09:00:00"
    pt_mode: str = "TRANSIT"
    max_walk_distance: int = 1500

    def route_date(self) -> str:
        return self.date or date.today().strftime("%m-%d-%Y")

    def cache_key(self) -> Tuple:
        # Keyed on the date actually sent so "today" does not outlive the day.
        return (self.route_date(), self.time, self.pt_mode, self.max_walk_distance)


@dataclass
class RouteResult:
    """Travel time for one origin/destination pair (seconds)."""
    total_time_seconds: float
    walk_time_seconds: Optional[float] = None
    transit_time_seconds: Optional[float] = None
    transfers: Optional[int] = None
    walk_distance_m: Optional[float] = None
    total_distance_m: Optional[float] = None

    @property
    def total_minutes(self) -> int:
        return math.ceil(self.total_time_seconds / 60)

    @property
    def walk_minutes(self) -> Optional[int]:
        if self.walk_time_seconds is None:
            return None
        return math.ceil(self.walk_time_seconds / 60)

    @property
    def transit_minutes(self) -> Optional[int]:
        if self.transit_time_seconds is None:
            return None
        return math.ceil(self.transit_time_seconds / 60)


# =============================================================================
# Parsing helpers
# =============================================================================

_COORD_PAIR = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")
_STATION_CODE = re.compile(r"\(([A-Z]{2}\d+)\)$")


def detect_coordinate_system(first: float, second: float) -> str:
    """Guess "WGS84", "SVY21" or "unknown" from Singapore's value ranges."""
    if 1.2 <= first <= 1.5 and 103 <= second <= 104.5:
        return "WGS84"
    if 2000 <= first <= 50000 and 15000 <= second <= 50000:
        return "SVY21"
    return "unknown"


def parse_station(result: Dict[str, Any]) -> MRTStation:
    """Build an MRTStation from one search hit; the code comes from "(CC24)"."""
    building = result.get("BUILDING", "") or ""
    match = _STATION_CODE.search(building)
    station_code = match.group(1) if match else None
    line = re.sub(r"\d+$", "", station_code) if station_code else None
    return MRTStation(
        name=building,
        building=building,
        address=result.get("ADDRESS", ""),
        postal=result.get("POSTAL", ""),
        x=float(result["X"]),
        y=float(result["Y"]),
        latitude=float(result["LATITUDE"]),
        longitude=float(result["LONGITUDE"]),
        line=line,
        station_code=station_code,
    )


def extract_itineraries(data: Dict[str, Any], mode: str) -> List[RouteResult]:
    """Every usable route in a routing response, fastest first.

    Public transport returns several itineraries (ties keep response
    order).  Other modes carry a single route_summary.
    """
    if mode == "pt":
        itineraries = (data.get("plan") or {}).get("itineraries") or []
        ranked = sorted(itineraries, key=lambda it: it.get("duration", math.inf))
        return [
            RouteResult(
                total_time_seconds=it.get("duration", 0),
                walk_time_seconds=it.get("walkTime"),
                transit_time_seconds=it.get("transitTime"),
                transfers=it.get("transfers") or 0,
                walk_distance_m=it.get("walkDistance"),
            )
            for it in ranked
        ]

    summary = data.get("route_summary")
    if not summary or "total_time" not in summary:
        return []
    return [RouteResult(
        total_time_seconds=summary["total_time"],
        total_distance_m=summary.get("total_distance"),
    )]


def extract_route_result(data: Dict[str, Any], mode: str) -> Optional[RouteResult]:
    """The fastest route in a routing response, or None."""
    routes = extract_itineraries(data, mode)
    return routes[0] if routes else None


def _format_point(point: Union[str, Tuple[float, float]]) -> str:
    if isinstance(point, str):
        return point
    lat, lon = point
    return f"{lat},{lon}"


# =============================================================================
# Auth
# =============================================================================

class OneMapAuth:
    """Fetches and caches the OneMap access token.

    The token is cached until one hour before the expiry OneMap reports.
    """

    TOKEN_KEY = "onemap_token"
    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        session: Optional[requests.Session] = None,
        base_url: Optional[str] = None,
        ttls: CacheTTLs = SEARCH_CONFIG.cache,
        clock=time.time,
    ):
        self.email = email or os.environ.get("ONEMAP_EMAIL")
        self.password = password or os.environ.get("ONEMAP_PASSWORD")
        if not self.email or not self.password:
            raise ValueError("ONEMAP_EMAIL and ONEMAP_PASSWORD are required")
        self.cache = cache if cache is not None else TTLCache(name="onemap-token")
        self.session = session or requests.Session()
        self.base_url = base_url or os.environ.get("ONEMAP_BASE_URL", DEFAULT_BASE_URL)
        self.ttls = ttls
        self._clock = clock

    def get_token(self) -> str:
        cached = self.cache.get(self.TOKEN_KEY)
        if cached:
            return cached

        t0 = time.time()
        try:
            response = self.session.post(
                f"{self.base_url}/auth/post/getToken",
                json={"email": self.email, "password": self.password},
                timeout=self.DEFAULT_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            _record("token", int((time.time() - t0) * 1000), 0)
            raise RouteServerError(f"Failed to get OneMap token: {e}") from e
        _record("token", int((time.time() - t0) * 1000), response.status_code)

        if response.status_code != 200:
            raise _error_for_status(
                response.status_code,
                f"Failed to get OneMap token (HTTP {response.status_code})",
            )

        data = response.json()
        token = data["access_token"]
        ttl = (
            int(float(data.get("expiry_timestamp", 0)))
            - int(self._clock())
            - self.ttls.token_safety_margin
        )
        if ttl > 0:
            self.cache.set(self.TOKEN_KEY, token, ttl=ttl)
        else:
            logger.warning("OneMap token expires within the safety margin; not caching")
        return token

    def has_valid_token(self) -> bool:
        return self.cache.has(self.TOKEN_KEY)

    def invalidate(self) -> None:
        self.cache.delete(self.TOKEN_KEY)


# =============================================================================
# Client
# =============================================================================

class OneMapClient:
    """
    Thin OneMap wrapper returning typed results.

    Usage:
        client = OneMapClient()
        origin = client.resolve("Clementi Mall")
        stations = client.get_all_mrt_stations()
        route = client.compute_route(
            (origin.latitude, origin.longitude),
            (stations[0].latitude, stations[0].longitude),
            "pt",
        )
    """

    STATION_QUERY = "MRT STATION"

    def __init__(
        self,
        auth: Optional[OneMapAuth] = None,
        cache: Optional[TTLCache] = None,
        session: Optional[requests.Session] = None,
        base_url: Optional[str] = None,
        ttls: CacheTTLs = SEARCH_CONFIG.cache,
        timeout: int = SEARCH_CONFIG.router.request_timeout,
        page_delay: float = 0.1,
        sleep=time.sleep,
    ):
        self._session = session
        self._local = threading.local()
        self.base_url = base_url or os.environ.get("ONEMAP_BASE_URL", DEFAULT_BASE_URL)
        self.cache = cache if cache is not None else TTLCache(default_ttl=ttls.search, name="onemap")
        self.ttls = ttls
        self.timeout = timeout
        self.page_delay = page_delay
        self._sleep = sleep
        self._auth = auth
        self._auth_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        # One Session per thread unless injected; the batch router calls in from a pool.
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    @property
    def auth(self) -> OneMapAuth:
        # Search works without credentials; only build auth when needed.
        # Built once under a lock: router workers arrive here together.
        if self._auth is None:
            with self._auth_lock:
                if self._auth is None:
                    self._auth = OneMapAuth(
                        session=self._session, base_url=self.base_url, ttls=self.ttls
                    )
        return self._auth

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _request(
        self,
        endpoint_name: str,
        path: str,
        params: Dict[str, Any],
        token: Optional[str] = None,
        retried: bool = False,
    ) -> Dict[str, Any]:
        """One GET with trace recording; HTTP failures become RouteError subclasses."""
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        t0 = time.time()
        try:
            response = self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            _record(endpoint_name, int((time.time() - t0) * 1000), 0, "timeout", retried)
            raise RouteServerError(f"OneMap {endpoint_name} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            _record(endpoint_name, int((time.time() - t0) * 1000), 0, retried=retried)
            raise RouteServerError(f"OneMap {endpoint_name} request failed: {e}") from e

        _record(endpoint_name, int((time.time() - t0) * 1000), response.status_code,
                retried=retried)

        if response.status_code >= 400:
            raise _error_for_status(
                response.status_code,
                f"OneMap {endpoint_name} failed (HTTP {response.status_code})",
            )
        try:
            return response.json()
        except ValueError as e:
            raise RouteError(f"OneMap {endpoint_name} returned invalid JSON") from e

    def _authed_get(self, endpoint_name: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET with a bearer token; an expired token is refreshed and retried once."""
        token = self.auth.get_token()
        try:
            return self._request(endpoint_name, path, params, token=token)
        except AuthExpiredError:
            logger.warning("OneMap rejected token on %s; refreshing and retrying once", endpoint_name)
            self.auth.invalidate()
            token = self.auth.get_token()
            return self._request(endpoint_name, path, params, token=token, retried=True)

    # -------------------------------------------------------------------------
    # Search and resolution
    # -------------------------------------------------------------------------

    def search_location(self, query: str, page: int = 1) -> Dict[str, Any]:
        """Raw OneMap search JSON for one results page."""
        key = ("search", query, page)
        cached = self.cache.get(key, MISSING)
        if cached is not MISSING:
            _record("search", 0, 200, "cache_hit")
            return cached

        params = {"searchVal": query, "returnGeom": "Y", "getAddrDetails": "Y"}
        if page > 1:
            params["pageNum"] = page
        data = self._request("search", "/common/elastic/search", params)
        self.cache.set(key, data, ttl=self.ttls.search)
        return data

    def resolve(self, text: str) -> ResolvedLocation:
        """Turn free text, "lat,lon" or SVY21 "x,y" into a ResolvedLocation.

        Raises LocationNotFoundError when a text search finds nothing.
        """
        match = _COORD_PAIR.match(text or "")
        if match:
            first, second = float(match.group(1)), float(match.group(2))
            system = detect_coordinate_system(first, second)
            if system == "WGS84":
                point = self.convert_to_planar(first, second)
                return ResolvedLocation(point.x, point.y, first, second, address=text.strip())
            if system == "SVY21":
                lat, lon = self.convert_to_wgs84(first, second)
                return ResolvedLocation(first, second, lat, lon, address=text.strip())
            logger.info("Coordinates %r are outside Singapore ranges; searching as text", text)

        data = self.search_location(text)
        results = data.get("results") or []
        if not data.get("found") or not results:
            raise LocationNotFoundError(f'Location "{text}" not found')

        hit = results[0]
        return ResolvedLocation(
            x=float(hit["X"]),
            y=float(hit["Y"]),
            latitude=float(hit["LATITUDE"]),
            longitude=float(hit["LONGITUDE"]),
            address=hit.get("ADDRESS", ""),
            postal_code=hit.get("POSTAL", ""),
        )

    def convert_to_planar(self, latitude: float, longitude: float) -> PlanarPoint:
        """WGS84 -> SVY21 through OneMap's conversion service."""
        key = ("4326to3414", latitude, longitude)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        data = self._authed_get(
            "convert", "/common/convert/4326to3414",
            {"latitude": latitude, "longitude": longitude},
        )
        if data.get("X") is None or data.get("Y") is None:
            raise RouteError("Invalid response from coordinate conversion service")
        point = PlanarPoint(float(data["X"]), float(data["Y"]))
        self.cache.set(key, point, ttl=self.ttls.conversion)
        return point

    def convert_to_wgs84(self, x: float, y: float) -> Tuple[float, float]:
        """SVY21 -> (latitude, longitude)."""
        key = ("3414to4326", x, y)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        data = self._authed_get("convert", "/common/convert/3414to4326", {"X": x, "Y": y})
        if data.get("latitude") is None or data.get("longitude") is None:
            raise RouteError("Invalid response from coordinate conversion service")
        result = (float(data["latitude"]), float(data["longitude"]))
        self.cache.set(key, result, ttl=self.ttls.conversion)
        return result

    # -------------------------------------------------------------------------
    # Stations
    # -------------------------------------------------------------------------

    def get_all_mrt_stations(self) -> List[MRTStation]:
        """Every "MRT STATION" search hit across all result pages.

        A page that fails to load is logged and skipped; the rest of the
        list is still returned and cached.
        """
        key = "all_mrt_stations"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        first = self.search_location(self.STATION_QUERY)
        total_pages = int(first.get("totalNumPages") or 1)
        logger.info(
            "Loading MRT stations: %s results across %d pages",
            first.get("found"), total_pages,
        )

        stations = [parse_station(r) for r in first.get("results") or []]
        for page in range(2, total_pages + 1):
            try:
                data = self.search_location(self.STATION_QUERY, page=page)
            except RouteError as e:
                logger.warning("Failed to load station page %d: %s", page, e)
                continue
            stations.extend(parse_station(r) for r in data.get("results") or [])
            if page % 10 == 0:
                logger.info("Loaded %d/%d station pages", page, total_pages)
            self._sleep(self.page_delay)

        logger.info("Total MRT stations loaded: %d", len(stations))
        if stations:
            self.cache.set(key, stations, ttl=self.ttls.stations)
        return stations

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def compute_routes(
        self,
        origin: Union[str, Tuple[float, float]],
        destination: Union[str, Tuple[float, float]],
        mode: str,
        options: Optional[RouteOptions] = None,
    ) -> List[RouteResult]:
        """All routes between two WGS84 points, fastest first.

        Raises RouteRateLimitedError / RouteServerError for transient
        failures, AuthExpiredError after a failed token refresh, and
        RouteError for anything else (including responses without a
        usable route).
        """
        if mode not in TRANSPORT_MODES:
            raise ValueError(f"Unknown transport mode {mode!r}; expected one of {TRANSPORT_MODES}")
        options = options or RouteOptions()
        start = _format_point(origin)
        end = _format_point(destination)

        key = ("route", start, end, mode, options.cache_key() if mode == "pt" else None)
        cached = self.cache.get(key)
        if cached is not None:
            _record("route", 0, 200, "cache_hit")
            return cached

        params: Dict[str, Any] = {"start": start, "end": end, "routeType": mode}
        if mode == "pt":
            params["mode"] = options.pt_mode
            params["date"] = options.route_date()
            params["time"] = options.time
            params["maxWalkDistance"] = options.max_walk_distance

        data = self._authed_get("route", "/public/routingsvc/route", params)
        if data.get("error"):
            raise RouteError(f"Route calculation failed: {data['error']}")

        routes = extract_itineraries(data, mode)
        if not routes:
            message = data.get("message") or "no route in response"
            raise RouteError(f"Could not extract time data: {message}")

        self.cache.set(key, routes, ttl=self.ttls.route)
        return routes

    def compute_route(
        self,
        origin: Union[str, Tuple[float, float]],
        destination: Union[str, Tuple[float, float]],
        mode: str,
        options: Optional[RouteOptions] = None,
    ) -> RouteResult:
        """Travel time between two WGS84 points (the fastest route)."""
        return self.compute_routes(origin, destination, mode, options)[0]
