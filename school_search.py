"""
Primary schools near a location, from OneMap's school query service.

The school endpoint is not part of the token-authenticated public API: it
expects the session cookies (OMITN, omiApp) that the OneMap homepage
hands out.  OneMapSchoolClient keeps those cookies on its own
requests.Session, refreshes them an hour before they expire, and on a
rejected request ("reauth", 401/403) clears them, signs in again and
retries exactly once.

Results are cached per (postal code, block, distance) in the injected
TTLCache.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from onemap_client import LocationNotFoundError, OneMapClient
from search_config import SEARCH_CONFIG, CacheTTLs
from sg_trace import get_trace, trace_stage
from ttl_cache import TTLCache

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SCHOOL_BASE_URL = "https://www.onemap.gov.sg"
REQUIRED_COOKIES = ("OMITN", "omiApp")
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)


class SchoolSearchError(Exception):
    """Raised when the school query service cannot be reached or fails."""

    pass


class SchoolAuthError(SchoolSearchError):
    """Raised when OneMap rejects or withholds the session cookies."""

    pass


@dataclass
class School:
    name: str
    address: str
    postal_code: str
    latitude: float
    longitude: float
    x: float
    y: float
    distance_category: str      # "1km" | "1-2km"
    moe_link: str = ""
    geometry: List[List[float]] = field(default_factory=list)


@dataclass
class NearbySchools:
    """Schools around one resolved location, split by OneMap's distance band."""
    address: str
    postal_code: str
    block: str
    distance_m: int
    within_1km: List[School] = field(default_factory=list)
    within_1_to_2km: List[School] = field(default_factory=list)

    @property
    def schools(self) -> List[School]:
        return self.within_1km + self.within_1_to_2km


def parse_school(row: Dict[str, Any]) -> School:
    """Build a School from one SearchResults row ("DIST_CODE" 1 = within 1km)."""
    postal = row.get("SCH_POSTAL_CODE", "") or ""
    address = " ".join(
        part for part in (row.get("SCH_HSE_BLK_NUM"), row.get("SCH_ROAD_NAME"), postal) if part
    )
    return School(
        name=row.get("SCHOOLNAME", ""),
        address=address,
        postal_code=postal,
        latitude=float(row["LATITUDE"]),
        longitude=float(row["LONGITUDE"]),
        x=float(row["SCH_X_ADDR"]),
        y=float(row["SCH_Y_ADDR"]),
        distance_category="1km" if str(row.get("DIST_CODE")) == "1" else "1-2km",
        moe_link=row.get("HYPERLINK", "") or "",
        geometry=row.get("GEOMETRY") or [],
    )


def _record(endpoint: str, elapsed_ms: int, status_code: int, provider_status: str,
            retried: bool = False):
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="onemap_schools",
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
        )


# =============================================================================
# Client
# =============================================================================

class OneMapSchoolClient:
    """
    Cookie-authenticated client for the nearby-primary-schools query.

    Usage:
        client = OneMapSchoolClient()
        schools = client.get_nearby_primary_schools("119077", "21", 1000)
    """

    ENDPOINT = "/omapp/getnearbyPriSchools"

    def __init__(
        self,
        cache: Optional[TTLCache] = None,
        session: Optional[requests.Session] = None,
        base_url: Optional[str] = None,
        ttls: CacheTTLs = SEARCH_CONFIG.cache,
        timeout: int = SEARCH_CONFIG.router.request_timeout,
        clock=time.time,
    ):
        self.cache = cache if cache is not None else TTLCache(default_ttl=ttls.schools, name="schools")
        self.session = session or requests.Session()
        self.base_url = base_url or os.environ.get("ONEMAP_SCHOOL_BASE_URL", DEFAULT_SCHOOL_BASE_URL)
        self.ttls = ttls
        self.timeout = timeout
        self._clock = clock
        self._auth_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Cookies
    # -------------------------------------------------------------------------

    def has_valid_cookies(self) -> bool:
        """Both required cookies present and not expiring within the margin.

        Cookies without an expiry live as long as the session.
        """
        now = self._clock()
        found = {}
        for cookie in self.session.cookies:
            if cookie.name in REQUIRED_COOKIES:
                found[cookie.name] = cookie
        for name in REQUIRED_COOKIES:
            cookie = found.get(name)
            if cookie is None:
                return False
            if cookie.expires is not None and cookie.expires - self.ttls.school_cookie_margin <= now:
                logger.debug("School cookie %s expires soon", name)
                return False
        return True

    def has_required_cookies(self) -> bool:
        names = {cookie.name for cookie in self.session.cookies}
        return all(name in names for name in REQUIRED_COOKIES)

    def clear_cookies(self) -> None:
        self.session.cookies.clear()
        logger.info("Cleared school API cookies")

    def ensure_authenticated(self) -> None:
        if self.has_valid_cookies():
            return
        with self._auth_lock:
            if self.has_valid_cookies():
                return
            self._authenticate()

    def _authenticate(self) -> None:
        """Visit the OneMap homepage so the session collects its cookies."""
        logger.info("Authenticating with OneMap school API")
        t0 = time.time()
        try:
            response = self.session.get(
                self.base_url,
                headers={"User-Agent": BROWSER_USER_AGENT},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            _record("homepage", int((time.time() - t0) * 1000), 0, "network_error")
            raise SchoolAuthError(f"Authentication failed: {e}") from e
        _record("homepage", int((time.time() - t0) * 1000), response.status_code,
                "ok" if response.status_code < 400 else "auth")

        if response.status_code >= 400 or not self.has_required_cookies():
            raise SchoolAuthError("Failed to obtain required authentication cookies")

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def _query(self, params: Dict[str, str], retried: bool = False) -> List[Dict[str, Any]]:
        headers = {
            "accept": "application/json",
            "application": "OMI3D",
            "x-requested-with": "XMLHttpRequest",
            "User-Agent": BROWSER_USER_AGENT,
        }
        t0 = time.time()
        try:
            response = self.session.get(
                f"{self.base_url}{self.ENDPOINT}",
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            _record("schools", int((time.time() - t0) * 1000), 0, "network_error", retried)
            raise SchoolSearchError(f"School query failed: {e}") from e
        elapsed_ms = int((time.time() - t0) * 1000)

        if response.status_code in (401, 403) or response.text.strip().strip('"') == "reauth":
            _record("schools", elapsed_ms, response.status_code, "auth", retried)
            raise SchoolAuthError("Authentication required")
        if response.status_code >= 400:
            _record("schools", elapsed_ms, response.status_code, "error", retried)
            raise SchoolSearchError(f"School query failed (HTTP {response.status_code})")
        _record("schools", elapsed_ms, response.status_code, "ok", retried)

        try:
            data = response.json()
        except ValueError as e:
            raise SchoolSearchError("School query returned invalid JSON") from e
        return (data or {}).get("SearchResults") or []

    def get_nearby_primary_schools(
        self, postal_code: str, block_no: str = "", distance_m: int = 1000
    ) -> List[School]:
        """Primary schools within distance_m of a postal code / block."""
        key = ("schools", postal_code, block_no, distance_m)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached school data for %s", postal_code)
            return cached

        params = {"distance": str(distance_m), "postalcode": postal_code, "blkno": block_no}
        self.ensure_authenticated()
        try:
            rows = self._query(params)
        except SchoolAuthError:
            logger.warning("School API rejected cookies; re-authenticating and retrying once")
            self.clear_cookies()
            self.ensure_authenticated()
            rows = self._query(params, retried=True)

        schools = []
        for row in rows:
            try:
                schools.append(parse_school(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed school row %r: %s", row.get("SCHOOLNAME"), e)

        self.cache.set(key, schools, ttl=self.ttls.schools)
        logger.info("Found %d primary schools near %s", len(schools), postal_code)
        return schools

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()


# =============================================================================
# Search
# =============================================================================

def search_nearby_schools(
    location: str,
    distance_m: int = SEARCH_CONFIG.search.school_radius_m,
    client: Optional[OneMapClient] = None,
    school_client: Optional[OneMapSchoolClient] = None,
) -> NearbySchools:
    """Primary schools near a free-text location, grouped by distance band.

    The location must resolve to a OneMap hit with a postal code; the
    school service is keyed on postal code and block number.
    """
    defaults = SEARCH_CONFIG.search
    if not defaults.min_school_radius_m <= distance_m <= defaults.max_school_radius_m:
        raise ValueError(
            f"distance_m must be between {defaults.min_school_radius_m} "
            f"and {defaults.max_school_radius_m}"
        )
    client = client or OneMapClient()
    school_client = school_client or OneMapSchoolClient()

    with trace_stage("resolve"):
        data = client.search_location(location)
    results = data.get("results") or []
    if not results:
        raise LocationNotFoundError(f'Location "{location}" not found')

    hit = results[0]
    postal_code = hit.get("POSTAL") or ""
    block = hit.get("BLK_NO") or ""
    if not postal_code or postal_code == "NIL":
        raise LocationNotFoundError(f'No postal code found for location "{location}"')
    if block == "NIL":
        block = ""

    with trace_stage("schools"):
        schools = school_client.get_nearby_primary_schools(postal_code, block, distance_m)

    return NearbySchools(
        address=hit.get("ADDRESS", ""),
        postal_code=postal_code,
        block=block,
        distance_m=distance_m,
        within_1km=[s for s in schools if s.distance_category == "1km"],
        within_1_to_2km=[s for s in schools if s.distance_category == "1-2km"],
    )
