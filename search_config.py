"""
Search engine configuration.

Owns every numeric constant that shapes search, trend and routing results:
radius defaults, result caps, the outlier band for unit prices, the batch
router's pacing, and cache lifetimes.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Collaborators take the
relevant section as a constructor argument so tests can pass tweaked
copies via dataclasses.replace().
"""

from dataclasses import dataclass


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class BatchRouterConfig:
    """Pacing for the adaptive batch router (seconds unless noted)."""
    batch_size: int = 3
    base_delay: float = 2.0          # inter-batch delay at 0% errors
    max_delay: float = 10.0          # cap on any single inter-batch delay
    max_retries: int = 2             # retries per call, on top of the first attempt
    retry_base_delay: float = 1.0    # 1s, 2s, 4s ...
    error_rate_threshold: float = 0.5  # above this a batch counts as "failing"
    request_timeout: int = 30        # per-call HTTP timeout


@dataclass(frozen=True)
class TrendConfig:
    """Unit-price outlier band and trend windowing."""
    sqm_to_sqft: float = 10.764
    min_plausible_psf: float = 200.0
    max_plausible_psf: float = 10000.0
    window_quarters: int = 20        # trailing 5 years
    condense_above: int = 12         # > this many buckets -> one point per year
    history_limit: int = 10          # raw transactions/rentals fetched per property


@dataclass(frozen=True)
class SearchDefaults:
    """Defaults for property and station searches."""
    radius_m: float = 2000.0
    limit: int = 50
    multi_center_radius_m: float = 1200.0
    multi_center_limit: int = 100
    max_search_centers: int = 20
    station_prefilter_km: float = 15.0
    max_stations_routed: int = 40
    max_travel_minutes: int = 30
    zone_radius_m: float = 1000.0
    max_route_alternatives: int = 2
    school_radius_m: int = 2000
    min_school_radius_m: int = 500
    max_school_radius_m: int = 5000


@dataclass(frozen=True)
class CacheTTLs:
    """Lifetimes for the in-memory caches (seconds)."""
    search: int = 86400
    route: int = 86400
    conversion: int = 86400
    stations: int = 86400
    zones: int = 3600
    schools: int = 3600
    school_cookie_margin: int = 3600
    token_safety_margin: int = 3600


@dataclass(frozen=True)
class SearchConfig:
    """Top-level container; SEARCH_CONFIG is the single source of truth."""
    router: BatchRouterConfig
    trends: TrendConfig
    search: SearchDefaults
    cache: CacheTTLs


SEARCH_CONFIG = SearchConfig(
    router=BatchRouterConfig(),
    trends=TrendConfig(),
    search=SearchDefaults(),
    cache=CacheTTLs(),
)
