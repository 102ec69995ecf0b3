"""
Property search pipeline: proximity query, then per-property enrichment.

Single-center searches go straight to PropertyStore.search_near().
Multi-center searches gather each center's disk, assign every property
to its nearest center, cap the union, and enrich what survives.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from multi_center import SearchCenter, assign_to_nearest_center, check_centers
from property_store import PropertyStore
from query_builder import PropertyFilters
from search_config import SEARCH_CONFIG
from sg_trace import trace_stage
from trends import PropertySearchResult, enrich_property

logger = logging.getLogger(__name__)


@dataclass
class PropertySearchResponse:
    results: List[PropertySearchResult] = field(default_factory=list)
    truncated: bool = False
    total_available: Optional[int] = None


def _enrich(store: PropertyStore, prop, distance: float) -> PropertySearchResult:
    return enrich_property(
        prop,
        distance,
        store.recent_transactions(prop.id),
        store.recent_rentals(prop.id),
        SEARCH_CONFIG.trends,
    )


def search_properties(
    store: PropertyStore,
    center,
    radius_m: float = SEARCH_CONFIG.search.radius_m,
    filters: Optional[PropertyFilters] = None,
    limit: int = SEARCH_CONFIG.search.limit,
) -> PropertySearchResponse:
    """Nearest-first properties around one point, each with trend data."""
    with trace_stage("property_search"):
        page = store.search_near(center, radius_m=radius_m, filters=filters, limit=limit)
    with trace_stage("enrich"):
        results = [_enrich(store, prop, distance) for prop, distance in page.results]
    return PropertySearchResponse(
        results=results,
        truncated=page.truncated,
        total_available=page.total_available,
    )


def search_properties_multiple(
    store: PropertyStore,
    centers: Sequence[SearchCenter],
    filters: Optional[PropertyFilters] = None,
    limit: int = SEARCH_CONFIG.search.multi_center_limit,
) -> PropertySearchResponse:
    """Union of several centers' disks with each property reported once.

    Results are grouped by center in input order, nearest first within a
    group, and carry search_center / distance_to_center.
    """
    check_centers(centers)
    with trace_stage("property_search"):
        candidates = store.candidates_for_centers(centers, filters)
        assignments = assign_to_nearest_center(centers, candidates)

    truncated = len(assignments) > limit
    kept = assignments[:limit]
    logger.info(
        "Multi-center search: %d centers, %d properties assigned, %d returned",
        len(centers), len(assignments), len(kept),
    )

    with trace_stage("enrich"):
        results = []
        for assignment in kept:
            enriched = _enrich(store, assignment.entity, assignment.distance)
            enriched.search_center = assignment.center.name
            enriched.distance_to_center = assignment.distance
            results.append(enriched)

    return PropertySearchResponse(
        results=results,
        truncated=truncated,
        total_available=None if truncated else len(results),
    )
