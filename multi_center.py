"""
Nearest-center assignment for multi-location searches.

Each center contributes candidates from its own disk.  An entity inside
several disks is reported once, under the center it is closest to; on an
exact tie the center listed first wins.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Sequence, Tuple

from search_config import SEARCH_CONFIG

logger = logging.getLogger(__name__)

MAX_SEARCH_CENTERS = SEARCH_CONFIG.search.max_search_centers


@dataclass(frozen=True)
class SearchCenter:
    """A named SVY21 point with its own search radius."""
    name: str
    x: float
    y: float
    radius_m: float = SEARCH_CONFIG.search.multi_center_radius_m


@dataclass
class CenterAssignment:
    center: SearchCenter
    entity_id: Hashable
    entity: Any
    distance: float


def check_centers(centers: Sequence[SearchCenter]) -> None:
    if not centers:
        raise ValueError("At least one search center is required")
    if len(centers) > MAX_SEARCH_CENTERS:
        raise ValueError(
            f"At most {MAX_SEARCH_CENTERS} search centers are supported, got {len(centers)}"
        )


def assign_to_nearest_center(
    centers: Sequence[SearchCenter],
    candidates: Sequence[Sequence[Tuple[Hashable, Any, float]]],
) -> List[CenterAssignment]:
    """Assign every candidate entity to exactly one center.

    candidates[i] holds (entity_id, entity, distance) tuples for centers[i].
    Output is grouped by center in input order, then ascending distance,
    then entity id.
    """
    check_centers(centers)
    if len(candidates) != len(centers):
        raise ValueError("Expected one candidate list per center")

    # entity_id -> (center_index, entity, distance)
    best: Dict[Hashable, Tuple[int, Any, float]] = {}
    for index, center_candidates in enumerate(candidates):
        for entity_id, entity, distance in center_candidates:
            current = best.get(entity_id)
            # Strict < keeps the earlier center on ties
            if current is None or distance < current[2]:
                best[entity_id] = (index, entity, distance)

    ranked = sorted(
        best.items(), key=lambda item: (item[1][0], item[1][2], item[0])
    )
    assignments = [
        CenterAssignment(
            center=centers[index], entity_id=entity_id, entity=entity, distance=distance
        )
        for entity_id, (index, entity, distance) in ranked
    ]

    logger.debug(
        "Assigned %d entities across %d centers",
        len(assignments), len(centers),
    )
    return assignments
