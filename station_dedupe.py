"""
Collapse OneMap's per-exit station hits into one entry per station.

"KENT RIDGE MRT STATION EXIT A", "KENT RIDGE MRT STATION (CC24)" and
"KENT RIDGE MRT STATION" all share the base name "KENT RIDGE".  Within a
group the representative is chosen by name priority, then distance.
"""

import logging
import re
from collections import OrderedDict
from typing import Dict, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATION_SUFFIX = re.compile(r"\s+MRT\s+STATION.*$", re.IGNORECASE)
_EXIT_SUFFIX = re.compile(r"\s+EXIT\s+[A-Z]$", re.IGNORECASE)
_LINE_CODE_SUFFIX = re.compile(r"\s+\([A-Z]{2}\d+\)$", re.IGNORECASE)

# Lower number wins
_PRIORITY_RULES = (
    (1, re.compile(r"^[A-Z\s-]+MRT\s+STATION$")),   # bare station name
    (2, re.compile(r"\([A-Z]{2}\d+\)$")),           # carries a line code
    (3, re.compile(r"EXIT\s+A$")),
    (4, re.compile(r"EXIT\s+[B-Z]$")),
)


def extract_base_name(name: str) -> str:
    base = _STATION_SUFFIX.sub("", name)
    base = _EXIT_SUFFIX.sub("", base)
    base = _LINE_CODE_SUFFIX.sub("", base)
    return base.strip()


def station_priority(name: str) -> int:
    upper = name.upper()
    for priority, pattern in _PRIORITY_RULES:
        if pattern.search(upper):
            return priority
    return 5


def deduplicate_stations(stations: Sequence[T]) -> List[T]:
    """One representative per base name, nearest first.

    Items need .name and .distance.
    """
    best: Dict[str, T] = OrderedDict()
    for station in stations:
        key = extract_base_name(station.name)
        current = best.get(key)
        if current is None:
            best[key] = station
            continue
        new_priority = station_priority(station.name)
        current_priority = station_priority(current.name)
        if new_priority < current_priority or (
            new_priority == current_priority and station.distance < current.distance
        ):
            best[key] = station

    return sorted(best.values(), key=lambda s: s.distance)


def duplicate_groups(stations: Sequence[T]) -> Dict[str, List[T]]:
    """Base names shared by more than one item, for diagnostics."""
    groups: Dict[str, List[T]] = OrderedDict()
    for station in stations:
        groups.setdefault(extract_base_name(station.name), []).append(station)

    duplicates = {name: members for name, members in groups.items() if len(members) > 1}
    if duplicates and logger.isEnabledFor(logging.DEBUG):
        logger.debug("Found %d station groups with duplicates", len(duplicates))
        for name, members in duplicates.items():
            for member in members:
                logger.debug(
                    "  %s: %s (priority %d, %.1fkm)",
                    name, member.name, station_priority(member.name), member.distance,
                )
    return duplicates
