"""
Quarterly trend enrichment for transaction and rental histories.

Dates arrive as 4-character MMYY strings ("0924" = Sep 2024).  The
two-digit year pivots at 50: 00-49 -> 2000-2049, 50-99 -> 1950-1999.
That rule stops working for contracts signed in 2050 or later; it is
kept as-is so quarters stay comparable with existing stored data.

Price trends use unit price per square foot.  Floor area is stored in
square meters and converted with a fixed 10.764 factor.  Transactions
whose unit price falls outside the plausible band are treated as data
errors: they are logged and left out of the aggregate, but stay in the
raw transaction history the caller already holds.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from search_config import SEARCH_CONFIG, TrendConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Date decoding
# =============================================================================

@dataclass(frozen=True, order=True)
class QuarterBucket:
    """A calendar quarter; orders chronologically (year major)."""
    year: int
    quarter: int  # 1-4

    @property
    def label(self) -> str:
        return f"Q{self.quarter}'{self.year % 100:02d}"


def decode_mmyy(mmyy: str) -> Tuple[int, int]:
    """Return (month, full_year) for an MMYY string.

    Raises ValueError for anything that is not four digits with a
    month in 01-12.
    """
    if not isinstance(mmyy, str) or len(mmyy) != 4 or not mmyy.isdigit():
        raise ValueError(f"Expected MMYY date, got {mmyy!r}")
    month = int(mmyy[:2])
    yy = int(mmyy[2:])
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range in {mmyy!r}")
    year = 2000 + yy if yy < 50 else 1900 + yy
    return month, year


def quarter_bucket(mmyy: str) -> QuarterBucket:
    month, year = decode_mmyy(mmyy)
    return QuarterBucket(year=year, quarter=math.ceil(month / 3))


def _round_half_up(value: float) -> int:
    # Positive amounts only; avoids banker's rounding at .5.
    return int(value + 0.5)


# =============================================================================
# Price trends
# =============================================================================

@dataclass
class QuarterlyPriceTrend:
    """Average unit price for one quarter."""
    bucket: QuarterBucket
    avg_price_psf: int
    transaction_count: int

    @property
    def quarter(self) -> str:
        return self.bucket.label


@dataclass
class TrendSummary:
    """Display-ready view of a price trend."""
    points: List[QuarterlyPriceTrend]
    percent_change: Optional[float]   # first -> last bucket of the window
    condensed: bool                   # True when points are one-per-year


def unit_price_psf(price: float, area_sqm: float, config: TrendConfig = SEARCH_CONFIG.trends) -> float:
    """Price per square foot for a floor area given in square meters."""
    return price / (area_sqm * config.sqm_to_sqft)


def price_trend(
    transactions: Iterable,
    config: TrendConfig = SEARCH_CONFIG.trends,
) -> List[QuarterlyPriceTrend]:
    """Group transactions into quarters and average their unit price.

    Each transaction needs .price, .area (sqm) and .contract_date (MMYY).
    Returns at most config.window_quarters buckets, oldest first.
    """
    psf_by_bucket: Dict[QuarterBucket, List[float]] = defaultdict(list)

    for txn in transactions:
        if not txn.price or not txn.area or txn.price <= 0 or txn.area <= 0:
            continue
        try:
            bucket = quarter_bucket(txn.contract_date)
        except ValueError:
            logger.warning(
                "Skipping transaction %s with bad contract date %r",
                getattr(txn, "id", "?"), txn.contract_date,
            )
            continue

        psf = unit_price_psf(txn.price, txn.area, config)
        if psf < config.min_plausible_psf or psf > config.max_plausible_psf:
            logger.warning(
                "Suspicious price/sqf $%.0f for property %s (price $%s, area %ssqm), "
                "excluded from trend",
                psf, getattr(txn, "property_id", "?"), txn.price, txn.area,
            )
            continue
        psf_by_bucket[bucket].append(psf)

    trend = [
        QuarterlyPriceTrend(
            bucket=bucket,
            avg_price_psf=_round_half_up(sum(values) / len(values)),
            transaction_count=len(values),
        )
        for bucket, values in psf_by_bucket.items()
    ]
    trend.sort(key=lambda t: t.bucket)
    return trend[-config.window_quarters:]


def summarize_trend(
    trend: List[QuarterlyPriceTrend],
    config: TrendConfig = SEARCH_CONFIG.trends,
) -> Optional[TrendSummary]:
    """Percent change over the window, condensed to yearly points if long.

    The percent change is always computed over the full trailing window,
    even when the returned points are condensed.
    """
    if not trend:
        return None
    window = trend[-config.window_quarters:]
    if len(window) == 1:
        return TrendSummary(points=list(window), percent_change=None, condensed=False)

    first, last = window[0], window[-1]
    change = (last.avg_price_psf - first.avg_price_psf) / first.avg_price_psf * 100

    if len(window) > config.condense_above:
        last_index = len(window) - 1
        points = [
            t for i, t in enumerate(window)
            if i % 4 == 3 or i == last_index
        ]
        condensed = True
    else:
        points = list(window)
        condensed = False

    return TrendSummary(
        points=points,
        percent_change=round(change, 1),
        condensed=condensed,
    )


# =============================================================================
# Rentals
# =============================================================================

@dataclass
class RecentRentalInfo:
    """Average rent for the single most recent quarter with data."""
    bucket: QuarterBucket
    avg_rent: int
    rental_count: int

    @property
    def quarter(self) -> str:
        return self.bucket.label


def recent_rental_info(rentals: Iterable) -> Optional[RecentRentalInfo]:
    """Most recent quarter's average rent; older quarters are not blended in.

    Each rental needs .rent and .lease_date (MMYY).
    """
    rents_by_bucket: Dict[QuarterBucket, List[int]] = defaultdict(list)
    for rental in rentals:
        if not rental.rent or rental.rent <= 0:
            continue
        try:
            bucket = quarter_bucket(rental.lease_date)
        except ValueError:
            logger.warning("Skipping rental with bad lease date %r", rental.lease_date)
            continue
        rents_by_bucket[bucket].append(rental.rent)

    if not rents_by_bucket:
        return None

    latest = sorted(rents_by_bucket, reverse=True)[0]
    rents = rents_by_bucket[latest]
    return RecentRentalInfo(
        bucket=latest,
        avg_rent=_round_half_up(sum(rents) / len(rents)),
        rental_count=len(rents),
    )


# =============================================================================
# Property enrichment
# =============================================================================

@dataclass
class PropertySearchResult:
    """A matched property with its recent history and derived trends."""
    property: object
    distance_m: float
    recent_transactions: List = field(default_factory=list)
    recent_rentals: List = field(default_factory=list)
    latest_price: Optional[int] = None
    price_trend: List[QuarterlyPriceTrend] = field(default_factory=list)
    trend_summary: Optional[TrendSummary] = None
    rental_info: Optional[RecentRentalInfo] = None
    # Set only by multi-center searches
    search_center: Optional[str] = None
    distance_to_center: Optional[float] = None


def enrich_property(
    prop,
    distance_m: float,
    transactions: List,
    rentals: List,
    config: TrendConfig = SEARCH_CONFIG.trends,
) -> PropertySearchResult:
    """Attach trend data to a property.

    transactions and rentals are expected most-recent first, so the
    latest price is the first transaction's price.
    """
    trend = price_trend(transactions, config)
    return PropertySearchResult(
        property=prop,
        distance_m=distance_m,
        recent_transactions=list(transactions),
        recent_rentals=list(rentals),
        latest_price=transactions[0].price if transactions else None,
        price_trend=trend,
        trend_summary=summarize_trend(trend, config),
        rental_info=recent_rental_info(rentals),
    )
