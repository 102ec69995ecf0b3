"""
SQLite-backed property store: proximity search and read-only analysis.

Coordinates are SVY21 meters.  A proximity search narrows candidates
with a bounding box on the (x, y) index, then applies the exact circle
test in SQL using squared distances so no SQRT is needed in the engine.
Distances returned to callers are computed in Python from the squared
value.

No ORM: raw sqlite3 with Row factories, one short-lived connection per
call.
"""

import logging
import math
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from geometry import search_bounds
from query_builder import (
    PropertyFilters,
    build_joined_predicates,
    build_property_predicates,
    mmyy_sort_key,
    validate_readonly_sql,
)
from search_config import SEARCH_CONFIG

load_dotenv()

logger = logging.getLogger(__name__)


def _db_path() -> str:
    return os.environ.get("SGPROX_DB_PATH", "data/properties.db")


# =============================================================================
# Schema
# =============================================================================

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS properties (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project TEXT NOT NULL,
        street TEXT NOT NULL,
        x REAL NOT NULL,
        y REAL NOT NULL,
        market_segment TEXT,
        district TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(project, street)
    );

    CREATE TABLE IF NOT EXISTS transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id INTEGER NOT NULL,
        price INTEGER NOT NULL,
        area REAL NOT NULL,
        contract_date TEXT NOT NULL,
        property_type TEXT NOT NULL,
        floor_range TEXT,
        no_of_units TEXT,
        tenure TEXT,
        type_of_sale TEXT,
        type_of_area TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (property_id) REFERENCES properties(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS rentals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id INTEGER NOT NULL,
        rent INTEGER NOT NULL,
        bedrooms INTEGER,
        lease_date TEXT NOT NULL,
        area_sqm TEXT,
        area_sqft TEXT,
        property_type TEXT,
        district TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (property_id) REFERENCES properties(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS data_refresh_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        data_type TEXT NOT NULL,
        batch_or_period TEXT,
        record_count INTEGER NOT NULL,
        refresh_date DATETIME DEFAULT CURRENT_TIMESTAMP,
        status TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_properties_location ON properties(x, y);
    CREATE INDEX IF NOT EXISTS idx_properties_district ON properties(district);
    CREATE INDEX IF NOT EXISTS idx_properties_market_segment ON properties(market_segment);
    CREATE INDEX IF NOT EXISTS idx_transactions_property ON transactions(property_id);
    CREATE INDEX IF NOT EXISTS idx_transactions_property_date
        ON transactions(property_id, contract_date);
    CREATE INDEX IF NOT EXISTS idx_rentals_property ON rentals(property_id);
    CREATE INDEX IF NOT EXISTS idx_rentals_property_date
        ON rentals(property_id, lease_date);
"""


def _open(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_property_db(path: Optional[str] = None) -> str:
    """Create the property schema if missing.  Returns the database path."""
    path = path or _db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = _open(path)
    try:
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()
    logger.info("Property database ready at %s", path)
    return path


# =============================================================================
# Records
# =============================================================================

@dataclass
class PropertyRecord:
    """A development (project + street) with its SVY21 location."""
    id: int
    project: str
    street: str
    x: float
    y: float
    market_segment: Optional[str] = None   # CCR / RCR / OCR
    district: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PropertyRecord":
        return cls(
            id=row["id"],
            project=row["project"],
            street=row["street"],
            x=row["x"],
            y=row["y"],
            market_segment=row["market_segment"],
            district=row["district"],
        )


@dataclass
class TransactionRecord:
    id: int
    property_id: int
    price: int
    area: float                 # sqm
    contract_date: str          # MMYY
    property_type: str
    floor_range: Optional[str] = None
    no_of_units: Optional[str] = None
    tenure: Optional[str] = None
    type_of_sale: Optional[str] = None
    type_of_area: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TransactionRecord":
        return cls(
            id=row["id"],
            property_id=row["property_id"],
            price=row["price"],
            area=row["area"],
            contract_date=row["contract_date"],
            property_type=row["property_type"],
            floor_range=row["floor_range"],
            no_of_units=row["no_of_units"],
            tenure=row["tenure"],
            type_of_sale=row["type_of_sale"],
            type_of_area=row["type_of_area"],
        )


@dataclass
class RentalRecord:
    id: int
    property_id: int
    rent: int                   # monthly, SGD
    lease_date: str             # MMYY
    bedrooms: Optional[int] = None
    area_sqm: Optional[str] = None    # range, e.g. "160-170"
    area_sqft: Optional[str] = None
    property_type: Optional[str] = None
    district: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RentalRecord":
        return cls(
            id=row["id"],
            property_id=row["property_id"],
            rent=row["rent"],
            lease_date=row["lease_date"],
            bedrooms=row["bedrooms"],
            area_sqm=row["area_sqm"],
            area_sqft=row["area_sqft"],
            property_type=row["property_type"],
            district=row["district"],
        )


@dataclass
class PropertySearchPage:
    """One page of proximity results, nearest first."""
    results: List[Tuple[PropertyRecord, float]] = field(default_factory=list)
    truncated: bool = False
    # Exact match count, known only when the page is not truncated
    total_available: Optional[int] = None


# =============================================================================
# Analysis templates
# =============================================================================

_PSF = "t.price / (t.area * 10.764)"

_PRICE_BY_DISTRICT = f"""
    SELECT
        p.district,
        p.market_segment,
        COUNT(t.id) AS transaction_count,
        ROUND(AVG({_PSF}), 0) AS avg_price_psf,
        ROUND(MIN({_PSF}), 0) AS min_price_psf,
        ROUND(MAX({_PSF}), 0) AS max_price_psf,
        ROUND(AVG(t.price), 0) AS avg_total_price
    FROM properties p
    JOIN transactions t ON p.id = t.property_id
    WHERE t.area > 0 AND {{where}}
    GROUP BY p.district, p.market_segment
    ORDER BY avg_price_psf DESC
    LIMIT ?
"""

_PRICE_BY_PROPERTY_TYPE = f"""
    SELECT
        t.property_type,
        COUNT(t.id) AS transaction_count,
        ROUND(AVG(t.price), 0) AS avg_price,
        ROUND(AVG({_PSF}), 0) AS avg_price_psf,
        ROUND(AVG(t.area), 1) AS avg_area_sqm
    FROM transactions t
    JOIN properties p ON t.property_id = p.id
    WHERE t.area > 0 AND {{where}}
    GROUP BY t.property_type
    ORDER BY avg_price_psf DESC
    LIMIT ?
"""

_QUARTERLY_PRICE_TREND = f"""
    SELECT
        ({{sort_key}}) / 100 AS year,
        ((({{sort_key}}) % 100) + 2) / 3 AS quarter,
        COUNT(t.id) AS transactions,
        ROUND(AVG(t.price), 0) AS avg_price,
        ROUND(AVG({_PSF}), 0) AS avg_price_psf,
        ROUND(AVG(t.area), 1) AS avg_area_sqm
    FROM transactions t
    JOIN properties p ON t.property_id = p.id
    WHERE t.area > 0 AND {{where}}
    GROUP BY year, quarter
    ORDER BY year, quarter
    LIMIT ?
"""


# =============================================================================
# Store
# =============================================================================

class PropertyStore:
    """
    Read access to the property database.

    Usage:
        store = PropertyStore()
        page = store.search_near(PlanarPoint(29000, 31000), radius_m=1500)
        for prop, distance in page.results:
            ...
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _db_path()

    def _connect(self) -> sqlite3.Connection:
        return _open(self.db_path)

    def _connect_readonly(self) -> sqlite3.Connection:
        conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Proximity search
    # -------------------------------------------------------------------------

    @staticmethod
    def _disk_query(
        center,
        radius_m: float,
        filters: Optional[PropertyFilters],
        limit: Optional[int],
    ) -> Tuple[str, List[Any]]:
        bounds = search_bounds(center, radius_m)
        dist_sq = "((p.x - ?) * (p.x - ?) + (p.y - ?) * (p.y - ?))"
        dist_params = [center.x, center.x, center.y, center.y]

        clauses = [
            "p.x BETWEEN ? AND ?",
            "p.y BETWEEN ? AND ?",
            f"{dist_sq} <= ?",
        ]
        params: List[Any] = list(dist_params)  # SELECT list
        params += [bounds.min_x, bounds.max_x, bounds.min_y, bounds.max_y]
        params += dist_params + [radius_m * radius_m]

        filter_clauses, filter_params = build_property_predicates(filters)
        clauses.extend(filter_clauses)
        params.extend(filter_params)

        sql = (
            "SELECT p.id, p.project, p.street, p.x, p.y, p.market_segment, "
            f"p.district, {dist_sq} AS dist_sq "
            "FROM properties p WHERE " + " AND ".join(clauses) +
            " ORDER BY dist_sq ASC, p.id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return sql, params

    def search_near(
        self,
        center,
        radius_m: float = SEARCH_CONFIG.search.radius_m,
        filters: Optional[PropertyFilters] = None,
        limit: int = SEARCH_CONFIG.search.limit,
    ) -> PropertySearchPage:
        """Properties within radius_m of center, nearest first, ties by id.

        Fetches limit + 1 rows so truncation is known without counting
        the full match set.
        """
        sql, params = self._disk_query(center, radius_m, filters, limit + 1)
        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        truncated = len(rows) > limit
        results = [
            (PropertyRecord.from_row(row), math.sqrt(row["dist_sq"]))
            for row in rows[:limit]
        ]
        logger.debug(
            "search_near r=%.0fm -> %d results (truncated=%s)",
            radius_m, len(results), truncated,
        )
        return PropertySearchPage(
            results=results,
            truncated=truncated,
            total_available=None if truncated else len(results),
        )

    def candidates_for_centers(
        self,
        centers: Sequence,
        filters: Optional[PropertyFilters] = None,
    ) -> List[List[Tuple[int, PropertyRecord, float]]]:
        """Every property inside each center's own disk, one list per center.

        Each center needs .x, .y and .radius_m.  A property near two
        centers appears in both lists; assignment happens afterwards.
        """
        per_center = []
        conn = self._connect()
        try:
            for center in centers:
                sql, params = self._disk_query(center, center.radius_m, filters, None)
                rows = conn.execute(sql, params).fetchall()
                per_center.append([
                    (row["id"], PropertyRecord.from_row(row), math.sqrt(row["dist_sq"]))
                    for row in rows
                ])
        finally:
            conn.close()
        return per_center

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def recent_transactions(
        self, property_id: int, limit: int = SEARCH_CONFIG.trends.history_limit
    ) -> List[TransactionRecord]:
        """Most recent first, by contract year then month."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE property_id = ? "
                f"ORDER BY {mmyy_sort_key('contract_date')} DESC, id DESC LIMIT ?",
                (property_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [TransactionRecord.from_row(r) for r in rows]

    def recent_rentals(
        self, property_id: int, limit: int = SEARCH_CONFIG.trends.history_limit
    ) -> List[RentalRecord]:
        """Most recent first, by lease year then month."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM rentals WHERE property_id = ? "
                f"ORDER BY {mmyy_sort_key('lease_date')} DESC, id DESC LIMIT ?",
                (property_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [RentalRecord.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def run_readonly_query(
        self, sql: str, params: Sequence[Any] = (), limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Run one validated SELECT and return at most `limit` rows as dicts.

        Validation happens before a connection is opened; the connection
        itself is read-only as well.
        """
        statement = validate_readonly_sql(sql)
        conn = self._connect_readonly()
        try:
            cursor = conn.execute(
                f"SELECT * FROM ({statement}) LIMIT ?", (*params, limit)
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _run_template(
        self, template: str, filters: Optional[PropertyFilters], limit: int
    ) -> List[Dict[str, Any]]:
        where, params = build_joined_predicates(filters)
        sql = template.format(where=where, sort_key=mmyy_sort_key("t.contract_date"))
        conn = self._connect()
        try:
            rows = conn.execute(sql, (*params, limit)).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def price_by_district(
        self, filters: Optional[PropertyFilters] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        return self._run_template(_PRICE_BY_DISTRICT, filters, limit)

    def price_by_property_type(
        self, filters: Optional[PropertyFilters] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        return self._run_template(_PRICE_BY_PROPERTY_TYPE, filters, limit)

    def quarterly_price_trend(
        self, filters: Optional[PropertyFilters] = None, limit: int = 200
    ) -> List[Dict[str, Any]]:
        """Per-quarter volume and average prices, oldest first."""
        return self._run_template(_QUARTERLY_PRICE_TREND, filters, limit)

    def get_stats(self) -> Dict[str, Any]:
        """Row counts and the last successful refresh per data type."""
        conn = self._connect()
        try:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("properties", "transactions", "rentals")
            }
            last_refresh = {}
            for data_type in ("transactions", "rentals"):
                row = conn.execute(
                    "SELECT refresh_date FROM data_refresh_log "
                    "WHERE data_type = ? AND status = 'success' "
                    "ORDER BY refresh_date DESC LIMIT 1",
                    (data_type,),
                ).fetchone()
                last_refresh[data_type] = row["refresh_date"] if row else None
        finally:
            conn.close()
        return {**counts, "last_refresh": last_refresh}
