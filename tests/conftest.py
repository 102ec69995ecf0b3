"""Shared fixtures for the proximity search test suite.

Provides a temporary SQLite property database with insert helpers and a
small planning-zone GeoJSON file.
"""

import json
import sqlite3

import pytest

from property_store import PropertyStore, init_property_db


# =========================================================================
# Property database
# =========================================================================

class PropertyDB:
    """Thin insert helper over a freshly initialised property database."""

    def __init__(self, path):
        self.path = path

    def _execute(self, sql, params):
        conn = sqlite3.connect(self.path)
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def add_property(self, project, x, y, street=None, market_segment="OCR", district="05"):
        return self._execute(
            "INSERT INTO properties (project, street, x, y, market_segment, district) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (project, street or f"{project} STREET", x, y, market_segment, district),
        )

    def add_transaction(
        self,
        property_id,
        price,
        contract_date,
        area=100.0,
        property_type="Condominium",
        tenure="99 yrs lease commencing from 2010",
        type_of_sale="3",
    ):
        return self._execute(
            "INSERT INTO transactions (property_id, price, area, contract_date, "
            "property_type, tenure, type_of_sale) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (property_id, price, area, contract_date, property_type, tenure, type_of_sale),
        )

    def add_rental(self, property_id, rent, lease_date, bedrooms=2):
        return self._execute(
            "INSERT INTO rentals (property_id, rent, lease_date, bedrooms) VALUES (?, ?, ?, ?)",
            (property_id, rent, lease_date, bedrooms),
        )

    def log_refresh(self, data_type, status="success", refresh_date="2025-01-01 00:00:00"):
        return self._execute(
            "INSERT INTO data_refresh_log (data_type, record_count, refresh_date, status) "
            "VALUES (?, ?, ?, ?)",
            (data_type, 10, refresh_date, status),
        )


@pytest.fixture()
def property_db(tmp_path):
    path = init_property_db(str(tmp_path / "properties.db"))
    return PropertyDB(path)


@pytest.fixture()
def store(property_db):
    return PropertyStore(property_db.path)


# =========================================================================
# Planning zones
# =========================================================================

def _description(land_use, **extra):
    rows = [("LU_DESC", land_use), ("LU_TEXT", land_use.title()), ("GPR", "2.8")]
    rows += list(extra.items())
    cells = "".join(f"<tr><th>{k}</th><td>{v}</td></tr>" for k, v in rows)
    return f"<center><table><tr><th colspan='2'>Attributes</th></tr>{cells}</table></center>"


def _rectangle(min_lon, min_lat, max_lon, max_lat):
    return {
        "type": "Polygon",
        "coordinates": [[
            [min_lon, min_lat],
            [max_lon, min_lat],
            [max_lon, max_lat],
            [min_lon, max_lat],
            [min_lon, min_lat],
        ]],
    }


def zone_feature(land_use, min_lon, min_lat, max_lon, max_lat):
    return {
        "type": "Feature",
        "properties": {"Name": "kml", "Description": _description(land_use)},
        "geometry": _rectangle(min_lon, min_lat, max_lon, max_lat),
    }


# Four adjacent 0.005-degree squares (~550m) meeting at (1.30, 103.80), a
# far-away one and a feature with broken geometry.
ZONE_FEATURES = [
    zone_feature("RESIDENTIAL", 103.795, 1.295, 103.800, 1.300),
    zone_feature("COMMERCIAL", 103.800, 1.295, 103.805, 1.300),
    zone_feature("PARK", 103.795, 1.300, 103.800, 1.305),
    zone_feature("EDUCATIONAL INSTITUTION", 103.800, 1.300, 103.805, 1.305),
    zone_feature("BUSINESS 1", 103.900, 1.400, 103.905, 1.405),
    {"type": "Feature", "properties": {"Description": ""}, "geometry": None},
]


@pytest.fixture()
def zones_path(tmp_path):
    path = tmp_path / "zones.geojson"
    path.write_text(json.dumps({"type": "FeatureCollection", "features": ZONE_FEATURES}))
    return str(path)
