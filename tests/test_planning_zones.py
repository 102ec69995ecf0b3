"""Unit tests for planning_zones.py: description parsing, point and
radius lookups, land-use statistics and one-time concurrent loading.
"""

import json
import threading

import pytest

from planning_zones import (
    LandUseShare,
    PlanningZoneLocator,
    diversity_score,
    land_use_mix,
    parse_description_table,
)
from ttl_cache import TTLCache

from conftest import zone_feature


# =========================================================================
# Parsing
# =========================================================================

class TestParseDescriptionTable:
    def test_rows_parsed(self):
        html = (
            "<center><table>"
            "<tr><th colspan='2'>Attributes</th></tr>"
            "<tr><th>LU_DESC</th><td>RESIDENTIAL</td></tr>"
            "<tr><th> GPR </th><td> 3.0 </td></tr>"
            "</table></center>"
        )
        assert parse_description_table(html) == {"LU_DESC": "RESIDENTIAL", "GPR": "3.0"}

    def test_empty_and_malformed(self):
        assert parse_description_table("") == {}
        assert parse_description_table(None) == {}
        assert parse_description_table("<tr><td>orphan</td></tr>") == {}


# =========================================================================
# Loading
# =========================================================================

class TestLoading:
    def test_bad_features_skipped(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        assert locator.zone_count() == 5
        assert locator.land_use_types() == [
            "BUSINESS 1", "COMMERCIAL", "EDUCATIONAL INSTITUTION", "PARK", "RESIDENTIAL",
        ]

    def test_zone_fields(self, zones_path):
        zone = PlanningZoneLocator(zones_path, cache=TTLCache()).zones[0]
        assert zone.zone_id == "zone_0"
        assert zone.land_use == "RESIDENTIAL"
        assert zone.land_use_text == "Residential"
        assert zone.gross_plot_ratio == "2.8"
        assert zone.bbox == pytest.approx((103.795, 1.295, 103.800, 1.300))

    def test_missing_land_use_is_unknown(self, tmp_path):
        feature = zone_feature("X", 103.8, 1.3, 103.81, 1.31)
        feature["properties"]["Description"] = "<table><tr><th>GPR</th><td>1</td></tr></table>"
        path = tmp_path / "z.geojson"
        path.write_text(json.dumps({"type": "FeatureCollection", "features": [feature]}))
        assert PlanningZoneLocator(str(path), cache=TTLCache()).zones[0].land_use == "UNKNOWN"

    def test_missing_file_raises_and_can_retry(self, tmp_path):
        path = tmp_path / "late.geojson"
        locator = PlanningZoneLocator(str(path), cache=TTLCache())
        with pytest.raises(FileNotFoundError):
            locator.ensure_loaded()

        path.write_text(json.dumps({
            "type": "FeatureCollection", "features": [zone_feature("PARK", 103.8, 1.3, 103.81, 1.31)],
        }))
        assert locator.zone_count() == 1

    def test_path_from_environment(self, monkeypatch, zones_path):
        monkeypatch.setenv("SGPROX_ZONES_PATH", zones_path)
        assert PlanningZoneLocator(cache=TTLCache()).path == zones_path

    def test_concurrent_callers_share_one_load(self, zones_path, monkeypatch):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        original = locator._read_zones
        loads = []
        gate = threading.Event()

        def slow_read():
            loads.append(1)
            gate.wait(timeout=5)
            return original()

        monkeypatch.setattr(locator, "_read_zones", slow_read)

        counts = []
        threads = [
            threading.Thread(target=lambda: counts.append(locator.zone_count()))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        gate.set()
        for t in threads:
            t.join(timeout=10)

        assert loads == [1]
        assert counts == [5] * 8

    def test_concurrent_callers_see_load_error(self, tmp_path):
        locator = PlanningZoneLocator(str(tmp_path / "missing.geojson"), cache=TTLCache())
        errors = []

        def call():
            try:
                locator.ensure_loaded()
            except FileNotFoundError as e:
                errors.append(e)

        threads = [threading.Thread(target=call) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert len(errors) == 4


# =========================================================================
# Lookups
# =========================================================================

class TestFindZone:
    def test_point_inside(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        assert locator.find_zone(1.2975, 103.7975).land_use == "RESIDENTIAL"
        assert locator.find_zone(1.3025, 103.8025).land_use == "EDUCATIONAL INSTITUTION"

    def test_shared_edge_first_zone_wins(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        assert locator.find_zone(1.2975, 103.800).zone_id == "zone_0"

    def test_outside_all_zones(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        assert locator.find_zone(1.0, 103.0) is None

    def test_results_cached_including_none(self, zones_path):
        cache = TTLCache()
        locator = PlanningZoneLocator(zones_path, cache=cache)
        locator.find_zone(1.0, 103.0)
        locator.find_zone(1.0, 103.0)
        locator.find_zone(1.2975, 103.7975)
        locator.find_zone(1.2975, 103.7975)
        assert locator.cache_stats()["hits"] == 2

        locator.clear_cache()
        assert locator.cache_stats()["keys"] == 0


class TestNearbyAndAnalysis:
    def test_corner_point_touches_four_zones(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        nearby = locator.find_nearby_zones(1.300, 103.800, 500)
        assert sorted(z.land_use for z in nearby) == [
            "COMMERCIAL", "EDUCATIONAL INSTITUTION", "PARK", "RESIDENTIAL",
        ]

    def test_centroid_within_radius(self, zones_path):
        locator = PlanningZoneLocator(zones_path, cache=TTLCache())
        # Center of RESIDENTIAL; COMMERCIAL's centroid is ~556m east.
        small = locator.find_nearby_zones(1.2975, 103.7975, 100)
        assert [z.land_use for z in small] == ["RESIDENTIAL"]
        large = locator.find_nearby_zones(1.2975, 103.7975, 600)
        assert "COMMERCIAL" in {z.land_use for z in large}
        assert "BUSINESS 1" not in {z.land_use for z in large}

    def test_analyze_even_mix(self, zones_path):
        report = PlanningZoneLocator(zones_path, cache=TTLCache()).analyze(1.300, 103.800, 500)
        assert report.total_zones == 4
        assert report.radius_m == 500
        assert report.property_zone.zone_id == "zone_0"
        assert all(share.percentage == 25 for share in report.land_use_mix.values())
        assert report.diversity == pytest.approx(1.0)

    def test_analyze_single_category(self, zones_path):
        report = PlanningZoneLocator(zones_path, cache=TTLCache()).analyze(1.2975, 103.7975, 100)
        assert report.land_use_mix == {"RESIDENTIAL": LandUseShare(count=1, percentage=100)}
        assert report.diversity == 0

    def test_analyze_nowhere(self, zones_path):
        report = PlanningZoneLocator(zones_path, cache=TTLCache()).analyze(1.0, 103.0, 100)
        assert report.property_zone is None
        assert report.nearby_zones == []
        assert report.land_use_mix == {}
        assert report.diversity == 0


# =========================================================================
# Statistics
# =========================================================================

class TestStatistics:
    def test_percentages_rounded(self, zones_path):
        zones = PlanningZoneLocator(zones_path, cache=TTLCache()).zones
        mix = land_use_mix([zones[0], zones[0], zones[1]])
        assert mix["RESIDENTIAL"] == LandUseShare(count=2, percentage=67)
        assert mix["COMMERCIAL"] == LandUseShare(count=1, percentage=33)

    def test_diversity_bounds(self):
        even = {k: LandUseShare(1, 25) for k in "ABCD"}
        assert diversity_score(even) == pytest.approx(1.0)
        assert diversity_score({"A": LandUseShare(4, 100)}) == 0
        skewed = {"A": LandUseShare(9, 90), "B": LandUseShare(1, 10)}
        assert 0 < diversity_score(skewed) < 1
        assert diversity_score({}) == 0

    def test_diversity_uses_reported_percentages(self):
        thirds = {k: LandUseShare(1, 33) for k in "ABC"}
        assert diversity_score(thirds) == pytest.approx(0.99906, abs=1e-5)
