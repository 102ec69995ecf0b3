"""Unit tests for school_search.py: cookie sign-in, the single re-auth
retry, caching, row parsing and the location-to-schools pipeline.
"""

from unittest.mock import MagicMock

import pytest
import requests

from onemap_client import LocationNotFoundError
from school_search import (
    OneMapSchoolClient,
    School,
    SchoolAuthError,
    SchoolSearchError,
    parse_school,
    search_nearby_schools,
)
from ttl_cache import TTLCache

NOW = 1_700_000_000
BASE = "https://onemap.test"


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None, text=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.text = text if text is not None else ("{}" if json_data is not None else "")
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


def _row(name, dist_code="1", **overrides):
    row = {
        "SCHOOLNAME": name,
        "SCH_HSE_BLK_NUM": "10",
        "SCH_ROAD_NAME": "CLEMENTI AVENUE 3",
        "SCH_POSTAL_CODE": "129903",
        "DIST_CODE": dist_code,
        "HYPERLINK": "https://www.moe.gov.sg/schoolfinder",
        "LATITUDE": "1.3151",
        "LONGITUDE": "103.7649",
        "SCH_X_ADDR": "20418.7",
        "SCH_Y_ADDR": "33512.2",
        "SCH_TEXT": name,
        "GEOMETRY": [[103.76, 1.31], [103.77, 1.31], [103.77, 1.32]],
    }
    row.update(overrides)
    return row


class FakeOneMap:
    """A real Session whose get() is scripted: the homepage hands out cookies."""

    def __init__(self, query_responses, cookie_expires=NOW + 86400, grant_cookies=True):
        self.session = requests.Session()
        self.session.get = MagicMock(side_effect=self._get)
        self.query_responses = list(query_responses)
        self.cookie_expires = cookie_expires
        self.grant_cookies = grant_cookies
        self.homepage_visits = 0

    def _get(self, url, **kwargs):
        if url == BASE:
            self.homepage_visits += 1
            if self.grant_cookies:
                for name in ("OMITN", "omiApp"):
                    self.session.cookies.set(name, "v", expires=self.cookie_expires)
            return _mock_response(200, text="<html></html>")
        item = self.query_responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(fake):
    return OneMapSchoolClient(
        cache=TTLCache(name="schools"), session=fake.session, base_url=BASE, clock=lambda: NOW,
    )


def _ok(*rows):
    return _mock_response(200, {"SearchResults": list(rows)})


# =========================================================================
# Parsing
# =========================================================================

class TestParseSchool:
    def test_fields(self):
        school = parse_school(_row("CLEMENTI PRIMARY SCHOOL"))
        assert school.name == "CLEMENTI PRIMARY SCHOOL"
        assert school.address == "10 CLEMENTI AVENUE 3 129903"
        assert school.postal_code == "129903"
        assert school.latitude == pytest.approx(1.3151)
        assert school.x == pytest.approx(20418.7)
        assert school.distance_category == "1km"
        assert len(school.geometry) == 3

    def test_second_band(self):
        assert parse_school(_row("A", dist_code="2")).distance_category == "1-2km"


# =========================================================================
# Client
# =========================================================================

class TestOneMapSchoolClient:
    def test_signs_in_then_queries(self):
        fake = FakeOneMap([_ok(_row("A"), _row("B", dist_code="2"))])
        schools = _client(fake).get_nearby_primary_schools("119077", "21", 1000)

        assert [s.name for s in schools] == ["A", "B"]
        assert fake.homepage_visits == 1
        query = fake.session.get.call_args_list[1]
        assert query.args[0] == f"{BASE}/omapp/getnearbyPriSchools"
        assert query.kwargs["params"] == {"distance": "1000", "postalcode": "119077", "blkno": "21"}
        assert query.kwargs["headers"]["application"] == "OMI3D"

    def test_valid_cookies_reused(self):
        fake = FakeOneMap([_ok(_row("A")), _ok(_row("B"))])
        client = _client(fake)
        client.get_nearby_primary_schools("119077", "21", 1000)
        client.get_nearby_primary_schools("119077", "21", 2000)
        assert fake.homepage_visits == 1

    def test_results_cached(self):
        fake = FakeOneMap([_ok(_row("A"))])
        client = _client(fake)
        first = client.get_nearby_primary_schools("119077", "21", 1000)
        second = client.get_nearby_primary_schools("119077", "21", 1000)
        assert first is second
        assert fake.session.get.call_count == 2
        assert client.cache_stats()["hits"] == 1

    def test_empty_result_cached(self):
        fake = FakeOneMap([_ok()])
        client = _client(fake)
        assert client.get_nearby_primary_schools("119077") == []
        assert client.get_nearby_primary_schools("119077") == []
        assert fake.session.get.call_count == 2

    def test_reauth_clears_cookies_and_retries_once(self):
        fake = FakeOneMap([_mock_response(200, text="reauth"), _ok(_row("A"))])
        schools = _client(fake).get_nearby_primary_schools("119077", "21")
        assert [s.name for s in schools] == ["A"]
        assert fake.homepage_visits == 2

    def test_second_rejection_raises(self):
        fake = FakeOneMap([_mock_response(401, {}), _mock_response(403, {})])
        with pytest.raises(SchoolAuthError):
            _client(fake).get_nearby_primary_schools("119077", "21")
        assert fake.homepage_visits == 2

    def test_expiring_cookies_refreshed(self):
        fake = FakeOneMap([_ok(_row("A")), _ok(_row("B"))], cookie_expires=NOW + 1800)
        client = _client(fake)
        assert not client.has_valid_cookies()
        client.get_nearby_primary_schools("119077", "21", 1000)
        client.get_nearby_primary_schools("119077", "21", 2000)
        assert fake.homepage_visits == 2

    def test_homepage_without_cookies(self):
        fake = FakeOneMap([], grant_cookies=False)
        with pytest.raises(SchoolAuthError, match="cookies"):
            _client(fake).get_nearby_primary_schools("119077")

    def test_server_error_is_not_auth(self):
        fake = FakeOneMap([_mock_response(500, {})])
        with pytest.raises(SchoolSearchError) as exc:
            _client(fake).get_nearby_primary_schools("119077")
        assert not isinstance(exc.value, SchoolAuthError)
        assert fake.homepage_visits == 1

    def test_connection_error(self):
        fake = FakeOneMap([requests.exceptions.ConnectionError("refused")])
        with pytest.raises(SchoolSearchError):
            _client(fake).get_nearby_primary_schools("119077")

    def test_malformed_rows_skipped(self):
        fake = FakeOneMap([_ok(_row("A"), _row("B", LATITUDE=None))])
        schools = _client(fake).get_nearby_primary_schools("119077")
        assert [s.name for s in schools] == ["A"]


# =========================================================================
# search_nearby_schools
# =========================================================================

def _school(name, band):
    return School(
        name=name, address="", postal_code="", latitude=1.3, longitude=103.8,
        x=0, y=0, distance_category=band,
    )


def _onemap(results):
    client = MagicMock()
    client.search_location.return_value = {"found": len(results), "results": results}
    return client


class TestSearchNearbySchools:
    def test_grouped_by_band(self):
        onemap = _onemap([{"ADDRESS": "21 CLEMENTI RD", "POSTAL": "119077", "BLK_NO": "21"}])
        schools = MagicMock()
        schools.get_nearby_primary_schools.return_value = [
            _school("A", "1km"), _school("B", "1-2km"), _school("C", "1km"),
        ]

        result = search_nearby_schools("clementi", 1500, client=onemap, school_client=schools)

        schools.get_nearby_primary_schools.assert_called_once_with("119077", "21", 1500)
        assert result.address == "21 CLEMENTI RD"
        assert [s.name for s in result.within_1km] == ["A", "C"]
        assert [s.name for s in result.within_1_to_2km] == ["B"]
        assert len(result.schools) == 3

    def test_missing_block_sent_empty(self):
        onemap = _onemap([{"ADDRESS": "X", "POSTAL": "119077", "BLK_NO": "NIL"}])
        schools = MagicMock()
        schools.get_nearby_primary_schools.return_value = []
        search_nearby_schools("x", client=onemap, school_client=schools)
        schools.get_nearby_primary_schools.assert_called_once_with("119077", "", 2000)

    def test_location_not_found(self):
        with pytest.raises(LocationNotFoundError):
            search_nearby_schools("nowhere", client=_onemap([]), school_client=MagicMock())

    def test_no_postal_code(self):
        onemap = _onemap([{"ADDRESS": "SOMEWHERE", "POSTAL": "NIL"}])
        schools = MagicMock()
        with pytest.raises(LocationNotFoundError, match="postal code"):
            search_nearby_schools("somewhere", client=onemap, school_client=schools)
        schools.get_nearby_primary_schools.assert_not_called()

    @pytest.mark.parametrize("distance", [499, 5001])
    def test_distance_bounds(self, distance):
        with pytest.raises(ValueError):
            search_nearby_schools("x", distance, client=MagicMock(), school_client=MagicMock())
