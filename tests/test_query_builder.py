"""Unit tests for query_builder.py: the filter allow-list, EXISTS
grouping for transaction filters, and read-only statement validation.
"""

import pytest

from query_builder import (
    FILTER_FIELDS,
    InvalidQueryError,
    PredicateBuilder,
    PropertyFilters,
    build_joined_predicates,
    build_property_predicates,
    mmyy_sort_key,
    validate_readonly_sql,
)


# =========================================================================
# PropertyFilters
# =========================================================================

class TestPropertyFilters:
    def test_empty_filters_inactive(self):
        filters = PropertyFilters()
        assert filters.active() == []
        assert not filters.has_property_filters()
        assert not filters.has_transaction_filters()

    def test_empty_lists_inactive(self):
        assert PropertyFilters(districts=[], property_types=()).active() == []

    def test_reference_year_is_not_a_filter(self):
        assert PropertyFilters(reference_year=2020).active() == []

    def test_table_split(self):
        filters = PropertyFilters(districts=["09"], min_price=1)
        assert filters.has_property_filters()
        assert filters.has_transaction_filters()
        assert set(filters.active()) == {"districts", "min_price"}

    def test_every_filter_attribute_is_allow_listed(self):
        filters = PropertyFilters(
            min_price=1, max_price=2, property_types=["a"], market_segments=["b"],
            districts=["c"], from_date="0124", to_date="1224", min_completion_year=2000,
            max_property_age=5, sale_types=["1"],
        )
        assert set(filters.active()) == set(FILTER_FIELDS)


# =========================================================================
# Predicate building
# =========================================================================

class TestBuildPropertyPredicates:
    def test_none(self):
        assert build_property_predicates(None) == ([], [])

    def test_property_filters_apply_directly(self):
        clauses, params = build_property_predicates(
            PropertyFilters(market_segments=["CCR", "RCR"], districts=["01"])
        )
        assert clauses == ["p.market_segment IN (?,?)", "p.district IN (?)"]
        assert params == ["CCR", "RCR", "01"]

    def test_single_string_is_one_value(self):
        filters = PropertyFilters(districts="09", property_types="Condominium")
        assert filters.districts == ("09",)
        clauses, params = build_property_predicates(filters)
        assert clauses[0] == "p.district IN (?)"
        assert "t.property_type IN (?)" in clauses[1]
        assert params == ["09", "Condominium"]

    def test_transaction_filters_share_one_exists(self):
        clauses, params = build_property_predicates(
            PropertyFilters(min_price=500_000, max_price=900_000, sale_types=["3"])
        )
        assert len(clauses) == 1
        sql = clauses[0]
        assert sql.startswith("EXISTS (SELECT 1 FROM transactions t WHERE t.property_id = p.id")
        assert sql.count("EXISTS") == 1
        assert "t.price >= ?" in sql
        assert "t.price <= ?" in sql
        assert "t.type_of_sale IN (?)" in sql
        assert params == [500_000, 900_000, "3"]

    def test_values_never_in_sql_text(self):
        clauses, params = build_property_predicates(
            PropertyFilters(districts=["01'; DROP TABLE properties; --"])
        )
        assert "DROP" not in " ".join(clauses)
        assert params == ["01'; DROP TABLE properties; --"]

    def test_dates_bound_as_sortable_keys(self):
        _, params = build_property_predicates(
            PropertyFilters(from_date="0399", to_date="0625")
        )
        assert params == [199903, 202506]

    def test_property_age_uses_reference_year(self):
        _, params = build_property_predicates(
            PropertyFilters(max_property_age=15, reference_year=2025)
        )
        assert params == [2010]

    def test_malformed_date_raises(self):
        with pytest.raises(ValueError):
            build_property_predicates(PropertyFilters(from_date="2024-01"))

    def test_custom_alias(self):
        clauses, _ = build_property_predicates(PropertyFilters(districts=["01"]), "prop")
        assert clauses == ["prop.district IN (?)"]


class TestPredicateBuilder:
    def test_unknown_filter_rejected(self):
        with pytest.raises(InvalidQueryError):
            PredicateBuilder().add("price; DROP TABLE x", 1)

    def test_build_joins_clauses(self):
        sql, params = PredicateBuilder().add("min_price", 1).add("districts", ["01"]).build()
        assert sql == "t.price >= ? AND p.district IN (?)"
        assert params == [1, "01"]


class TestBuildJoinedPredicates:
    def test_no_filters_is_tautology(self):
        assert build_joined_predicates(None) == ("1=1", [])
        assert build_joined_predicates(PropertyFilters()) == ("1=1", [])

    def test_row_level_predicates(self):
        sql, params = build_joined_predicates(PropertyFilters(districts=["09"], min_price=1))
        assert "EXISTS" not in sql
        assert "p.district IN (?)" in sql
        assert "t.price >= ?" in sql
        assert sorted(map(str, params)) == ["09", "1"]


def test_mmyy_sort_key_uses_column():
    expr = mmyy_sort_key("r.lease_date")
    assert "SUBSTR(r.lease_date, 3, 2)" in expr
    assert "SUBSTR(r.lease_date, 1, 2)" in expr


# =========================================================================
# Read-only validation
# =========================================================================

class TestValidateReadonlySql:
    @pytest.mark.parametrize("sql", [
        "SELECT * FROM properties",
        "  select id from properties where district = '01'  ",
        "WITH t AS (SELECT 1 AS a) SELECT a FROM t",
        "SELECT COUNT(*) FROM transactions;",
    ])
    def test_accepts_single_select(self, sql):
        assert validate_readonly_sql(sql).upper().lstrip().startswith(("SELECT", "WITH"))

    def test_trailing_semicolon_stripped(self):
        assert validate_readonly_sql("SELECT 1;") == "SELECT 1"

    @pytest.mark.parametrize("sql", [
        "",
        "   ",
        "INSERT INTO properties VALUES (1)",
        "SELECT 1; SELECT 2",
        "SELECT * FROM properties /* hidden */",
        "SELECT 1 -- comment",
        "WITH x AS (DELETE FROM properties) SELECT 1",
        "ATTACH DATABASE 'x.db' AS x",
        "select * from properties where 1; drop table properties",
        "EXPLAIN SELECT 1",
    ])
    def test_rejects(self, sql):
        with pytest.raises(InvalidQueryError):
            validate_readonly_sql(sql)
