"""
Typed SQL predicate builder for property searches.

Filters are declared once in FILTER_FIELDS, an explicit allow-list mapping
each filter attribute to the table it constrains, the column expression,
and the comparison operator.  Nothing outside that table can reach the
SQL text: callers supply values only, and every value is a bound
parameter.

Transaction-level filters on a property search are wrapped in a single
correlated EXISTS so a property matches when at least ONE of its
transactions satisfies every active sub-filter jointly.  Two different
transactions satisfying two different sub-filters do not count.

Ad-hoc analysis SQL goes through validate_readonly_sql() before any
connection is opened.
"""

import re
from dataclasses import dataclass, field, fields
from datetime import date
from typing import Any, List, Optional, Sequence, Tuple

from trends import decode_mmyy


class InvalidQueryError(Exception):
    """Raised when a statement is not a single read-only SELECT."""

    pass


# =============================================================================
# Filters
# =============================================================================

@dataclass
class PropertyFilters:
    """Optional constraints on a property search.  None / empty = inactive.

    Consistency between bounds (min_price > max_price, from_date after
    to_date) is the caller's responsibility; such filters simply match
    nothing.
    """
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    property_types: Sequence[str] = field(default_factory=tuple)
    market_segments: Sequence[str] = field(default_factory=tuple)
    districts: Sequence[str] = field(default_factory=tuple)
    from_date: Optional[str] = None      # MMYY, inclusive
    to_date: Optional[str] = None        # MMYY, inclusive
    min_completion_year: Optional[int] = None
    max_property_age: Optional[int] = None
    sale_types: Sequence[str] = field(default_factory=tuple)  # "1" new, "2" sub-sale, "3" resale
    reference_year: Optional[int] = None  # "now" for max_property_age; defaults to today

    def __post_init__(self):
        # A lone string is one value, not a sequence of characters.
        for name in ("property_types", "market_segments", "districts", "sale_types"):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, (value,))

    def active(self) -> List[str]:
        """Names of filter attributes carrying a value."""
        names = []
        for f in fields(self):
            if f.name not in FILTER_FIELDS:
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, (list, tuple, set, frozenset)) and not value:
                continue
            names.append(f.name)
        return names

    def has_property_filters(self) -> bool:
        return any(FILTER_FIELDS[n].table == "property" for n in self.active())

    def has_transaction_filters(self) -> bool:
        return any(FILTER_FIELDS[n].table == "transaction" for n in self.active())


# =============================================================================
# Allow-list
# =============================================================================

# Sortable YYYYMM key for an MMYY column, using the same two-digit-year
# pivot as trends.decode_mmyy (YY < 50 -> 20YY, else 19YY).
_MMYY_SORT_KEY = (
    "((CASE WHEN CAST(SUBSTR({col}, 3, 2) AS INTEGER) < 50 "
    "THEN 2000 ELSE 1900 END + CAST(SUBSTR({col}, 3, 2) AS INTEGER)) * 100 "
    "+ CAST(SUBSTR({col}, 1, 2) AS INTEGER))"
)

# Trailing four digits of the tenure string are the lease commencement year
# ("99 yrs lease commencing from 2015").  "Freehold" casts to 0 and so never
# satisfies a completion-year or age bound.
_COMPLETION_YEAR = "CAST(SUBSTR({t}.tenure, -4) AS INTEGER)"


@dataclass(frozen=True)
class FilterField:
    """How one filter attribute becomes a SQL predicate."""
    table: str        # "property" | "transaction"
    column: str       # expression template; {p} / {t} are table aliases
    operator: str     # ">=", "<=", "IN"


FILTER_FIELDS = {
    "min_price": FilterField("transaction", "{t}.price", ">="),
    "max_price": FilterField("transaction", "{t}.price", "<="),
    "property_types": FilterField("transaction", "{t}.property_type", "IN"),
    "market_segments": FilterField("property", "{p}.market_segment", "IN"),
    "districts": FilterField("property", "{p}.district", "IN"),
    "from_date": FilterField(
        "transaction", _MMYY_SORT_KEY.format(col="{t}.contract_date"), ">="
    ),
    "to_date": FilterField(
        "transaction", _MMYY_SORT_KEY.format(col="{t}.contract_date"), "<="
    ),
    "min_completion_year": FilterField("transaction", _COMPLETION_YEAR, ">="),
    "max_property_age": FilterField("transaction", _COMPLETION_YEAR, ">="),
    "sale_types": FilterField("transaction", "{t}.type_of_sale", "IN"),
}

_ALLOWED_OPERATORS = {">=", "<=", "IN"}


def mmyy_sort_key(column: str) -> str:
    """SQL expression ordering an MMYY column chronologically as YYYYMM."""
    return _MMYY_SORT_KEY.format(col=column)


def _mmyy_sort_value(mmyy: str) -> int:
    month, year = decode_mmyy(mmyy)
    return year * 100 + month


def _bound_value(name: str, filters: PropertyFilters) -> Any:
    """Translate a filter attribute into the value compared in SQL."""
    value = getattr(filters, name)
    if name in ("from_date", "to_date"):
        return _mmyy_sort_value(value)
    if name == "max_property_age":
        ref = filters.reference_year or date.today().year
        return ref - int(value)
    return value


# =============================================================================
# Builder
# =============================================================================

class PredicateBuilder:
    """Accumulates allow-listed predicates and their bound parameters."""

    def __init__(self, property_alias: str = "p", transaction_alias: str = "t"):
        self.property_alias = property_alias
        self.transaction_alias = transaction_alias
        self.clauses: List[str] = []
        self.params: List[Any] = []

    def add(self, name: str, value: Any) -> "PredicateBuilder":
        field_def = FILTER_FIELDS.get(name)
        if field_def is None:
            raise InvalidQueryError(f"Filter {name!r} is not filterable")
        if field_def.operator not in _ALLOWED_OPERATORS:
            raise InvalidQueryError(f"Operator {field_def.operator!r} not allowed")
        column = field_def.column.format(
            p=self.property_alias, t=self.transaction_alias
        )
        if field_def.operator == "IN":
            values = list(value)
            placeholders = ",".join("?" for _ in values)
            self.clauses.append(f"{column} IN ({placeholders})")
            self.params.extend(values)
        else:
            self.clauses.append(f"{column} {field_def.operator} ?")
            self.params.append(value)
        return self

    def add_filters(
        self, filters: PropertyFilters, table: Optional[str] = None
    ) -> "PredicateBuilder":
        """Add every active filter, optionally only those on one table."""
        for name in filters.active():
            if table and FILTER_FIELDS[name].table != table:
                continue
            self.add(name, _bound_value(name, filters))
        return self

    def build(self, joiner: str = " AND ") -> Tuple[str, List[Any]]:
        return joiner.join(self.clauses), list(self.params)


def build_property_predicates(
    filters: Optional[PropertyFilters], property_alias: str = "p"
) -> Tuple[List[str], List[Any]]:
    """Predicates for a property-level search.

    Property filters apply directly; transaction filters collapse into one
    correlated EXISTS so they must hold on the same transaction.
    """
    if filters is None:
        return [], []

    clauses: List[str] = []
    params: List[Any] = []

    prop = PredicateBuilder(property_alias=property_alias)
    prop.add_filters(filters, table="property")
    clauses.extend(prop.clauses)
    params.extend(prop.params)

    if filters.has_transaction_filters():
        txn = PredicateBuilder(property_alias=property_alias, transaction_alias="t")
        txn.add_filters(filters, table="transaction")
        sub_sql, sub_params = txn.build()
        clauses.append(
            "EXISTS (SELECT 1 FROM transactions t "
            f"WHERE t.property_id = {property_alias}.id AND {sub_sql})"
        )
        params.extend(sub_params)

    return clauses, params


def build_joined_predicates(
    filters: Optional[PropertyFilters],
    property_alias: str = "p",
    transaction_alias: str = "t",
) -> Tuple[str, List[Any]]:
    """WHERE body for queries that already join transactions row-by-row."""
    builder = PredicateBuilder(property_alias, transaction_alias)
    if filters is not None:
        builder.add_filters(filters)
    sql, params = builder.build()
    return (sql or "1=1"), params


# =============================================================================
# Ad-hoc statement validation
# =============================================================================

_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|REPLACE|ATTACH|DETACH|"
    r"PRAGMA|VACUUM|REINDEX|TRUNCATE|GRANT|REVOKE|BEGIN|COMMIT|ROLLBACK)\b",
    re.IGNORECASE,
)
_LEADING_KEYWORD = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)


def validate_readonly_sql(sql: str) -> str:
    """Return the normalised statement or raise InvalidQueryError.

    Accepts exactly one SELECT (optionally introduced by WITH).  Comments
    are refused outright since they can hide a second statement.
    """
    if not sql or not sql.strip():
        raise InvalidQueryError("Empty statement")
    statement = sql.strip()
    if statement.endswith(";"):
        statement = statement[:-1].rstrip()
    if ";" in statement:
        raise InvalidQueryError("Multiple statements are not allowed")
    if "--" in statement or "/*" in statement:
        raise InvalidQueryError("SQL comments are not allowed")
    if not _LEADING_KEYWORD.match(statement):
        raise InvalidQueryError("Only SELECT statements are allowed")
    forbidden = _FORBIDDEN_KEYWORDS.search(statement)
    if forbidden:
        raise InvalidQueryError(
            f"Keyword {forbidden.group(1).upper()} is not allowed"
        )
    return statement
