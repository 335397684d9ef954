"""
Tests for the aggregation engine and date bucketing.
"""

import pytest

from app.utils.datetime_utils import bucket_date, looks_like_date, parse_date
from core.errors import MissingColumnError
from core.models import Aggregation, DateGrouping
from skills.aggregate import aggregate, group_rows, reduce_values

SALES_COLUMNS = ["region", "sales"]
SALES_ROWS = [["N", 10], ["S", 5], ["N", 7], ["E", 3]]


class TestReduceValues:
    """Per-group reducers."""

    @pytest.mark.parametrize("aggregation,expected", [
        (Aggregation.SUM, 17),
        (Aggregation.AVG, 3.4),
        (Aggregation.MIN, 1),
        (Aggregation.MAX, 10),
        (Aggregation.COUNT, 5),
        (Aggregation.COUNT_DISTINCT, 4),
    ])
    def test_reducers(self, aggregation, expected):
        values = [1, 10, "x", None, 5, 1]
        assert reduce_values(values, aggregation) == pytest.approx(expected)

    def test_min_max_without_numbers_is_zero(self):
        assert reduce_values(["a", "b"], Aggregation.MIN) == 0
        assert reduce_values([None], Aggregation.MAX) == 0

    def test_sum_avg_of_empty(self):
        assert reduce_values([], Aggregation.SUM) == 0
        assert reduce_values([None, None], Aggregation.AVG) == 0

    def test_float_results_are_rounded(self):
        assert reduce_values([0.1, 0.2], Aggregation.SUM) == 0.3
        assert reduce_values([1, 1, 2], Aggregation.AVG) == 1.3333
        assert aggregate([["A", 0.1], ["A", 0.2]], ["k", "v"], "k", "v", Aggregation.SUM) == [("A", 0.3)]

    def test_integer_sum_stays_integer(self):
        assert isinstance(reduce_values([1, 2, 3], Aggregation.SUM), int)

    def test_accepts_lowercase_names(self):
        assert reduce_values([1, 2], "sum") == 3
        assert reduce_values(["a", "a", "b"], "count_distinct") == 2


class TestAggregate:
    """Grouping, ordering and type preservation."""

    def test_first_seen_order_when_unsorted(self):
        pairs = aggregate(SALES_ROWS, SALES_COLUMNS, "region", "sales", Aggregation.SUM, sort=False)
        assert pairs == [("N", 17), ("S", 5), ("E", 3)]

    def test_sorted_lexicographically(self):
        pairs = aggregate(SALES_ROWS, SALES_COLUMNS, "region", "sales", Aggregation.SUM)
        assert pairs == [("E", 3), ("N", 17), ("S", 5)]

    def test_numeric_keys_sort_numerically(self):
        rows = [[2, 1], [10, 4], [1, 1], [2, 3]]
        pairs = aggregate(rows, ["k", "v"], "k", "v", Aggregation.SUM)
        assert pairs == [(1, 1), (2, 4), (10, 4)]
        assert all(isinstance(k, int) for k, _ in pairs)

    def test_equal_strings_share_a_group(self):
        rows = [[1, 1], ["1", 2], [2, 5]]
        pairs = aggregate(rows, ["k", "v"], "k", "v", Aggregation.SUM)
        assert pairs == [(1, 3), (2, 5)]

    def test_null_keys_are_skipped(self):
        rows = [["a", 1], [None, 100], ["a", 2]]
        assert aggregate(rows, ["k", "v"], "k", "v", Aggregation.SUM) == [("a", 3)]

    def test_count_ignores_null_values(self):
        rows = [["a", 1], ["a", None], ["b", None]]
        assert aggregate(rows, ["k", "v"], "k", "v", Aggregation.COUNT) == [("a", 1), ("b", 0)]

    def test_permutation_invariant(self):
        forward = aggregate(SALES_ROWS, SALES_COLUMNS, "region", "sales", Aggregation.AVG)
        backward = aggregate(list(reversed(SALES_ROWS)), SALES_COLUMNS, "region", "sales", Aggregation.AVG)
        assert forward == backward

    @pytest.mark.parametrize("aggregation", [Aggregation.SUM, Aggregation.MIN, Aggregation.MAX, Aggregation.AVG])
    def test_reaggregation_is_a_no_op(self, aggregation):
        once = aggregate(SALES_ROWS, SALES_COLUMNS, "region", "sales", aggregation)
        twice = aggregate([list(p) for p in once], SALES_COLUMNS, "region", "sales", aggregation)
        assert twice == once

    def test_empty_rows(self):
        assert aggregate([], SALES_COLUMNS, "region", "sales", Aggregation.SUM) == []

    @pytest.mark.parametrize("x,y", [("nope", "sales"), ("region", "nope")])
    def test_missing_column(self, x, y):
        with pytest.raises(MissingColumnError):
            aggregate(SALES_ROWS, SALES_COLUMNS, x, y, Aggregation.SUM)

    def test_group_rows_keeps_row_membership(self):
        groups = group_rows(SALES_ROWS, SALES_COLUMNS, "region")
        assert [key for key, _ in groups] == ["N", "S", "E"]
        assert groups[0][1] == [["N", 10], ["N", 7]]


class TestDateBucketing:
    """Date grouping of x values before aggregation."""

    def test_month_buckets(self):
        rows = [["2024-01-15", 1], ["2024-02-03", 2], ["2024-02-28", 3], ["2024-03-10", 4]]
        pairs = aggregate(rows, ["d", "value"], "d", "value", Aggregation.SUM, DateGrouping.month)
        assert pairs == [("2024-01", 1), ("2024-02", 5), ("2024-03", 4)]

    @pytest.mark.parametrize("value,grouping,expected", [
        ("1970-01-01", DateGrouping.week, "1970-W01"),
        ("2024-12-30", DateGrouping.week, "2025-W01"),
        ("2021-01-03", DateGrouping.week, "2020-W53"),
        ("2024-05-01", DateGrouping.quarter, "2024-Q2"),
        ("2024-12-31", DateGrouping.quarter, "2024-Q4"),
        ("2024-05-01", DateGrouping.year, "2024"),
        ("2024-05-01T13:45:00", DateGrouping.day, "2024-05-01"),
        ("2024-05-01", DateGrouping.month, "2024-05"),
    ])
    def test_bucket_keys(self, value, grouping, expected):
        assert bucket_date(value, grouping) == expected

    def test_day_passes_non_dates_through(self):
        assert bucket_date("not a date", DateGrouping.day) == "not a date"

    def test_unparseable_dates_drop_rows(self):
        rows = [["2024-01-15", 1], ["not a date", 100], ["2024-01-20", 2]]
        pairs = aggregate(rows, ["d", "v"], "d", "v", Aggregation.SUM, DateGrouping.month)
        assert pairs == [("2024-01", 3)]

    def test_week_buckets_sort_in_time_order(self):
        rows = [["2024-03-04", 1], ["2024-01-01", 1], ["2024-01-02", 1]]
        pairs = aggregate(rows, ["d", "v"], "d", "v", Aggregation.COUNT, DateGrouping.week)
        assert pairs == [("2024-W01", 2), ("2024-W10", 1)]

    def test_parse_date_helpers(self):
        assert parse_date("2024-02-29").day == 29
        assert parse_date(None) is None
        assert parse_date(12) is None
        assert looks_like_date("2024-01-01")
        assert not looks_like_date("hello")
