"""
Tests for the sample catalog and the SQL query source.
"""

import asyncio

import pytest

from app.query_source import QueryError, QuerySource, SampleCatalog


@pytest.fixture(scope="module")
def source():
    return QuerySource(SampleCatalog(rows=30))


class TestSampleCatalog:
    def test_is_deterministic(self):
        first = SampleCatalog(rows=20).tables["results"]
        second = SampleCatalog(rows=20).tables["results"]
        assert first.equals(second)

    def test_table_sizes(self):
        catalog = SampleCatalog(rows=20)
        sizes = {t["name"]: t["rows"] for t in catalog.list_tables()}
        assert sizes == {"samples": 20, "tests": 8, "results": 40}


class TestQuerySource:
    def test_execute_returns_positional_rows(self, source):
        result = source.execute("SELECT test_id, unit FROM tests ORDER BY test_id LIMIT 2")
        assert result.columns == ["test_id", "unit"]
        assert result.rows == [["T001", "mg/dL"], ["T002", "g/dL"]]

    def test_join(self, source):
        result = source.execute(
            "SELECT COUNT(*) AS n FROM results r JOIN samples s ON r.sample_id = s.sample_id"
        )
        assert result.rows == [[60]]

    @pytest.mark.parametrize("sql", ["", "   ", "SELECT * FROM missing_table", "NOT SQL"])
    def test_errors(self, source, sql):
        with pytest.raises(QueryError):
            source.execute(sql)

    def test_async_run(self, source):
        result = asyncio.run(source.run("SELECT 1 AS one", latency_ms=1))
        assert result.dump() == {"columns": ["one"], "rows": [[1]]}
