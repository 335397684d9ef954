"""
HTTP surface tests using FastAPI's TestClient.
"""

import pytest
from fastapi.testclient import TestClient

from app.query_source import QuerySource, SampleCatalog
from core.config import Settings
from core.storage import MemoryKeyValueStore
from main import create_app
from server.context import WorkbenchContext

SMALL_SQL = (
    "SELECT 1 AS id, 'A' AS category, 10.5 AS value "
    "UNION ALL SELECT 2, 'B', 20.3 "
    "UNION ALL SELECT 3, 'A', 15.7"
)


def make_client(quota_bytes=None):
    settings = Settings(debounce_ms=0, sample_rows=40)
    source = QuerySource(SampleCatalog(rows=settings.sample_rows))
    context = WorkbenchContext(MemoryKeyValueStore(quota_bytes=quota_bytes), settings, source)
    return TestClient(create_app(context))


@pytest.fixture
def client():
    return make_client()


@pytest.fixture
def dataset_id(client):
    resp = client.post("/api/datasets", json={"name": "Small", "sql": SMALL_SQL})
    assert resp.status_code == 201
    return resp.json()["id"]


class TestQueries:
    """Sample catalog and ad-hoc SQL."""

    def test_tables(self, client):
        tables = client.get("/api/tables").json()["tables"]
        assert [t["name"] for t in tables] == ["samples", "tests", "results"]
        assert "sample_id" in tables[0]["columns"]

    def test_query(self, client):
        resp = client.post("/api/query", json={"sql": "SELECT COUNT(*) AS n FROM samples"})
        assert resp.status_code == 200
        assert resp.json() == {"columns": ["n"], "rows": [[40]]}

    def test_bad_sql(self, client):
        resp = client.post("/api/query", json={"sql": "SELECT * FROM nowhere"})
        assert resp.status_code == 400


class TestDatasets:
    """Dataset endpoints."""

    def test_create_and_get(self, client, dataset_id):
        body = client.get(f"/api/datasets/{dataset_id}").json()
        assert body["id"] == "ds_1"
        assert body["columns"] == ["id", "category", "value"]
        assert body["rows"][0] == [1, "A", 10.5]
        assert body["createdAt"]

    def test_list_and_columns(self, client, dataset_id):
        assert len(client.get("/api/datasets").json()["datasets"]) == 1
        columns = client.get(f"/api/datasets/{dataset_id}/columns").json()["columns"]
        assert columns == [
            {"name": "id", "type": "numeric"},
            {"name": "category", "type": "text"},
            {"name": "value", "type": "numeric"},
        ]

    def test_missing_dataset(self, client):
        assert client.get("/api/datasets/ds_404").status_code == 404

    def test_patch_recomputes_metrics(self, client, dataset_id):
        client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "Total", "operation": "sum", "column": "value",
        })
        resp = client.patch(f"/api/datasets/{dataset_id}", json={"sql": "SELECT 5 AS value"})
        assert resp.status_code == 200
        assert resp.json()["metricErrors"] == {}
        metric = client.get("/api/metrics", params={"datasetId": dataset_id}).json()["metrics"][0]
        assert metric["value"] == 5

    def test_patch_invalid_is_422(self, client, dataset_id):
        resp = client.patch(f"/api/datasets/{dataset_id}", json={"name": ""})
        assert resp.status_code == 422

    def test_duplicate_and_delete(self, client, dataset_id):
        dup = client.post(f"/api/datasets/{dataset_id}/duplicate", json={"name": "Copy"})
        assert dup.status_code == 201
        assert dup.json()["id"] == "ds_2"
        assert client.delete("/api/datasets/ds_2").json() == {"deleted": True}
        assert client.delete("/api/datasets/ds_2").json() == {"deleted": False}


class TestMetrics:
    """Metric endpoints."""

    def test_create_executes(self, client, dataset_id):
        resp = client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "Mean", "operation": "mean", "column": "value",
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["value"] == 15.5
        assert body["executedAt"]

    def test_expression_metric(self, client, dataset_id):
        resp = client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "A total", "expression": "IF(category = 'A', value, 0)",
        })
        assert resp.json()["value"] == pytest.approx(26.2)

    def test_validation_errors(self, client, dataset_id):
        resp = client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "Bad", "operation": "median", "column": "nope",
        })
        assert resp.status_code == 422
        body = resp.json()
        assert body["isValid"] is False
        assert len(body["errors"]) == 2

    def test_calculation_error_is_422(self, client, dataset_id):
        resp = client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "Bad", "operation": "mean", "column": "category",
        })
        assert resp.status_code == 422
        assert resp.json()["error"] == "NoNumericValuesError"

    def test_execute_and_delete(self, client, dataset_id):
        metric_id = client.post("/api/metrics", json={
            "datasetId": dataset_id, "name": "Count", "operation": "count", "column": "id",
        }).json()["id"]
        assert client.post(f"/api/metrics/{metric_id}/execute").json()["value"] == 3
        assert client.delete(f"/api/metrics/{metric_id}").json() == {"deleted": True}
        assert client.get(f"/api/metrics/{metric_id}").status_code == 404

    def test_operations(self, client):
        ops = client.get("/api/metrics/operations").json()["operations"]
        assert "count_distinct" in ops


class TestCharts:
    """Visualizations, bundles and previews."""

    def bar_config(self, dataset_id):
        return {
            "xBinding": {"kind": "column", "ref": "category", "datasetId": dataset_id},
            "yBinding": {"kind": "column", "ref": "value", "datasetId": dataset_id, "aggregation": "SUM"},
        }

    def test_visualization_bundle(self, client, dataset_id):
        viz = client.post("/api/visualizations", json={
            "name": "By category", "chartType": "bar", "config": self.bar_config(dataset_id),
            "datasetId": dataset_id,
        })
        assert viz.status_code == 201
        bundle = client.get(f"/api/visualizations/{viz.json()['id']}/bundle").json()
        assert bundle["kind"] == "xy"
        assert bundle["categories"] == ["A", "B"]
        assert bundle["chartData"] == pytest.approx([26.2, 20.3])
        assert bundle["isXNumeric"] is False

    def test_preview_matches_direct_bundle(self, client, dataset_id):
        config = self.bar_config(dataset_id)
        viz_id = client.post("/api/visualizations", json={
            "name": "v", "chartType": "bar", "config": config,
        }).json()["id"]
        preview = client.post("/api/charts/preview", json={"chartType": "bar", "config": config})
        assert preview.status_code == 200
        assert preview.json() == client.get(f"/api/visualizations/{viz_id}/bundle").json()

    def test_preview_uses_selected_dataset(self, client, dataset_id):
        headers = {"X-Session-Id": "s1"}
        client.put("/api/selection", json={"datasetId": dataset_id}, headers=headers)
        resp = client.post("/api/charts/preview", headers=headers, json={
            "chartType": "scorecard",
            "config": {"yBinding": {"kind": "column", "ref": "value"}},
        })
        assert resp.json()["operationLabel"] == "Average"

    def test_binding_error(self, client, dataset_id):
        resp = client.post("/api/charts/preview", json={
            "chartType": "line",
            "config": {"xBinding": {"kind": "column", "ref": "category", "datasetId": dataset_id}},
        })
        assert resp.status_code == 422
        assert resp.json()["reason"] == "missing-axis"

    def test_patch_merges_config(self, client, dataset_id):
        viz_id = client.post("/api/visualizations", json={
            "name": "v", "chartType": "bar", "config": self.bar_config(dataset_id),
        }).json()["id"]
        resp = client.patch(f"/api/visualizations/{viz_id}", json={"config": {"styling": {"title": "T"}}})
        body = resp.json()
        assert body["config"]["styling"]["title"] == "T"
        assert body["config"]["xBinding"]["ref"] == "category"
        listed = client.get("/api/visualizations", params={"datasetId": dataset_id}).json()
        assert listed["visualizations"] == []


class TestSelection:
    """Per-session selection."""

    def test_sessions_are_independent(self, client, dataset_id):
        client.put("/api/selection", json={"datasetId": dataset_id}, headers={"X-Session-Id": "a"})
        assert client.get("/api/selection", headers={"X-Session-Id": "a"}).json() == {"datasetId": dataset_id}
        assert client.get("/api/selection", headers={"X-Session-Id": "b"}).json() == {"datasetId": None}

    def test_unknown_dataset(self, client):
        assert client.put("/api/selection", json={"datasetId": "ds_404"}).status_code == 404

    def test_delete_dataset_clears_selection(self, client, dataset_id):
        client.put("/api/selection", json={"datasetId": dataset_id})
        client.delete(f"/api/datasets/{dataset_id}")
        assert client.get("/api/selection").json() == {"datasetId": None}

    def test_clear(self, client, dataset_id):
        client.put("/api/selection", json={"datasetId": dataset_id})
        assert client.delete("/api/selection").json() == {"datasetId": None}


def test_storage_quota_is_507():
    client = make_client(quota_bytes=10)
    resp = client.post("/api/datasets", json={"name": "Too big", "sql": SMALL_SQL})
    assert resp.status_code == 507


def test_health(client):
    assert client.get("/health").json()["ok"] is True
