"""
Workbench API routes, mounted as a sub-router on the main FastAPI app.

Datasets, metrics, visualizations, chart previews and the per-session
dataset selection. Domain errors are mapped to HTTP responses by the
handlers registered in ``main.py``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from app.query_source import QueryError
from core.models import (
    ChartPreviewRequest,
    DatasetCreateRequest,
    DuplicateRequest,
    MetricCreateRequest,
    QueryRequest,
    SelectionRequest,
    VisualizationCreateRequest,
)
from server.context import WorkbenchContext
from skills.build_chart import BuildResult
from skills.inference import describe_columns
from skills.metric_engine import execute_metric, get_supported_operations, recompute_metrics, validate_metric

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["workbench"])


def _ctx(request: Request) -> WorkbenchContext:
    return request.app.state.workbench


def _session_id(request: Request) -> Optional[str]:
    return request.headers.get("X-Session-Id") or None


def _not_found(label: str, entity_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{label} not found: {entity_id}")


def _dump_bundle(result: BuildResult) -> Any:
    if isinstance(result, list):
        return [bundle.dump() for bundle in result]
    return result.dump()


async def _run_query(ctx: WorkbenchContext, sql: str):
    try:
        return await ctx.query_source.run(sql)
    except QueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Query source
# ---------------------------------------------------------------------------

@router.get("/tables")
async def list_tables(request: Request):
    return {"tables": _ctx(request).query_source.catalog.list_tables()}


@router.post("/query")
async def run_query(request: Request, body: QueryRequest):
    result = await _run_query(_ctx(request), body.sql)
    return result.dump()


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

@router.post("/datasets", status_code=201)
async def create_dataset(request: Request, body: DatasetCreateRequest):
    ctx = _ctx(request)
    result = await _run_query(ctx, body.sql)
    dataset = ctx.datasets.create(body.name, body.sql, result.columns, result.rows)
    return dataset.dump()


@router.get("/datasets")
async def list_datasets(request: Request):
    return {"datasets": [d.dump() for d in _ctx(request).datasets.get_all()]}


@router.get("/datasets/{dataset_id}")
async def get_dataset(request: Request, dataset_id: str):
    dataset = _ctx(request).datasets.get(dataset_id)
    if dataset is None:
        raise _not_found("Dataset", dataset_id)
    return dataset.dump()


@router.patch("/datasets/{dataset_id}")
async def update_dataset(request: Request, dataset_id: str, changes: Dict[str, Any] = Body(...)):
    """Shallow update; a new ``sql`` without explicit rows re-runs the query."""
    ctx = _ctx(request)
    if not ctx.datasets.exists(dataset_id):
        raise _not_found("Dataset", dataset_id)

    changes = dict(changes)
    if changes.get("sql") and "rows" not in changes and "columns" not in changes:
        result = await _run_query(ctx, changes["sql"])
        changes["columns"], changes["rows"] = result.columns, result.rows

    dataset = ctx.datasets.update(dataset_id, changes)
    metric_errors = recompute_metrics(dataset, ctx.metrics)
    return {"dataset": dataset.dump(), "metricErrors": metric_errors}


@router.delete("/datasets/{dataset_id}")
async def delete_dataset(request: Request, dataset_id: str):
    ctx = _ctx(request)
    result = ctx.datasets.delete(dataset_id)
    selection = ctx.selection(_session_id(request))
    if result.deleted and selection.get() == dataset_id:
        selection.clear()
    return {"deleted": result.deleted}


@router.post("/datasets/{dataset_id}/duplicate", status_code=201)
async def duplicate_dataset(request: Request, dataset_id: str, body: DuplicateRequest):
    dataset = _ctx(request).datasets.duplicate(dataset_id, body.name)
    if dataset is None:
        raise _not_found("Dataset", dataset_id)
    return dataset.dump()


@router.get("/datasets/{dataset_id}/columns")
async def dataset_columns(request: Request, dataset_id: str):
    dataset = _ctx(request).datasets.get(dataset_id)
    if dataset is None:
        raise _not_found("Dataset", dataset_id)
    return {"columns": describe_columns(dataset)}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@router.get("/metrics/operations")
async def metric_operations():
    return {"operations": get_supported_operations()}


@router.post("/metrics", status_code=201)
async def create_metric(request: Request, body: MetricCreateRequest):
    ctx = _ctx(request)
    dataset = ctx.datasets.get(body.dataset_id)
    validation = validate_metric(body, dataset)
    if not validation.is_valid:
        return JSONResponse(status_code=422, content=validation.dump())

    value = execute_metric(body, dataset)
    metric = ctx.metrics.create(
        body.dataset_id,
        body.name,
        operation=body.operation,
        column=body.column,
        expression=body.expression,
        display_type=body.display_type,
        decimal_places=body.decimal_places,
    )
    metric = ctx.metrics.update_value(metric.id, value)
    return metric.dump()


@router.get("/metrics")
async def list_metrics(request: Request, dataset_id: Optional[str] = Query(None, alias="datasetId")):
    store = _ctx(request).metrics
    metrics = store.get_by_dataset(dataset_id) if dataset_id else store.get_all()
    return {"metrics": [m.dump() for m in metrics]}


@router.get("/metrics/{metric_id}")
async def get_metric(request: Request, metric_id: str):
    metric = _ctx(request).metrics.get(metric_id)
    if metric is None:
        raise _not_found("Metric", metric_id)
    return metric.dump()


@router.patch("/metrics/{metric_id}")
async def update_metric(request: Request, metric_id: str, changes: Dict[str, Any] = Body(...)):
    metric = _ctx(request).metrics.update(metric_id, changes)
    if metric is None:
        raise _not_found("Metric", metric_id)
    return metric.dump()


@router.delete("/metrics/{metric_id}")
async def delete_metric(request: Request, metric_id: str):
    return {"deleted": _ctx(request).metrics.delete(metric_id).deleted}


@router.post("/metrics/{metric_id}/execute")
async def run_metric(request: Request, metric_id: str):
    ctx = _ctx(request)
    metric = ctx.metrics.get(metric_id)
    if metric is None:
        raise _not_found("Metric", metric_id)
    dataset = ctx.datasets.get(metric.dataset_id) if metric.dataset_id else None
    if dataset is None:
        raise _not_found("Dataset", str(metric.dataset_id))
    value = execute_metric(metric, dataset)
    return ctx.metrics.update_value(metric_id, value).dump()


# ---------------------------------------------------------------------------
# Visualizations
# ---------------------------------------------------------------------------

@router.post("/visualizations", status_code=201)
async def create_visualization(request: Request, body: VisualizationCreateRequest):
    viz = _ctx(request).visualizations.create(body.name, body.chart_type, body.config, body.dataset_id)
    return viz.dump()


@router.get("/visualizations")
async def list_visualizations(request: Request, dataset_id: Optional[str] = Query(None, alias="datasetId")):
    store = _ctx(request).visualizations
    items = store.get_by_dataset(dataset_id) if dataset_id else store.get_all()
    return {"visualizations": [v.dump() for v in items]}


@router.get("/visualizations/{viz_id}")
async def get_visualization(request: Request, viz_id: str):
    viz = _ctx(request).visualizations.get(viz_id)
    if viz is None:
        raise _not_found("Visualization", viz_id)
    return viz.dump()


@router.patch("/visualizations/{viz_id}")
async def update_visualization(request: Request, viz_id: str, changes: Dict[str, Any] = Body(...)):
    viz = _ctx(request).visualizations.update(viz_id, changes)
    if viz is None:
        raise _not_found("Visualization", viz_id)
    return viz.dump()


@router.delete("/visualizations/{viz_id}")
async def delete_visualization(request: Request, viz_id: str):
    return {"deleted": _ctx(request).visualizations.delete(viz_id).deleted}


@router.get("/visualizations/{viz_id}/bundle")
async def visualization_bundle(request: Request, viz_id: str):
    ctx = _ctx(request)
    viz = ctx.visualizations.get(viz_id)
    if viz is None:
        raise _not_found("Visualization", viz_id)
    return _dump_bundle(ctx.build_visualization(viz))


@router.post("/charts/preview")
async def preview_chart(request: Request, body: ChartPreviewRequest):
    """Debounced per session; bindings without a dataset use the session selection."""
    ctx = _ctx(request)
    sid = _session_id(request)
    selected = ctx.selection(sid).get()
    result = await ctx.debouncer.submit(
        sid or "default", ctx.build_chart, body.chart_type, body.config, selected,
    )
    return _dump_bundle(result)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@router.get("/selection")
async def get_selection(request: Request):
    return {"datasetId": _ctx(request).selection(_session_id(request)).get()}


@router.put("/selection")
async def set_selection(request: Request, body: SelectionRequest):
    ctx = _ctx(request)
    if body.dataset_id and not ctx.datasets.exists(body.dataset_id):
        raise _not_found("Dataset", body.dataset_id)
    selection = ctx.selection(_session_id(request))
    selection.set(body.dataset_id)
    return {"datasetId": selection.get()}


@router.delete("/selection")
async def clear_selection(request: Request):
    selection = _ctx(request).selection(_session_id(request))
    selection.clear()
    return {"datasetId": None}

