"""
Chart binding skill.

Takes a chart type + ChartConfig (axis bindings, table fields, styling) and
resolves it against datasets and metrics into a neutral series bundle:

- xy: line / bar / scatter. ``chartData`` is either ``[[x, y], ...]`` with
  ``isXNumeric`` set, or plain y values with parallel ``categories``.
- pie: pie / donut slices in first-seen category order.
- scorecard: one headline value with an operation label.
- table: projected rows in binding order.
- kpi: one bundle per metric when both axes are metrics.

Datasets and metrics are looked up through resolver callables so the binder
never touches a store directly. Every failure surfaces as a BindingError.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.errors import BindingError, BindingErrorReason, CalculationError
from core.models import (
    Aggregation,
    Binding,
    BindingKind,
    ChartConfig,
    ChartType,
    ColumnType,
    Dataset,
    KpiBundle,
    Metric,
    PieBundle,
    PieSlice,
    ReferenceLine,
    ScorecardBundle,
    SeriesBundle,
    TableBundle,
    Visualization,
    XYBundle,
)
from core.utils import (
    coerce_number,
    column_values,
    format_column_name,
    format_metric_value,
    is_null,
    is_numeric_value,
    round4,
    stringify_cell,
    to_number,
)
from skills.aggregate import aggregate, column_index, group_rows, reduce_values, sort_pairs
from skills.inference import infer_column_type
from skills.metric_engine import execute_metric

logger = logging.getLogger("uvicorn.error")

DEFAULT_COLOR = "#007bff"
DONUT_HOLE = 0.5

DatasetResolver = Callable[[str], Optional[Dataset]]
MetricResolver = Callable[[str], Optional[Metric]]
BuildResult = Union[SeriesBundle, List[KpiBundle]]
Point = Tuple[Any, float]


def _missing(message: str) -> BindingError:
    return BindingError(BindingErrorReason.missing_axis, message)


def _incompatible(message: str) -> BindingError:
    return BindingError(BindingErrorReason.chart_type_incompatible, message)


def _is_column(binding: Optional[Binding]) -> bool:
    return binding is not None and binding.kind == BindingKind.column


def _is_metric(binding: Optional[Binding]) -> bool:
    return binding is not None and binding.kind == BindingKind.metric


def _concrete(binding: Optional[Binding]) -> bool:
    return binding is not None and bool(binding.ref)


# ---------------------------------------------------------------------------
# Output shaping
# ---------------------------------------------------------------------------

def _sort_direct(points: List[Point]) -> Tuple[List[Point], bool]:
    """Sort by x: numeric when the first kept x is a number, else lexicographic."""
    if not points:
        return points, False
    numeric_x = is_numeric_value(points[0][0])
    if numeric_x:
        ordered = sorted(points, key=lambda p: (to_number(p[0]) is None, coerce_number(p[0])))
    else:
        ordered = sorted(points, key=lambda p: stringify_cell(p[0]))
    return ordered, numeric_x


def _shape_xy(chart_type: ChartType, points: List[Point], numeric_x: bool) -> Dict[str, Any]:
    """chartData / categories / isXNumeric for already ordered points."""
    if chart_type == ChartType.scatter or (chart_type == ChartType.line and numeric_x):
        pairs = [[to_number(x), y] for x, y in points if to_number(x) is not None]
        return {"chart_data": pairs, "categories": None, "is_x_numeric": True}
    return {
        "chart_data": [y for _, y in points],
        "categories": [stringify_cell(x) for x, _ in points],
        "is_x_numeric": False,
    }


def compute_trendline(chart_data: Sequence[Any], is_x_numeric: bool) -> Optional[List[Any]]:
    """Ordinary least squares fit of the series.

    Categorical series get one prediction per category (x = position);
    numeric series get the two endpoint pairs. None when fewer than two
    points or when every x is the same.
    """
    if is_x_numeric:
        xs = np.array([float(p[0]) for p in chart_data], dtype=float)
        ys = np.array([float(p[1]) for p in chart_data], dtype=float)
    else:
        ys = np.array([float(v) for v in chart_data], dtype=float)
        xs = np.arange(len(ys), dtype=float)

    if len(xs) < 2 or float(np.ptp(xs)) == 0:
        return None

    X = np.column_stack([np.ones(len(xs)), xs])
    beta, *_ = np.linalg.lstsq(X, ys, rcond=None)
    intercept, slope = float(beta[0]), float(beta[1])

    if is_x_numeric:
        lo, hi = float(xs.min()), float(xs.max())
        return [[lo, round4(intercept + slope * lo)], [hi, round4(intercept + slope * hi)]]
    return [round4(intercept + slope * x) for x in xs]


# ---------------------------------------------------------------------------
# Binder
# ---------------------------------------------------------------------------

class ChartBinder:
    def __init__(
        self,
        resolve_dataset: DatasetResolver,
        resolve_metric: MetricResolver,
        default_dataset_id: Optional[str] = None,
    ) -> None:
        self.resolve_dataset = resolve_dataset
        self.resolve_metric = resolve_metric
        self.default_dataset_id = default_dataset_id

    # -- resolution ----------------------------------------------------------

    def metric(self, binding: Binding) -> Metric:
        metric = self.resolve_metric(binding.ref)
        if metric is None:
            raise BindingError(BindingErrorReason.metric_missing, f'Metric "{binding.ref}" not found')
        return metric

    def dataset_id_of(self, binding: Optional[Binding]) -> Optional[str]:
        if binding is None:
            return None
        if binding.dataset_id:
            return binding.dataset_id
        if _is_metric(binding):
            metric = self.resolve_metric(binding.ref)
            if metric is not None and metric.dataset_id:
                return metric.dataset_id
        return self.default_dataset_id

    def dataset(self, dataset_id: Optional[str]) -> Dataset:
        dataset = self.resolve_dataset(dataset_id) if dataset_id else None
        if dataset is None:
            raise BindingError(
                BindingErrorReason.dataset_missing,
                f'Dataset "{dataset_id}" not found' if dataset_id else "No dataset is bound to this chart",
            )
        return dataset

    def dataset_for(self, binding: Binding) -> Dataset:
        return self.dataset(self.dataset_id_of(binding))

    def check_same_dataset(self, *bindings: Optional[Binding]) -> None:
        ids = {self.dataset_id_of(b) for b in bindings if _concrete(b)}
        ids.discard(None)
        if len(ids) > 1:
            raise BindingError(
                BindingErrorReason.cross_dataset,
                "All bindings must come from the same dataset (got %s)" % ", ".join(sorted(ids)),
            )

    def metric_value(self, metric: Metric) -> Any:
        """Stored value, else computed on the metric's dataset."""
        if not is_null(metric.value):
            return metric.value
        return execute_metric(metric, self.dataset(metric.dataset_id or self.default_dataset_id))

    def label(self, binding: Binding) -> str:
        if _is_metric(binding):
            return self.metric(binding).name
        return format_column_name(binding.ref)

    # -- entry point ---------------------------------------------------------

    def build(self, chart_type: ChartType, config: ChartConfig) -> BuildResult:
        chart_type = ChartType(chart_type)
        builder = _BUILDERS.get(chart_type)
        if builder is None:
            raise _incompatible(f"Unsupported chart type: {chart_type}")
        try:
            return builder(self, chart_type, config)
        except CalculationError as exc:
            raise BindingError(BindingErrorReason.calculation_failed, str(exc)) from exc

    # -- line / bar / scatter ------------------------------------------------

    def _build_xy(self, chart_type: ChartType, config: ChartConfig) -> BuildResult:
        x, y = config.x_binding, config.y_binding
        if not _concrete(x) or not _concrete(y):
            raise _missing(f"{chart_type.value.title()} chart requires both X and Y axis bindings")
        if chart_type == ChartType.scatter and not (_is_column(x) and _is_column(y)):
            raise _incompatible("Scatter chart requires column bindings on both axes")
        self.check_same_dataset(x, y, config.z_binding)

        if _is_metric(x) and _is_metric(y):
            return [self._kpi(self.metric(x)), self._kpi(self.metric(y))]

        if _is_column(x) and _is_column(y):
            points, numeric_x = self._column_points(x, y)
        elif _is_metric(y):
            points, numeric_x = self._metric_by_group(x, self.metric(y))
        else:
            points, numeric_x = self._constant_metric(y, self.metric(x))

        shaped = _shape_xy(chart_type, points, numeric_x)
        x_label, y_label = self.label(x), self.label(y)
        styling = config.styling

        trendline = None
        if styling.show_trendline and chart_type in (ChartType.line, ChartType.scatter):
            trendline = compute_trendline(shaped["chart_data"], shaped["is_x_numeric"])

        bundle = XYBundle(
            chart_type=chart_type,
            x_label=styling.x_label or x_label,
            y_label=styling.y_label or y_label,
            title=styling.title or f"{y_label} by {x_label}",
            color=styling.color or DEFAULT_COLOR,
            trendline=trendline,
            reference_line=self._reference_line(styling.reference_metric_id),
            **shaped,
        )
        logger.info(
            "Chart bound: type=%s points=%d numeric_x=%s",
            chart_type.value, len(bundle.chart_data), bundle.is_x_numeric,
        )
        return bundle

    def _column_points(self, x: Binding, y: Binding) -> Tuple[List[Point], bool]:
        dataset = self.dataset_for(x)
        aggregation = y.aggregation
        if aggregation is None and x.date_grouping is not None:
            aggregation = self._default_aggregation(dataset, y.ref)

        if aggregation is not None:
            pairs = aggregate(
                dataset.rows, dataset.columns, x.ref, y.ref, aggregation, x.date_grouping,
            )
            numeric_x = bool(pairs) and all(is_numeric_value(k) for k, _ in pairs)
            return list(pairs), numeric_x
        return self._direct_points(dataset, x.ref, y.ref)

    def _direct_points(self, dataset: Dataset, x_column: str, y_column: str) -> Tuple[List[Point], bool]:
        xs = column_values(dataset.rows, column_index(dataset.columns, x_column))
        ys = column_values(dataset.rows, column_index(dataset.columns, y_column))
        points = [
            (xv, coerce_number(yv))
            for xv, yv in zip(xs, ys)
            if not is_null(xv) and not is_null(yv)
        ]
        return _sort_direct(points)

    def _metric_by_group(self, x: Binding, metric: Metric) -> Tuple[List[Point], bool]:
        dataset = self.dataset_for(x)
        points: List[Point] = []
        for key, rows in group_rows(dataset.rows, dataset.columns, x.ref, x.date_grouping):
            subset = dataset.model_copy(update={"rows": rows})
            try:
                value = coerce_number(execute_metric(metric, subset))
            except CalculationError as exc:
                logger.warning("Metric %s failed for group %r: %s", metric.id, key, exc)
                value = 0
            points.append((key, value))
        ordered = sort_pairs(points)
        numeric_x = bool(ordered) and all(is_numeric_value(k) for k, _ in ordered)
        return ordered, numeric_x

    def _constant_metric(self, y: Binding, metric: Metric) -> Tuple[List[Point], bool]:
        dataset = self.dataset_for(y)
        value = coerce_number(self.metric_value(metric))
        seen: Dict[str, Any] = {}
        for cell in column_values(dataset.rows, column_index(dataset.columns, y.ref)):
            if not is_null(cell):
                seen.setdefault(stringify_cell(cell), cell)
        ordered = sort_pairs((cell, value) for cell in seen.values())
        return ordered, False

    def _reference_line(self, metric_id: Optional[str]) -> Optional[ReferenceLine]:
        if not metric_id:
            return None
        metric = self.resolve_metric(metric_id)
        if metric is None or to_number(metric.value) is None:
            return None
        return ReferenceLine(value=to_number(metric.value), name=metric.name)

    @staticmethod
    def _default_aggregation(dataset: Dataset, column: str) -> Aggregation:
        if infer_column_type(dataset, column) == ColumnType.numeric:
            return Aggregation.SUM
        return Aggregation.COUNT

    # -- pie / donut ---------------------------------------------------------

    def _build_pie(self, chart_type: ChartType, config: ChartConfig) -> PieBundle:
        x, y = config.x_binding, config.y_binding
        if not _concrete(x) or not _concrete(y):
            raise _missing(f"{chart_type.value.title()} chart requires category and value bindings")
        if not (_is_column(x) and _is_column(y)):
            raise _incompatible(f"{chart_type.value.title()} chart requires column bindings")
        self.check_same_dataset(x, y, config.z_binding)

        dataset = self.dataset_for(x)
        aggregation = y.aggregation or self._default_aggregation(dataset, y.ref)
        pairs = aggregate(
            dataset.rows, dataset.columns, x.ref, y.ref, aggregation, x.date_grouping, sort=False,
        )
        x_label, y_label = format_column_name(x.ref), format_column_name(y.ref)
        return PieBundle(
            slices=[PieSlice(name=stringify_cell(k), y=v) for k, v in pairs],
            title=config.styling.title or f"{y_label} by {x_label}",
            inner_hole=DONUT_HOLE if chart_type == ChartType.donut else 0,
        )

    # -- scorecard -------------------------------------------------------------

    def _build_scorecard(self, chart_type: ChartType, config: ChartConfig) -> ScorecardBundle:
        y = config.y_binding
        if not _concrete(y):
            raise _missing("Scorecard requires a Y axis binding")
        self.check_same_dataset(y, config.z_binding)
        title = config.styling.title

        if _is_metric(y):
            metric = self.metric(y)
            value = to_number(self.metric_value(metric))
            return ScorecardBundle(
                title=title or metric.name,
                value="N/A" if value is None else value,
                operation_label=metric.operation or "Metric",
                formatted=format_metric_value(value, metric.display_type.value, metric.decimal_places),
            )

        dataset = self.dataset_for(y)
        cells = column_values(dataset.rows, column_index(dataset.columns, y.ref))
        if y.aggregation is not None:
            value: Any = reduce_values(cells, y.aggregation)
            label = y.aggregation.value
        else:
            numbers = [n for n in (to_number(c) for c in cells) if n is not None]
            if not numbers:
                value, label = "N/A", "N/A"
            elif len(numbers) == 1:
                value, label = numbers[0], "Value"
            else:
                value, label = round4(sum(numbers) / len(numbers)), "Average"
        return ScorecardBundle(
            title=title or format_column_name(y.ref),
            value=value,
            operation_label=label,
            formatted=format_metric_value(None if value == "N/A" else value),
        )

    # -- table -----------------------------------------------------------------

    def _build_table(self, chart_type: ChartType, config: ChartConfig) -> TableBundle:
        fields = [b for b in config.table_fields if _concrete(b)]
        if not fields:
            raise _missing("Table requires at least one field")
        self.check_same_dataset(*fields)

        headers = [self.label(b) for b in fields]
        columns = [b for b in fields if _is_column(b)]
        metric_values = {
            b.ref: self.metric(b).value for b in fields if _is_metric(b)
        }

        if not columns:
            rows = [[metric_values[b.ref] for b in fields]]
            return TableBundle(headers=headers, rows=rows, title=config.styling.title or "Table")

        dataset = self.dataset_for(columns[0])
        projected = {
            b.ref: column_values(dataset.rows, column_index(dataset.columns, b.ref)) for b in columns
        }
        rows = []
        for i in range(len(dataset.rows)):
            rows.append([
                projected[b.ref][i] if _is_column(b) else metric_values[b.ref]
                for b in fields
            ])

        return TableBundle(headers=headers, rows=rows, title=config.styling.title or "Table")

    # -- kpi -------------------------------------------------------------------

    def _kpi(self, metric: Metric) -> KpiBundle:
        value = self.metric_value(metric)
        return KpiBundle(
            title=metric.name,
            value=value,
            meta={"column": metric.column, "operation": metric.operation},
            formatted=format_metric_value(value, metric.display_type.value, metric.decimal_places),
        )


_BUILDERS = {
    ChartType.line: ChartBinder._build_xy,
    ChartType.bar: ChartBinder._build_xy,
    ChartType.scatter: ChartBinder._build_xy,
    ChartType.pie: ChartBinder._build_pie,
    ChartType.donut: ChartBinder._build_pie,
    ChartType.scorecard: ChartBinder._build_scorecard,
    ChartType.table: ChartBinder._build_table,
}


def build_chart(
    chart_type: ChartType | str,
    config: ChartConfig,
    resolve_dataset: DatasetResolver,
    resolve_metric: MetricResolver,
    default_dataset_id: Optional[str] = None,
) -> BuildResult:
    """Bind a chart configuration into a series bundle (or two kpi bundles)."""
    try:
        chart_type = ChartType(chart_type)
    except ValueError as exc:
        raise _incompatible(f"Unsupported chart type: {chart_type}") from exc
    binder = ChartBinder(resolve_dataset, resolve_metric, default_dataset_id)
    return binder.build(chart_type, config)


def build_visualization(
    viz: Visualization,
    resolve_dataset: DatasetResolver,
    resolve_metric: MetricResolver,
) -> BuildResult:
    return build_chart(viz.chart_type, viz.config, resolve_dataset, resolve_metric, viz.dataset_id)
