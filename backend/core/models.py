"""
Core Pydantic models for the analytics workbench.

All domain types live here so every module shares the same vocabulary.
Models serialize with camelCase aliases (``datasetId``, ``createdAt``) which
is also the persisted snapshot layout.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        """JSON-ready dict using the camelCase aliases."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ColumnType(str, Enum):
    numeric = "numeric"
    date = "date"
    text = "text"
    unknown = "unknown"


class MetricOperation(str, Enum):
    mean = "mean"
    sum = "sum"
    min = "min"
    max = "max"
    stdev = "stdev"
    count = "count"
    count_distinct = "count_distinct"


class ChartType(str, Enum):
    line = "line"
    bar = "bar"
    scatter = "scatter"
    pie = "pie"
    donut = "donut"
    table = "table"
    scorecard = "scorecard"


class BindingKind(str, Enum):
    column = "column"
    metric = "metric"


class Aggregation(str, Enum):
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"
    COUNT = "COUNT"
    COUNT_DISTINCT = "COUNT_DISTINCT"


class DateGrouping(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    quarter = "quarter"
    year = "year"


class DisplayType(str, Enum):
    numeric = "numeric"
    currency = "currency"
    percentage = "percentage"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class Dataset(CamelModel):
    id: str
    name: str
    sql: str = ""
    columns: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    access_control: Optional[Dict[str, Any]] = None


class Metric(CamelModel):
    id: str
    dataset_id: Optional[str] = None
    name: str
    value: Optional[Any] = None
    type: Literal["scalar"] = "scalar"
    operation: Optional[str] = None
    column: Optional[str] = None
    expression: Optional[str] = None
    display_type: DisplayType = DisplayType.numeric
    decimal_places: int = Field(default=2, ge=0, le=10)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    executed_at: Optional[str] = None


class Binding(CamelModel):
    kind: BindingKind
    ref: str
    dataset_id: Optional[str] = None
    aggregation: Optional[Aggregation] = None
    date_grouping: Optional[DateGrouping] = None


class Styling(CamelModel):
    title: Optional[str] = None
    x_label: Optional[str] = None
    y_label: Optional[str] = None
    color: Optional[str] = None
    show_trendline: bool = False
    reference_metric_id: Optional[str] = None


class ChartConfig(CamelModel):
    x_binding: Optional[Binding] = None
    y_binding: Optional[Binding] = None
    z_binding: Optional[Binding] = None
    table_fields: List[Binding] = Field(default_factory=list)
    styling: Styling = Field(default_factory=Styling)


class Visualization(CamelModel):
    id: str
    name: str
    chart_type: ChartType
    config: ChartConfig = Field(default_factory=ChartConfig)
    dataset_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Series bundles (chart sink input)
# ---------------------------------------------------------------------------

class ReferenceLine(CamelModel):
    value: float
    name: str


class XYBundle(CamelModel):
    kind: Literal["xy"] = "xy"
    chart_type: ChartType
    chart_data: List[Union[float, List[float]]] = Field(default_factory=list)
    categories: Optional[List[str]] = None
    is_x_numeric: bool = False
    x_label: str = ""
    y_label: str = ""
    title: str = ""
    color: str = "#007bff"
    trendline: Optional[List[Union[float, List[float]]]] = None
    reference_line: Optional[ReferenceLine] = None


class PieSlice(CamelModel):
    name: str
    y: float


class PieBundle(CamelModel):
    kind: Literal["pie"] = "pie"
    slices: List[PieSlice] = Field(default_factory=list)
    title: str = ""
    inner_hole: float = 0


class ScorecardBundle(CamelModel):
    kind: Literal["scorecard"] = "scorecard"
    title: str = ""
    value: Union[float, Literal["N/A"]] = "N/A"
    operation_label: str = ""
    formatted: str = "N/A"


class TableBundle(CamelModel):
    kind: Literal["table"] = "table"
    headers: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    title: str = ""


class KpiBundle(CamelModel):
    kind: Literal["kpi"] = "kpi"
    title: str = ""
    value: Optional[Any] = None
    meta: Dict[str, Optional[str]] = Field(default_factory=dict)
    formatted: str = "N/A"


SeriesBundle = Union[XYBundle, PieBundle, ScorecardBundle, TableBundle, KpiBundle]


# ---------------------------------------------------------------------------
# External collaborator shapes and request bodies
# ---------------------------------------------------------------------------

class QueryResult(CamelModel):
    columns: List[str]
    rows: List[List[Any]]


class ValidationResult(CamelModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class QueryRequest(CamelModel):
    sql: str


class DatasetCreateRequest(CamelModel):
    name: str
    sql: str


class DuplicateRequest(CamelModel):
    name: str


class MetricCreateRequest(CamelModel):
    dataset_id: str
    name: str
    operation: Optional[str] = None
    column: Optional[str] = None
    expression: Optional[str] = None
    display_type: DisplayType = DisplayType.numeric
    decimal_places: int = Field(default=2, ge=0, le=10)


class VisualizationCreateRequest(CamelModel):
    name: str
    chart_type: ChartType
    config: ChartConfig = Field(default_factory=ChartConfig)
    dataset_id: Optional[str] = None


class ChartPreviewRequest(CamelModel):
    chart_type: ChartType
    config: ChartConfig


class SelectionRequest(CamelModel):
    dataset_id: Optional[str] = None
