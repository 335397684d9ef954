"""
Metric calculator skill.

Seven reducers over one column of a positional-row dataset. Numeric
reducers drop null and non-numeric cells; count and count_distinct work on
every non-null cell.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Sequence

from core.errors import (
    EmptyDatasetError,
    MissingColumnError,
    NoNumericValuesError,
    UnsupportedOperationError,
)
from core.models import MetricOperation
from core.utils import Number, column_values, is_null, numeric_series, round4, stringify_cell, to_number

Rows = Sequence[Sequence[Any]]
Reducer = Callable[[Rows, Sequence[str], str], Number]


def _cells(rows: Rows, columns: Sequence[str], column: str, label: str) -> List[Any]:
    if not rows:
        raise EmptyDatasetError(f"Cannot calculate {label}: dataset is empty")
    if columns is None or column not in columns:
        raise MissingColumnError(column, columns)
    return column_values(rows, list(columns).index(column))


def _numbers(rows: Rows, columns: Sequence[str], column: str, label: str) -> List[Number]:
    numbers = [n for n in (to_number(v) for v in _cells(rows, columns, column, label)) if n is not None]
    if not numbers:
        raise NoNumericValuesError(
            f'Cannot calculate {label}: column "{column}" contains no numeric values'
        )
    return numbers


def calculate_mean(rows: Rows, columns: Sequence[str], column: str) -> float:
    series = numeric_series(_numbers(rows, columns, column, "mean"))
    return round4(series.sum() / len(series))


def calculate_sum(rows: Rows, columns: Sequence[str], column: str) -> float:
    return round4(numeric_series(_numbers(rows, columns, column, "sum")).sum())


def calculate_min(rows: Rows, columns: Sequence[str], column: str) -> Number:
    return min(_numbers(rows, columns, column, "minimum"))


def calculate_max(rows: Rows, columns: Sequence[str], column: str) -> Number:
    return max(_numbers(rows, columns, column, "maximum"))


def calculate_stdev(rows: Rows, columns: Sequence[str], column: str) -> float:
    """Population standard deviation (divisor n)."""
    numbers = _numbers(rows, columns, column, "standard deviation")
    if len(numbers) == 1:
        return 0
    return round4(numeric_series(numbers).std(ddof=0))


def calculate_count(rows: Rows, columns: Sequence[str], column: str) -> int:
    return sum(1 for v in _cells(rows, columns, column, "count") if not is_null(v))


def calculate_count_distinct(rows: Rows, columns: Sequence[str], column: str) -> int:
    cells = _cells(rows, columns, column, "count distinct")
    return len({stringify_cell(v) for v in cells if not is_null(v)})


OPERATIONS: Dict[str, Reducer] = {
    MetricOperation.mean.value: calculate_mean,
    MetricOperation.sum.value: calculate_sum,
    MetricOperation.min.value: calculate_min,
    MetricOperation.max.value: calculate_max,
    MetricOperation.stdev.value: calculate_stdev,
    MetricOperation.count.value: calculate_count,
    MetricOperation.count_distinct.value: calculate_count_distinct,
}

_ALIASES = {"countdistinct": MetricOperation.count_distinct.value}


def normalize_operation(operation: Any) -> str:
    """Lower-cased canonical operation name, or UnsupportedOperationError."""
    if isinstance(operation, MetricOperation):
        return operation.value
    if not operation or not isinstance(operation, str):
        raise UnsupportedOperationError("Operation type is required")
    key = operation.strip().lower()
    key = _ALIASES.get(key, key)
    if key not in OPERATIONS:
        raise UnsupportedOperationError(
            f'Unsupported operation: "{operation}". '
            f"Supported operations: {', '.join(OPERATIONS)}"
        )
    return key


def calculate_metric(rows: Rows, columns: Sequence[str], column: str, operation: Any) -> Number:
    return OPERATIONS[normalize_operation(operation)](rows, columns, column)
