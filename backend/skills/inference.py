"""
Column type inference.

Classifies a dataset column as numeric, date, text or unknown from a small
sample of its non-null cells.
"""

from __future__ import annotations

from typing import Dict, List

from app.utils.datetime_utils import looks_like_date
from core.models import ColumnType, Dataset
from core.utils import column_values, is_null, to_number

SAMPLE_SIZE = 10


def infer_column_type(dataset: Dataset, column: str) -> ColumnType:
    if column not in dataset.columns:
        return ColumnType.unknown

    index = dataset.columns.index(column)
    sample = [v for v in column_values(dataset.rows, index) if not is_null(v)][:SAMPLE_SIZE]
    if not sample:
        return ColumnType.unknown

    if all(not isinstance(v, bool) and to_number(v) is not None for v in sample):
        return ColumnType.numeric
    if all(looks_like_date(v) for v in sample):
        return ColumnType.date
    return ColumnType.text


def describe_columns(dataset: Dataset) -> List[Dict[str, str]]:
    """Ordered ``[{name, type}]`` for every column of the dataset."""
    return [
        {"name": column, "type": infer_column_type(dataset, column).value}
        for column in dataset.columns
    ]
