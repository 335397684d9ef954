"""
Aggregation engine.

Groups positional rows by an x column (optionally date-bucketed) and reduces
each group's y values with a SQL-style aggregation. Groups are kept in
first-seen order; ``sort_pairs`` applies the numeric-aware key order.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from app.utils.datetime_utils import bucket_date
from core.errors import MissingColumnError
from core.models import Aggregation, DateGrouping
from core.utils import Number, coerce_number, column_values, is_null, key_order, round4, stringify_cell, to_number

Rows = Sequence[Sequence[Any]]
Pair = Tuple[Any, Number]


def column_index(columns: Sequence[str], column: str) -> int:
    if column not in columns:
        raise MissingColumnError(column, columns)
    return list(columns).index(column)


def bucket_keys(values: Iterable[Any], date_grouping: Optional[DateGrouping]) -> List[Any]:
    """Bucketed x values; None marks rows to drop (null x or unparseable date)."""
    out: List[Any] = []
    for value in values:
        if is_null(value):
            out.append(None)
        else:
            out.append(bucket_date(value, date_grouping) if date_grouping else value)
    return out


def reduce_values(values: Sequence[Any], aggregation: Aggregation | str) -> Number:
    if not isinstance(aggregation, Aggregation):
        aggregation = Aggregation(str(aggregation).upper())
    present = [v for v in values if not is_null(v)]

    if aggregation == Aggregation.COUNT:
        return len(present)
    if aggregation == Aggregation.COUNT_DISTINCT:
        return len({stringify_cell(v) for v in present})
    if aggregation in (Aggregation.SUM, Aggregation.AVG):
        total = sum(coerce_number(v) for v in present)
        if aggregation == Aggregation.SUM:
            return total if isinstance(total, int) else round4(total)
        return round4(total / len(present)) if present else 0

    numbers = [n for n in (to_number(v) for v in present) if n is not None]
    if not numbers:
        return 0
    return min(numbers) if aggregation == Aggregation.MIN else max(numbers)


def _frame(
    rows: Rows,
    columns: Sequence[str],
    x_column: str,
    date_grouping: Optional[DateGrouping],
) -> pd.DataFrame:
    x_index = column_index(columns, x_column)
    keys = bucket_keys(column_values(rows, x_index), date_grouping)
    frame = pd.DataFrame(
        {
            "x": pd.Series(keys, dtype=object),
            "row": pd.Series(range(len(keys)), dtype="int64"),
        }
    )
    frame = frame[frame["x"].map(lambda v: v is not None)]
    return frame.assign(key=frame["x"].map(stringify_cell))


def group_rows(
    rows: Rows,
    columns: Sequence[str],
    x_column: str,
    date_grouping: Optional[DateGrouping] = None,
) -> List[Tuple[Any, List[Sequence[Any]]]]:
    """``[(x, rows)]`` per distinct (bucketed) x, in first-seen order."""
    frame = _frame(rows, columns, x_column, date_grouping)
    if frame.empty:
        return []
    groups: List[Tuple[Any, List[Sequence[Any]]]] = []
    for _, group in frame.groupby("key", sort=False):
        groups.append((group["x"].iloc[0], [rows[i] for i in group["row"].tolist()]))
    return groups


def sort_pairs(pairs: Iterable[Tuple[Any, Any]]) -> List[Tuple[Any, Any]]:
    return sorted(pairs, key=lambda pair: key_order(pair[0]))


def aggregate(
    rows: Rows,
    columns: Sequence[str],
    x_column: str,
    y_column: str,
    aggregation: Aggregation | str,
    date_grouping: Optional[DateGrouping] = None,
    sort: bool = True,
) -> List[Pair]:
    """Group by ``x_column`` and reduce ``y_column`` per group.

    Returns ``[(x, y)]`` where ``x`` keeps the type of the first value seen
    in the group. With ``sort=False`` groups stay in first-seen order.
    """
    y_index = column_index(columns, y_column)
    pairs: List[Pair] = []
    for x, group in group_rows(rows, columns, x_column, date_grouping):
        ys = column_values(group, y_index)
        pairs.append((x, reduce_values(ys, aggregation)))
    return sort_pairs(pairs) if sort else pairs
