"""
Shared utility helpers for cell coercion, key ordering and display.

Pure functions with no I/O.
"""

from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from functools import cmp_to_key
from typing import Any, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

Number = Union[int, float]


# ---------------------------------------------------------------------------
# Null / numeric coercion
# ---------------------------------------------------------------------------

def is_null(value: Any) -> bool:
    """True for the cell values the workbench treats as missing."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NA or value is pd.NaT


def _unwrap(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def to_number(value: Any) -> Optional[Number]:
    """Coerce a cell to a finite number, or None when it is not numeric.

    Ints pass through unchanged so min/max keep the original value.
    """
    value = _unwrap(value)
    if is_null(value):
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def coerce_number(value: Any, default: Number = 0) -> Number:
    """Numeric value of a cell with a fallback for anything non-numeric."""
    number = to_number(value)
    return default if number is None else number


def is_numeric_value(value: Any) -> bool:
    """True when the cell itself is a number (not a numeric-looking string)."""
    value = _unwrap(value)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def numeric_series(values: Sequence[Any]) -> pd.Series:
    """Series of finite numbers; non-numeric cells are dropped."""
    numbers = [n for n in (to_number(v) for v in values) if n is not None]
    return pd.Series(numbers, dtype="float64")


def round4(value: float) -> float:
    return round(float(value), 4)


# ---------------------------------------------------------------------------
# Stringification and key ordering
# ---------------------------------------------------------------------------

def stringify_cell(value: Any) -> str:
    """Canonical string form of a cell; 1, 1.0 and "1" all map to "1"."""
    value = _unwrap(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def compare_keys(a: Any, b: Any) -> int:
    """Numeric comparison when both keys are numbers, else string comparison."""
    if is_numeric_value(a) and is_numeric_value(b):
        return (a > b) - (a < b)
    sa, sb = stringify_cell(a), stringify_cell(b)
    return (sa > sb) - (sa < sb)


key_order = cmp_to_key(compare_keys)


# ---------------------------------------------------------------------------
# Column access
# ---------------------------------------------------------------------------

def column_values(rows: Sequence[Sequence[Any]], column_index: int) -> List[Any]:
    """Cells of one column; short or malformed rows read as None."""
    out: List[Any] = []
    for row in rows:
        if isinstance(row, (list, tuple)) and len(row) > column_index:
            out.append(row[column_index])
        else:
            out.append(None)
    return out


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

def format_column_name(column: str) -> str:
    """"order_total" -> "Order Total"."""
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), column.replace("_", " "))


def format_metric_value(value: Any, display_type: str = "numeric", decimal_places: int = 2) -> str:
    """Render a metric value as numeric, currency or percentage text."""
    if is_null(value):
        return "N/A"
    try:
        num = float(value)
    except (TypeError, ValueError):
        return str(value)
    if not math.isfinite(num):
        return str(value)

    decimals = max(0, min(10, int(round(decimal_places if decimal_places is not None else 2))))

    if display_type == "currency":
        sign = "-" if num < 0 else ""
        return f"{sign}${abs(num):,.{decimals}f}"
    if display_type == "percentage":
        return f"{num * 100:.{decimals}f}%"
    return f"{num:,.{decimals}f}"


# ---------------------------------------------------------------------------
# DataFrame safety
# ---------------------------------------------------------------------------

def df_json_safe(df: pd.DataFrame) -> pd.DataFrame:
    """Replace +/-inf -> NaN, then NaN -> None so JSON serialization works."""
    if df.empty:
        return df
    tmp = df.replace([np.inf, -np.inf], np.nan)
    tmp = tmp.astype(object)
    return tmp.where(pd.notna(tmp), None)


def df_to_rows_safe(df: pd.DataFrame) -> List[List[Any]]:
    """Convert a DataFrame to positional rows with JSON-safe Python values."""
    if df.empty:
        return []
    return [[_unwrap(v) for v in row] for row in df_json_safe(df).to_numpy().tolist()]
